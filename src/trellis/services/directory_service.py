"""
Directory service - public listings used to find exchange partners.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

from sqlalchemy import String, cast, or_
from sqlalchemy.orm import Session, joinedload

from trellis.exceptions import PermissionDeniedError
from trellis.models import DirectoryProfile, UserProfile

logger = logging.getLogger(__name__)

PER_PAGE = 24

PROFILE_FIELDS = (
    "display_name",
    "company_name",
    "industry",
    "location",
    "bio",
    "avatar_url",
    "specialties",
    "referral_categories",
    "accepts_referrals",
    "is_visible",
)


class DirectoryService:
    """Service for directory profiles."""

    def __init__(self, session: Session):
        self.session = session

    def list(
        self,
        search: Optional[str] = None,
        industry: Optional[str] = None,
        location: Optional[str] = None,
        specialty: Optional[str] = None,
        page: int = 1,
    ) -> dict:
        """Visible profiles ordered by display name; pages start at 1."""
        page = max(page, 1)
        query = (
            self.session.query(DirectoryProfile)
            .options(joinedload(DirectoryProfile.user))
            .filter(DirectoryProfile.is_visible.is_(True))
        )
        if search:
            term = f"%{search}%"
            query = query.filter(
                or_(DirectoryProfile.display_name.ilike(term), DirectoryProfile.company_name.ilike(term))
            )
        if industry:
            query = query.filter(DirectoryProfile.industry == industry)
        if location:
            query = query.filter(DirectoryProfile.location.ilike(f"%{location}%"))
        if specialty:
            query = query.filter(cast(DirectoryProfile.specialties, String).like(f'%"{specialty}"%'))

        total = query.count()
        profiles = (
            query.order_by(DirectoryProfile.display_name.asc())
            .offset((page - 1) * PER_PAGE)
            .limit(PER_PAGE)
            .all()
        )
        # The account avatar wins over a stale copy on the listing; detached so it is never saved
        for profile in profiles:
            if profile.user and profile.user.avatar_url:
                self.session.expunge(profile)
                profile.avatar_url = profile.user.avatar_url

        return {
            "profiles": profiles,
            "total": total,
            "page": page,
            "per_page": PER_PAGE,
            "total_pages": math.ceil(total / PER_PAGE),
        }

    def list_visible(self, exclude_user_id: Optional[int] = None, limit: int = 50) -> list[DirectoryProfile]:
        query = self.session.query(DirectoryProfile).filter(DirectoryProfile.is_visible.is_(True))
        if exclude_user_id is not None:
            query = query.filter(DirectoryProfile.user_id != exclude_user_id)
        return query.order_by(DirectoryProfile.display_name).limit(limit).all()

    def get_for_user(self, user_id: int) -> Optional[DirectoryProfile]:
        return (
            self.session.query(DirectoryProfile).filter(DirectoryProfile.user_id == user_id).first()
        )

    def upsert(
        self, user: UserProfile, fields: dict, is_impersonating: bool = False
    ) -> tuple[DirectoryProfile, bool]:
        """Create or replace the user's listing. Returns (profile, created)."""
        if is_impersonating:
            raise PermissionDeniedError("Cannot modify directory profile while impersonating")

        profile = self.get_for_user(user.id)
        created = profile is None
        if created:
            profile = DirectoryProfile(user_id=user.id)
            self.session.add(profile)

        display_name = fields.get("display_name")
        if not display_name and created:
            display_name = user.full_name or user.email.split("@")[0] or "User"
        if display_name:
            profile.display_name = display_name

        for field in ("company_name", "industry", "location", "bio", "avatar_url"):
            profile_value = fields.get(field) or None
            setattr(profile, field, profile_value)
        profile.specialties = list(fields.get("specialties") or [])
        profile.referral_categories = list(fields.get("referral_categories") or [])
        accepts = fields.get("accepts_referrals")
        profile.accepts_referrals = True if accepts is None else bool(accepts)
        visible = fields.get("is_visible")
        profile.is_visible = False if visible is None else bool(visible)

        self.session.commit()
        self.session.refresh(profile)
        logger.info(f"Directory profile {'created' if created else 'updated'} for user {user.id}")
        return profile, created
