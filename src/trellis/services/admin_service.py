"""
Platform admin service - cross-tenant stats, listings and impersonation.

Every method requires a platform admin; tenant scoping does not apply here.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from trellis.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from trellis.models import (
    Contact,
    Deal,
    DealStatus,
    DirectoryProfile,
    ExchangeTrustScore,
    OrgMember,
    OrgRole,
    Organization,
    PlanType,
    Referral,
    UserProfile,
    utcnow,
)

logger = logging.getLogger(__name__)

RECENT_DAYS = 30


def require_platform_admin(user: UserProfile) -> None:
    if not user.is_platform_admin:
        raise PermissionDeniedError("Forbidden")


class AdminService:
    """Service for platform administration."""

    def __init__(self, session: Session):
        self.session = session

    def _count(self, model, *criteria) -> int:
        return self.session.query(func.count(model.id)).filter(*criteria).scalar() or 0

    def _deal_value(self, *criteria) -> float:
        return float(
            self.session.query(func.coalesce(func.sum(Deal.value), 0)).filter(*criteria).scalar()
        )

    def get_stats(self) -> dict:
        """Platform-wide totals and plan distribution."""
        since = utcnow() - timedelta(days=RECENT_DAYS)
        plan_counts = {plan.value: 0 for plan in PlanType}
        for plan, count in (
            self.session.query(Organization.plan, func.count(Organization.id))
            .group_by(Organization.plan)
            .all()
        ):
            plan_counts[plan.value] = count

        return {
            "total_users": self._count(UserProfile),
            "total_orgs": self._count(Organization),
            "total_contacts": self._count(Contact),
            "total_referrals": self._count(Referral),
            "total_deals": self._count(Deal),
            "total_deal_value": self._deal_value(),
            "won_revenue": self._deal_value(Deal.status == DealStatus.WON),
            "new_users_last_30d": self._count(UserProfile, UserProfile.created_at >= since),
            "active_users_last_30d": self._count(UserProfile, UserProfile.updated_at >= since),
            "plan_distribution": plan_counts,
        }

    def list_organizations(self, search: Optional[str] = None, page: int = 1, limit: int = 25) -> dict:
        """Organizations newest first, each with member/contact/deal counts and owner name."""
        page = max(page, 1)
        query = self.session.query(Organization)
        if search:
            query = query.filter(Organization.name.ilike(f"%{search}%"))
        total = query.count()
        orgs = (
            query.order_by(Organization.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

        results = []
        for org in orgs:
            owner = (
                self.session.query(UserProfile)
                .join(OrgMember, OrgMember.user_id == UserProfile.id)
                .filter(OrgMember.org_id == org.id, OrgMember.role == OrgRole.OWNER)
                .first()
            )
            results.append(
                {
                    "organization": org,
                    "member_count": self._count(OrgMember, OrgMember.org_id == org.id),
                    "contact_count": self._count(Contact, Contact.org_id == org.id),
                    "deal_count": self._count(Deal, Deal.org_id == org.id),
                    "total_revenue": self._deal_value(
                        Deal.org_id == org.id, Deal.status == DealStatus.WON
                    ),
                    "owner_name": owner.full_name if owner else None,
                }
            )
        return {"organizations": results, "total": total, "page": page, "limit": limit}

    def list_users(self, search: Optional[str] = None, page: int = 1, limit: int = 25) -> dict:
        page = max(page, 1)
        query = self.session.query(UserProfile)
        if search:
            term = f"%{search}%"
            query = query.filter(
                (UserProfile.full_name.ilike(term)) | (UserProfile.email.ilike(term))
            )
        total = query.count()
        users = (
            query.order_by(UserProfile.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        results = []
        for user in users:
            memberships = (
                self.session.query(OrgMember, Organization)
                .join(Organization, Organization.id == OrgMember.org_id)
                .filter(OrgMember.user_id == user.id)
                .all()
            )
            results.append(
                {
                    "user": user,
                    "organizations": [
                        {"org_id": org.id, "name": org.name, "plan": org.plan.value, "role": m.role.value}
                        for m, org in memberships
                    ],
                }
            )
        return {"users": results, "total": total, "page": page, "limit": limit}

    def get_user_detail(self, user_id: int) -> dict:
        user = self.session.get(UserProfile, user_id)
        if not user:
            raise NotFoundError("User not found")

        memberships = []
        for member, org in (
            self.session.query(OrgMember, Organization)
            .join(Organization, Organization.id == OrgMember.org_id)
            .filter(OrgMember.user_id == user_id)
            .all()
        ):
            memberships.append(
                {
                    "org_id": org.id,
                    "role": member.role.value,
                    "org_name": org.name,
                    "plan": org.plan.value,
                    "slug": org.slug,
                    "contacts": self._count(Contact, Contact.org_id == org.id),
                    "deals": self._count(Deal, Deal.org_id == org.id),
                    "referrals": self._count(Referral, Referral.org_id == org.id),
                }
            )

        return {
            "user": user,
            "memberships": memberships,
            "directory_profile": self.session.query(DirectoryProfile)
            .filter(DirectoryProfile.user_id == user_id)
            .first(),
            "trust_score": self.session.query(ExchangeTrustScore)
            .filter(ExchangeTrustScore.user_id == user_id)
            .first(),
        }

    # -------------------------------------------------------------------------
    # Impersonation
    # -------------------------------------------------------------------------

    def start_impersonation(self, admin: UserProfile, org_id: Optional[int]) -> dict:
        """Switch the admin into another org, joining it as admin when needed."""
        require_platform_admin(admin)
        if not org_id:
            raise ValidationError("orgId is required")
        org = self.session.get(Organization, org_id)
        if not org:
            raise NotFoundError("Organization not found")

        membership = (
            self.session.query(OrgMember)
            .filter(OrgMember.org_id == org_id, OrgMember.user_id == admin.id)
            .first()
        )
        if membership is None:
            self.session.add(OrgMember(org_id=org_id, user_id=admin.id, role=OrgRole.ADMIN))

        original_org_id = admin.active_org_id
        admin.active_org_id = org_id
        self.session.commit()
        logger.warning(f"Platform admin {admin.id} is now impersonating org {org_id}")
        return {
            "original_org_id": original_org_id,
            "impersonating_org_id": org_id,
            "org_name": org.name,
        }

    def stop_impersonation(self, admin: UserProfile, original_org_id: Optional[int]) -> dict:
        require_platform_admin(admin)
        if not original_org_id:
            raise ValidationError("originalOrgId is required")
        if not self.session.get(Organization, original_org_id):
            raise NotFoundError("Organization not found")
        admin.active_org_id = original_org_id
        self.session.commit()
        logger.info(f"Platform admin {admin.id} returned to org {original_org_id}")
        return {"restored": True, "active_org_id": original_org_id}
