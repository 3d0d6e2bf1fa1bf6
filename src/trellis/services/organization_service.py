"""
Organization service - tenancy, membership and user profiles.

Every CRM row is owned by an organization; a user acts inside their
active organization. Platform admins may act inside organizations they do
not own ("impersonation"), in which case outward-facing writes are blocked.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from trellis.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    PlanLimitError,
    ValidationError,
)
from trellis.models import (
    Company,
    Contact,
    Deal,
    DealStatus,
    ExchangeStatus,
    OrgMember,
    OrgRole,
    Organization,
    PipelineStage,
    PlanType,
    Referral,
    ReferralExchange,
    ReferralStatus,
    UserProfile,
    utcnow,
)
from trellis.services.plans import apply_plan

logger = logging.getLogger(__name__)

DEFAULT_PIPELINE_STAGES = [
    {"name": "Lead", "display_order": 0, "color": "#94a3b8", "is_won": False, "is_lost": False},
    {"name": "Contacted", "display_order": 1, "color": "#5d8a5a", "is_won": False, "is_lost": False},
    {"name": "Qualified", "display_order": 2, "color": "#a78bfa", "is_won": False, "is_lost": False},
    {"name": "Proposal", "display_order": 3, "color": "#2f5435", "is_won": False, "is_lost": False},
    {"name": "Negotiation", "display_order": 4, "color": "#96b593", "is_won": False, "is_lost": False},
    {"name": "Won", "display_order": 5, "color": "#22c55e", "is_won": True, "is_lost": False},
    {"name": "Lost", "display_order": 6, "color": "#ef4444", "is_won": False, "is_lost": True},
]


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "org"


@dataclass
class TenantContext:
    """The acting user, their active organization and impersonation flag."""

    user: UserProfile
    org: Organization
    is_impersonating: bool

    @property
    def org_id(self) -> int:
        return self.org.id

    @property
    def user_id(self) -> int:
        return self.user.id

    def require_paid(self, message: str) -> None:
        if self.org.plan == PlanType.FREE:
            raise PlanLimitError(message)

    def forbid_impersonation(self, message: str) -> None:
        if self.is_impersonating:
            raise PermissionDeniedError(message)


# =============================================================================
# USERS
# =============================================================================


class UserService:
    """Service for user profiles."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: int) -> Optional[UserProfile]:
        return self.session.get(UserProfile, user_id)

    def get_by_email(self, email: str) -> Optional[UserProfile]:
        return (
            self.session.query(UserProfile)
            .filter(func.lower(UserProfile.email) == email.strip().lower())
            .first()
        )

    def list(self, search: Optional[str] = None, limit: int = 100, offset: int = 0) -> list[UserProfile]:
        query = self.session.query(UserProfile)
        if search:
            term = f"%{search}%"
            query = query.filter(
                (UserProfile.full_name.ilike(term)) | (UserProfile.email.ilike(term))
            )
        return query.order_by(UserProfile.created_at.desc()).offset(offset).limit(limit).all()

    def create(self, email: str, full_name: Optional[str] = None, **kwargs) -> UserProfile:
        """Register a profile and attach any pending exchanges sent to its email."""
        email = email.strip().lower()
        if self.get_by_email(email):
            raise ConflictError(f"User with email {email} already exists")

        user = UserProfile(email=email, full_name=full_name, **kwargs)
        self.session.add(user)
        self.session.flush()

        claimed = self.claim_pending_exchanges(user)
        self.session.commit()
        self.session.refresh(user)

        logger.info(f"User {user.id} registered ({claimed} pending exchanges claimed)")
        return user

    def claim_pending_exchanges(self, user: UserProfile) -> int:
        """Attach unclaimed pending exchanges addressed to the user's email."""
        exchanges = (
            self.session.query(ReferralExchange)
            .filter(
                func.lower(ReferralExchange.receiver_email) == user.email.lower(),
                ReferralExchange.receiver_user_id.is_(None),
                ReferralExchange.status == ExchangeStatus.PENDING,
            )
            .all()
        )
        for exchange in exchanges:
            exchange.receiver_user_id = user.id
        return len(exchanges)

    def update(self, user_id: int, **kwargs) -> Optional[UserProfile]:
        user = self.get(user_id)
        if not user:
            return None
        for field, value in kwargs.items():
            if hasattr(user, field) and field not in ("id", "email"):
                setattr(user, field, value)
        self.session.commit()
        self.session.refresh(user)
        return user


# =============================================================================
# ORGANIZATIONS
# =============================================================================


class OrganizationService:
    """Service for organizations and their members."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, org_id: int) -> Optional[Organization]:
        return self.session.get(Organization, org_id)

    def get_by_slug(self, slug: str) -> Optional[Organization]:
        return self.session.query(Organization).filter(Organization.slug == slug).first()

    def list_for_user(self, user_id: int) -> list[Organization]:
        return (
            self.session.query(Organization)
            .join(OrgMember, OrgMember.org_id == Organization.id)
            .filter(OrgMember.user_id == user_id)
            .order_by(Organization.name)
            .all()
        )

    def create(
        self,
        name: str,
        owner: UserProfile,
        plan: PlanType = PlanType.FREE,
        **kwargs,
    ) -> Organization:
        """Create an organization owned by `owner`, seeded with the default pipeline."""
        if not name or not name.strip():
            raise ValidationError("Organization name is required")

        slug = self._unique_slug(slugify(name))
        org = Organization(name=name.strip(), slug=slug, **kwargs)
        apply_plan(org, plan)
        self.session.add(org)
        self.session.flush()

        self.session.add(
            OrgMember(org_id=org.id, user_id=owner.id, role=OrgRole.OWNER, accepted_at=utcnow())
        )
        for stage in DEFAULT_PIPELINE_STAGES:
            self.session.add(PipelineStage(org_id=org.id, **stage))

        if owner.active_org_id is None:
            owner.active_org_id = org.id

        self.session.commit()
        self.session.refresh(org)
        logger.info(f"Organization {org.id} ({org.slug}) created by user {owner.id}")
        return org

    def update(self, org_id: int, **kwargs) -> Optional[Organization]:
        org = self.get(org_id)
        if not org:
            return None
        for field in ("name", "logo_url", "website", "industry", "settings"):
            if field in kwargs and kwargs[field] is not None:
                setattr(org, field, kwargs[field])
        self.session.commit()
        self.session.refresh(org)
        return org

    def _unique_slug(self, base: str) -> str:
        slug = base
        suffix = 2
        while self.get_by_slug(slug):
            slug = f"{base}-{suffix}"
            suffix += 1
        return slug

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def get_membership(self, org_id: int, user_id: int) -> Optional[OrgMember]:
        return (
            self.session.query(OrgMember)
            .filter(OrgMember.org_id == org_id, OrgMember.user_id == user_id)
            .first()
        )

    def list_members(self, org_id: int) -> list[OrgMember]:
        return (
            self.session.query(OrgMember)
            .filter(OrgMember.org_id == org_id)
            .order_by(OrgMember.created_at)
            .all()
        )

    def add_member(
        self,
        org: Organization,
        user: UserProfile,
        role: OrgRole = OrgRole.MEMBER,
        enforce_limit: bool = True,
    ) -> OrgMember:
        """Add a user to an organization, respecting the plan's seat limit."""
        existing = self.get_membership(org.id, user.id)
        if existing:
            return existing

        if enforce_limit:
            count = self.session.query(OrgMember).filter(OrgMember.org_id == org.id).count()
            if count >= org.max_users:
                raise PlanLimitError(
                    f"Your plan allows {org.max_users} user(s). Upgrade to add more members."
                )

        member = OrgMember(
            org_id=org.id,
            user_id=user.id,
            role=role,
            invited_email=user.email,
            invited_at=utcnow(),
            accepted_at=utcnow(),
        )
        self.session.add(member)
        if user.active_org_id is None:
            user.active_org_id = org.id
        self.session.commit()
        self.session.refresh(member)
        logger.info(f"User {user.id} added to org {org.id} as {role.value}")
        return member

    def remove_member(self, org_id: int, user_id: int) -> bool:
        member = self.get_membership(org_id, user_id)
        if not member:
            return False
        if member.role == OrgRole.OWNER:
            raise ValidationError("The organization owner cannot be removed")
        self.session.delete(member)
        user = self.session.get(UserProfile, user_id)
        if user and user.active_org_id == org_id:
            user.active_org_id = None
        self.session.commit()
        return True

    def switch_active_org(self, user: UserProfile, org_id: int) -> Organization:
        org = self.get(org_id)
        if not org or not self.get_membership(org_id, user.id):
            raise NotFoundError("Organization not found")
        user.active_org_id = org_id
        self.session.commit()
        return org

    # -------------------------------------------------------------------------
    # Tenant resolution
    # -------------------------------------------------------------------------

    def is_owner(self, org_id: int, user_id: int) -> bool:
        member = self.get_membership(org_id, user_id)
        return bool(member and member.role == OrgRole.OWNER)

    def is_impersonating(self, user: UserProfile, org_id: int) -> bool:
        """A platform admin acting in an org they do not own is impersonating."""
        if not user.is_platform_admin:
            return False
        return not self.is_owner(org_id, user.id)

    def resolve_context(self, user: UserProfile) -> TenantContext:
        """Build the tenant context for a request; requires an active org membership."""
        if not user.active_org_id:
            raise ValidationError("No active organization")
        org = self.get(user.active_org_id)
        if not org:
            raise ValidationError("No active organization")
        if not self.get_membership(org.id, user.id) and not user.is_platform_admin:
            raise PermissionDeniedError("Forbidden")
        return TenantContext(
            user=user,
            org=org,
            is_impersonating=self.is_impersonating(user, org.id),
        )

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def get_stats(self, org_id: int) -> dict:
        """Dashboard totals for one organization."""

        def count(model) -> int:
            return self.session.query(func.count(model.id)).filter(model.org_id == org_id).scalar() or 0

        def deal_sum(*criteria) -> float:
            return float(
                self.session.query(func.coalesce(func.sum(Deal.value), 0))
                .filter(Deal.org_id == org_id, *criteria)
                .scalar()
            )

        total_referrals = count(Referral)
        converted = (
            self.session.query(func.count(Referral.id))
            .filter(Referral.org_id == org_id, Referral.status == ReferralStatus.CONVERTED)
            .scalar()
            or 0
        )
        avg_depth = (
            self.session.query(func.avg(Referral.depth)).filter(Referral.org_id == org_id).scalar()
        )

        return {
            "total_contacts": count(Contact),
            "total_companies": count(Company),
            "total_deals": count(Deal),
            "total_referrals": total_referrals,
            "total_deal_value": deal_sum(),
            "won_deal_value": deal_sum(Deal.status == DealStatus.WON),
            "pipeline_value": deal_sum(Deal.status == DealStatus.OPEN),
            "avg_referral_chain_depth": round(float(avg_depth or 0), 2),
            "conversion_rate": round(converted / total_referrals * 100, 1) if total_referrals else 0.0,
        }
