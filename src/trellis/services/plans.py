"""
Plan definitions and feature gating.

Limits live here as the source of truth; billing webhooks copy
max_contacts/max_users onto the organization row so counts can be
enforced without a lookup.
"""

from dataclasses import dataclass, field
from typing import Optional

from trellis.models import Organization, PlanType

# Stored in organizations.max_contacts for plans without a contact cap
UNLIMITED = 999999


@dataclass(frozen=True)
class PlanLimits:
    """Feature set of one plan. max_contacts None means unlimited."""

    max_contacts: Optional[int]
    max_users: int
    views: tuple[str, ...]
    ai_insights: bool
    import_export: bool
    deal_tracking: str  # "basic" or "full"
    realtime_collab: bool
    automations: bool
    referral_exchange: bool

    @property
    def stored_max_contacts(self) -> int:
        return self.max_contacts if self.max_contacts is not None else UNLIMITED


@dataclass(frozen=True)
class PlanDisplay:
    name: str
    description: str
    monthly_price: int
    annual_price: int
    features: list[str] = field(default_factory=list)


PLAN_LIMITS: dict[PlanType, PlanLimits] = {
    PlanType.FREE: PlanLimits(
        max_contacts=50,
        max_users=1,
        views=("tree",),
        ai_insights=False,
        import_export=False,
        deal_tracking="basic",
        realtime_collab=False,
        automations=False,
        referral_exchange=False,
    ),
    PlanType.PRO: PlanLimits(
        max_contacts=None,
        max_users=1,
        views=("tree", "network", "galaxy"),
        ai_insights=True,
        import_export=True,
        deal_tracking="full",
        realtime_collab=False,
        automations=True,
        referral_exchange=True,
    ),
    PlanType.TEAM: PlanLimits(
        max_contacts=None,
        max_users=25,
        views=("tree", "network", "galaxy"),
        ai_insights=True,
        import_export=True,
        deal_tracking="full",
        realtime_collab=True,
        automations=True,
        referral_exchange=True,
    ),
}

PLAN_DISPLAY: dict[PlanType, PlanDisplay] = {
    PlanType.FREE: PlanDisplay(
        name="Free",
        description="For individuals getting started",
        monthly_price=0,
        annual_price=0,
        features=["Up to 50 contacts", "1 user", "Tree visualization", "Basic deal tracking"],
    ),
    PlanType.PRO: PlanDisplay(
        name="Pro",
        description="For growing professionals",
        monthly_price=29,
        annual_price=290,
        features=[
            "Unlimited contacts",
            "1 user",
            "Tree + Network + Galaxy views",
            "AI-powered insights",
            "CSV import/export",
            "Full deal tracking",
        ],
    ),
    PlanType.TEAM: PlanDisplay(
        name="Team",
        description="For teams and organizations",
        monthly_price=79,
        annual_price=790,
        features=[
            "Unlimited contacts",
            "Up to 25 users",
            "All visualization views",
            "AI-powered insights",
            "CSV import/export",
            "Full deal tracking",
            "Real-time collaboration",
        ],
    ),
}


def get_plan_limits(plan: PlanType) -> PlanLimits:
    return PLAN_LIMITS[plan]


def can_access_feature(plan: PlanType, feature: str) -> bool:
    """
    Check a feature flag on a plan.

    Boolean flags are returned as-is; numeric limits count as available
    when positive; deal_tracking is available only at "full".
    """
    value = getattr(PLAN_LIMITS[plan], feature)
    if isinstance(value, bool):
        return value
    if value is None:
        return True
    if isinstance(value, int):
        return value > 0
    if isinstance(value, tuple):
        return len(value) > 0
    return value != "basic"


def can_access_view(plan: PlanType, view: str) -> bool:
    return view in PLAN_LIMITS[plan].views


def map_product_to_plan(product_name: str) -> PlanType:
    """Map a billing product name to a plan. "team" wins over "pro"."""
    lower = (product_name or "").lower()
    if "team" in lower:
        return PlanType.TEAM
    if "pro" in lower:
        return PlanType.PRO
    return PlanType.FREE


def apply_plan(org: Organization, plan: PlanType) -> None:
    """Set the plan and copy its limits onto the organization row."""
    limits = PLAN_LIMITS[plan]
    org.plan = plan
    org.max_contacts = limits.stored_max_contacts
    org.max_users = limits.max_users
