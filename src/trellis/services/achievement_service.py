"""
Achievement service - tiered badges, daily streaks and leaderboards.

Each achievement reads one metric from get_metrics(); reaching a tier's
threshold awards that tier once. Exchange achievements only count for
organizations on a paid plan.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from trellis.exceptions import PlanLimitError
from trellis.models import (
    AchievementTier,
    Activity,
    AiInsight,
    Automation,
    Company,
    Contact,
    Deal,
    DealStatus,
    DirectoryProfile,
    ExchangeStatus,
    ExchangeTrustScore,
    OrgMember,
    Organization,
    PlanType,
    ReceiverStatus,
    Referral,
    ReferralExchange,
    ReferralStatus,
    UserAchievement,
    UserProfile,
    UserStreak,
    utcnow,
)

logger = logging.getLogger(__name__)

TIER_ORDER = [AchievementTier.BRONZE, AchievementTier.SILVER, AchievementTier.GOLD]

# master_grower is a percentage; below this many referrals it stays at 0
MIN_REFERRALS_FOR_RATE = 5

LEADERBOARD_LIMIT = 50


@dataclass(frozen=True)
class TierDef:
    tier: AchievementTier
    threshold: int
    points: int


@dataclass(frozen=True)
class AchievementDef:
    key: str
    name: str
    description: str
    category: str
    metric: str
    tiers: tuple[TierDef, ...]
    requires_paid: bool = False


def _single(points: int, threshold: int = 1) -> tuple[TierDef, ...]:
    return (TierDef(AchievementTier.GOLD, threshold, points),)


def _tiers(*spec: tuple[int, int]) -> tuple[TierDef, ...]:
    return tuple(TierDef(tier, threshold, points) for tier, (threshold, points) in zip(TIER_ORDER, spec))


ACHIEVEMENT_DEFINITIONS: list[AchievementDef] = [
    # Getting started
    AchievementDef("first_branch", "First Branch", "Plant your first branch in the tree.",
                   "getting_started", "contacts", _single(10)),
    AchievementDef("first_root", "First Root", "Anchor your first root in the network.",
                   "getting_started", "companies", _single(10)),
    AchievementDef("first_fruit", "First Fruit", "Your tree has borne its first fruit.",
                   "getting_started", "won_deals", _single(10)),
    AchievementDef("first_growth", "First Growth", "Watch the first new growth sprout from your branches.",
                   "getting_started", "referrals", _single(10)),
    AchievementDef("seedling", "Seedling", "Complete onboarding and plant your seedling.",
                   "getting_started", "onboarding_completed", _single(15)),
    # Growth
    AchievementDef("branch_collector", "Branch Collector", "Grow your tree with more branches.",
                   "growth", "contacts", _tiers((10, 10), (50, 25), (100, 50))),
    AchievementDef("root_system", "Root System", "Establish deep roots across many companies.",
                   "growth", "companies", _tiers((5, 10), (25, 25), (100, 50))),
    AchievementDef("abundant_harvest", "Abundant Harvest", "Reap the rewards of a bountiful grove.",
                   "growth", "won_revenue", _tiers((1000, 15), (10000, 35), (100000, 75))),
    AchievementDef("fruit_bearer", "Fruit Bearer", "Nurture your deals until they ripen into fruit.",
                   "growth", "won_deals", _tiers((5, 10), (25, 25), (100, 50))),
    # Networking
    AchievementDef("growth_spreader", "Growth Spreader", "Spread new growth throughout the network.",
                   "networking", "referrals", _tiers((10, 10), (50, 25), (100, 50))),
    AchievementDef("fruitful_growth", "Fruitful Growth", "Your new growth blossoms into converted fruit.",
                   "networking", "converted_referrals", _tiers((1, 10), (10, 25), (25, 50))),
    AchievementDef("master_grower", "Master Grower", "Achieve a remarkable yield rate on your referrals.",
                   "networking", "referral_conversion_rate", _tiers((25, 15), (50, 35), (75, 75))),
    # Exchange
    AchievementDef("seed_sower", "Seed Sower", "Share seeds across the network through exchanges.",
                   "exchange", "exchanges_sent", _tiers((1, 10), (10, 25), (50, 50)), requires_paid=True),
    AchievementDef("seed_collector", "Seed Collector", "Receive seeds from fellow growers in the network.",
                   "exchange", "exchanges_accepted", _tiers((1, 10), (10, 25), (50, 50)), requires_paid=True),
    AchievementDef("cross_pollinator", "Cross-Pollinator", "Your exchanged seeds bloom into converted fruit.",
                   "exchange", "exchanges_converted", _tiers((1, 15), (5, 35), (25, 75)), requires_paid=True),
    AchievementDef("trusted_grower", "Trusted Grower", "Build trust across the network through reliable exchanges.",
                   "exchange", "trust_rating", _tiers((40, 15), (60, 35), (80, 75)), requires_paid=True),
    # Engagement
    AchievementDef("growth_logger", "Growth Logger", "Keep a detailed growth log of your network activity.",
                   "engagement", "activities", _tiers((10, 10), (50, 25), (200, 50))),
    AchievementDef("auto_cultivator", "Auto-Cultivator", "Set up automated cultivation for your network.",
                   "engagement", "automations", _single(20)),
    AchievementDef("orchard_oracle", "Orchard Oracle", "Unlock AI-powered insights about your orchard.",
                   "engagement", "insights", _single(20)),
    # Streaks
    AchievementDef("steady_grower", "Steady Grower", "Return day after day to tend your growing network.",
                   "streaks", "streak", _tiers((7, 15), (30, 35), (90, 75))),
]

CATEGORY_LABELS = {
    "getting_started": "Getting Started",
    "growth": "Growth",
    "networking": "Networking",
    "exchange": "Exchange",
    "engagement": "Engagement",
    "streaks": "Streaks",
}


# =============================================================================
# Definition helpers
# =============================================================================


def get_achievement(key: str) -> Optional[AchievementDef]:
    return next((a for a in ACHIEVEMENT_DEFINITIONS if a.key == key), None)


def get_achievements_by_category(category: str) -> list[AchievementDef]:
    return [a for a in ACHIEVEMENT_DEFINITIONS if a.category == category]


def calculate_total_points(earned: list[UserAchievement]) -> int:
    return sum(a.points for a in earned)


def get_max_possible_points() -> int:
    return sum(t.points for a in ACHIEVEMENT_DEFINITIONS for t in a.tiers)


def get_next_tier(definition: AchievementDef, current: Optional[AchievementTier]) -> Optional[TierDef]:
    """The tier after `current`, or the first tier when nothing is earned yet."""
    if current is None:
        return definition.tiers[0] if definition.tiers else None
    index = TIER_ORDER.index(current)
    if index + 1 >= len(TIER_ORDER):
        return None
    following = TIER_ORDER[index + 1]
    return next((t for t in definition.tiers if t.tier == following), None)


def get_highest_earned_tier(key: str, earned: list[UserAchievement]) -> Optional[AchievementTier]:
    tiers = [e.tier for e in earned if e.achievement_key == key]
    if not tiers:
        return None
    return max(tiers, key=TIER_ORDER.index)


def get_progress_percent(
    definition: AchievementDef, value: float, current: Optional[AchievementTier]
) -> int:
    """Progress from the current tier's threshold towards the next one."""
    following = get_next_tier(definition, current)
    if following is None:
        return 100
    previous = next((t for t in definition.tiers if t.tier == current), None) if current else None
    start = previous.threshold if previous else 0
    span = following.threshold - start
    if span <= 0:
        return 100
    progress = max(min(value - start, span), 0)
    return round(progress / span * 100)


# =============================================================================
# Service
# =============================================================================


class AchievementService:
    """Service for awarding achievements and tracking streaks."""

    def __init__(self, session: Session):
        self.session = session

    def _count(self, model, *criteria) -> int:
        return self.session.query(func.count(model.id)).filter(*criteria).scalar() or 0

    def get_progress(self, user: UserProfile, org_id: int) -> dict:
        """Counts shown next to the badges: org totals plus the user's exchange numbers."""
        won_revenue = (
            self.session.query(func.coalesce(func.sum(Deal.value), 0))
            .filter(Deal.org_id == org_id, Deal.status == DealStatus.WON)
            .scalar()
        )
        trust = (
            self.session.query(ExchangeTrustScore.trust_rating)
            .filter(ExchangeTrustScore.user_id == user.id)
            .scalar()
        )
        return {
            "contacts": self._count(Contact, Contact.org_id == org_id),
            "companies": self._count(Company, Company.org_id == org_id),
            "deals": self._count(Deal, Deal.org_id == org_id),
            "won_deals": self._count(Deal, Deal.org_id == org_id, Deal.status == DealStatus.WON),
            "won_revenue": float(won_revenue or 0),
            "referrals": self._count(Referral, Referral.org_id == org_id),
            "converted_referrals": self._count(
                Referral, Referral.org_id == org_id, Referral.status == ReferralStatus.CONVERTED
            ),
            "activities": self._count(Activity, Activity.org_id == org_id),
            "trust_rating": trust or 0,
            "onboarding_completed": bool(user.onboarding_completed),
        }

    def get_metrics(self, user: UserProfile, org_id: int) -> dict[str, float]:
        """Every value an achievement can be measured against."""
        progress = self.get_progress(user, org_id)
        referrals = progress["referrals"]
        streak = self.get_streak(user.id, org_id)

        metrics = dict(progress)
        metrics["onboarding_completed"] = 1 if progress["onboarding_completed"] else 0
        metrics["referral_conversion_rate"] = (
            round(progress["converted_referrals"] / referrals * 100)
            if referrals >= MIN_REFERRALS_FOR_RATE
            else 0
        )
        metrics["exchanges_sent"] = self._count(
            ReferralExchange,
            ReferralExchange.sender_user_id == user.id,
            ReferralExchange.status != ExchangeStatus.DRAFT,
        )
        metrics["exchanges_accepted"] = self._count(
            ReferralExchange,
            ReferralExchange.receiver_user_id == user.id,
            ReferralExchange.status == ExchangeStatus.ACCEPTED,
        )
        metrics["exchanges_converted"] = self._count(
            ReferralExchange,
            ReferralExchange.sender_user_id == user.id,
            ReferralExchange.status == ExchangeStatus.ACCEPTED,
            ReferralExchange.receiver_status == ReceiverStatus.CONVERTED,
        )
        metrics["automations"] = self._count(Automation, Automation.org_id == org_id)
        metrics["insights"] = self._count(AiInsight, AiInsight.org_id == org_id)
        metrics["streak"] = streak.current_streak if streak else 0
        return metrics

    def list_earned(self, user_id: int) -> list[UserAchievement]:
        return (
            self.session.query(UserAchievement)
            .filter(UserAchievement.user_id == user_id)
            .order_by(UserAchievement.unlocked_at.desc())
            .all()
        )

    def get_streak(self, user_id: int, org_id: int) -> Optional[UserStreak]:
        return (
            self.session.query(UserStreak)
            .filter(UserStreak.user_id == user_id, UserStreak.org_id == org_id)
            .first()
        )

    def update_streak(self, user_id: int, org_id: int, today: Optional[date] = None) -> UserStreak:
        """Same day is a no-op, the next day extends the streak, a gap resets it to 1."""
        today = today or utcnow().date()
        streak = self.get_streak(user_id, org_id)
        if streak is None:
            streak = UserStreak(user_id=user_id, org_id=org_id, current_streak=0, longest_streak=0)
            self.session.add(streak)
            # Sessions run with autoflush off; later lookups must see the new row
            self.session.flush()

        if streak.last_active_date == today:
            return streak
        if streak.last_active_date == today - timedelta(days=1):
            streak.current_streak = (streak.current_streak or 0) + 1
        else:
            streak.current_streak = 1
        streak.longest_streak = max(streak.longest_streak or 0, streak.current_streak)
        streak.last_active_date = today
        return streak

    def check(
        self,
        user: UserProfile,
        org: Organization,
        is_impersonating: bool = False,
        today: Optional[date] = None,
    ) -> dict:
        """
        Update the streak and award every newly reached tier.

        Returns:
            {"newly_unlocked": [{achievement_key, tier, points}], "streak_updated": bool}
        """
        if is_impersonating:
            return {"newly_unlocked": [], "streak_updated": False}

        self.update_streak(user.id, org.id, today)
        self.session.flush()

        unlocked = self._award(user, org)
        self.session.commit()
        if unlocked:
            logger.info(f"User {user.id} unlocked {len(unlocked)} achievement tier(s)")
        return {"newly_unlocked": unlocked, "streak_updated": True}

    def summary(self, user: UserProfile, org_id: int) -> dict:
        return {
            "achievements": self.list_earned(user.id),
            "streak": self.get_streak(user.id, org_id),
            "progress": self.get_progress(user, org_id),
        }

    # -------------------------------------------------------------------------
    # Leaderboards
    # -------------------------------------------------------------------------

    def leaderboard(self, org: Organization, scope: str = "directory") -> list[dict]:
        """
        Rank users by achievement points.

        The directory board covers listed users and needs a paid plan; the
        org board covers the org's members and needs the team plan.
        """
        if org.plan == PlanType.FREE:
            raise PlanLimitError("Upgrade to a paid plan to access the leaderboard")
        if scope == "org" and org.plan != PlanType.TEAM:
            raise PlanLimitError("Team plan required for org leaderboard")

        points = func.coalesce(func.sum(UserAchievement.points), 0)
        badges = func.count(UserAchievement.id)
        query = self.session.query(UserProfile, points.label("total_points"), badges.label("achievement_count"))

        if scope == "org":
            query = query.join(OrgMember, OrgMember.user_id == UserProfile.id).filter(
                OrgMember.org_id == org.id
            )
        else:
            query = query.join(DirectoryProfile, DirectoryProfile.user_id == UserProfile.id).filter(
                DirectoryProfile.is_visible.is_(True)
            )

        rows = (
            query.outerjoin(UserAchievement, UserAchievement.user_id == UserProfile.id)
            .group_by(UserProfile.id)
            .order_by(points.desc(), UserProfile.id)
            .limit(LEADERBOARD_LIMIT)
            .all()
        )
        return [
            {
                "rank": index,
                "user_id": user.id,
                "display_name": user.full_name or user.email.split("@")[0],
                "avatar_url": user.avatar_url,
                "total_points": int(total or 0),
                "achievement_count": int(count or 0),
            }
            for index, (user, total, count) in enumerate(rows, start=1)
        ]

    def check_all(self) -> int:
        """Award achievements for every member in every org (batch job). No streak updates."""
        awarded = 0
        memberships = self.session.query(OrgMember).all()
        for member in memberships:
            user = self.session.get(UserProfile, member.user_id)
            org = self.session.get(Organization, member.org_id)
            if not user or not org:
                continue
            awarded += len(self._award(user, org))
        self.session.commit()
        return awarded

    def _award(self, user: UserProfile, org: Organization) -> list[dict]:
        metrics = self.get_metrics(user, org.id)
        earned = {(a.achievement_key, a.tier) for a in self.list_earned(user.id)}
        is_paid = org.plan != PlanType.FREE
        unlocked = []
        for definition in ACHIEVEMENT_DEFINITIONS:
            if definition.requires_paid and not is_paid:
                continue
            value = metrics.get(definition.metric, 0)
            for tier in definition.tiers:
                if value < tier.threshold or (definition.key, tier.tier) in earned:
                    continue
                self.session.add(
                    UserAchievement(
                        user_id=user.id,
                        achievement_key=definition.key,
                        tier=tier.tier,
                        points=tier.points,
                        notified=True,
                    )
                )
                earned.add((definition.key, tier.tier))
                unlocked.append(
                    {"achievement_key": definition.key, "tier": tier.tier.value, "points": tier.points}
                )
        self.session.flush()
        return unlocked
