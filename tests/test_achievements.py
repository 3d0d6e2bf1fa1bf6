"""Achievements, streaks and leaderboards."""

from datetime import date, timedelta

import pytest

from conftest import make_org, make_user
from trellis.exceptions import PlanLimitError
from trellis.models import AchievementTier, DirectoryProfile, PlanType, UserAchievement, UserStreak
from trellis.services.achievement_service import (
    ACHIEVEMENT_DEFINITIONS,
    AchievementService,
    get_achievement,
    get_next_tier,
    get_progress_percent,
)
from trellis.services.contact_service import ContactService
from trellis.services.organization_service import OrganizationService

TODAY = date(2026, 3, 10)


@pytest.fixture
def achievements(session):
    return AchievementService(session)


def test_streak_rules(session, owner, org, achievements):
    streak = achievements.update_streak(owner.id, org.id, TODAY)
    assert streak.current_streak == 1

    achievements.update_streak(owner.id, org.id, TODAY)
    assert streak.current_streak == 1

    achievements.update_streak(owner.id, org.id, TODAY + timedelta(days=1))
    achievements.update_streak(owner.id, org.id, TODAY + timedelta(days=2))
    assert streak.current_streak == 3
    assert streak.longest_streak == 3

    achievements.update_streak(owner.id, org.id, TODAY + timedelta(days=5))
    assert streak.current_streak == 1
    assert streak.longest_streak == 3

    session.commit()
    assert session.query(UserStreak).count() == 1


def test_streak_is_reused_before_commit(session, owner, org, achievements):
    first = achievements.update_streak(owner.id, org.id, TODAY)
    second = achievements.update_streak(owner.id, org.id, TODAY + timedelta(days=1))
    assert second is first
    assert second.current_streak == 2


def test_definition_catalog():
    assert len(ACHIEVEMENT_DEFINITIONS) == 20
    assert len({definition.key for definition in ACHIEVEMENT_DEFINITIONS}) == 20


def test_first_contact_unlocks_first_branch(session, owner, org, achievements):
    ContactService(session).create(org, first_name="Ada")
    result = achievements.check(owner, org, today=TODAY)

    assert result["streak_updated"] is True
    keys = {item["achievement_key"] for item in result["newly_unlocked"]}
    assert "first_branch" in keys
    first_branch = next(i for i in result["newly_unlocked"] if i["achievement_key"] == "first_branch")
    assert first_branch == {"achievement_key": "first_branch", "tier": "gold", "points": 10}

    # Already earned tiers are not awarded twice
    again = achievements.check(owner, org, today=TODAY)
    assert again["newly_unlocked"] == []


def test_impersonation_does_not_award(session, owner, org, achievements):
    ContactService(session).create(org, first_name="Ada")
    result = achievements.check(owner, org, is_impersonating=True)
    assert result == {"newly_unlocked": [], "streak_updated": False}
    assert achievements.list_earned(owner.id) == []


def test_conversion_rate_needs_five_referrals(session, owner, org, achievements):
    metrics = achievements.get_metrics(owner, org.id)
    assert metrics["referral_conversion_rate"] == 0


def test_exchange_achievements_need_paid_plan(session, achievements):
    user = make_user(session, email="freebie@example.com")
    org = make_org(session, user, name="Freebie", plan=PlanType.FREE)
    user.onboarding_completed = True
    session.commit()
    result = achievements.check(user, org, today=TODAY)
    keys = {item["achievement_key"] for item in result["newly_unlocked"]}
    assert "seedling" in keys
    assert not any(get_achievement(key).requires_paid for key in keys)


def test_tier_helpers():
    definition = get_achievement("branch_collector")
    assert get_next_tier(definition, None).tier == AchievementTier.BRONZE
    assert get_next_tier(definition, AchievementTier.SILVER).tier == AchievementTier.GOLD
    assert get_next_tier(definition, AchievementTier.GOLD) is None
    assert get_progress_percent(definition, 30, AchievementTier.BRONZE) == 50


def test_leaderboard_plan_gates(session, owner, org, free_org, achievements):
    with pytest.raises(PlanLimitError):
        achievements.leaderboard(free_org)
    with pytest.raises(PlanLimitError):
        achievements.leaderboard(org, scope="org")


def test_leaderboard_ranks_by_points(session, owner, org, achievements):
    team_org = make_org(session, owner, name="Team Org", plan=PlanType.TEAM)
    other = make_user(session, email="other@example.com", name="Other")
    OrganizationService(session).add_member(team_org, other)
    session.add_all(
        [
            UserAchievement(user_id=other.id, achievement_key="first_branch", tier=AchievementTier.GOLD, points=10),
            UserAchievement(user_id=other.id, achievement_key="first_root", tier=AchievementTier.GOLD, points=10),
            UserAchievement(user_id=owner.id, achievement_key="first_fruit", tier=AchievementTier.GOLD, points=10),
            DirectoryProfile(user_id=other.id, display_name="Other", is_visible=True),
        ]
    )
    session.commit()

    board = achievements.leaderboard(team_org, scope="org")
    assert [(row["user_id"], row["total_points"]) for row in board] == [(other.id, 20), (owner.id, 10)]
    assert board[0]["rank"] == 1

    directory = achievements.leaderboard(org)
    assert [row["user_id"] for row in directory] == [other.id]


def test_check_all(session, owner, org, achievements):
    ContactService(session).create(org, first_name="Ada")
    assert achievements.check_all() >= 1
    assert achievements.check_all() == 0
