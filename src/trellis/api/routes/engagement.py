"""
Engagement routes: achievements, streaks, leaderboards and AI insights.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from trellis.api import schemas
from trellis.api.deps import get_achievement_service, get_insight_service, get_member_org, get_tenant
from trellis.exceptions import PlanLimitError
from trellis.models import InsightType, PlanType, get_session
from trellis.services.achievement_service import (
    ACHIEVEMENT_DEFINITIONS,
    CATEGORY_LABELS,
    AchievementService,
    calculate_total_points,
    get_achievements_by_category,
    get_highest_earned_tier,
    get_max_possible_points,
    get_next_tier,
    get_progress_percent,
)
from trellis.services.insight_service import InsightService
from trellis.services.organization_service import TenantContext

router = APIRouter(prefix="/api", tags=["engagement"])


# ============================================================================
# Achievements
# ============================================================================
@router.get("/achievements", response_model=schemas.AchievementSummary)
def get_achievements(
    ctx: TenantContext = Depends(get_tenant),
    service: AchievementService = Depends(get_achievement_service),
):
    """Earned tiers, the current streak and the counts behind each badge."""
    summary = service.summary(ctx.user, ctx.org_id)
    return {
        **summary,
        "total_points": calculate_total_points(summary["achievements"]),
        "max_points": get_max_possible_points(),
    }


@router.get("/achievements/definitions")
def get_achievement_definitions(
    category: Optional[str] = None,
    ctx: TenantContext = Depends(get_tenant),
    service: AchievementService = Depends(get_achievement_service),
):
    """Every badge with the caller's current tier and progress to the next."""
    earned = service.list_earned(ctx.user_id)
    metrics = service.get_metrics(ctx.user, ctx.org_id)
    definitions = get_achievements_by_category(category) if category else ACHIEVEMENT_DEFINITIONS
    badges = []
    for definition in definitions:
        current = get_highest_earned_tier(definition.key, earned)
        following = get_next_tier(definition, current)
        value = metrics.get(definition.metric, 0)
        badges.append(
            {
                "key": definition.key,
                "name": definition.name,
                "description": definition.description,
                "category": definition.category,
                "category_label": CATEGORY_LABELS.get(definition.category, definition.category),
                "requires_paid": definition.requires_paid,
                "current_tier": current.value if current else None,
                "next_tier": following.tier.value if following else None,
                "next_threshold": following.threshold if following else None,
                "value": value,
                "progress_percent": get_progress_percent(definition, value, current),
            }
        )
    return {"achievements": badges}


@router.post("/achievements/check", response_model=schemas.AchievementCheckResult)
def check_achievements(
    ctx: TenantContext = Depends(get_tenant),
    service: AchievementService = Depends(get_achievement_service),
):
    """Record today's activity and award any newly reached tiers."""
    return service.check(ctx.user, ctx.org, is_impersonating=ctx.is_impersonating)


@router.get("/leaderboard", response_model=list[schemas.LeaderboardEntry])
def get_leaderboard(
    scope: str = Query("directory", pattern="^(directory|org)$"),
    ctx: TenantContext = Depends(get_tenant),
    service: AchievementService = Depends(get_achievement_service),
):
    return service.leaderboard(ctx.org, scope=scope)


# ============================================================================
# AI insights
# ============================================================================
@router.post("/ai/insights")
def generate_insights(
    data: schemas.InsightRequest,
    ctx: TenantContext = Depends(get_tenant),
    session: Session = Depends(get_session),
    service: InsightService = Depends(get_insight_service),
):
    """Analyze the org's referral network and store fresh insights."""
    org = get_member_org(data.org_id, ctx, session)
    if org.plan == PlanType.FREE:
        raise PlanLimitError("AI insights require a paid plan")
    result = service.generate(org)
    return {
        "success": True,
        "insights": [schemas.InsightResponse.model_validate(i) for i in result["insights"]],
        "raw": result["raw"],
    }


@router.get("/ai/insights", response_model=list[schemas.InsightResponse])
def list_insights(
    insight_type: Optional[InsightType] = None,
    ctx: TenantContext = Depends(get_tenant),
    service: InsightService = Depends(get_insight_service),
):
    """Insights that are neither dismissed nor expired."""
    return service.list_active(ctx.org_id, insight_type)


@router.post("/ai/insights/{insight_id}/dismiss")
def dismiss_insight(
    insight_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: InsightService = Depends(get_insight_service),
):
    if not service.dismiss(ctx.org_id, insight_id):
        raise HTTPException(404, "Insight not found")
    return {"success": True}


@router.post("/ai/network-suggestions")
def network_suggestions(
    ctx: TenantContext = Depends(get_tenant),
    service: InsightService = Depends(get_insight_service),
):
    """Directory members ranked as exchange partners for the caller."""
    ctx.require_paid("Network suggestions require a paid plan")
    return service.network_suggestions(ctx.user, ctx.org)
