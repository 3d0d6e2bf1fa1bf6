"""
AI insight service - LLM analysis of an organization's referral network.

Uses Claude to:
1. Spot referral patterns, top referrers, network gaps and growth opportunities
2. Rank directory members as exchange partners for the current user
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta
from typing import Optional, Protocol

from sqlalchemy import or_
from sqlalchemy.orm import Session, joinedload

from trellis.config import get_settings
from trellis.exceptions import AiResponseError, IntegrationError
from trellis.models import (
    AiInsight,
    Contact,
    Deal,
    InsightType,
    Organization,
    Referral,
    ReferralExchange,
    ReceiverStatus,
    UserProfile,
    utcnow,
)
from trellis.services.directory_service import DirectoryService
from trellis.services.trust_service import TrustScoreService

logger = logging.getLogger(__name__)

# Lazy import to avoid startup issues if anthropic not installed
anthropic = None


def get_anthropic_client():
    """Lazily initialize the Anthropic client."""
    global anthropic
    if anthropic is None:
        import anthropic as _anthropic

        anthropic = _anthropic
    settings = get_settings()
    if not settings.anthropic_api_key:
        raise IntegrationError("ANTHROPIC_API_KEY not configured")
    return anthropic.Anthropic(api_key=settings.anthropic_api_key)


SYSTEM_PROMPT = """You are an AI analyst specializing in referral network analysis for business professionals. You analyze referral patterns, contact relationships, deal pipelines, and network structures to provide actionable insights.

Always respond with structured JSON matching the requested format. Be specific, data-driven, and actionable in your recommendations."""

PROMPT_SAMPLE_SIZE = 50
DATA_LIMIT = 100
DIRECTORY_LIMIT = 50
EXCHANGE_HISTORY_LIMIT = 50

EMPTY_DIRECTORY_MESSAGE = "The directory is still growing. Check back as more growers list themselves."
NO_RECOMMENDATIONS_MESSAGE = "Unable to generate recommendations at this time."


# =============================================================================
# Completion clients
# =============================================================================


class CompletionClient(Protocol):
    def complete(self, system: str, prompt: str, max_tokens: int, temperature: float) -> str: ...


class AnthropicCompletionClient:
    """Single-turn completions through the Anthropic SDK."""

    def __init__(self, model: Optional[str] = None):
        self.model = model or get_settings().claude_model

    def complete(self, system: str, prompt: str, max_tokens: int, temperature: float) -> str:
        client = get_anthropic_client()
        try:
            response = client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": prompt}],
            )
        except Exception as e:
            raise IntegrationError(f"Anthropic API error: {e}") from e
        return response.content[0].text if response.content else ""


def get_completion_client() -> CompletionClient:
    """Dependency factory for the LLM client."""
    return AnthropicCompletionClient()


def extract_json(text: str) -> Optional[dict]:
    """Pull the first {...} block out of a reply, tolerating code fences."""
    match = re.search(r"\{[\s\S]*\}", text or "")
    if not match:
        return None
    try:
        data = json.loads(match.group())
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


# =============================================================================
# Prompts
# =============================================================================


def referral_pattern_prompt(contacts: list[dict], referrals: list[dict], deals: list[dict]) -> str:
    return f"""Analyze these referral patterns and provide insights:

CONTACTS ({len(contacts)} total):
{json.dumps(contacts[:PROMPT_SAMPLE_SIZE], indent=2)}

REFERRALS ({len(referrals)} total):
{json.dumps(referrals[:PROMPT_SAMPLE_SIZE], indent=2)}

DEALS ({len(deals)} total):
{json.dumps(deals[:PROMPT_SAMPLE_SIZE], indent=2)}

Respond with JSON:
{{
  "patterns": [{{"title": string, "description": string, "confidence": number}}],
  "topReferrers": [{{"name": string, "reason": string, "projectedValue": number}}],
  "networkGaps": [{{"description": string, "recommendation": string}}],
  "growthOpportunities": [{{"title": string, "description": string, "estimatedImpact": string}}]
}}"""


def network_recommendation_prompt(
    user_profile: dict, exchange_history: list[dict], directory_profiles: list[dict]
) -> str:
    return f"""Recommend exchange partners from the referral directory for this user.

USER:
{json.dumps(user_profile, indent=2)}

EXCHANGE HISTORY ({len(exchange_history)} exchanges):
{json.dumps(exchange_history, indent=2)}

DIRECTORY ({len(directory_profiles)} listed members):
{json.dumps(directory_profiles, indent=2)}

Favor members whose industry or specialties complement the user's, with
higher trust ratings breaking ties. Recommend at most 5 members.

Respond with JSON:
{{
  "recommendations": [{{"user_id": number, "name": string, "reason": string, "match_score": number}}],
  "network_insight": string
}}"""


# =============================================================================
# Service
# =============================================================================


class InsightService:
    """Service for generating and reading AI insights."""

    def __init__(self, session: Session, llm: Optional[CompletionClient] = None):
        self.session = session
        self.llm = llm
        self.settings = get_settings()

    def _client(self) -> CompletionClient:
        if self.llm is None:
            self.llm = get_completion_client()
        return self.llm

    def gather_network_data(self, org_id: int) -> dict:
        """Contacts, referrals and deals shaped for the pattern prompt."""
        contacts = (
            self.session.query(Contact).filter(Contact.org_id == org_id).limit(DATA_LIMIT).all()
        )
        referrals = (
            self.session.query(Referral)
            .options(joinedload(Referral.referrer), joinedload(Referral.referred))
            .filter(Referral.org_id == org_id)
            .limit(DATA_LIMIT)
            .all()
        )
        deals = (
            self.session.query(Deal)
            .options(joinedload(Deal.contact))
            .filter(Deal.org_id == org_id)
            .limit(DATA_LIMIT)
            .all()
        )
        return {
            "contacts": [
                {
                    "name": c.full_name,
                    "referralCount": c.referral_score or 0,
                    "referralValue": c.lifetime_referral_value or 0,
                    "industry": c.industry or "Unknown",
                }
                for c in contacts
            ],
            "referrals": [
                {
                    "from": r.referrer.full_name if r.referrer else "Unknown",
                    "to": r.referred.full_name if r.referred else "Unknown",
                    "value": r.referral_value or 0,
                    "date": r.referral_date.isoformat() if r.referral_date else "",
                    "type": r.referral_type.value if r.referral_type else "",
                }
                for r in referrals
            ],
            "deals": [
                {
                    "name": d.name,
                    "value": d.value or 0,
                    "status": d.status.value,
                    "referralSource": d.contact.full_name if d.contact else "Unknown",
                }
                for d in deals
            ],
        }

    def generate(self, org: Organization) -> dict:
        """
        Ask the LLM about the org's network and store the insights.

        Returns:
            {"insights": [AiInsight], "raw": parsed reply}

        Raises:
            AiResponseError: if the reply holds no parseable JSON
        """
        data = self.gather_network_data(org.id)
        prompt = referral_pattern_prompt(data["contacts"], data["referrals"], data["deals"])
        reply = self._client().complete(
            SYSTEM_PROMPT,
            prompt,
            max_tokens=self.settings.insights_max_tokens,
            temperature=self.settings.insights_temperature,
        )

        parsed = extract_json(reply)
        if parsed is None:
            logger.error(f"Unparseable insights reply for org {org.id}")
            raise AiResponseError("Failed to parse AI response")

        expires_at = utcnow() + timedelta(days=self.settings.insight_ttl_days)
        insights = []

        def add(insight_type: InsightType, title: str, summary: str, confidence=None, **extra):
            insight = AiInsight(
                org_id=org.id,
                insight_type=insight_type,
                title=title or "Untitled insight",
                summary=summary or "",
                details={"source": "ai_analysis", **extra},
                confidence=confidence,
                is_dismissed=False,
                expires_at=expires_at,
            )
            self.session.add(insight)
            insights.append(insight)

        for pattern in parsed.get("patterns") or []:
            add(
                InsightType.REFERRAL_PATTERN,
                pattern.get("title"),
                pattern.get("description"),
                confidence=pattern.get("confidence"),
                raw=pattern,
            )
        for referrer in parsed.get("topReferrers") or []:
            add(
                InsightType.TOP_REFERRERS,
                f"Top Referrer: {referrer.get('name')}",
                referrer.get("reason"),
                projectedValue=referrer.get("projectedValue"),
                raw=referrer,
            )
        for gap in parsed.get("networkGaps") or []:
            add(
                InsightType.NETWORK_GAP,
                "Network Gap Identified",
                gap.get("description"),
                recommendation=gap.get("recommendation"),
                raw=gap,
            )
        for opportunity in parsed.get("growthOpportunities") or []:
            add(
                InsightType.GROWTH_OPPORTUNITY,
                opportunity.get("title"),
                opportunity.get("description"),
                estimatedImpact=opportunity.get("estimatedImpact"),
                raw=opportunity,
            )

        self.session.commit()
        logger.info(f"Stored {len(insights)} AI insight(s) for org {org.id}")
        return {"insights": insights, "raw": parsed}

    def list_active(self, org_id: int, insight_type: Optional[InsightType] = None) -> list[AiInsight]:
        """Insights that are neither dismissed nor expired, newest first."""
        query = self.session.query(AiInsight).filter(
            AiInsight.org_id == org_id,
            AiInsight.is_dismissed.is_(False),
            or_(AiInsight.expires_at.is_(None), AiInsight.expires_at > utcnow()),
        )
        if insight_type:
            query = query.filter(AiInsight.insight_type == insight_type)
        return query.order_by(AiInsight.created_at.desc()).all()

    def dismiss(self, org_id: int, insight_id: int) -> bool:
        insight = (
            self.session.query(AiInsight)
            .filter(AiInsight.org_id == org_id, AiInsight.id == insight_id)
            .first()
        )
        if not insight:
            return False
        insight.is_dismissed = True
        self.session.commit()
        return True

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete insights whose expiry has passed."""
        now = now or utcnow()
        deleted = (
            self.session.query(AiInsight)
            .filter(AiInsight.expires_at.isnot(None), AiInsight.expires_at <= now)
            .delete(synchronize_session=False)
        )
        self.session.commit()
        return deleted

    # -------------------------------------------------------------------------
    # Network suggestions
    # -------------------------------------------------------------------------

    def network_suggestions(self, user: UserProfile, org: Organization) -> dict:
        """Rank directory members as exchange partners for `user`."""
        directory = DirectoryService(self.session)
        own_profile = directory.get_for_user(user.id)
        candidates = directory.list_visible(exclude_user_id=user.id, limit=DIRECTORY_LIMIT)
        if not candidates:
            return {"recommendations": [], "network_insight": EMPTY_DIRECTORY_MESSAGE}

        trust = {
            score.user_id: score.trust_rating
            for score in TrustScoreService(self.session).get_many([p.user_id for p in candidates])
        }
        exchanges = (
            self.session.query(ReferralExchange)
            .filter(
                or_(
                    ReferralExchange.sender_user_id == user.id,
                    ReferralExchange.receiver_user_id == user.id,
                )
            )
            .order_by(ReferralExchange.created_at.desc())
            .limit(EXCHANGE_HISTORY_LIMIT)
            .all()
        )

        user_profile = {
            "name": user.full_name or "User",
            "industry": (own_profile.industry if own_profile else None) or org.industry or "Unknown",
            "specialties": own_profile.specialties if own_profile else [],
            "categories": own_profile.referral_categories if own_profile else [],
        }
        history = [
            {
                "partner_name": e.receiver_email or "Unknown",
                "status": e.status.value,
                "converted": e.receiver_status == ReceiverStatus.CONVERTED,
            }
            for e in exchanges
        ]
        listed = [
            {
                "user_id": p.user_id,
                "name": p.display_name,
                "company": p.company_name or "",
                "industry": p.industry or "Unknown",
                "specialties": p.specialties or [],
                "categories": p.referral_categories or [],
                "trust_rating": trust.get(p.user_id, 0),
            }
            for p in candidates
        ]

        reply = self._client().complete(
            SYSTEM_PROMPT,
            network_recommendation_prompt(user_profile, history, listed),
            max_tokens=1024,
            temperature=0.5,
        )
        parsed = extract_json(reply)
        if parsed is None:
            return {"recommendations": [], "network_insight": NO_RECOMMENDATIONS_MESSAGE}
        return {
            "recommendations": parsed.get("recommendations") or [],
            "network_insight": parsed.get("network_insight") or "",
        }
