"""AI insights and network suggestions against a canned completion client."""

import json
from datetime import timedelta

import pytest

from conftest import FakeLLM, make_user
from trellis.exceptions import AiResponseError
from trellis.models import AiInsight, DirectoryProfile, InsightType, utcnow
from trellis.services.contact_service import ContactService
from trellis.services.insight_service import InsightService, extract_json


def test_extract_json_from_chatty_reply():
    assert extract_json('Sure! {"a": {"b": 1}} Hope that helps') == {"a": {"b": 1}}
    assert extract_json("no json here") is None


def test_generate_stores_one_insight_per_item(session, org, llm):
    ContactService(session).create(org, first_name="Ada", industry="Finance")
    result = InsightService(session, llm=llm).generate(org)

    types = sorted(i.insight_type.value for i in result["insights"])
    assert types == sorted(
        [
            InsightType.REFERRAL_PATTERN.value,
            InsightType.TOP_REFERRERS.value,
            InsightType.NETWORK_GAP.value,
            InsightType.GROWTH_OPPORTUNITY.value,
        ]
    )
    top = next(i for i in result["insights"] if i.insight_type == InsightType.TOP_REFERRERS)
    assert top.title == "Top Referrer: Ada Lovelace"
    assert top.details["projectedValue"] == 12000
    assert top.expires_at > utcnow() + timedelta(days=6)
    assert "Ada" in llm.prompts[0]


def test_unparseable_reply(session, org):
    with pytest.raises(AiResponseError):
        InsightService(session, llm=FakeLLM(reply="I cannot help with that")).generate(org)


def test_dismiss_and_expiry(session, org, llm):
    service = InsightService(session, llm=llm)
    insights = service.generate(org)["insights"]
    assert len(service.list_active(org.id)) == 4

    assert service.dismiss(org.id, insights[0].id)
    assert len(service.list_active(org.id)) == 3
    assert len(service.list_active(org.id, InsightType.NETWORK_GAP)) == 1

    assert service.purge_expired(utcnow()) == 0
    assert service.purge_expired(utcnow() + timedelta(days=8)) == 4
    assert session.query(AiInsight).count() == 0


def test_network_suggestions_with_empty_directory(session, owner, org, llm):
    result = InsightService(session, llm=llm).network_suggestions(owner, org)
    assert result["recommendations"] == []
    assert result["network_insight"]
    assert llm.prompts == []


def test_network_suggestions(session, owner, org):
    partner = make_user(session, email="partner@example.com", name="Pat Partner")
    session.add(
        DirectoryProfile(
            user_id=partner.id,
            display_name="Pat Partner",
            industry="Insurance",
            specialties=["life"],
            is_visible=True,
        )
    )
    session.commit()

    reply = {
        "recommendations": [{"user_id": partner.id, "name": "Pat Partner", "reason": "Complements you"}],
        "network_insight": "Insurance partners convert well.",
    }
    llm = FakeLLM(reply=json.dumps(reply))
    result = InsightService(session, llm=llm).network_suggestions(owner, org)

    assert result == reply
    assert "Pat Partner" in llm.prompts[0]
