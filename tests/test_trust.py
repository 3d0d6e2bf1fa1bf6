"""Exchange trust scores."""

import pytest

from conftest import make_ctx, make_org, make_user
from trellis.models import PlanType
from trellis.services.exchange_service import ExchangeService
from trellis.services.trust_service import TrustScoreService

SNAPSHOT = {"first_name": "Lead"}


@pytest.fixture
def setup(session, owner, org):
    receiver = make_user(session, email="receiver@example.com", name="Rita")
    make_org(session, receiver, name="Receiver Co", plan=PlanType.TEAM)
    return {
        "service": ExchangeService(session),
        "sender": make_ctx(session, owner),
        "receiver": make_ctx(session, receiver),
    }


def send(setup):
    return setup["service"].create(
        setup["sender"], receiver_email="receiver@example.com", contact_snapshot=dict(SNAPSHOT)
    )


def test_score_combines_acceptance_conversion_and_responsiveness(session, setup):
    service, sender, receiver = setup["service"], setup["sender"], setup["receiver"]
    accepted = send(setup)
    declined = send(setup)
    send(setup)  # still pending

    service.apply_action(receiver, accepted.id, "accept", {})
    service.apply_action(receiver, declined.id, "decline", {})
    service.apply_action(receiver, accepted.id, "update_status", {"receiver_status": "converted"})

    sender_score = TrustScoreService(session).get(sender.user_id)
    assert sender_score.total_sent == 3
    assert sender_score.acceptance_rate == 0.5
    assert sender_score.conversion_rate == 1.0
    # Sender never received anything
    assert sender_score.responsiveness == 0
    assert sender_score.trust_rating == round(100 * (0.4 * 0.5 + 0.4 * 1.0))

    receiver_score = TrustScoreService(session).get(receiver.user_id)
    assert receiver_score.total_received == 3
    assert receiver_score.received_accepted == 1
    assert receiver_score.received_converted == 1
    assert receiver_score.responsiveness == 0.6667


def test_drafts_do_not_count(session, setup):
    setup["service"].create(setup["sender"], save_as_draft=True)
    score = TrustScoreService(session).compute(setup["sender"].user_id)
    assert score.total_sent == 0
    assert score.trust_rating == 0


def test_recompute_all(session, setup):
    send(setup)
    assert TrustScoreService(session).recompute_all() == 2
