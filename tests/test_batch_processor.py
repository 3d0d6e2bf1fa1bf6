"""Scheduled jobs and the command line, run against the test database."""

from datetime import timedelta

import pytest
from typer.testing import CliRunner

from conftest import FakeEmailService, make_ctx, make_org, make_user
from trellis.automations.batch_processor import BatchProcessor
from trellis.cli import app
from trellis.models import (
    AiInsight,
    AutomationStatus,
    EnrollmentStatus,
    ExchangeStatus,
    InsightType,
    PlanType,
    ReferralExchange,
    UserProfile,
    utcnow,
)
from trellis.services.automation_service import AutomationService, TemplateService
from trellis.services.contact_service import ContactService
from trellis.services.exchange_service import ExchangeService

runner = CliRunner()


@pytest.fixture
def processor(session_factory):
    return BatchProcessor(email_service=FakeEmailService())


@pytest.fixture
def enrollment(session, org, processor):
    template = TemplateService(session).create(org.id, "Hello", "Hi {{first_name}}", "<p>Hi</p>")
    automations = AutomationService(session, email_service=processor.email_service)
    automation = automations.create(org.id, "Welcome", steps=[{"step_type": "email", "template_id": template.id}])
    automations.update(org.id, automation.id, status=AutomationStatus.ACTIVE)
    contact = ContactService(session).create(org, first_name="Ada", email="ada@example.com")
    return automations.enroll(automation, [contact.id])[0]


@pytest.fixture
def pending_exchange(session, owner, org, email_service):
    receiver = make_user(session, email="receiver@example.com", name="Rita")
    make_org(session, receiver, name="Receiver Co", plan=PlanType.PRO)
    exchange = ExchangeService(session, email_service=email_service).create(
        make_ctx(session, owner),
        receiver_email="receiver@example.com",
        contact_snapshot={"first_name": "Ada"},
    )
    exchange.expires_at = utcnow() - timedelta(hours=1)
    session.commit()
    return exchange


def test_process_enrollments(session, processor, enrollment):
    assert processor.process_enrollments(dry_run=True) == {"processed": 0, "errors": 0, "due": 1}

    assert processor.process_enrollments() == {"processed": 1, "errors": 0}
    assert processor.email_service.sent[0]["subject"] == "Hi Ada"

    # One email step: the next pass completes the enrollment
    processor.process_enrollments()
    session.refresh(enrollment)
    assert enrollment.status == EnrollmentStatus.COMPLETED


def test_expire_exchanges(session, processor, pending_exchange):
    assert processor.expire_exchanges(dry_run=True) == {"expired": 1}
    assert processor.expire_exchanges() == {"expired": 1}
    assert processor.expire_exchanges() == {"expired": 0}

    session.expire_all()
    assert session.get(ReferralExchange, pending_exchange.id).status == ExchangeStatus.EXPIRED


def test_recompute_trust_scores(processor, pending_exchange):
    assert processor.recompute_trust_scores() == {"users": 2}


def test_check_achievements(session, org, processor):
    ContactService(session).create(org, first_name="Ada")
    assert processor.check_achievements()["awarded"] >= 1
    assert processor.check_achievements() == {"awarded": 0}


def test_purge_expired_insights(session, org, processor):
    session.add_all(
        [
            AiInsight(
                org_id=org.id,
                insight_type=InsightType.NETWORK_GAP,
                title="Old",
                summary="Stale",
                expires_at=utcnow() - timedelta(days=1),
            ),
            AiInsight(
                org_id=org.id,
                insight_type=InsightType.NETWORK_GAP,
                title="Fresh",
                summary="Current",
                expires_at=utcnow() + timedelta(days=1),
            ),
        ]
    )
    session.commit()
    assert processor.purge_expired_insights() == {"deleted": 1}


def test_daily_report(session, org, processor, pending_exchange):
    report = processor.generate_daily_report()
    assert report["total_orgs"] == 2
    assert report["exchanges_by_status"]["pending"] == 1
    assert report["exchanges_sent_last_day"] == 1
    assert report["active_enrollments"] == 0


def test_run_all(processor):
    result = processor.run_all()
    assert set(result) == {"enrollments", "exchanges", "trust", "achievements", "insights"}
    assert result["exchanges"] == {"expired": 0}


# ============================================================================
# CLI
# ============================================================================
def test_cli_user_create_and_list(session_factory):
    result = runner.invoke(app, ["user", "create", "cli@example.com", "--name", "Cli User", "--admin"])
    assert result.exit_code == 0
    assert "created" in result.output

    with session_factory() as session:
        user = session.query(UserProfile).filter(UserProfile.email == "cli@example.com").one()
        assert user.is_platform_admin is True

    duplicate = runner.invoke(app, ["user", "create", "cli@example.com"])
    assert duplicate.exit_code == 1


def test_cli_org_create_rejects_bad_plan(session_factory):
    result = runner.invoke(app, ["org", "create", "Acme", "--owner", "x@example.com", "--plan", "gold"])
    assert result.exit_code == 1
    assert "Invalid plan" in result.output


def test_cli_org_create(session_factory, owner):
    result = runner.invoke(app, ["org", "create", "Cli Org", "--owner", owner.email, "--plan", "team"])
    assert result.exit_code == 0
    assert "team plan" in result.output
