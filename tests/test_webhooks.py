"""Webhook signatures, Polar subscription events and Resend delivery events."""

import base64
import json
import time

import pytest

from trellis.exceptions import AuthenticationError, NotFoundError, ValidationError
from trellis.models import (
    AutomationStatus,
    EmailLogStatus,
    PlanType,
    SubscriptionStatus,
)
from trellis.services.automation_service import AutomationService, TemplateService
from trellis.services.billing_service import BillingService
from trellis.services.contact_service import ContactService
from trellis.services.webhook_service import EmailEventService, sign_payload, verify_webhook

SECRET = "whsec_" + base64.b64encode(b"super-secret-key").decode()


def signed_headers(body: bytes, prefix="webhook", secret=SECRET, timestamp=None):
    timestamp = str(timestamp or int(time.time()))
    return {
        f"{prefix}-id": "msg_1",
        f"{prefix}-timestamp": timestamp,
        f"{prefix}-signature": "v1,bm9wZQ== " + sign_payload(secret, "msg_1", timestamp, body),
    }


# ============================================================================
# Signatures
# ============================================================================
def test_valid_signature_returns_payload():
    body = json.dumps({"type": "ping"}).encode()
    assert verify_webhook(body, signed_headers(body), SECRET) == {"type": "ping"}


def test_svix_headers_and_plain_secret():
    body = b'{"type": "email.opened"}'
    headers = signed_headers(body, prefix="svix", secret="plain-secret")
    assert verify_webhook(body, headers, "plain-secret", prefix="svix")["type"] == "email.opened"


def test_tampered_body_rejected():
    body = b'{"type": "ping"}'
    headers = signed_headers(body)
    with pytest.raises(AuthenticationError):
        verify_webhook(b'{"type": "pong"}', headers, SECRET)


def test_stale_timestamp_rejected():
    body = b"{}"
    headers = signed_headers(body, timestamp=1_000_000)
    with pytest.raises(AuthenticationError):
        verify_webhook(body, headers, SECRET, now=1_000_000 + 301)
    assert verify_webhook(body, headers, SECRET, now=1_000_000 + 299) == {}


def test_missing_secret_or_headers():
    with pytest.raises(AuthenticationError):
        verify_webhook(b"{}", {}, None)
    with pytest.raises(AuthenticationError):
        verify_webhook(b"{}", {}, SECRET)


# ============================================================================
# Billing
# ============================================================================
def subscription_event(event_type, org_id=None, product="Trellis Team", sub_id="sub_1"):
    data = {"id": sub_id, "status": "active", "customer_id": "cus_1", "product": {"name": product}}
    if org_id is not None:
        data["metadata"] = {"org_id": str(org_id)}
    return {"type": event_type, "data": data}


def test_subscription_created_upgrades_plan(session, free_org, polar):
    BillingService(session, polar=polar).handle_event(subscription_event("subscription.created", free_org.id))
    session.refresh(free_org)
    assert free_org.plan == PlanType.TEAM
    assert free_org.max_users == 25
    assert free_org.subscription_status == SubscriptionStatus.ACTIVE
    assert free_org.polar_subscription_id == "sub_1"


def test_subscription_event_without_org_id(session, polar):
    with pytest.raises(ValidationError):
        BillingService(session, polar=polar).handle_event(subscription_event("subscription.updated"))


def test_cancel_keeps_plan_and_revoke_downgrades(session, free_org, polar):
    billing = BillingService(session, polar=polar)
    billing.handle_event(subscription_event("subscription.active", free_org.id, product="Pro"))

    billing.handle_event(subscription_event("subscription.canceled"))
    session.refresh(free_org)
    assert free_org.plan == PlanType.PRO
    assert free_org.subscription_status == SubscriptionStatus.CANCELED

    billing.handle_event(subscription_event("subscription.revoked"))
    session.refresh(free_org)
    assert free_org.plan == PlanType.FREE
    assert free_org.max_contacts == 50
    assert free_org.polar_subscription_id is None


def test_revoke_for_unknown_subscription(session, polar):
    with pytest.raises(NotFoundError):
        BillingService(session, polar=polar).handle_event(subscription_event("subscription.revoked", sub_id="nope"))


def test_unhandled_event_is_acknowledged(session, polar):
    assert BillingService(session, polar=polar).handle_event({"type": "order.created"}) == {"received": True}


def test_checkout_url(session, owner, org, polar):
    url = BillingService(session, polar=polar).create_checkout(owner, org, "price_team", origin="https://app.test")
    assert url == "https://polar.test/checkout/price_team"
    assert polar.checkouts[0]["metadata"]["org_id"] == str(org.id)


# ============================================================================
# Email events
# ============================================================================
def test_email_events_update_log_and_stats(session, org, email_service):
    template = TemplateService(session).create(org.id, "T", "Subject", "<p>Hi</p>")
    automations = AutomationService(session, email_service=email_service)
    automation = automations.create(org.id, "Flow")
    automations.update(org.id, automation.id, status=AutomationStatus.ACTIVE)
    contact = ContactService(session).create(org, first_name="Ada", email="ada@example.com")
    log = automations.send_template(org, contact.id, template.id, automation_id=automation.id)

    events = EmailEventService(session)
    events.handle_event({"type": "email.opened", "data": {"email_id": log.resend_id}})
    events.handle_event({"type": "email.clicked", "data": {"email_id": log.resend_id}})

    session.refresh(log)
    session.refresh(automation)
    assert log.status == EmailLogStatus.CLICKED
    assert log.opened_at is not None and log.clicked_at is not None
    assert automation.stats["opened"] == 1
    assert automation.stats["clicked"] == 1


def test_email_event_for_unknown_message(session):
    result = EmailEventService(session).handle_event({"type": "email.bounced", "data": {"email_id": "missing"}})
    assert result == {"received": True}
