"""Cross-organization referral exchange."""

from datetime import timedelta

import pytest

from conftest import make_ctx, make_org, make_user
from trellis.exceptions import NotFoundError, PermissionDeniedError, PlanLimitError, ValidationError
from trellis.models import Contact, ExchangeStatus, PlanType, ReceiverStatus, utcnow
from trellis.services.contact_service import ContactService
from trellis.services.exchange_service import ExchangeService
from trellis.services.organization_service import UserService

SNAPSHOT = {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com", "phone": ""}


@pytest.fixture
def exchanges(session, email_service):
    return ExchangeService(session, email_service=email_service)


@pytest.fixture
def sender_ctx(session, owner, org):
    return make_ctx(session, owner)


@pytest.fixture
def receiver(session):
    user = make_user(session, email="receiver@example.com", name="Rita Receiver")
    make_org(session, user, name="Receiver Co", plan=PlanType.PRO)
    return user


@pytest.fixture
def receiver_ctx(session, receiver):
    return make_ctx(session, receiver)


def send(exchanges, ctx, to="receiver@example.com", **kwargs):
    return exchanges.create(ctx, receiver_email=to, contact_snapshot=dict(SNAPSHOT), **kwargs)


def test_send_to_paid_receiver(exchanges, sender_ctx, receiver, email_service):
    exchange = send(exchanges, sender_ctx, to="Receiver@Example.com", context_note="Needs a planner")
    assert exchange.status == ExchangeStatus.PENDING
    assert exchange.receiver_user_id == receiver.id
    assert exchange.receiver_email == "receiver@example.com"
    assert exchange.contact_snapshot == {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com"}
    assert exchange.expires_at - exchange.created_at > timedelta(days=29)
    assert email_service.sent[0]["subject"] == "Olive Owner sent you a referral for Ada Lovelace"


def test_send_to_free_receiver_is_undeliverable(session, exchanges, sender_ctx, email_service):
    make_org(session, make_user(session, email="cheap@example.com"), name="Cheap", plan=PlanType.FREE)
    exchange = send(exchanges, sender_ctx, to="cheap@example.com")
    assert exchange.status == ExchangeStatus.UNDELIVERABLE
    assert "wants to send you a referral" in email_service.sent[0]["subject"]


def test_send_to_unregistered_email_invites(session, exchanges, sender_ctx, email_service):
    exchange = send(exchanges, sender_ctx, to="stranger@example.com")
    assert exchange.status == ExchangeStatus.PENDING
    assert exchange.receiver_user_id is None
    assert email_service.sent[0]["to"] == "stranger@example.com"

    # Registering later claims the pending exchange
    stranger = UserService(session).create("stranger@example.com")
    session.refresh(exchange)
    assert exchange.receiver_user_id == stranger.id


def test_free_sender_is_blocked(session, exchanges, free_org):
    ctx = make_ctx(session, UserService(session).get_by_email("free@example.com"))
    with pytest.raises(PlanLimitError):
        send(exchanges, ctx)


def test_cannot_send_to_self(exchanges, sender_ctx):
    with pytest.raises(ValidationError):
        send(exchanges, sender_ctx, to="owner@example.com")


def test_send_requires_first_name(exchanges, sender_ctx):
    with pytest.raises(ValidationError):
        exchanges.create(sender_ctx, receiver_email="x@example.com", contact_snapshot={"email": "a@b.c"})


def test_impersonating_admin_cannot_send(session, org, exchanges):
    admin = make_user(session, email="admin@example.com", is_platform_admin=True)
    admin.active_org_id = org.id
    session.commit()
    with pytest.raises(PermissionDeniedError):
        send(exchanges, make_ctx(session, admin))


def test_notification_failure_does_not_fail_send(exchanges, sender_ctx, receiver, email_service, monkeypatch):
    def explode(**kwargs):
        raise RuntimeError("smtp down")

    monkeypatch.setattr(email_service, "send", explode)
    exchange = send(exchanges, sender_ctx)
    assert exchange.status == ExchangeStatus.PENDING


def test_snapshot_from_source_contact(session, org, exchanges, sender_ctx, receiver):
    contact = ContactService(session).create(org, first_name="Grace", last_name="Hopper", industry="Navy")
    exchange = exchanges.create(
        sender_ctx, receiver_email="receiver@example.com", source_contact_id=contact.id
    )
    assert exchange.contact_snapshot["first_name"] == "Grace"
    assert exchange.contact_snapshot["industry"] == "Navy"


def test_draft_then_publish(exchanges, sender_ctx, receiver, email_service):
    draft = exchanges.create(sender_ctx, save_as_draft=True, context_note="wip")
    assert draft.status == ExchangeStatus.DRAFT
    assert draft.expires_at is None
    assert email_service.sent == []

    with pytest.raises(ValidationError):
        exchanges.apply_action(sender_ctx, draft.id, "publish_draft", {})

    exchanges.apply_action(
        sender_ctx,
        draft.id,
        "update_draft",
        {"receiver_email": "receiver@example.com", "contact_snapshot": dict(SNAPSHOT)},
    )
    result = exchanges.apply_action(sender_ctx, draft.id, "publish_draft", {})
    assert result["status"] == "pending"
    assert len(email_service.sent) == 1


def test_accept_imports_contact(session, exchanges, sender_ctx, receiver_ctx):
    exchange = send(exchanges, sender_ctx)
    result = exchanges.apply_action(receiver_ctx, exchange.id, "accept", {})

    contact = session.get(Contact, result["contact_id"])
    assert contact.org_id == receiver_ctx.org_id
    assert contact.first_name == "Ada"
    assert contact.generation == 1
    assert "Acme Advisors" in contact.notes

    session.refresh(exchange)
    assert exchange.status == ExchangeStatus.ACCEPTED
    assert exchange.imported_contact_id == contact.id

    with pytest.raises(ValidationError):
        exchanges.apply_action(receiver_ctx, exchange.id, "decline", {})


def test_only_receiver_can_accept(exchanges, sender_ctx, receiver):
    exchange = send(exchanges, sender_ctx)
    with pytest.raises(PermissionDeniedError):
        exchanges.apply_action(sender_ctx, exchange.id, "accept", {})


def test_receiver_status_updates(session, exchanges, sender_ctx, receiver_ctx):
    exchange = send(exchanges, sender_ctx)
    exchanges.apply_action(receiver_ctx, exchange.id, "accept", {})
    exchanges.apply_action(
        receiver_ctx,
        exchange.id,
        "update_status",
        {"receiver_status": "converted", "receiver_status_visible": False},
    )
    session.refresh(exchange)
    assert exchange.receiver_status == ReceiverStatus.CONVERTED
    assert exchange.receiver_status_visible is False

    with pytest.raises(ValidationError):
        exchanges.apply_action(receiver_ctx, exchange.id, "update_status", {"receiver_status": "bogus"})


def test_unknown_action(exchanges, sender_ctx, receiver):
    exchange = send(exchanges, sender_ctx)
    with pytest.raises(ValidationError):
        exchanges.apply_action(sender_ctx, exchange.id, "teleport", {})


def test_delete_rules(exchanges, sender_ctx, receiver, receiver_ctx):
    pending = send(exchanges, sender_ctx)
    with pytest.raises(PermissionDeniedError):
        exchanges.delete(receiver_ctx.user, pending.id)
    exchanges.delete(sender_ctx.user, pending.id)
    with pytest.raises(NotFoundError):
        exchanges.delete(sender_ctx.user, pending.id)

    accepted = send(exchanges, sender_ctx)
    exchanges.apply_action(receiver_ctx, accepted.id, "accept", {})
    with pytest.raises(ValidationError):
        exchanges.delete(sender_ctx.user, accepted.id)


def test_messages_only_on_accepted(exchanges, sender_ctx, receiver_ctx):
    exchange = send(exchanges, sender_ctx)
    with pytest.raises(ValidationError):
        exchanges.post_message(sender_ctx, exchange.id, "Hello?")

    exchanges.apply_action(receiver_ctx, exchange.id, "accept", {})
    exchanges.post_message(sender_ctx, exchange.id, "  Thanks for taking this  ")
    exchanges.post_message(receiver_ctx, exchange.id, "Happy to help")
    with pytest.raises(ValidationError):
        exchanges.post_message(receiver_ctx, exchange.id, "x" * 2001)

    messages = exchanges.list_messages(sender_ctx.user, exchange.id)
    assert [m.message for m in messages] == ["Thanks for taking this", "Happy to help"]


def test_list_sent_and_received(exchanges, sender_ctx, receiver, receiver_ctx):
    send(exchanges, sender_ctx)
    exchanges.create(sender_ctx, save_as_draft=True)

    sent, total = exchanges.list(sender_ctx.user_id, direction="sent")
    assert total == 2
    received, total = exchanges.list(receiver.id, direction="received")
    assert total == 1
    assert received[0]["sender_org"].name == "Acme Advisors"


def test_expire_pending(session, exchanges, sender_ctx, receiver):
    exchange = send(exchanges, sender_ctx)
    assert exchanges.expire_pending(utcnow()) == 0
    assert exchanges.expire_pending(utcnow() + timedelta(days=31)) == 1
    session.refresh(exchange)
    assert exchange.status == ExchangeStatus.EXPIRED
