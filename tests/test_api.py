"""HTTP layer: identity, tenancy, plan gates, cron auth and webhooks."""

import json
import time

import pytest

from conftest import auth, make_org, make_user
from trellis.config import settings
from trellis.models import PlanType
from trellis.services.webhook_service import sign_payload

pytestmark = pytest.mark.integration


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_dashboard_page(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "Trellis" in response.text


def test_missing_identity_is_unauthorized(client):
    response = client.get("/api/contacts")
    assert response.status_code == 401
    assert response.json() == {"detail": "Unauthorized"}
    assert client.get("/api/contacts", headers={"X-User-Id": "999"}).status_code == 401


def test_register_and_create_org(client):
    response = client.post("/api/users", json={"email": "New@Example.com", "full_name": "New User"})
    assert response.status_code == 201
    user = response.json()
    assert user["email"] == "new@example.com"
    headers = {"X-User-Id": str(user["id"])}

    # No active org yet
    assert client.get("/api/contacts", headers=headers).status_code == 400

    org = client.post("/api/orgs", json={"name": "New Org"}, headers=headers)
    assert org.status_code == 201
    assert org.json()["plan"] == "free"
    assert client.get("/api/users/me", headers=headers).json()["active_org_id"] == org.json()["id"]

    duplicate = client.post("/api/users", json={"email": "new@example.com"})
    assert duplicate.status_code == 409


def test_contact_crud(client, owner, org):
    headers = auth(owner)
    created = client.post("/api/contacts", json={"first_name": "Ada", "email": "ada@example.com"}, headers=headers)
    assert created.status_code == 201
    contact_id = created.json()["id"]

    listing = client.get("/api/contacts", params={"search": "ada"}, headers=headers).json()
    assert listing["total"] == 1
    assert listing["contacts"][0]["full_name"] == "Ada"

    patched = client.patch(f"/api/contacts/{contact_id}", json={"last_name": "Lovelace"}, headers=headers)
    assert patched.json()["full_name"] == "Ada Lovelace"

    assert client.delete(f"/api/contacts/{contact_id}", headers=headers).json() == {"success": True}
    assert client.get(f"/api/contacts/{contact_id}", headers=headers).status_code == 404


def test_contact_validation_error(client, owner, org):
    response = client.post("/api/contacts", json={"last_name": "NoFirst"}, headers=auth(owner))
    assert response.status_code == 422


def test_bad_activity_filter(client, owner, org):
    response = client.get("/api/contacts", params={"activity": "someday:3"}, headers=auth(owner))
    assert response.status_code == 400


def test_contacts_are_tenant_scoped(client, session, owner, org):
    created = client.post("/api/contacts", json={"first_name": "Secret"}, headers=auth(owner)).json()
    other = make_user(session, email="other@example.com")
    make_org(session, other, name="Other Org", plan=PlanType.PRO)
    assert client.get(f"/api/contacts/{created['id']}", headers=auth(other)).status_code == 404


def test_free_plan_view_gate(client, session):
    free_user = make_user(session, email="second-free@example.com")
    make_org(session, free_user, name="Tiny", plan=PlanType.FREE)
    assert client.get("/api/visualize/tree", headers=auth(free_user)).status_code == 200
    response = client.get("/api/visualize/galaxy", headers=auth(free_user))
    assert response.status_code == 403


def test_free_plan_cannot_export(client, session):
    free_user = make_user(session, email="nope@example.com")
    make_org(session, free_user, name="Tiny", plan=PlanType.FREE)
    assert client.get("/api/export", headers=auth(free_user)).status_code == 403


def test_import_upload(client, owner, org):
    response = client.post(
        "/api/import",
        files={"file": ("people.csv", b"first_name,email\nAda,ada@example.com\n", "text/csv")},
        data={"entity_type": "contact"},
        headers=auth(owner),
    )
    assert response.status_code == 200
    assert response.json()["processed_rows"] == 1


def test_export_download(client, owner, org):
    client.post("/api/contacts", json={"first_name": "Ada"}, headers=auth(owner))
    response = client.get("/api/export", params={"entity_type": "contact"}, headers=auth(owner))
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "contacts-export-" in response.headers["content-disposition"]


def test_trust_score_requires_a_parameter(client, owner):
    assert client.get("/api/trust-score", headers=auth(owner)).status_code == 400
    assert client.get("/api/trust-score", params={"userId": owner.id}, headers=auth(owner)).json() == {
        "score": None
    }


def test_admin_routes_need_platform_admin(client, session, owner, org):
    assert client.get("/api/admin/stats", headers=auth(owner)).status_code == 403
    admin = make_user(session, email="root@example.com", is_platform_admin=True)
    stats = client.get("/api/admin/stats", headers=auth(admin)).json()
    assert stats["total_users"] == 2
    assert stats["total_orgs"] == 1


def test_cron_requires_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "cron-s3cret")
    assert client.get("/api/automations/process").status_code == 401
    assert client.get("/api/automations/process", headers={"Authorization": "Bearer wrong"}).status_code == 401
    response = client.get("/api/automations/process", headers={"Authorization": "Bearer cron-s3cret"})
    assert response.status_code == 200
    assert response.json() == {"processed": 0, "errors": 0}


def test_manual_send_checks_contact_before_gates(client, session, owner, org):
    headers = auth(owner)
    no_email = client.post("/api/contacts", json={"first_name": "NoMail"}, headers=headers).json()
    reachable = client.post(
        "/api/contacts", json={"first_name": "Ada", "email": "ada@example.com"}, headers=headers
    ).json()

    admin = make_user(session, email="root@example.com", is_platform_admin=True)
    admin.active_org_id = org.id
    session.commit()

    def send(contact_id):
        return client.post(
            "/api/automations/send", json={"contact_id": contact_id, "template_id": 1}, headers=auth(admin)
        )

    assert send(999).status_code == 404
    assert send(no_email["id"]).json() == {"detail": "Contact has no email address"}
    assert send(reachable["id"]).status_code == 403


def test_manual_send_plan_gate_follows_contact_check(client, session):
    free_user = make_user(session, email="frugal@example.com")
    make_org(session, free_user, name="Tiny", plan=PlanType.FREE)
    headers = auth(free_user)
    contact = client.post("/api/contacts", json={"first_name": "Ada", "email": "ada@example.com"}, headers=headers)

    missing = client.post("/api/automations/send", json={"contact_id": 999, "template_id": 1}, headers=headers)
    assert missing.status_code == 404
    gated = client.post(
        "/api/automations/send", json={"contact_id": contact.json()["id"], "template_id": 1}, headers=headers
    )
    assert gated.status_code == 403


def test_exchange_round_trip(client, session, owner, org, email_service):
    receiver = make_user(session, email="receiver@example.com", name="Rita")
    make_org(session, receiver, name="Receiver Co", plan=PlanType.PRO)

    sent = client.post(
        "/api/referrals/exchange",
        json={"receiver_email": "receiver@example.com", "contact_snapshot": {"first_name": "Ada"}},
        headers=auth(owner),
    )
    assert sent.status_code == 201
    exchange_id = sent.json()["id"]
    assert len(email_service.sent) == 1

    inbox = client.get("/api/referrals/exchange", params={"direction": "received"}, headers=auth(receiver)).json()
    assert inbox["totalCount"] == 1
    assert inbox["exchanges"][0]["sender_org_name"] == "Acme Advisors"

    accepted = client.patch(f"/api/exchange/{exchange_id}", json={"action": "accept"}, headers=auth(receiver))
    assert accepted.json()["success"] is True

    bogus = client.patch(
        f"/api/exchange/{exchange_id}",
        json={"action": "update_status", "receiver_status": "bogus"},
        headers=auth(receiver),
    )
    assert bogus.status_code == 400
    assert bogus.json() == {"detail": "Invalid receiver_status: bogus"}
    converted = client.patch(
        f"/api/exchange/{exchange_id}",
        json={"action": "update_status", "receiver_status": "converted"},
        headers=auth(receiver),
    )
    assert converted.status_code == 200

    message = client.post(
        f"/api/exchange/{exchange_id}/messages", json={"message": "Thanks!"}, headers=auth(owner)
    )
    assert message.status_code == 201


def test_polar_webhook_signature(client, session, free_org, monkeypatch):
    secret = "polar-secret"
    monkeypatch.setattr(settings, "polar_webhook_secret", secret)
    body = json.dumps(
        {
            "type": "subscription.created",
            "data": {"id": "sub_9", "status": "active", "product": {"name": "Pro"}, "metadata": {"org_id": str(free_org.id)}},
        }
    ).encode()
    timestamp = str(int(time.time()))
    headers = {
        "webhook-id": "msg_9",
        "webhook-timestamp": timestamp,
        "webhook-signature": sign_payload(secret, "msg_9", timestamp, body),
        "content-type": "application/json",
    }

    assert client.post("/api/webhooks/polar", content=body, headers={**headers, "webhook-signature": "v1,bad"}).status_code == 401
    response = client.post("/api/webhooks/polar", content=body, headers=headers)
    assert response.json() == {"received": True}

    session.expire_all()
    assert free_org.plan == PlanType.PRO
