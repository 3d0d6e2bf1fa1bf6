"""
Shared fixtures: an in-memory database per test, fake outbound clients
and a FastAPI test client wired to both.
"""

import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from trellis.api import deps
from trellis.api.main import app
from trellis.models import Base, PlanType, base
from trellis.models.base import enable_sqlite_foreign_keys
from trellis.services.billing_service import PolarClient
from trellis.services.email_service import EmailService, SentEmail
from trellis.services.organization_service import OrganizationService, UserService

INSIGHTS_REPLY = {
    "patterns": [
        {"title": "Referrals cluster in finance", "description": "Most referrals come from finance.", "confidence": 0.8}
    ],
    "topReferrers": [{"name": "Ada Lovelace", "reason": "Three converted referrals", "projectedValue": 12000}],
    "networkGaps": [{"description": "No healthcare contacts", "recommendation": "Meet two clinic owners"}],
    "growthOpportunities": [
        {"title": "Re-engage partners", "description": "Ping dormant partners.", "estimatedImpact": "high"}
    ],
}


class FakeEmailService(EmailService):
    """Records every message instead of calling Resend."""

    def __init__(self):
        super().__init__(api_key="re_test")
        self.sent = []

    def send(self, to, subject, html, text=None, from_address=None, reply_to=None):
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return SentEmail(id=f"email_{len(self.sent)}", to=to, subject=subject)


class FakeLLM:
    def __init__(self, reply=None):
        self.reply = reply if reply is not None else "Here you go:\n" + json.dumps(INSIGHTS_REPLY)
        self.prompts = []

    def complete(self, system, prompt, max_tokens, temperature):
        self.prompts.append(prompt)
        return self.reply


class FakePolar(PolarClient):
    def __init__(self):
        super().__init__(access_token="polar_test")
        self.checkouts = []

    def create_checkout(self, product_price_id, success_url, customer_email=None, metadata=None):
        self.checkouts.append({"product": product_price_id, "metadata": metadata})
        return {"url": f"https://polar.test/checkout/{product_price_id}"}


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(test_engine)
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine, monkeypatch):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    # session_scope() and the batch jobs open sessions through this name
    monkeypatch.setattr(base, "SessionLocal", factory)
    return factory


@pytest.fixture
def session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def email_service():
    return FakeEmailService()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def polar():
    return FakePolar()


@pytest.fixture
def client(session_factory, email_service, llm, polar):
    def override_session():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[deps.get_session] = override_session
    app.dependency_overrides[deps.get_email_service] = lambda: email_service
    app.dependency_overrides[deps.get_completion_client] = lambda: llm
    app.dependency_overrides[deps.get_polar_client] = lambda: polar
    yield TestClient(app)
    app.dependency_overrides.clear()


# ============================================================================
# Builders
# ============================================================================
def make_user(session, email="owner@example.com", name="Olive Owner", **kwargs):
    return UserService(session).create(email, full_name=name, **kwargs)


def make_org(session, owner, name="Acme Advisors", plan=PlanType.PRO):
    return OrganizationService(session).create(name, owner=owner, plan=plan)


def make_ctx(session, user):
    return OrganizationService(session).resolve_context(user)


def auth(user) -> dict:
    return {"X-User-Id": str(user.id)}


@pytest.fixture
def owner(session):
    return make_user(session)


@pytest.fixture
def org(session, owner):
    return make_org(session, owner)


@pytest.fixture
def free_org(session):
    user = make_user(session, email="free@example.com", name="Fran Free")
    return make_org(session, user, name="Free Shop", plan=PlanType.FREE)
