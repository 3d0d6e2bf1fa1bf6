"""Organizations, membership and tenant resolution."""

import pytest

from conftest import make_ctx, make_org, make_user
from trellis.exceptions import ConflictError, PermissionDeniedError, PlanLimitError, ValidationError
from trellis.models import OrgRole, PipelineStage, PlanType
from trellis.services.organization_service import OrganizationService, UserService


def test_create_seeds_default_pipeline(session, owner, org):
    stages = (
        session.query(PipelineStage)
        .filter(PipelineStage.org_id == org.id)
        .order_by(PipelineStage.display_order)
        .all()
    )
    assert [s.name for s in stages] == [
        "Lead", "Contacted", "Qualified", "Proposal", "Negotiation", "Won", "Lost"
    ]
    assert stages[5].is_won and stages[6].is_lost
    assert owner.active_org_id == org.id
    assert OrganizationService(session).is_owner(org.id, owner.id)


def test_slug_is_unique(session, owner):
    first = make_org(session, owner, name="Acme Advisors")
    second = make_org(session, owner, name="Acme Advisors")
    assert first.slug == "acme-advisors"
    assert second.slug == "acme-advisors-2"


def test_duplicate_email_is_rejected(session, owner):
    with pytest.raises(ConflictError):
        UserService(session).create("OWNER@example.com")


def test_seat_limit_on_free_plan(session, owner):
    org = make_org(session, owner, plan=PlanType.FREE)
    extra = make_user(session, email="second@example.com")
    with pytest.raises(PlanLimitError):
        OrganizationService(session).add_member(org, extra)


def test_team_plan_adds_members(session, owner):
    org = make_org(session, owner, plan=PlanType.TEAM)
    extra = make_user(session, email="second@example.com")
    member = OrganizationService(session).add_member(org, extra, role=OrgRole.ADMIN)
    assert member.role == OrgRole.ADMIN
    assert extra.active_org_id == org.id
    assert len(OrganizationService(session).list_members(org.id)) == 2


def test_owner_cannot_be_removed(session, owner, org):
    with pytest.raises(ValidationError):
        OrganizationService(session).remove_member(org.id, owner.id)


def test_resolve_context_requires_active_org(session):
    user = make_user(session, email="loner@example.com")
    with pytest.raises(ValidationError):
        make_ctx(session, user)


def test_resolve_context_requires_membership(session, org):
    outsider = make_user(session, email="outsider@example.com")
    outsider.active_org_id = org.id
    session.commit()
    with pytest.raises(PermissionDeniedError):
        make_ctx(session, outsider)


def test_platform_admin_outside_own_org_is_impersonating(session, org):
    admin = make_user(session, email="admin@example.com", is_platform_admin=True)
    admin.active_org_id = org.id
    session.commit()
    ctx = make_ctx(session, admin)
    assert ctx.is_impersonating
    with pytest.raises(PermissionDeniedError):
        ctx.forbid_impersonation("nope")


def test_owner_context_is_not_impersonating(session, owner, org):
    ctx = make_ctx(session, owner)
    assert ctx.org_id == org.id
    assert not ctx.is_impersonating


def test_free_context_rejects_paid_features(session, free_org):
    user = UserService(session).get_by_email("free@example.com")
    ctx = make_ctx(session, user)
    with pytest.raises(PlanLimitError):
        ctx.require_paid("paid only")


def test_switch_active_org(session, owner, org):
    second = make_org(session, owner, name="Second Org")
    service = OrganizationService(session)
    assert owner.active_org_id == org.id
    service.switch_active_org(owner, second.id)
    assert owner.active_org_id == second.id
