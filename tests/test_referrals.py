"""Referral chains, generations and contact metrics."""

import pytest

from trellis.exceptions import NotFoundError, ValidationError
from trellis.models import ReferralStatus
from trellis.services.contact_service import ContactService
from trellis.services.referral_service import ReferralService


@pytest.fixture
def people(session, org):
    contacts = ContactService(session)
    return {
        name: contacts.create(org, first_name=name, generation=1 if name == "Root" else None)
        for name in ("Root", "Child", "Grandchild", "Other")
    }


@pytest.fixture
def referrals(session):
    return ReferralService(session)


def test_self_referral_rejected(org, people, referrals):
    with pytest.raises(ValidationError):
        referrals.create(org.id, people["Root"].id, people["Root"].id)


def test_cross_org_contacts_rejected(session, org, free_org, people, referrals):
    outsider = ContactService(session).create(free_org, first_name="Outsider")
    with pytest.raises(NotFoundError):
        referrals.create(org.id, people["Root"].id, outsider.id)


def test_chain_depth_root_and_generation(session, org, people, referrals):
    first = referrals.create(org.id, people["Root"].id, people["Child"].id)
    second = referrals.create(org.id, people["Child"].id, people["Grandchild"].id)

    assert (first.depth, first.root_referrer_id) == (0, people["Root"].id)
    assert (second.depth, second.root_referrer_id) == (1, people["Root"].id)

    session.refresh(people["Child"])
    session.refresh(people["Grandchild"])
    assert people["Child"].generation == 2
    assert people["Grandchild"].generation == 3


def test_generation_keeps_shortest_path(session, org, people, referrals):
    referrals.create(org.id, people["Root"].id, people["Child"].id)
    referrals.create(org.id, people["Child"].id, people["Grandchild"].id)
    # A direct referral from the root moves the grandchild closer
    referrals.create(org.id, people["Root"].id, people["Grandchild"].id)
    session.refresh(people["Grandchild"])
    assert people["Grandchild"].generation == 2


def test_metrics_count_made_and_sum_converted(session, org, people, referrals):
    referrals.create(org.id, people["Root"].id, people["Child"].id, referral_value=500)
    referrals.create(
        org.id,
        people["Root"].id,
        people["Other"].id,
        status=ReferralStatus.CONVERTED,
        referral_value=1200,
    )
    session.refresh(people["Root"])
    assert people["Root"].referral_score == 2
    assert people["Root"].lifetime_referral_value == 1200


def test_delete_recalculates_referrer(session, org, people, referrals):
    referral = referrals.create(org.id, people["Root"].id, people["Child"].id)
    assert referrals.delete(org.id, referral.id)
    session.refresh(people["Root"])
    assert people["Root"].referral_score == 0


def test_downstream_and_upstream_chain(org, people, referrals):
    referrals.create(org.id, people["Root"].id, people["Child"].id)
    referrals.create(org.id, people["Child"].id, people["Grandchild"].id)

    down = referrals.get_referral_chain(org.id, people["Root"].id, direction="downstream")
    assert [(n["first_name"], n["depth"]) for n in down] == [("Root", 0), ("Child", 1), ("Grandchild", 2)]
    assert down[2]["path"] == [people["Root"].id, people["Child"].id, people["Grandchild"].id]

    up = referrals.get_referral_chain(org.id, people["Grandchild"].id, direction="upstream")
    assert [n["first_name"] for n in up] == ["Grandchild", "Child", "Root"]


def test_chain_respects_max_depth(org, people, referrals):
    referrals.create(org.id, people["Root"].id, people["Child"].id)
    referrals.create(org.id, people["Child"].id, people["Grandchild"].id)
    nodes = referrals.get_referral_chain(org.id, people["Root"].id, max_depth=1)
    assert [n["first_name"] for n in nodes] == ["Root", "Child"]


def test_chain_rejects_unknown_direction(org, people, referrals):
    with pytest.raises(ValidationError):
        referrals.get_referral_chain(org.id, people["Root"].id, direction="sideways")


def test_build_graph(org, people, referrals):
    referrals.create(org.id, people["Root"].id, people["Child"].id)
    graph = referrals.build_graph(org.id)
    assert len(graph["nodes"]) == 4
    assert len(graph["edges"]) == 1
