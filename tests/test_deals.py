"""Deals, pipeline stages and won-deal referral credit."""

from datetime import date

import pytest

from trellis.exceptions import NotFoundError, ValidationError
from trellis.models import Activity, ActivityType, DealStatus, ReferralStatus
from trellis.services.contact_service import ContactService
from trellis.services.deal_service import DealService
from trellis.services.referral_service import ReferralService


@pytest.fixture
def deals(session):
    return DealService(session)


def stage_named(deals, org_id, name):
    return next(s for s in deals.list_stages(org_id) if s.name == name)


def test_new_deal_lands_in_first_stage(org, deals):
    deal = deals.create(org.id, name="Website rebuild", value=5000)
    assert deal.stage.name == "Lead"
    assert deal.status == DealStatus.OPEN
    assert deal.actual_close_date is None


def test_name_required(org, deals):
    with pytest.raises(ValidationError):
        deals.create(org.id, value=10)


def test_foreign_stage_rejected(session, org, free_org, deals):
    foreign = deals.list_stages(free_org.id)[0]
    with pytest.raises(ValidationError):
        deals.create(org.id, name="Sneaky", stage_id=foreign.id)


def test_moving_to_won_stage_credits_referral(session, owner, org, deals):
    contacts = ContactService(session)
    referrer = contacts.create(org, first_name="Referrer")
    client = contacts.create(org, first_name="Client")
    referral = ReferralService(session).create(org.id, referrer.id, client.id)

    deal = deals.create(org.id, name="Retainer", value=2500, contact_id=client.id)
    deals.update(org.id, deal.id, updated_by=owner.id, stage_id=stage_named(deals, org.id, "Won").id)

    session.refresh(deal)
    session.refresh(referral)
    session.refresh(referrer)
    assert deal.status == DealStatus.WON
    assert deal.actual_close_date == date.today()
    assert referral.status == ReferralStatus.CONVERTED
    assert referral.deal_id == deal.id
    assert referral.referral_value == 2500
    assert referrer.lifetime_referral_value == 2500

    won = session.query(Activity).filter(Activity.activity_type == ActivityType.DEAL_WON).count()
    assert won == 1


def test_moving_to_lost_stage(session, org, deals):
    deal = deals.create(org.id, name="Long shot")
    deals.update(org.id, deal.id, stage_id=stage_named(deals, org.id, "Lost").id)
    session.refresh(deal)
    assert deal.status == DealStatus.LOST
    assert deal.actual_close_date is not None
    lost = session.query(Activity).filter(Activity.activity_type == ActivityType.DEAL_LOST).count()
    assert lost == 1


def test_pipeline_summary(org, deals):
    deals.create(org.id, name="A", value=100)
    deals.create(org.id, name="B", value=250)
    summary = deals.pipeline_summary(org.id)
    assert len(summary) == 7
    lead = summary[0]
    assert lead["stage"].name == "Lead"
    assert lead["deal_count"] == 2
    assert lead["total_value"] == 350
    assert summary[1]["deal_count"] == 0


def test_stage_cannot_be_won_and_lost(org, deals):
    with pytest.raises(ValidationError):
        deals.create_stage(org.id, "Limbo", is_won=True, is_lost=True)
    stage = deals.create_stage(org.id, "On hold")
    assert stage.display_order == 7
    with pytest.raises(ValidationError):
        deals.update_stage(org.id, stage.id, is_won=True, is_lost=True)


def test_reorder_requires_every_stage(org, deals):
    stages = deals.list_stages(org.id)
    with pytest.raises(ValidationError):
        deals.reorder_stages(org.id, [s.id for s in stages[:3]])

    reordered = deals.reorder_stages(org.id, [s.id for s in reversed(stages)])
    assert reordered[0].name == "Lost"


def test_stage_in_use_cannot_be_deleted(org, deals):
    deal = deals.create(org.id, name="Busy")
    with pytest.raises(ValidationError):
        deals.delete_stage(org.id, deal.stage_id)
    assert deals.delete_stage(org.id, stage_named(deals, org.id, "Qualified").id)


def test_update_unknown_stage(org, deals):
    with pytest.raises(NotFoundError):
        deals.update_stage(org.id, 99999, name="Ghost")
