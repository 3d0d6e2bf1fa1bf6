"""Contact CRUD, plan limits and list filters."""

import pytest

from trellis.exceptions import PlanLimitError, ValidationError
from trellis.models import Activity, ActivityType, EntityType, RelationshipType
from trellis.services.activity_service import ActivityService
from trellis.services.contact_service import ContactService, parse_activity_filter
from trellis.services.tag_service import TagService


@pytest.fixture
def contacts(session):
    return ContactService(session)


def test_create_logs_activity(session, owner, org, contacts):
    contact = contacts.create(org, created_by=owner.id, first_name="Ada", last_name="Lovelace")
    assert contact.full_name == "Ada Lovelace"
    assert contact.relationship_type == RelationshipType.CONTACT

    logged = session.query(Activity).filter(Activity.entity_id == contact.id).all()
    assert [a.activity_type for a in logged] == [ActivityType.CONTACT_CREATED]


def test_first_name_required(org, contacts):
    with pytest.raises(ValidationError):
        contacts.create(org, last_name="Nobody")


def test_free_plan_contact_limit(session, free_org, contacts):
    free_org.max_contacts = 2
    session.commit()
    contacts.create(free_org, first_name="One")
    contacts.create(free_org, first_name="Two")
    with pytest.raises(PlanLimitError):
        contacts.create(free_org, first_name="Three")


def test_update_records_changes(session, owner, org, contacts):
    contact = contacts.create(org, first_name="Ada", email="ada@old.test")
    contacts.update(org.id, contact.id, updated_by=owner.id, email="ada@new.test", first_name="Ada")

    update = (
        session.query(Activity)
        .filter(Activity.entity_id == contact.id, Activity.activity_type == ActivityType.CONTACT_UPDATED)
        .one()
    )
    assert update.meta["changes"] == {"email": {"old": "ada@old.test", "new": "ada@new.test"}}


def test_other_org_cannot_see_contact(session, org, free_org, contacts):
    contact = contacts.create(org, first_name="Private")
    assert contacts.get(free_org.id, contact.id) is None
    assert contacts.delete(free_org.id, contact.id) is False
    assert contacts.get(org.id, contact.id) is not None


def test_search_and_field_filters(org, contacts):
    contacts.create(org, first_name="Ada", email="ada@example.com", city="London", industry="Finance")
    contacts.create(org, first_name="Grace", phone="555-0100", city="Arlington", industry="Defense")
    contacts.create(org, first_name="Alan", relationship_type=RelationshipType.CLIENT)

    found, total = contacts.list(org.id, search="ada")
    assert total == 1 and found[0].first_name == "Ada"

    found, _ = contacts.list(org.id, location="lond")
    assert [c.first_name for c in found] == ["Ada"]

    found, _ = contacts.list(org.id, has_phone=True)
    assert [c.first_name for c in found] == ["Grace"]

    found, total = contacts.list(org.id, has_email=False)
    assert total == 2

    found, _ = contacts.list(org.id, relationship_type=RelationshipType.CLIENT)
    assert [c.first_name for c in found] == ["Alan"]


def test_sort_and_pagination(org, contacts):
    for name in ("Carol", "Alice", "Bob"):
        contacts.create(org, first_name=name)

    page, total = contacts.list(org.id, sort="first_name", sort_desc=False, page=0, page_size=2)
    assert total == 3
    assert [c.first_name for c in page] == ["Alice", "Bob"]

    page, _ = contacts.list(org.id, sort="first_name", sort_desc=False, page=1, page_size=2)
    assert [c.first_name for c in page] == ["Carol"]


def test_tag_filter_or_and(session, org, contacts):
    tags = TagService(session)
    vip = tags.create(org.id, "VIP", EntityType.CONTACT)
    local = tags.create(org.id, "Local", EntityType.CONTACT)
    both = contacts.create(org, first_name="Both")
    only_vip = contacts.create(org, first_name="OnlyVip")
    contacts.create(org, first_name="Untagged")
    tags.attach(org.id, vip.id, both.id)
    tags.attach(org.id, local.id, both.id)
    tags.attach(org.id, vip.id, only_vip.id)

    found, total = contacts.list(org.id, tag_ids=[vip.id, local.id], tag_mode="or")
    assert total == 2

    found, total = contacts.list(org.id, tag_ids=[vip.id, local.id], tag_mode="and")
    assert [c.first_name for c in found] == ["Both"]


def test_activity_filter_ignores_bookkeeping(session, owner, org, contacts):
    called = contacts.create(org, first_name="Called")
    contacts.create(org, first_name="Silent")
    ActivityService(session).create(
        org.id,
        created_by=owner.id,
        entity_type=EntityType.CONTACT,
        entity_id=called.id,
        activity_type=ActivityType.CALL,
        title="Quick call",
    )

    found, _ = contacts.list(org.id, activity="active_within:7")
    assert [c.first_name for c in found] == ["Called"]

    found, _ = contacts.list(org.id, activity="never:0")
    assert [c.first_name for c in found] == ["Silent"]

    found, total = contacts.list(org.id, activity="inactive_since:7")
    assert total == 0


@pytest.mark.parametrize("value", ["soon:3", "active_within", "active_within:x", "never:-1"])
def test_parse_activity_filter_rejects_bad_values(value):
    with pytest.raises(ValidationError):
        parse_activity_filter(value)


def test_parse_activity_filter():
    assert parse_activity_filter("inactive_since:30") == ("inactive_since", 30)
