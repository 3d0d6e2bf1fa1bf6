"""Email templates, automations, triggers and the enrollment processor."""

from datetime import timedelta

import pytest

from conftest import FakeEmailService
from trellis.exceptions import NotFoundError, ValidationError
from trellis.models import (
    Activity,
    ActivityType,
    AutomationStatus,
    AutomationTriggerType,
    DelayUnit,
    EmailLog,
    EnrollmentStatus,
    EntityType,
    StepType,
    utcnow,
)
from trellis.services.automation_service import (
    AutomationService,
    EnrollmentProcessor,
    TemplateService,
    compute_delay,
)
from trellis.services.contact_service import ContactService
from trellis.services.email_service import extract_variables, interpolate_template
from trellis.services.tag_service import TagService


@pytest.fixture
def template(session, org):
    return TemplateService(session).create(
        org.id,
        name="Welcome",
        subject="Hi {{first_name}}",
        html_content="<p>Hello {{full_name}} from {{company_name}}</p>",
    )


@pytest.fixture
def automations(session, email_service):
    return AutomationService(session, email_service=email_service)


def make_active(automations, org, template, **kwargs):
    automation = automations.create(
        org.id,
        "Nurture",
        steps=[
            {"step_type": "email", "template_id": template.id},
            {"step_type": "delay", "delay_amount": 2, "delay_unit": "days"},
            {"step_type": "email", "template_id": template.id},
        ],
        **kwargs,
    )
    return automations.update(org.id, automation.id, status=AutomationStatus.ACTIVE)


# ============================================================================
# Templates
# ============================================================================
def test_interpolation_keeps_unknown_placeholders():
    text = interpolate_template("Hi {{first_name}}, {{unknown}}", {"first_name": "Ada"})
    assert text == "Hi Ada, {{unknown}}"


def test_extract_variables_in_order():
    assert extract_variables("{{b}} {{a}} {{b}}") == ["b", "a"]


def test_template_records_variables(template):
    assert template.variables == ["first_name", "full_name", "company_name"]


def test_preview_with_sample_values(session, template):
    preview = TemplateService(session).preview(template)
    assert preview["subject"] == "Hi Jane"
    assert "Jane Doe" in preview["html"]
    assert preview["variables"] == ["full_name", "company_name"]
    assert [v["key"] for v in preview["available_variables"]] == [
        "first_name",
        "last_name",
        "full_name",
        "email",
        "company_name",
        "job_title",
    ]


def test_archived_templates_hidden(session, org, template):
    service = TemplateService(session)
    assert service.archive(org.id, template.id)
    assert service.list(org.id) == []
    assert len(service.list(org.id, include_archived=True)) == 1


# ============================================================================
# Automations and enrollment
# ============================================================================
def test_steps_are_numbered_and_new_automations_are_drafts(session, org, template, automations):
    automation = automations.create(
        org.id,
        "Draft flow",
        steps=[{"step_type": "delay"}, {"step_type": "email", "template_id": template.id}],
    )
    assert automation.status == AutomationStatus.DRAFT
    assert [s.step_order for s in automation.steps] == [1, 2]
    assert automation.steps[0].delay_unit == DelayUnit.DAYS


def test_unknown_template_in_step(org, automations):
    with pytest.raises(ValidationError):
        automations.create(org.id, "Broken", steps=[{"step_type": "email", "template_id": 424242}])


def test_enroll_skips_foreign_and_duplicate_contacts(session, org, free_org, template, automations):
    automation = make_active(automations, org, template)
    mine = ContactService(session).create(org, first_name="Mine", email="mine@example.com")
    theirs = ContactService(session).create(free_org, first_name="Theirs")

    first = automations.enroll(automation, [mine.id, theirs.id])
    assert [e.contact_id for e in first] == [mine.id]
    assert automations.enroll(automation, [mine.id]) == []


def test_archived_automation_rejects_enrollment(session, org, template, automations):
    automation = make_active(automations, org, template)
    automations.update(org.id, automation.id, status=AutomationStatus.ARCHIVED)
    with pytest.raises(ValidationError):
        automations.enroll(automation, [1])


def test_contact_create_trigger(session, org, template, automations):
    automation = make_active(
        automations, org, template, trigger_type=AutomationTriggerType.ON_CONTACT_CREATE
    )
    contact = ContactService(session).create(org, first_name="Newbie", email="new@example.com")
    enrollments = automations.list_enrollments(org.id, automation.id)
    assert [e.contact_id for e in enrollments] == [contact.id]
    assert automations.list(org.id)[0]["enrollment_count"] == 1


def test_tag_trigger_only_for_watched_tag(session, org, template, automations):
    tags = TagService(session)
    vip = tags.create(org.id, "VIP", EntityType.CONTACT)
    other = tags.create(org.id, "Other", EntityType.CONTACT)
    automation = make_active(
        automations,
        org,
        template,
        trigger_type=AutomationTriggerType.ON_TAG_ADDED,
        trigger_config={"tag_id": vip.id},
    )
    contact = ContactService(session).create(org, first_name="Tagged", email="t@example.com")

    tags.attach(org.id, other.id, contact.id)
    assert automations.list_enrollments(org.id, automation.id) == []
    tags.attach(org.id, vip.id, contact.id)
    assert len(automations.list_enrollments(org.id, automation.id)) == 1


def test_enrollment_status_changes(session, org, template, automations):
    automation = make_active(automations, org, template)
    contact = ContactService(session).create(org, first_name="Pat", email="pat@example.com")
    enrollment = automations.enroll(automation, [contact.id])[0]

    paused = automations.set_enrollment_status(org.id, enrollment.id, EnrollmentStatus.PAUSED)
    assert paused.status == EnrollmentStatus.PAUSED
    with pytest.raises(ValidationError):
        automations.set_enrollment_status(org.id, enrollment.id, EnrollmentStatus.COMPLETED)
    with pytest.raises(NotFoundError):
        automations.set_enrollment_status(org.id, 999, EnrollmentStatus.ACTIVE)


@pytest.mark.parametrize(
    "amount,unit,expected",
    [
        (2, DelayUnit.HOURS, timedelta(hours=2)),
        (3, DelayUnit.WEEKS, timedelta(weeks=3)),
        (None, None, timedelta(days=1)),
        (30, DelayUnit.MINUTES, timedelta(minutes=30)),
    ],
)
def test_compute_delay(amount, unit, expected):
    assert compute_delay(amount, unit) == expected


# ============================================================================
# Processor
# ============================================================================
def test_processor_walks_steps(session, org, template, automations, email_service):
    automation = make_active(automations, org, template)
    contact = ContactService(session).create(org, first_name="Ada", last_name="L", email="ada@example.com")
    enrollment = automations.enroll(automation, [contact.id])[0]
    processor = EnrollmentProcessor(session, email_service=email_service)
    now = utcnow()

    # Step 1: email, due again immediately
    assert processor.process_due(now=now) == {"processed": 1, "errors": 0}
    assert email_service.sent[0]["subject"] == "Hi Ada"
    assert enrollment.current_step_order == 1

    # Step 2: two day delay
    processor.process_due(now=now)
    assert enrollment.current_step_order == 2
    assert enrollment.next_action_at == now + timedelta(days=2)
    assert processor.process_due(now=now) == {"processed": 0, "errors": 0}

    # Step 3: second email, then completion
    later = now + timedelta(days=2)
    processor.process_due(now=later)
    processor.process_due(now=later)
    session.refresh(enrollment)
    session.refresh(automation)
    assert enrollment.status == EnrollmentStatus.COMPLETED
    assert len(email_service.sent) == 2
    assert automation.stats["sent"] == 2
    assert session.query(EmailLog).filter(EmailLog.enrollment_id == enrollment.id).count() == 2


def test_processor_fails_contact_without_email(session, org, template, automations, email_service):
    automation = make_active(automations, org, template)
    contact = ContactService(session).create(org, first_name="NoMail")
    enrollment = automations.enroll(automation, [contact.id])[0]

    result = EnrollmentProcessor(session, email_service=email_service).process_due()
    session.refresh(enrollment)
    assert result == {"processed": 0, "errors": 1}
    assert enrollment.status == EnrollmentStatus.FAILED
    assert enrollment.error_message == "Contact has no email"
    assert email_service.sent == []


class FlakyEmailService(FakeEmailService):
    def __init__(self, failing_address):
        super().__init__()
        self.failing_address = failing_address

    def send(self, to, subject, html, text=None, from_address=None, reply_to=None):
        if to == self.failing_address:
            raise RuntimeError("provider down")
        return super().send(to, subject, html, text, from_address, reply_to)


def test_processor_isolates_send_failures(session, org, template, automations):
    automation = make_active(automations, org, template)
    contacts = ContactService(session)
    broken = contacts.create(org, first_name="Bea", email="bea@example.com")
    healthy = contacts.create(org, first_name="Ada", email="ada@example.com")
    failed, advanced = automations.enroll(automation, [broken.id, healthy.id])

    email_service = FlakyEmailService("bea@example.com")
    result = EnrollmentProcessor(session, email_service=email_service).process_due()
    assert result == {"processed": 1, "errors": 1}

    session.refresh(failed)
    session.refresh(advanced)
    assert failed.status == EnrollmentStatus.FAILED
    assert failed.error_message == "provider down"
    assert advanced.status == EnrollmentStatus.ACTIVE
    assert advanced.current_step_order == 1
    assert [message["to"] for message in email_service.sent] == ["ada@example.com"]


def test_processor_fails_email_step_without_template(session, org, automations, email_service):
    automation = automations.create(org.id, "Blank", steps=[{"step_type": "email"}])
    automations.update(org.id, automation.id, status=AutomationStatus.ACTIVE)
    contact = ContactService(session).create(org, first_name="Ada", email="ada@example.com")
    enrollment = automations.enroll(automation, [contact.id])[0]

    result = EnrollmentProcessor(session, email_service=email_service).process_due()
    session.refresh(enrollment)
    assert result == {"processed": 0, "errors": 1}
    assert enrollment.status == EnrollmentStatus.FAILED
    assert enrollment.error_message == "Email step has no template"
    assert email_service.sent == []


def test_processor_fails_when_contact_is_gone(engine, session, org, template, automations, email_service):
    automation = make_active(automations, org, template)
    contact = ContactService(session).create(org, first_name="Ada", email="ada@example.com")
    enrollment = automations.enroll(automation, [contact.id])[0]
    session.commit()

    # Remove the contact underneath the enrollment without the cascade
    with engine.connect() as conn:
        conn.exec_driver_sql("PRAGMA foreign_keys=OFF")
        conn.exec_driver_sql("DELETE FROM contacts WHERE id = ?", (contact.id,))
        conn.commit()
        conn.exec_driver_sql("PRAGMA foreign_keys=ON")

    result = EnrollmentProcessor(session, email_service=email_service).process_due()
    session.refresh(enrollment)
    assert result == {"processed": 0, "errors": 1}
    assert enrollment.status == EnrollmentStatus.FAILED
    assert enrollment.error_message == "Contact not found"


def test_processor_respects_batch_size(session, org, template, automations, email_service):
    automation = make_active(automations, org, template)
    contacts = ContactService(session)
    ids = [
        contacts.create(org, first_name=name, email=f"{name.lower()}@example.com").id
        for name in ("Ada", "Bea", "Cy")
    ]
    automations.enroll(automation, ids)

    processor = EnrollmentProcessor(session, email_service=email_service)
    assert processor.process_due(batch_size=2) == {"processed": 2, "errors": 0}
    assert len(email_service.sent) == 2
    assert processor.process_due(batch_size=2) == {"processed": 2, "errors": 0}
    assert len(email_service.sent) == 3


def test_processor_skips_paused_automation(session, org, template, automations, email_service):
    automation = make_active(automations, org, template)
    contact = ContactService(session).create(org, first_name="Ada", email="ada@example.com")
    enrollment = automations.enroll(automation, [contact.id])[0]
    automations.update(org.id, automation.id, status=AutomationStatus.PAUSED)

    result = EnrollmentProcessor(session, email_service=email_service).process_due()
    assert result == {"processed": 0, "errors": 0}
    session.refresh(enrollment)
    assert enrollment.status == EnrollmentStatus.ACTIVE


def test_condition_steps_are_passed_over(session, org, template, automations, email_service):
    automation = automations.create(
        org.id,
        "Conditional",
        steps=[{"step_type": StepType.CONDITION, "config": {"field": "email"}}],
    )
    automations.update(org.id, automation.id, status=AutomationStatus.ACTIVE)
    contact = ContactService(session).create(org, first_name="Cee", email="c@example.com")
    enrollment = automations.enroll(automation, [contact.id])[0]

    processor = EnrollmentProcessor(session, email_service=email_service)
    processor.process_due()
    processor.process_due()
    session.refresh(enrollment)
    assert enrollment.status == EnrollmentStatus.COMPLETED


def test_manual_send_logs_email_activity(session, owner, org, template, automations, email_service):
    contact = ContactService(session).create(org, first_name="Ada", email="ada@example.com")
    log = automations.send_template(org, contact.id, template.id, sent_by=owner.id)
    assert log.resend_id == "email_1"
    assert log.to_email == "ada@example.com"
    emails = session.query(Activity).filter(Activity.activity_type == ActivityType.EMAIL).all()
    assert len(emails) == 1


def test_manual_send_requires_email(session, org, template, automations):
    contact = ContactService(session).create(org, first_name="NoMail")
    with pytest.raises(ValidationError):
        automations.send_template(org, contact.id, template.id)
