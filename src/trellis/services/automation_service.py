"""
Automation service - email templates, automations, enrollments and the
enrollment processor that advances contacts through automation steps.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from trellis.config import get_settings
from trellis.exceptions import NotFoundError, ValidationError
from trellis.models import (
    ActivityType,
    Automation,
    AutomationEnrollment,
    AutomationStatus,
    AutomationStep,
    AutomationTriggerType,
    Contact,
    DelayUnit,
    EmailLog,
    EmailLogStatus,
    EmailTemplate,
    EnrollmentStatus,
    EntityType,
    Organization,
    StepType,
    utcnow,
)
from trellis.services.activity_service import ActivityService
from trellis.services.email_service import (
    TEMPLATE_VARIABLES,
    EmailService,
    build_contact_variables,
    extract_variables,
    get_from_address,
    interpolate_template,
)

logger = logging.getLogger(__name__)

DELAY_UNITS = {
    DelayUnit.MINUTES: timedelta(minutes=1),
    DelayUnit.HOURS: timedelta(hours=1),
    DelayUnit.DAYS: timedelta(days=1),
    DelayUnit.WEEKS: timedelta(weeks=1),
}


def compute_delay(amount: Optional[int], unit: Optional[DelayUnit]) -> timedelta:
    """Delay of a step; missing amount is 1, missing or unknown unit is days."""
    return DELAY_UNITS.get(unit, DELAY_UNITS[DelayUnit.DAYS]) * (amount or 1)


# =============================================================================
# TEMPLATES
# =============================================================================


class TemplateService:
    """Service for managing email templates."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, org_id: int, template_id: int) -> Optional[EmailTemplate]:
        return (
            self.session.query(EmailTemplate)
            .filter(EmailTemplate.org_id == org_id, EmailTemplate.id == template_id)
            .first()
        )

    def list(self, org_id: int, include_archived: bool = False) -> list[EmailTemplate]:
        query = self.session.query(EmailTemplate).filter(EmailTemplate.org_id == org_id)
        if not include_archived:
            query = query.filter(EmailTemplate.is_archived.is_(False))
        return query.order_by(EmailTemplate.updated_at.desc()).all()

    def create(
        self,
        org_id: int,
        name: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> EmailTemplate:
        if not name or not subject or not html_content:
            raise ValidationError("name, subject and html_content are required")
        template = EmailTemplate(
            org_id=org_id,
            name=name,
            subject=subject,
            html_content=html_content,
            text_content=text_content,
            variables=extract_variables(f"{subject} {html_content} {text_content or ''}"),
            created_by=created_by,
        )
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)
        return template

    def update(self, org_id: int, template_id: int, **kwargs) -> Optional[EmailTemplate]:
        template = self.get(org_id, template_id)
        if not template:
            return None
        for field in ("name", "subject", "html_content", "text_content", "is_archived"):
            if field in kwargs and kwargs[field] is not None:
                setattr(template, field, kwargs[field])
        template.variables = extract_variables(
            f"{template.subject} {template.html_content} {template.text_content or ''}"
        )
        self.session.commit()
        self.session.refresh(template)
        return template

    def archive(self, org_id: int, template_id: int) -> bool:
        """Templates are archived rather than deleted so email logs keep their reference."""
        return self.update(org_id, template_id, is_archived=True) is not None

    def preview(self, template: EmailTemplate, contact: Optional[Contact] = None) -> dict:
        """Render a template for a contact, or with placeholder sample values."""
        if contact is not None:
            variables = build_contact_variables(contact)
        else:
            variables = {
                "first_name": "Jane",
                "last_name": "Doe",
                "full_name": "Jane Doe",
                "email": "jane@example.com",
                "company_name": "Acme Co",
                "job_title": "Director",
            }
        return {
            "subject": interpolate_template(template.subject, variables),
            "html": interpolate_template(template.html_content, variables),
            "text": interpolate_template(template.text_content, variables)
            if template.text_content
            else None,
            "variables": extract_variables(template.html_content),
            "available_variables": TEMPLATE_VARIABLES,
        }


# =============================================================================
# AUTOMATIONS
# =============================================================================


class AutomationService:
    """Service for automations, their steps and enrollments."""

    def __init__(self, session: Session, email_service: Optional[EmailService] = None):
        self.session = session
        self.email_service = email_service

    def get(self, org_id: int, automation_id: int) -> Optional[Automation]:
        return (
            self.session.query(Automation)
            .options(joinedload(Automation.steps))
            .filter(Automation.org_id == org_id, Automation.id == automation_id)
            .first()
        )

    def list(self, org_id: int, status: Optional[AutomationStatus] = None) -> list[dict]:
        """List automations with their active enrollment counts."""
        query = self.session.query(Automation).filter(Automation.org_id == org_id)
        if status:
            query = query.filter(Automation.status == status)
        automations = query.order_by(Automation.created_at.desc()).all()

        counts = dict(
            self.session.query(AutomationEnrollment.automation_id, func.count(AutomationEnrollment.id))
            .join(Automation, Automation.id == AutomationEnrollment.automation_id)
            .filter(
                Automation.org_id == org_id,
                AutomationEnrollment.status == EnrollmentStatus.ACTIVE,
            )
            .group_by(AutomationEnrollment.automation_id)
            .all()
        )
        return [
            {"automation": automation, "enrollment_count": counts.get(automation.id, 0)}
            for automation in automations
        ]

    def create(
        self,
        org_id: int,
        name: str,
        trigger_type: AutomationTriggerType = AutomationTriggerType.MANUAL,
        trigger_config: Optional[dict] = None,
        description: Optional[str] = None,
        steps: Optional[list[dict]] = None,
        created_by: Optional[int] = None,
    ) -> Automation:
        if not name:
            raise ValidationError("Automation name is required")
        automation = Automation(
            org_id=org_id,
            name=name,
            description=description,
            trigger_type=trigger_type,
            trigger_config=trigger_config or {},
            created_by=created_by,
        )
        self.session.add(automation)
        self.session.flush()
        if steps:
            self._write_steps(automation, steps)
        self.session.commit()
        self.session.refresh(automation)
        logger.info(f"Automation {automation.id} created in org {org_id}")
        return automation

    def update(self, org_id: int, automation_id: int, **kwargs) -> Optional[Automation]:
        automation = self.get(org_id, automation_id)
        if not automation:
            return None
        for field in ("name", "description", "status", "trigger_type", "trigger_config"):
            if field in kwargs and kwargs[field] is not None:
                setattr(automation, field, kwargs[field])
        if kwargs.get("steps") is not None:
            self.replace_steps(automation, kwargs["steps"], commit=False)
        self.session.commit()
        self.session.refresh(automation)
        return automation

    def replace_steps(self, automation: Automation, steps: list[dict], commit: bool = True) -> None:
        """Replace the step list; step_order is reassigned 1..n in the given order."""
        automation.steps.clear()
        self.session.flush()
        self._write_steps(automation, steps)
        if commit:
            self.session.commit()

    def _write_steps(self, automation: Automation, steps: list[dict]) -> None:
        for index, data in enumerate(steps, start=1):
            step_type = data.get("step_type")
            if isinstance(step_type, str):
                step_type = StepType(step_type)
            delay_unit = data.get("delay_unit")
            if isinstance(delay_unit, str):
                delay_unit = DelayUnit(delay_unit)
            if step_type == StepType.EMAIL and data.get("template_id"):
                if not TemplateService(self.session).get(automation.org_id, data["template_id"]):
                    raise ValidationError(f"Template {data['template_id']} not found")
            automation.steps.append(
                AutomationStep(
                    step_order=index,
                    step_type=step_type,
                    template_id=data.get("template_id"),
                    subject_override=data.get("subject_override"),
                    delay_amount=data.get("delay_amount") or 1,
                    delay_unit=delay_unit or DelayUnit.DAYS,
                    config=data.get("config") or {},
                )
            )

    def delete(self, org_id: int, automation_id: int) -> bool:
        automation = self.get(org_id, automation_id)
        if not automation:
            return False
        self.session.delete(automation)
        self.session.commit()
        return True

    # -------------------------------------------------------------------------
    # Enrollments
    # -------------------------------------------------------------------------

    def enroll(
        self,
        automation: Automation,
        contact_ids: list[int],
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> list[AutomationEnrollment]:
        """
        Enroll contacts at the start of an automation.

        Contacts outside the automation's org are ignored, as are contacts that
        already have an active enrollment in it.
        """
        if automation.status == AutomationStatus.ARCHIVED:
            raise ValidationError("Cannot enroll contacts in an archived automation")

        now = now or utcnow()
        valid_ids = {
            cid
            for (cid,) in self.session.query(Contact.id).filter(
                Contact.org_id == automation.org_id, Contact.id.in_(contact_ids)
            )
        }
        already_active = {
            cid
            for (cid,) in self.session.query(AutomationEnrollment.contact_id).filter(
                AutomationEnrollment.automation_id == automation.id,
                AutomationEnrollment.status == EnrollmentStatus.ACTIVE,
            )
        }

        enrollments = []
        for contact_id in dict.fromkeys(contact_ids):
            if contact_id not in valid_ids or contact_id in already_active:
                continue
            enrollment = AutomationEnrollment(
                automation_id=automation.id,
                contact_id=contact_id,
                status=EnrollmentStatus.ACTIVE,
                current_step_order=0,
                next_action_at=now,
                started_at=now,
            )
            self.session.add(enrollment)
            enrollments.append(enrollment)

        if commit:
            self.session.commit()
        if enrollments:
            logger.info(f"Enrolled {len(enrollments)} contact(s) in automation {automation.id}")
        return enrollments

    def get_enrollment(self, org_id: int, enrollment_id: int) -> Optional[AutomationEnrollment]:
        return (
            self.session.query(AutomationEnrollment)
            .join(Automation, Automation.id == AutomationEnrollment.automation_id)
            .filter(Automation.org_id == org_id, AutomationEnrollment.id == enrollment_id)
            .first()
        )

    def list_enrollments(
        self,
        org_id: int,
        automation_id: int,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[AutomationEnrollment]:
        query = (
            self.session.query(AutomationEnrollment)
            .options(joinedload(AutomationEnrollment.contact))
            .join(Automation, Automation.id == AutomationEnrollment.automation_id)
            .filter(Automation.org_id == org_id, AutomationEnrollment.automation_id == automation_id)
        )
        if status:
            query = query.filter(AutomationEnrollment.status == status)
        return query.order_by(AutomationEnrollment.started_at.desc()).all()

    def set_enrollment_status(
        self, org_id: int, enrollment_id: int, status: EnrollmentStatus
    ) -> AutomationEnrollment:
        """Pause, resume or cancel an enrollment. Finished enrollments are final."""
        enrollment = self.get_enrollment(org_id, enrollment_id)
        if not enrollment:
            raise NotFoundError("Enrollment not found")
        if enrollment.status in (EnrollmentStatus.COMPLETED, EnrollmentStatus.FAILED):
            raise ValidationError(f"Enrollment is already {enrollment.status.value}")
        if status not in (EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED, EnrollmentStatus.CANCELED):
            raise ValidationError(f"Cannot set enrollment status to {status.value}")

        enrollment.status = status
        if status == EnrollmentStatus.ACTIVE and enrollment.next_action_at is None:
            enrollment.next_action_at = utcnow()
        self.session.commit()
        self.session.refresh(enrollment)
        return enrollment

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def _active_automations(self, org_id: int, trigger_type: AutomationTriggerType) -> list[Automation]:
        return (
            self.session.query(Automation)
            .filter(
                Automation.org_id == org_id,
                Automation.status == AutomationStatus.ACTIVE,
                Automation.trigger_type == trigger_type,
            )
            .all()
        )

    def handle_contact_created(self, contact: Contact) -> int:
        """Auto-enroll a new contact in active on_contact_create automations."""
        enrolled = 0
        for automation in self._active_automations(
            contact.org_id, AutomationTriggerType.ON_CONTACT_CREATE
        ):
            enrolled += len(self.enroll(automation, [contact.id], commit=False))
        return enrolled

    def handle_tag_added(self, org_id: int, contact_id: int, tag_id: int) -> int:
        """Auto-enroll a contact in active on_tag_added automations watching this tag."""
        enrolled = 0
        for automation in self._active_automations(org_id, AutomationTriggerType.ON_TAG_ADDED):
            watched = (automation.trigger_config or {}).get("tag_id")
            if watched is not None and int(watched) == tag_id:
                enrolled += len(self.enroll(automation, [contact_id], commit=False))
        return enrolled

    # -------------------------------------------------------------------------
    # Manual send
    # -------------------------------------------------------------------------

    def get_sendable_contact(self, org_id: int, contact_id: int) -> Contact:
        contact = (
            self.session.query(Contact)
            .options(joinedload(Contact.company))
            .filter(Contact.org_id == org_id, Contact.id == contact_id)
            .first()
        )
        if not contact:
            raise NotFoundError("Contact not found")
        if not contact.email:
            raise ValidationError("Contact has no email address")
        return contact

    def send_template(
        self,
        org: Organization,
        contact_id: int,
        template_id: int,
        sent_by: Optional[int] = None,
        subject_override: Optional[str] = None,
        automation_id: Optional[int] = None,
        step_id: Optional[int] = None,
        enrollment_id: Optional[int] = None,
    ) -> EmailLog:
        """Send one template to one contact, logging the email and an activity."""
        contact = self.get_sendable_contact(org.id, contact_id)

        template = TemplateService(self.session).get(org.id, template_id)
        if not template:
            raise NotFoundError("Template not found")

        log = _deliver(
            self.session,
            self.email_service,
            org,
            contact,
            template,
            subject_override,
            automation_id=automation_id,
            step_id=step_id,
            enrollment_id=enrollment_id,
        )
        ActivityService(self.session).log(
            org_id=org.id,
            entity_type=EntityType.CONTACT,
            entity_id=contact.id,
            activity_type=ActivityType.EMAIL,
            title=f"Email sent: {log.subject}",
            description=f'Automated email sent using template "{template.name}"',
            meta={
                "template_id": template.id,
                "automation_id": automation_id,
                "resend_id": log.resend_id,
            },
            created_by=sent_by,
        )
        self.session.commit()
        self.session.refresh(log)
        return log


def _deliver(
    session: Session,
    email_service: Optional[EmailService],
    org: Organization,
    contact: Contact,
    template: EmailTemplate,
    subject_override: Optional[str],
    automation_id: Optional[int] = None,
    step_id: Optional[int] = None,
    enrollment_id: Optional[int] = None,
) -> EmailLog:
    """Interpolate, send and log one email. Adds the log row to the session."""
    email_service = email_service or EmailService()
    variables = build_contact_variables(contact)
    subject = interpolate_template(subject_override or template.subject, variables)
    html = interpolate_template(template.html_content, variables)
    text = interpolate_template(template.text_content, variables) if template.text_content else None

    sent = email_service.send(
        to=contact.email,
        subject=subject,
        html=html,
        text=text,
        from_address=get_from_address(org.name),
    )

    log = EmailLog(
        org_id=org.id,
        enrollment_id=enrollment_id,
        automation_id=automation_id,
        step_id=step_id,
        template_id=template.id,
        contact_id=contact.id,
        resend_id=sent.id,
        to_email=contact.email,
        subject=subject,
        status=EmailLogStatus.SENT,
    )
    session.add(log)
    return log


# =============================================================================
# ENROLLMENT PROCESSOR
# =============================================================================


class EnrollmentProcessor:
    """
    Advances due enrollments through their automation steps.

    Each call handles at most one step per enrollment: a delay step schedules
    the next action in the future, an email step sends and makes the
    enrollment due again immediately, and running out of steps completes it.
    Failures are recorded on the enrollment and never stop the batch.
    """

    def __init__(self, session: Session, email_service: Optional[EmailService] = None):
        self.session = session
        self.email_service = email_service
        self.settings = get_settings()

    def due_enrollments(self, now: datetime, batch_size: int) -> list[AutomationEnrollment]:
        return (
            self.session.query(AutomationEnrollment)
            .filter(
                AutomationEnrollment.status == EnrollmentStatus.ACTIVE,
                AutomationEnrollment.next_action_at.isnot(None),
                AutomationEnrollment.next_action_at <= now,
            )
            .order_by(AutomationEnrollment.next_action_at, AutomationEnrollment.id)
            .limit(batch_size)
            .all()
        )

    def process_due(self, now: Optional[datetime] = None, batch_size: Optional[int] = None) -> dict:
        """
        Process one batch of due enrollments.

        Returns:
            dict with "processed" and "errors" counts
        """
        now = now or utcnow()
        batch_size = batch_size or self.settings.automation_batch_size
        stats = {"processed": 0, "errors": 0}

        for enrollment in self.due_enrollments(now, batch_size):
            try:
                outcome = self.process_enrollment(enrollment, now)
            except Exception as e:
                self.session.rollback()
                logger.error(f"Enrollment {enrollment.id} failed: {e}")
                self._fail(enrollment, str(e) or e.__class__.__name__)
                stats["errors"] += 1
                continue

            if outcome == "processed":
                stats["processed"] += 1
            elif outcome == "error":
                stats["errors"] += 1

        logger.info(f"Automation batch done: {stats['processed']} processed, {stats['errors']} errors")
        return stats

    def process_enrollment(self, enrollment: AutomationEnrollment, now: datetime) -> str:
        """Advance one enrollment by one step. Returns "processed", "error" or "skipped"."""
        automation = self.session.get(Automation, enrollment.automation_id)
        if not automation or automation.status != AutomationStatus.ACTIVE:
            return "skipped"

        next_step = next(
            (
                step
                for step in sorted(automation.steps, key=lambda s: s.step_order)
                if step.step_order > enrollment.current_step_order
            ),
            None,
        )
        if next_step is None:
            enrollment.status = EnrollmentStatus.COMPLETED
            enrollment.completed_at = now
            self.session.commit()
            return "processed"

        if next_step.step_type == StepType.EMAIL:
            return self._run_email_step(automation, enrollment, next_step, now)

        if next_step.step_type == StepType.DELAY:
            enrollment.next_action_at = now + compute_delay(next_step.delay_amount, next_step.delay_unit)
        else:
            # No condition evaluator; pass over the step
            enrollment.next_action_at = now
        enrollment.current_step_order = next_step.step_order
        self.session.commit()
        return "processed"

    def _run_email_step(
        self,
        automation: Automation,
        enrollment: AutomationEnrollment,
        step: AutomationStep,
        now: datetime,
    ) -> str:
        contact = (
            self.session.query(Contact)
            .options(joinedload(Contact.company))
            .filter(Contact.id == enrollment.contact_id)
            .first()
        )
        if not contact or not contact.email:
            self._fail(enrollment, "Contact not found" if not contact else "Contact has no email")
            return "error"

        template = self.session.get(EmailTemplate, step.template_id) if step.template_id else None
        if not template:
            self._fail(enrollment, "Email step has no template")
            return "error"

        org = self.session.get(Organization, automation.org_id)
        _deliver(
            self.session,
            self.email_service,
            org,
            contact,
            template,
            step.subject_override,
            automation_id=automation.id,
            step_id=step.id,
            enrollment_id=enrollment.id,
        )
        automation.bump_stat("sent")
        enrollment.current_step_order = step.step_order
        enrollment.next_action_at = now
        self.session.commit()
        return "processed"

    def _fail(self, enrollment: AutomationEnrollment, message: str) -> None:
        enrollment.status = EnrollmentStatus.FAILED
        enrollment.error_message = message
        self.session.commit()
        logger.warning(f"Enrollment {enrollment.id} marked failed: {message}")
