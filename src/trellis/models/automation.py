"""
Email nurture automation models.

This module contains:
- EmailTemplate: Reusable subject/html/text with {{variable}} placeholders
- Automation, AutomationStep: An ordered sequence of email/delay steps
- AutomationEnrollment: A contact's progress through an automation
- EmailLog: One row per email handed to the email provider
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from trellis.models.base import Base, utcnow
from trellis.models.crm import Contact
from trellis.models.enums import (
    AutomationStatus,
    AutomationTriggerType,
    DelayUnit,
    EmailLogStatus,
    EnrollmentStatus,
    StepType,
)


def default_automation_stats() -> dict:
    return {"sent": 0, "opened": 0, "clicked": 0, "bounced": 0}


class EmailTemplate(Base):
    """An email template owned by an organization."""

    __tablename__ = "email_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    text_content: Mapped[Optional[str]] = mapped_column(Text)
    variables: Mapped[list] = mapped_column(JSON, default=list)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False)
    created_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("user_profiles.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Automation(Base):
    """A named sequence of steps that contacts are enrolled into."""

    __tablename__ = "automations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[AutomationStatus] = mapped_column(
        Enum(AutomationStatus), default=AutomationStatus.DRAFT, index=True
    )
    trigger_type: Mapped[AutomationTriggerType] = mapped_column(
        Enum(AutomationTriggerType), default=AutomationTriggerType.MANUAL
    )
    trigger_config: Mapped[dict] = mapped_column(JSON, default=dict)
    stats: Mapped[dict] = mapped_column(JSON, default=default_automation_stats)
    created_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("user_profiles.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    steps: Mapped[list["AutomationStep"]] = relationship(
        "AutomationStep",
        back_populates="automation",
        cascade="all, delete-orphan",
        order_by="AutomationStep.step_order",
    )
    enrollments: Mapped[list["AutomationEnrollment"]] = relationship(
        "AutomationEnrollment", back_populates="automation", cascade="all, delete-orphan"
    )

    def bump_stat(self, key: str, amount: int = 1) -> None:
        """Increment a counter in the JSON stats column."""
        stats = dict(default_automation_stats(), **(self.stats or {}))
        stats[key] = stats.get(key, 0) + amount
        # Reassign so SQLAlchemy notices the change to the JSON value
        self.stats = stats


class AutomationStep(Base):
    """One step of an automation, executed in step_order."""

    __tablename__ = "automation_steps"
    __table_args__ = (
        UniqueConstraint("automation_id", "step_order", name="uq_automation_step_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    automation_id: Mapped[int] = mapped_column(
        ForeignKey("automations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    step_type: Mapped[StepType] = mapped_column(Enum(StepType), nullable=False)
    template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("email_templates.id", ondelete="SET NULL")
    )
    subject_override: Mapped[Optional[str]] = mapped_column(String(500))
    delay_amount: Mapped[Optional[int]] = mapped_column(Integer, default=1)
    delay_unit: Mapped[Optional[DelayUnit]] = mapped_column(
        Enum(DelayUnit), default=DelayUnit.DAYS
    )
    config: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    automation: Mapped["Automation"] = relationship("Automation", back_populates="steps")
    template: Mapped[Optional["EmailTemplate"]] = relationship("EmailTemplate")


class AutomationEnrollment(Base):
    """A contact's position within an automation."""

    __tablename__ = "automation_enrollments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    automation_id: Mapped[int] = mapped_column(
        ForeignKey("automations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    contact_id: Mapped[int] = mapped_column(
        ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[EnrollmentStatus] = mapped_column(
        Enum(EnrollmentStatus), default=EnrollmentStatus.ACTIVE, index=True
    )
    current_step_order: Mapped[int] = mapped_column(Integer, default=0)
    next_action_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    automation: Mapped["Automation"] = relationship("Automation", back_populates="enrollments")
    contact: Mapped["Contact"] = relationship("Contact")


class EmailLog(Base):
    """A single email handed to the provider, updated by delivery webhooks."""

    __tablename__ = "email_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    enrollment_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("automation_enrollments.id", ondelete="SET NULL")
    )
    automation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("automations.id", ondelete="SET NULL"), index=True
    )
    step_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("automation_steps.id", ondelete="SET NULL")
    )
    template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("email_templates.id", ondelete="SET NULL")
    )
    contact_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("contacts.id", ondelete="SET NULL"), index=True
    )
    resend_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    to_email: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[EmailLogStatus] = mapped_column(
        Enum(EmailLogStatus), default=EmailLogStatus.QUEUED, index=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    clicked_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    bounced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
