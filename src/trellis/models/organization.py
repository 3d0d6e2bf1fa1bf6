"""
Tenancy models.

This module contains:
- Organization: The tenant; owns every CRM record via org_id
- OrgMember: Membership of a user in an organization
- UserProfile: A person who can sign in and belong to organizations
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from trellis.models.base import Base, utcnow
from trellis.models.enums import OrgRole, PlanType, SubscriptionStatus

if TYPE_CHECKING:
    from trellis.models.crm import PipelineStage


# =============================================================================
# ORGANIZATION MODEL
# =============================================================================


class Organization(Base):
    """A tenant. Plan limits are denormalized onto the row by billing webhooks."""

    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    logo_url: Mapped[Optional[str]] = mapped_column(String(500))
    website: Mapped[Optional[str]] = mapped_column(String(500))
    industry: Mapped[Optional[str]] = mapped_column(String(100))

    # Billing
    plan: Mapped[PlanType] = mapped_column(Enum(PlanType), default=PlanType.FREE, index=True)
    polar_customer_id: Mapped[Optional[str]] = mapped_column(String(255))
    polar_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    subscription_status: Mapped[Optional[SubscriptionStatus]] = mapped_column(
        Enum(SubscriptionStatus)
    )
    max_contacts: Mapped[int] = mapped_column(Integer, default=50)
    max_users: Mapped[int] = mapped_column(Integer, default=1)

    settings: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    members: Mapped[list["OrgMember"]] = relationship(
        "OrgMember", back_populates="organization", cascade="all, delete-orphan"
    )
    pipeline_stages: Mapped[list["PipelineStage"]] = relationship(
        "PipelineStage",
        back_populates="organization",
        cascade="all, delete-orphan",
        order_by="PipelineStage.display_order",
    )

    @property
    def is_paid(self) -> bool:
        return self.plan != PlanType.FREE

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, slug='{self.slug}', plan={self.plan.value})>"


class OrgMember(Base):
    """Membership of a user in an organization."""

    __tablename__ = "org_members"
    __table_args__ = (UniqueConstraint("org_id", "user_id", name="uq_org_member"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(
        ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[OrgRole] = mapped_column(Enum(OrgRole), default=OrgRole.MEMBER)
    invited_email: Mapped[Optional[str]] = mapped_column(String(255))
    invited_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    organization: Mapped["Organization"] = relationship("Organization", back_populates="members")
    user: Mapped["UserProfile"] = relationship(
        "UserProfile", back_populates="memberships", foreign_keys=[user_id]
    )


# =============================================================================
# USER PROFILE
# =============================================================================


class UserProfile(Base):
    """A signed-in user. Identity itself is owned by the auth provider."""

    __tablename__ = "user_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255))
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    job_title: Mapped[Optional[str]] = mapped_column(String(255))
    active_org_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("organizations.id", ondelete="SET NULL")
    )
    onboarding_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    is_platform_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    preferences: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    active_org: Mapped[Optional["Organization"]] = relationship(
        "Organization", foreign_keys=[active_org_id]
    )
    memberships: Mapped[list["OrgMember"]] = relationship(
        "OrgMember", back_populates="user", foreign_keys="OrgMember.user_id"
    )

    def __repr__(self) -> str:
        return f"<UserProfile(id={self.id}, email='{self.email}')>"
