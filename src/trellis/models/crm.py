"""
Core CRM models.

This module contains:
- Company, Contact: The people and businesses an organization tracks
- Tag, EntityTag: Org-defined labels attached to contacts, companies and deals
- PipelineStage, Deal: Sales pipeline
- Referral: Who referred whom, forming referral chains between contacts
- Activity: Timeline entries for any entity
"""

from datetime import date, datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from trellis.models.base import Base, utcnow
from trellis.models.enums import (
    ActivityType,
    ContactMethod,
    DealStatus,
    DealType,
    EntityType,
    ReferralStatus,
    ReferralType,
    RelationshipType,
)

if TYPE_CHECKING:
    from trellis.models.organization import Organization


# =============================================================================
# COMPANY MODEL
# =============================================================================


class Company(Base):
    """A business that contacts and deals can belong to."""

    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    industry: Mapped[Optional[str]] = mapped_column(String(100))
    website: Mapped[Optional[str]] = mapped_column(String(500))
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    address_line1: Mapped[Optional[str]] = mapped_column(String(255))
    address_line2: Mapped[Optional[str]] = mapped_column(String(255))
    city: Mapped[Optional[str]] = mapped_column(String(100))
    state_province: Mapped[Optional[str]] = mapped_column(String(100))
    postal_code: Mapped[Optional[str]] = mapped_column(String(20))
    country: Mapped[Optional[str]] = mapped_column(String(100))
    employee_count: Mapped[Optional[int]] = mapped_column(Integer)
    annual_revenue: Mapped[Optional[float]] = mapped_column(Float)
    description: Mapped[Optional[str]] = mapped_column(Text)
    logo_url: Mapped[Optional[str]] = mapped_column(String(500))
    linkedin_url: Mapped[Optional[str]] = mapped_column(String(500))
    custom_fields: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    contacts: Mapped[list["Contact"]] = relationship("Contact", back_populates="company")
    deals: Mapped[list["Deal"]] = relationship("Deal", back_populates="company")


# =============================================================================
# CONTACT MODEL
# =============================================================================


class Contact(Base):
    """A person in an organization's network."""

    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    email: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50))
    mobile_phone: Mapped[Optional[str]] = mapped_column(String(50))
    job_title: Mapped[Optional[str]] = mapped_column(String(255))
    company_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("companies.id", ondelete="SET NULL"), index=True
    )
    industry: Mapped[Optional[str]] = mapped_column(String(100))

    # Address
    address_line1: Mapped[Optional[str]] = mapped_column(String(255))
    address_line2: Mapped[Optional[str]] = mapped_column(String(255))
    city: Mapped[Optional[str]] = mapped_column(String(100))
    state_province: Mapped[Optional[str]] = mapped_column(String(100))
    postal_code: Mapped[Optional[str]] = mapped_column(String(20))
    country: Mapped[Optional[str]] = mapped_column(String(100))

    # Social
    linkedin_url: Mapped[Optional[str]] = mapped_column(String(500))
    twitter_url: Mapped[Optional[str]] = mapped_column(String(500))
    facebook_url: Mapped[Optional[str]] = mapped_column(String(500))
    website_url: Mapped[Optional[str]] = mapped_column(String(500))

    # Referral network
    relationship_type: Mapped[RelationshipType] = mapped_column(
        Enum(RelationshipType), default=RelationshipType.CONTACT, index=True
    )
    referral_score: Mapped[int] = mapped_column(Integer, default=0)
    lifetime_referral_value: Mapped[float] = mapped_column(Float, default=0.0)
    rating: Mapped[Optional[int]] = mapped_column(Integer)
    generation: Mapped[Optional[int]] = mapped_column(Integer)  # 1 = directly known

    # Personal
    profile_photo_url: Mapped[Optional[str]] = mapped_column(String(500))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    birthday: Mapped[Optional[date]] = mapped_column(Date)
    anniversary: Mapped[Optional[date]] = mapped_column(Date)
    spouse_partner_name: Mapped[Optional[str]] = mapped_column(String(255))
    preferred_contact_method: Mapped[ContactMethod] = mapped_column(
        Enum(ContactMethod), default=ContactMethod.EMAIL
    )
    custom_fields: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    company: Mapped[Optional["Company"]] = relationship("Company", back_populates="contacts")

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def __repr__(self) -> str:
        return f"<Contact(id={self.id}, name='{self.full_name}')>"


# =============================================================================
# TAGS
# =============================================================================


class Tag(Base):
    """An org-defined label scoped to one entity type."""

    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("org_id", "name", "entity_type", name="uq_tag_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[str] = mapped_column(String(20), default="#5d8a5a")
    entity_type: Mapped[EntityType] = mapped_column(Enum(EntityType), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class EntityTag(Base):
    """Attachment of a tag to a contact, company or deal."""

    __tablename__ = "entity_tags"
    __table_args__ = (
        UniqueConstraint("tag_id", "entity_type", "entity_id", name="uq_entity_tag"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tag_id: Mapped[int] = mapped_column(
        ForeignKey("tags.id", ondelete="CASCADE"), nullable=False, index=True
    )
    entity_type: Mapped[EntityType] = mapped_column(Enum(EntityType), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    tag: Mapped["Tag"] = relationship("Tag")


# =============================================================================
# PIPELINE & DEALS
# =============================================================================


class PipelineStage(Base):
    """A column of an organization's deal pipeline."""

    __tablename__ = "pipeline_stages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0)
    color: Mapped[str] = mapped_column(String(20), default="#94a3b8")
    is_won: Mapped[bool] = mapped_column(Boolean, default=False)
    is_lost: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    organization: Mapped["Organization"] = relationship(
        "Organization", back_populates="pipeline_stages"
    )


class Deal(Base):
    """A sales opportunity, optionally tied to a contact and company."""

    __tablename__ = "deals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[Optional[float]] = mapped_column(Float)
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    stage_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("pipeline_stages.id", ondelete="SET NULL")
    )
    probability: Mapped[Optional[int]] = mapped_column(Integer)
    contact_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("contacts.id", ondelete="SET NULL"), index=True
    )
    company_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("companies.id", ondelete="SET NULL"), index=True
    )
    deal_type: Mapped[DealType] = mapped_column(Enum(DealType), default=DealType.ONE_TIME)
    recurring_interval: Mapped[Optional[str]] = mapped_column(String(50))
    recurring_value: Mapped[Optional[float]] = mapped_column(Float)
    expected_close_date: Mapped[Optional[date]] = mapped_column(Date)
    actual_close_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[DealStatus] = mapped_column(
        Enum(DealStatus), default=DealStatus.OPEN, index=True
    )
    description: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    custom_fields: Mapped[dict] = mapped_column(JSON, default=dict)
    assigned_to: Mapped[Optional[int]] = mapped_column(
        ForeignKey("user_profiles.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    contact: Mapped[Optional["Contact"]] = relationship("Contact")
    company: Mapped[Optional["Company"]] = relationship("Company", back_populates="deals")
    stage: Mapped[Optional["PipelineStage"]] = relationship("PipelineStage")


# =============================================================================
# REFERRAL MODEL
# =============================================================================


class Referral(Base):
    """
    A referral from one contact (referrer) to another (referred).

    depth and root_referrer_id describe the position of the referral in its
    chain: a referral made by a contact nobody referred has depth 0 and its
    referrer is the chain root.
    """

    __tablename__ = "referrals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    referrer_id: Mapped[int] = mapped_column(
        ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    referred_id: Mapped[int] = mapped_column(
        ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    deal_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("deals.id", ondelete="SET NULL"), index=True
    )
    referral_date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    referral_type: Mapped[ReferralType] = mapped_column(
        Enum(ReferralType), default=ReferralType.DIRECT
    )
    status: Mapped[ReferralStatus] = mapped_column(
        Enum(ReferralStatus), default=ReferralStatus.PENDING, index=True
    )
    referral_value: Mapped[Optional[float]] = mapped_column(Float)
    depth: Mapped[int] = mapped_column(Integer, default=0)
    root_referrer_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("contacts.id", ondelete="SET NULL")
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    referrer: Mapped["Contact"] = relationship("Contact", foreign_keys=[referrer_id])
    referred: Mapped["Contact"] = relationship("Contact", foreign_keys=[referred_id])
    deal: Mapped[Optional["Deal"]] = relationship("Deal")

    def __repr__(self) -> str:
        return (
            f"<Referral(id={self.id}, {self.referrer_id}->{self.referred_id}, "
            f"status={self.status.value})>"
        )


# =============================================================================
# ACTIVITY MODEL
# =============================================================================


class Activity(Base):
    """Timeline entry attached to a contact, company, deal or referral."""

    __tablename__ = "activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    entity_type: Mapped[EntityType] = mapped_column(Enum(EntityType), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    activity_type: Mapped[ActivityType] = mapped_column(Enum(ActivityType), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("user_profiles.id", ondelete="SET NULL")
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
