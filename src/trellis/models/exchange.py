"""
Referral exchange models.

This module contains:
- ReferralExchange: A contact shared from one user's org to another user
- ExchangeMessage: Conversation between sender and receiver once accepted
- DirectoryProfile: Public listing used to find exchange partners
- ExchangeTrustScore: Per-user reputation derived from exchange outcomes
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from trellis.models.base import Base, utcnow
from trellis.models.enums import ExchangeStatus, ReceiverStatus
from trellis.models.organization import Organization, UserProfile


# =============================================================================
# EXCHANGE MODELS
# =============================================================================


class ReferralExchange(Base):
    """
    A referral sent across organizations.

    contact_snapshot is a frozen copy of the contact at send time
    (first_name, last_name, company_name, email, phone, industry); the
    receiver gets a fresh contact built from it on accept.
    """

    __tablename__ = "referral_exchanges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    sender_user_id: Mapped[int] = mapped_column(
        ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_org_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    receiver_user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("user_profiles.id", ondelete="SET NULL"), index=True
    )
    receiver_email: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    contact_snapshot: Mapped[dict] = mapped_column(JSON, default=dict)
    context_note: Mapped[Optional[str]] = mapped_column(Text)
    source_contact_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("contacts.id", ondelete="SET NULL")
    )
    status: Mapped[ExchangeStatus] = mapped_column(
        Enum(ExchangeStatus), default=ExchangeStatus.PENDING, index=True
    )
    receiver_status: Mapped[ReceiverStatus] = mapped_column(
        Enum(ReceiverStatus), default=ReceiverStatus.NONE
    )
    receiver_status_visible: Mapped[bool] = mapped_column(Boolean, default=True)
    imported_contact_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("contacts.id", ondelete="SET NULL")
    )
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    declined_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, index=True)

    # Sender-side draft details
    interest_level: Mapped[Optional[str]] = mapped_column(String(50))
    contact_approach: Mapped[Optional[str]] = mapped_column(String(50))
    internal_notes: Mapped[Optional[str]] = mapped_column(Text)
    sender_metadata: Mapped[dict] = mapped_column(JSON, default=dict)
    notify_on_connect: Mapped[bool] = mapped_column(Boolean, default=False)
    remind_follow_up: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    sender: Mapped["UserProfile"] = relationship("UserProfile", foreign_keys=[sender_user_id])
    receiver: Mapped[Optional["UserProfile"]] = relationship(
        "UserProfile", foreign_keys=[receiver_user_id]
    )
    sender_org: Mapped["Organization"] = relationship("Organization")
    messages: Mapped[list["ExchangeMessage"]] = relationship(
        "ExchangeMessage",
        back_populates="exchange",
        cascade="all, delete-orphan",
        order_by="ExchangeMessage.created_at",
    )

    @property
    def contact_name(self) -> str:
        snapshot = self.contact_snapshot or {}
        return " ".join(
            part for part in (snapshot.get("first_name"), snapshot.get("last_name")) if part
        )

    def __repr__(self) -> str:
        return f"<ReferralExchange(id={self.id}, status={self.status.value})>"


class ExchangeMessage(Base):
    """A message between the two parties of an accepted exchange."""

    __tablename__ = "exchange_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    exchange_id: Mapped[int] = mapped_column(
        ForeignKey("referral_exchanges.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_user_id: Mapped[int] = mapped_column(
        ForeignKey("user_profiles.id", ondelete="CASCADE"), nullable=False
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    exchange: Mapped["ReferralExchange"] = relationship(
        "ReferralExchange", back_populates="messages"
    )
    sender: Mapped["UserProfile"] = relationship("UserProfile")


# =============================================================================
# DIRECTORY & TRUST
# =============================================================================


class DirectoryProfile(Base):
    """A user's public listing in the referral directory."""

    __tablename__ = "directory_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("user_profiles.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    company_name: Mapped[Optional[str]] = mapped_column(String(255))
    industry: Mapped[Optional[str]] = mapped_column(String(100), index=True)
    location: Mapped[Optional[str]] = mapped_column(String(255))
    bio: Mapped[Optional[str]] = mapped_column(Text)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500))
    specialties: Mapped[list] = mapped_column(JSON, default=list)
    referral_categories: Mapped[list] = mapped_column(JSON, default=list)
    accepts_referrals: Mapped[bool] = mapped_column(Boolean, default=True)
    is_visible: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    user: Mapped["UserProfile"] = relationship("UserProfile")


class ExchangeTrustScore(Base):
    """Aggregated exchange reputation for one user. Rates are 0-1, rating 0-100."""

    __tablename__ = "exchange_trust_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("user_profiles.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    total_sent: Mapped[int] = mapped_column(Integer, default=0)
    sent_accepted: Mapped[int] = mapped_column(Integer, default=0)
    sent_declined: Mapped[int] = mapped_column(Integer, default=0)
    sent_converted: Mapped[int] = mapped_column(Integer, default=0)
    total_received: Mapped[int] = mapped_column(Integer, default=0)
    received_accepted: Mapped[int] = mapped_column(Integer, default=0)
    received_declined: Mapped[int] = mapped_column(Integer, default=0)
    received_converted: Mapped[int] = mapped_column(Integer, default=0)
    acceptance_rate: Mapped[float] = mapped_column(Float, default=0.0)
    conversion_rate: Mapped[float] = mapped_column(Float, default=0.0)
    responsiveness: Mapped[float] = mapped_column(Float, default=0.0)
    trust_rating: Mapped[int] = mapped_column(Integer, default=0)
    avg_response_hours: Mapped[float] = mapped_column(Float, default=0.0)
    last_computed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
