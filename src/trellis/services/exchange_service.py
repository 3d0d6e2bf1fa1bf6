"""
Exchange service - referrals shared between users of different organizations.

Lifecycle:
    draft -> pending -> accepted | declined | expired
    draft -> undeliverable   (receiver exists but is on the free plan)

The sender's active org must be on a paid plan. On accept, the snapshot is
imported as a new contact in the receiver's active organization.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from trellis.config import get_settings
from trellis.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from trellis.models import (
    ActivityType,
    Contact,
    EntityType,
    ExchangeMessage,
    ExchangeStatus,
    Organization,
    PlanType,
    ReceiverStatus,
    ReferralExchange,
    RelationshipType,
    UserProfile,
    utcnow,
)
from trellis.services.activity_service import ActivityService
from trellis.services.automation_service import AutomationService
from trellis.services.email_service import EmailService, get_from_address, render_email
from trellis.services.organization_service import TenantContext
from trellis.services.trust_service import TrustScoreService

logger = logging.getLogger(__name__)

SNAPSHOT_FIELDS = ("first_name", "last_name", "company_name", "email", "phone", "industry")

DRAFT_FIELDS = {
    "receiver_email",
    "contact_snapshot",
    "context_note",
    "source_contact_id",
    "interest_level",
    "contact_approach",
    "internal_notes",
    "sender_metadata",
    "notify_on_connect",
    "remind_follow_up",
}

RECEIVER_STATUS_LABELS = {
    ReceiverStatus.NONE: "No update",
    ReceiverStatus.IN_PROGRESS: "In Progress",
    ReceiverStatus.CONVERTED: "Converted",
    ReceiverStatus.LOST: "Lost",
}

VALID_ACTIONS = ("accept", "decline", "update_status", "update_draft", "publish_draft")

MAX_MESSAGE_LENGTH = 2000


def new_token() -> str:
    return secrets.token_urlsafe(24)


def clean_snapshot(snapshot: Optional[dict]) -> dict:
    """Keep only the known snapshot keys, dropping blanks."""
    snapshot = snapshot or {}
    cleaned = {}
    for key in SNAPSHOT_FIELDS:
        value = snapshot.get(key)
        if isinstance(value, str):
            value = value.strip()
        if value:
            cleaned[key] = value
    return cleaned


def snapshot_from_contact(contact: Contact) -> dict:
    return clean_snapshot(
        {
            "first_name": contact.first_name,
            "last_name": contact.last_name,
            "company_name": contact.company.name if contact.company else None,
            "email": contact.email,
            "phone": contact.phone,
            "industry": contact.industry,
        }
    )


class ExchangeService:
    """Service for the cross-organization referral exchange."""

    def __init__(self, session: Session, email_service: Optional[EmailService] = None):
        self.session = session
        self.email_service = email_service
        self.settings = get_settings()

    def get(self, exchange_id: int) -> Optional[ReferralExchange]:
        return self.session.get(ReferralExchange, exchange_id)

    def _require(self, exchange_id: int) -> ReferralExchange:
        exchange = self.get(exchange_id)
        if not exchange:
            raise NotFoundError("Exchange not found")
        return exchange

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    def list(
        self,
        user_id: int,
        direction: str = "received",
        status: Optional[ExchangeStatus] = None,
        page: int = 0,
        page_size: int = 25,
    ) -> tuple[list[dict], int]:
        """
        List a user's sent or received exchanges, newest first.

        Received rows carry the sender's profile and org; sent rows carry the
        receiver's profile when the receiver is known.
        """
        query = self.session.query(ReferralExchange).options(
            joinedload(ReferralExchange.sender),
            joinedload(ReferralExchange.receiver),
            joinedload(ReferralExchange.sender_org),
        )
        if direction == "sent":
            query = query.filter(ReferralExchange.sender_user_id == user_id)
        else:
            query = query.filter(ReferralExchange.receiver_user_id == user_id)
        if status:
            query = query.filter(ReferralExchange.status == status)

        total = query.count()
        rows = (
            query.order_by(ReferralExchange.created_at.desc(), ReferralExchange.id.desc())
            .offset(page * page_size)
            .limit(page_size)
            .all()
        )

        results = []
        for exchange in rows:
            item = {
                "exchange": exchange,
                "sender_profile": None,
                "sender_org": None,
                "receiver_profile": None,
            }
            if direction == "sent":
                item["receiver_profile"] = exchange.receiver
            else:
                item["sender_profile"] = exchange.sender
                item["sender_org"] = exchange.sender_org
            results.append(item)
        return results, total

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create(
        self,
        ctx: TenantContext,
        receiver_email: Optional[str] = None,
        contact_snapshot: Optional[dict] = None,
        context_note: Optional[str] = None,
        source_contact_id: Optional[int] = None,
        save_as_draft: bool = False,
        **details,
    ) -> ReferralExchange:
        """Create an exchange, either as a draft or sent straight away."""
        ctx.require_paid("Referral exchange requires a paid plan")

        snapshot = clean_snapshot(contact_snapshot)
        if not snapshot and source_contact_id:
            contact = self._source_contact(ctx.org_id, source_contact_id)
            snapshot = snapshot_from_contact(contact)
        elif source_contact_id:
            self._source_contact(ctx.org_id, source_contact_id)

        exchange = ReferralExchange(
            token=new_token(),
            sender_user_id=ctx.user_id,
            sender_org_id=ctx.org_id,
            receiver_email=receiver_email.strip().lower() if receiver_email else None,
            contact_snapshot=snapshot,
            context_note=context_note,
            source_contact_id=source_contact_id,
            **{k: v for k, v in details.items() if k in DRAFT_FIELDS and v is not None},
        )

        if save_as_draft:
            if exchange.receiver_email and exchange.receiver_email == ctx.user.email.lower():
                raise ValidationError("Cannot send a referral to yourself")
            exchange.status = ExchangeStatus.DRAFT
            self.session.add(exchange)
            self.session.commit()
            self.session.refresh(exchange)
            logger.info(f"Exchange draft {exchange.id} saved by user {ctx.user_id}")
            return exchange

        ctx.forbid_impersonation("Cannot send exchanges while impersonating an organization")
        if not exchange.receiver_email or not snapshot:
            raise ValidationError("receiver_email and contact_snapshot are required")
        if not snapshot.get("first_name"):
            raise ValidationError("contact_snapshot must include first_name")
        if exchange.receiver_email == ctx.user.email.lower():
            raise ValidationError("Cannot send a referral to yourself")

        self.session.add(exchange)
        self._dispatch(exchange, ctx.user, ctx.org)
        return exchange

    def _source_contact(self, org_id: int, contact_id: int) -> Contact:
        contact = (
            self.session.query(Contact)
            .options(joinedload(Contact.company))
            .filter(Contact.org_id == org_id, Contact.id == contact_id)
            .first()
        )
        if not contact:
            raise NotFoundError("Source contact not found")
        return contact

    def _resolve_receiver(self, exchange: ReferralExchange) -> None:
        """Attach a registered receiver and pick pending or undeliverable."""
        receiver = (
            self.session.query(UserProfile)
            .filter(func.lower(UserProfile.email) == exchange.receiver_email.lower())
            .first()
        )
        if receiver is None:
            exchange.receiver_user_id = None
            exchange.status = ExchangeStatus.PENDING
            return

        exchange.receiver_user_id = receiver.id
        org = self.session.get(Organization, receiver.active_org_id) if receiver.active_org_id else None
        if org is None or org.plan == PlanType.FREE:
            exchange.status = ExchangeStatus.UNDELIVERABLE
        else:
            exchange.status = ExchangeStatus.PENDING

    def _dispatch(self, exchange: ReferralExchange, sender: UserProfile, org: Organization) -> None:
        """Resolve the receiver, set expiry, commit and notify."""
        self._resolve_receiver(exchange)
        exchange.expires_at = utcnow() + timedelta(days=self.settings.exchange_expiry_days)
        self.session.flush()

        TrustScoreService(self.session).recompute_for_exchange(exchange)
        self.session.commit()
        self.session.refresh(exchange)
        logger.info(
            f"Exchange {exchange.id} sent by user {sender.id} to {exchange.receiver_email} "
            f"({exchange.status.value})"
        )
        self._notify(exchange, sender)

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def build_notification(self, exchange: ReferralExchange, sender: UserProfile) -> tuple[str, str]:
        """Pick the subject and HTML body for the receiver's notification."""
        sender_name = sender.full_name or "Someone"
        contact_name = exchange.contact_name
        context = {
            "sender_name": sender_name,
            "contact_name": contact_name,
            "org_name": exchange.sender_org.name if exchange.sender_org else None,
            "context_note": exchange.context_note,
            "token": exchange.token,
        }

        if exchange.status == ExchangeStatus.UNDELIVERABLE:
            subject = f"{sender_name} wants to send you a referral"
            html = render_email("exchange_undeliverable.html", **context)
        elif exchange.receiver_user_id:
            subject = f"{sender_name} sent you a referral for {contact_name}"
            html = render_email("exchange_received.html", **context)
        else:
            subject = f"{sender_name} sent you a referral on {self.settings.app_name}"
            html = render_email("exchange_invite.html", **context)
        return subject, html

    def _notify(self, exchange: ReferralExchange, sender: UserProfile) -> None:
        """Email the receiver. Failures are logged and never surface to the caller."""
        if self.email_service is None:
            return
        try:
            subject, html = self.build_notification(exchange, sender)
            self.email_service.send(
                to=exchange.receiver_email,
                subject=subject,
                html=html,
                from_address=get_from_address(self.settings.app_name),
            )
        except Exception as e:
            logger.error(f"Exchange notification email failed for exchange {exchange.id}: {e}")

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def apply_action(self, ctx: TenantContext, exchange_id: int, action: str, payload: dict) -> dict:
        """Run one PATCH action against an exchange."""
        ctx.require_paid("Referral exchange requires a paid plan")
        exchange = self._require(exchange_id)

        if action == "accept":
            contact = self.accept(ctx, exchange)
            return {
                "success": True,
                "contact_id": contact.id,
                "message": "Referral accepted and contact imported",
            }
        if action == "decline":
            self.decline(ctx, exchange)
            return {"success": True, "message": "Referral declined"}
        if action == "update_status":
            self.update_status(
                ctx,
                exchange,
                receiver_status=payload.get("receiver_status"),
                receiver_status_visible=payload.get("receiver_status_visible"),
            )
            return {"success": True, "message": "Status updated"}
        if action == "update_draft":
            self.update_draft(ctx, exchange, payload)
            return {"success": True, "message": "Draft updated"}
        if action == "publish_draft":
            self.publish_draft(ctx, exchange)
            return {"success": True, "message": "Referral sent", "status": exchange.status.value}
        raise ValidationError(f"Invalid action. Use one of: {', '.join(VALID_ACTIONS)}")

    def update_draft(self, ctx: TenantContext, exchange: ReferralExchange, fields: dict) -> ReferralExchange:
        if exchange.sender_user_id != ctx.user_id:
            raise PermissionDeniedError("Not authorized to update this draft")
        if exchange.status != ExchangeStatus.DRAFT:
            raise ValidationError("Only drafts can be updated with this action")

        updates = {k: v for k, v in fields.items() if k in DRAFT_FIELDS}
        if not updates:
            raise ValidationError("No fields to update")
        if "contact_snapshot" in updates:
            updates["contact_snapshot"] = clean_snapshot(updates["contact_snapshot"])
        if updates.get("receiver_email"):
            updates["receiver_email"] = updates["receiver_email"].strip().lower()
        if updates.get("source_contact_id"):
            self._source_contact(ctx.org_id, updates["source_contact_id"])

        for field, value in updates.items():
            setattr(exchange, field, value)
        self.session.commit()
        self.session.refresh(exchange)
        return exchange

    def publish_draft(self, ctx: TenantContext, exchange: ReferralExchange) -> ReferralExchange:
        if exchange.sender_user_id != ctx.user_id:
            raise PermissionDeniedError("Not authorized to publish this draft")
        if exchange.status != ExchangeStatus.DRAFT:
            raise ValidationError("Only drafts can be published")
        ctx.forbid_impersonation("Cannot send exchanges while impersonating an organization")
        if not exchange.receiver_email:
            raise ValidationError("Recipient email is required to send a referral")
        if not (exchange.contact_snapshot or {}).get("first_name"):
            raise ValidationError("Contact name is required")
        if exchange.receiver_email.lower() == ctx.user.email.lower():
            raise ValidationError("Cannot send a referral to yourself")

        self._dispatch(exchange, ctx.user, ctx.org)
        return exchange

    def accept(self, ctx: TenantContext, exchange: ReferralExchange) -> Contact:
        """Import the snapshot into the receiver's active org and mark accepted."""
        if exchange.receiver_user_id != ctx.user_id:
            raise PermissionDeniedError("Not authorized to accept this exchange")
        if exchange.status != ExchangeStatus.PENDING:
            raise ValidationError(f"Exchange is already {exchange.status.value}")

        snapshot = exchange.contact_snapshot or {}
        sender_org = exchange.sender_org
        note = f"Received via referral exchange from {sender_org.name if sender_org else 'network'}."
        if exchange.context_note:
            note = f"{note} {exchange.context_note}"

        contact = Contact(
            org_id=ctx.org_id,
            first_name=snapshot.get("first_name") or "Unknown",
            last_name=snapshot.get("last_name"),
            email=snapshot.get("email"),
            phone=snapshot.get("phone"),
            industry=snapshot.get("industry"),
            relationship_type=RelationshipType.CONTACT,
            generation=1,
            notes=note,
        )
        self.session.add(contact)
        self.session.flush()

        now = utcnow()
        exchange.status = ExchangeStatus.ACCEPTED
        exchange.accepted_at = now
        exchange.imported_contact_id = contact.id

        ActivityService(self.session).log(
            org_id=ctx.org_id,
            entity_type=EntityType.CONTACT,
            entity_id=contact.id,
            activity_type=ActivityType.REFERRAL_RECEIVED,
            title=f"{contact.full_name} was received via the referral exchange",
            description=exchange.context_note or "Imported from inter-network referral",
            meta={"exchange_id": exchange.id, "sender_org_id": exchange.sender_org_id},
            created_by=ctx.user_id,
        )
        AutomationService(self.session).handle_contact_created(contact)
        TrustScoreService(self.session).recompute_for_exchange(exchange)

        self.session.commit()
        self.session.refresh(contact)
        logger.info(f"Exchange {exchange.id} accepted; contact {contact.id} imported into org {ctx.org_id}")
        return contact

    def decline(self, ctx: TenantContext, exchange: ReferralExchange) -> ReferralExchange:
        if exchange.receiver_user_id != ctx.user_id:
            raise PermissionDeniedError("Not authorized to decline this exchange")
        if exchange.status != ExchangeStatus.PENDING:
            raise ValidationError(f"Exchange is already {exchange.status.value}")

        exchange.status = ExchangeStatus.DECLINED
        exchange.declined_at = utcnow()
        TrustScoreService(self.session).recompute_for_exchange(exchange)
        self.session.commit()
        self.session.refresh(exchange)
        logger.info(f"Exchange {exchange.id} declined")
        return exchange

    def update_status(
        self,
        ctx: TenantContext,
        exchange: ReferralExchange,
        receiver_status: Optional[str | ReceiverStatus] = None,
        receiver_status_visible: Optional[bool] = None,
    ) -> ReferralExchange:
        """Receiver-side progress on an exchange, optionally shown to the sender."""
        if exchange.receiver_user_id != ctx.user_id:
            raise PermissionDeniedError("Not authorized to update this exchange")

        old_status = exchange.receiver_status
        if receiver_status is not None:
            try:
                new_status = ReceiverStatus(
                    receiver_status.value if isinstance(receiver_status, ReceiverStatus) else receiver_status
                )
            except ValueError:
                raise ValidationError(f"Invalid receiver_status: {receiver_status}")
            exchange.receiver_status = new_status
        if receiver_status_visible is not None:
            exchange.receiver_status_visible = bool(receiver_status_visible)

        if exchange.receiver_status != old_status and exchange.imported_contact_id:
            label = RECEIVER_STATUS_LABELS[exchange.receiver_status]
            ActivityService(self.session).log(
                org_id=ctx.org_id,
                entity_type=EntityType.CONTACT,
                entity_id=exchange.imported_contact_id,
                activity_type=ActivityType.REFERRAL_RECEIVED,
                title=f"Referral status updated to {label}",
                meta={
                    "exchange_id": exchange.id,
                    "old_status": old_status.value,
                    "new_status": exchange.receiver_status.value,
                },
                created_by=ctx.user_id,
            )
        if exchange.receiver_status != old_status:
            TrustScoreService(self.session).recompute_for_exchange(exchange)

        self.session.commit()
        self.session.refresh(exchange)
        return exchange

    def delete(self, user: UserProfile, exchange_id: int) -> None:
        """Senders may withdraw drafts and pending exchanges."""
        exchange = self._require(exchange_id)
        if exchange.sender_user_id != user.id:
            raise PermissionDeniedError("Not authorized to delete this exchange")
        if exchange.status not in (ExchangeStatus.DRAFT, ExchangeStatus.PENDING):
            raise ValidationError(f"Cannot delete an exchange that is {exchange.status.value}")

        sender_id = exchange.sender_user_id
        was_sent = exchange.status != ExchangeStatus.DRAFT
        self.session.delete(exchange)
        self.session.flush()
        if was_sent:
            TrustScoreService(self.session).compute(sender_id)
        self.session.commit()
        logger.info(f"Exchange {exchange_id} deleted by user {user.id}")

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    @staticmethod
    def _is_party(exchange: ReferralExchange, user_id: int) -> bool:
        return user_id in (exchange.sender_user_id, exchange.receiver_user_id)

    def list_messages(self, user: UserProfile, exchange_id: int) -> list[ExchangeMessage]:
        exchange = self._require(exchange_id)
        if not self._is_party(exchange, user.id):
            raise PermissionDeniedError("Not authorized to view this exchange")
        return (
            self.session.query(ExchangeMessage)
            .options(joinedload(ExchangeMessage.sender))
            .filter(ExchangeMessage.exchange_id == exchange.id)
            .order_by(ExchangeMessage.created_at.asc(), ExchangeMessage.id.asc())
            .all()
        )

    def post_message(self, ctx: TenantContext, exchange_id: int, message: Optional[str]) -> ExchangeMessage:
        ctx.forbid_impersonation("Cannot send messages while impersonating")
        exchange = self._require(exchange_id)
        if exchange.status != ExchangeStatus.ACCEPTED:
            raise ValidationError("Messages can only be sent on accepted exchanges")
        if not self._is_party(exchange, ctx.user_id):
            raise PermissionDeniedError("Not authorized to message on this exchange")

        text = (message or "").strip()
        if not text:
            raise ValidationError("Message is required")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message must be {MAX_MESSAGE_LENGTH} characters or less")

        row = ExchangeMessage(exchange_id=exchange.id, sender_user_id=ctx.user_id, message=text)
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row

    # -------------------------------------------------------------------------
    # Expiry
    # -------------------------------------------------------------------------

    def expire_pending(self, now: Optional[datetime] = None) -> int:
        """Mark pending exchanges past their expiry as expired."""
        now = now or utcnow()
        exchanges = (
            self.session.query(ReferralExchange)
            .filter(
                ReferralExchange.status == ExchangeStatus.PENDING,
                ReferralExchange.expires_at.isnot(None),
                ReferralExchange.expires_at <= now,
            )
            .all()
        )
        trust = TrustScoreService(self.session)
        for exchange in exchanges:
            exchange.status = ExchangeStatus.EXPIRED
        for exchange in exchanges:
            trust.recompute_for_exchange(exchange)
        self.session.commit()
        if exchanges:
            logger.info(f"Expired {len(exchanges)} pending exchange(s)")
        return len(exchanges)
