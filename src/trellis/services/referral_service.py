"""
Referral service - Core CRUD operations and referral chain logic.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload

from trellis.exceptions import NotFoundError, ValidationError
from trellis.models import (
    ActivityType,
    Contact,
    Deal,
    EntityType,
    Referral,
    ReferralStatus,
    ReferralType,
    utcnow,
)
from trellis.services.activity_service import ActivityService

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {"deal_id", "referral_date", "referral_type", "status", "referral_value", "notes"}


class ReferralService:
    """Service for managing referrals between contacts."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, org_id: int, referral_id: int) -> Optional[Referral]:
        """Get a referral by ID with both contacts loaded."""
        return (
            self.session.query(Referral)
            .options(
                joinedload(Referral.referrer),
                joinedload(Referral.referred),
                joinedload(Referral.deal),
            )
            .filter(Referral.org_id == org_id, Referral.id == referral_id)
            .first()
        )

    def list(
        self,
        org_id: int,
        contact_id: Optional[int] = None,
        status: Optional[ReferralStatus] = None,
        page: int = 0,
        page_size: int = 25,
    ) -> tuple[list[Referral], int]:
        """List referrals, newest first. contact_id matches either side."""
        query = self.session.query(Referral).filter(Referral.org_id == org_id)
        if contact_id:
            query = query.filter(
                or_(Referral.referrer_id == contact_id, Referral.referred_id == contact_id)
            )
        if status:
            query = query.filter(Referral.status == status)

        total = query.count()
        referrals = (
            query.options(joinedload(Referral.referrer), joinedload(Referral.referred))
            .order_by(Referral.referral_date.desc(), Referral.id.desc())
            .offset(max(page, 0) * page_size)
            .limit(page_size)
            .all()
        )
        return referrals, total

    def create(
        self,
        org_id: int,
        referrer_id: int,
        referred_id: int,
        referral_type: ReferralType = ReferralType.DIRECT,
        status: ReferralStatus = ReferralStatus.PENDING,
        referral_date: Optional[datetime] = None,
        deal_id: Optional[int] = None,
        referral_value: Optional[float] = None,
        notes: Optional[str] = None,
        created_by: Optional[int] = None,
    ) -> Referral:
        """
        Record that `referrer` referred `referred`.

        Chain position is derived from the referrer's own most recent inbound
        referral; the referred contact's generation becomes one past the
        referrer's.
        """
        if referrer_id == referred_id:
            raise ValidationError("A contact cannot refer themselves")

        referrer = self._get_contact(org_id, referrer_id)
        referred = self._get_contact(org_id, referred_id)
        if deal_id is not None:
            self._check_deal(org_id, deal_id)

        depth, root_id = self.chain_position(org_id, referrer_id)

        referral = Referral(
            org_id=org_id,
            referrer_id=referrer_id,
            referred_id=referred_id,
            referral_type=referral_type,
            status=status,
            referral_date=referral_date or utcnow(),
            deal_id=deal_id,
            referral_value=referral_value,
            notes=notes,
            depth=depth,
            root_referrer_id=root_id,
        )
        self.session.add(referral)

        generation = (referrer.generation or 1) + 1
        if referred.generation is None or referred.generation > generation:
            referred.generation = generation

        self.session.flush()
        activities = ActivityService(self.session)
        activities.log(
            org_id=org_id,
            entity_type=EntityType.CONTACT,
            entity_id=referrer.id,
            activity_type=ActivityType.REFERRAL_MADE,
            title=f"{referrer.full_name} referred {referred.full_name}",
            meta={"referral_id": referral.id},
            created_by=created_by,
        )
        activities.log(
            org_id=org_id,
            entity_type=EntityType.CONTACT,
            entity_id=referred.id,
            activity_type=ActivityType.REFERRAL_RECEIVED,
            title=f"{referred.full_name} was referred by {referrer.full_name}",
            meta={"referral_id": referral.id},
            created_by=created_by,
        )

        self.recalculate_contact_metrics(referrer_id)
        self.session.commit()
        self.session.refresh(referral)
        logger.info(f"Referral {referral.id} created: {referrer_id} -> {referred_id} (depth {depth})")
        return referral

    def chain_position(self, org_id: int, referrer_id: int) -> tuple[int, int]:
        """(depth, root_referrer_id) for a new referral made by `referrer_id`."""
        parent = (
            self.session.query(Referral)
            .filter(Referral.org_id == org_id, Referral.referred_id == referrer_id)
            .order_by(Referral.referral_date.desc(), Referral.id.desc())
            .first()
        )
        if parent is None:
            return 0, referrer_id
        return parent.depth + 1, parent.root_referrer_id or parent.referrer_id

    def update(self, org_id: int, referral_id: int, **kwargs) -> Optional[Referral]:
        referral = self.get(org_id, referral_id)
        if not referral:
            return None
        if kwargs.get("deal_id") is not None:
            self._check_deal(org_id, kwargs["deal_id"])
        for field, value in kwargs.items():
            if field in EDITABLE_FIELDS:
                setattr(referral, field, value)
        self.session.flush()
        self.recalculate_contact_metrics(referral.referrer_id)
        self.session.commit()
        self.session.refresh(referral)
        return referral

    def delete(self, org_id: int, referral_id: int) -> bool:
        referral = self.get(org_id, referral_id)
        if not referral:
            return False
        referrer_id = referral.referrer_id
        self.session.delete(referral)
        self.session.flush()
        self.recalculate_contact_metrics(referrer_id)
        self.session.commit()
        return True

    def recalculate_contact_metrics(self, contact_id: int) -> None:
        """
        Refresh a referrer's referral_score (referrals made) and
        lifetime_referral_value (value of converted referrals).
        """
        contact = self.session.get(Contact, contact_id)
        if not contact:
            return
        made = (
            self.session.query(func.count(Referral.id))
            .filter(Referral.referrer_id == contact_id)
            .scalar()
        )
        value = (
            self.session.query(func.coalesce(func.sum(Referral.referral_value), 0))
            .filter(
                Referral.referrer_id == contact_id,
                Referral.status == ReferralStatus.CONVERTED,
            )
            .scalar()
        )
        contact.referral_score = made or 0
        contact.lifetime_referral_value = float(value or 0)

    # -------------------------------------------------------------------------
    # Deals
    # -------------------------------------------------------------------------

    def link_won_deal(self, deal: Deal) -> Optional[Referral]:
        """
        Credit the referral that brought in a won deal's contact.

        The most recent referral of the contact without a deal is linked and
        converted; failing that, a referral already linked to this deal has
        its value refreshed.
        """
        if not deal.contact_id:
            return None

        referral = (
            self.session.query(Referral)
            .filter(
                Referral.org_id == deal.org_id,
                Referral.referred_id == deal.contact_id,
                Referral.deal_id.is_(None),
            )
            .order_by(Referral.referral_date.desc(), Referral.id.desc())
            .first()
        )
        if referral is None:
            referral = (
                self.session.query(Referral)
                .filter(Referral.org_id == deal.org_id, Referral.deal_id == deal.id)
                .first()
            )
            if referral is None:
                return None
        else:
            referral.deal_id = deal.id

        referral.status = ReferralStatus.CONVERTED
        referral.referral_value = deal.value or 0
        self.session.flush()
        self.recalculate_contact_metrics(referral.referrer_id)
        logger.info(f"Deal {deal.id} linked to referral {referral.id}")
        return referral

    # -------------------------------------------------------------------------
    # Chains and graphs
    # -------------------------------------------------------------------------

    def get_referral_chain(
        self,
        org_id: int,
        contact_id: int,
        direction: str = "downstream",
        max_depth: int = 10,
    ) -> list[dict]:
        """
        Walk the referral graph from a contact.

        downstream follows people the contact referred; upstream follows who
        referred the contact. Each contact appears once, at its shortest
        distance, with the path of contact ids from the start.
        """
        if direction not in ("upstream", "downstream"):
            raise ValidationError("direction must be 'upstream' or 'downstream'")
        start = self._get_contact(org_id, contact_id)

        if direction == "downstream":
            from_col, to_col = Referral.referrer_id, Referral.referred_id
        else:
            from_col, to_col = Referral.referred_id, Referral.referrer_id

        nodes = [
            {
                "contact_id": start.id,
                "first_name": start.first_name,
                "last_name": start.last_name,
                "depth": 0,
                "path": [start.id],
            }
        ]
        visited = {start.id}
        queue = deque([(start.id, [start.id])])

        while queue:
            current, path = queue.popleft()
            if len(path) - 1 >= max_depth:
                continue
            neighbours = (
                self.session.query(Contact)
                .join(Referral, to_col == Contact.id)
                .filter(Referral.org_id == org_id, from_col == current)
                .order_by(Contact.id)
                .all()
            )
            for contact in neighbours:
                if contact.id in visited:
                    continue
                visited.add(contact.id)
                node_path = path + [contact.id]
                nodes.append(
                    {
                        "contact_id": contact.id,
                        "first_name": contact.first_name,
                        "last_name": contact.last_name,
                        "depth": len(node_path) - 1,
                        "path": node_path,
                    }
                )
                queue.append((contact.id, node_path))
        return nodes

    def build_graph(self, org_id: int, limit: int = 500) -> dict:
        """Contacts as nodes and referrals as edges, for the visualization views."""
        contacts = (
            self.session.query(Contact)
            .filter(Contact.org_id == org_id)
            .order_by(Contact.referral_score.desc(), Contact.id)
            .limit(limit)
            .all()
        )
        ids = {c.id for c in contacts}
        referrals = (
            self.session.query(Referral)
            .filter(
                Referral.org_id == org_id,
                Referral.referrer_id.in_(ids),
                Referral.referred_id.in_(ids),
            )
            .all()
        )
        return {
            "nodes": [
                {
                    "id": c.id,
                    "label": c.full_name,
                    "relationship_type": c.relationship_type.value,
                    "referral_score": c.referral_score,
                    "lifetime_referral_value": c.lifetime_referral_value,
                    "generation": c.generation,
                    "industry": c.industry,
                }
                for c in contacts
            ],
            "edges": [
                {
                    "id": r.id,
                    "source": r.referrer_id,
                    "target": r.referred_id,
                    "status": r.status.value,
                    "value": r.referral_value,
                    "depth": r.depth,
                }
                for r in referrals
            ],
        }

    def _get_contact(self, org_id: int, contact_id: int) -> Contact:
        contact = (
            self.session.query(Contact)
            .filter(Contact.org_id == org_id, Contact.id == contact_id)
            .first()
        )
        if not contact:
            raise NotFoundError(f"Contact {contact_id} not found")
        return contact

    def _check_deal(self, org_id: int, deal_id: int) -> None:
        if not self.session.query(Deal.id).filter(Deal.org_id == org_id, Deal.id == deal_id).first():
            raise ValidationError("Deal not found")
