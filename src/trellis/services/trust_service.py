"""
Trust score service - exchange reputation per user.

trust_rating (0-100) weighs how often a user's sent referrals are accepted
(40%), how often accepted ones convert (40%), and how reliably the user
answers referrals sent to them (20%).
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from trellis.models import (
    ExchangeStatus,
    ExchangeTrustScore,
    ReceiverStatus,
    ReferralExchange,
    utcnow,
)

logger = logging.getLogger(__name__)

ACCEPTANCE_WEIGHT = 0.4
CONVERSION_WEIGHT = 0.4
RESPONSIVENESS_WEIGHT = 0.2


def _ratio(numerator: int, denominator: int) -> float:
    return round(numerator / denominator, 4) if denominator else 0.0


class TrustScoreService:
    """Service for computing and reading exchange trust scores."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: int) -> Optional[ExchangeTrustScore]:
        return (
            self.session.query(ExchangeTrustScore)
            .filter(ExchangeTrustScore.user_id == user_id)
            .first()
        )

    def get_many(self, user_ids: list[int]) -> list[ExchangeTrustScore]:
        if not user_ids:
            return []
        return (
            self.session.query(ExchangeTrustScore)
            .filter(ExchangeTrustScore.user_id.in_(user_ids))
            .all()
        )

    def compute(self, user_id: int) -> ExchangeTrustScore:
        """Recompute a user's score from their exchanges. The caller commits."""
        exchanges = (
            self.session.query(ReferralExchange)
            .filter(
                ReferralExchange.status != ExchangeStatus.DRAFT,
                or_(
                    ReferralExchange.sender_user_id == user_id,
                    ReferralExchange.receiver_user_id == user_id,
                ),
            )
            .all()
        )
        sent = [e for e in exchanges if e.sender_user_id == user_id]
        received = [e for e in exchanges if e.receiver_user_id == user_id]

        def tally(rows: list[ReferralExchange]) -> tuple[int, int, int]:
            accepted = sum(1 for e in rows if e.status == ExchangeStatus.ACCEPTED)
            declined = sum(1 for e in rows if e.status == ExchangeStatus.DECLINED)
            converted = sum(
                1
                for e in rows
                if e.status == ExchangeStatus.ACCEPTED and e.receiver_status == ReceiverStatus.CONVERTED
            )
            return accepted, declined, converted

        sent_accepted, sent_declined, sent_converted = tally(sent)
        received_accepted, received_declined, received_converted = tally(received)

        response_hours = [
            ((e.accepted_at or e.declined_at) - e.created_at).total_seconds() / 3600
            for e in received
            if (e.accepted_at or e.declined_at) and e.created_at
        ]

        acceptance = _ratio(sent_accepted, sent_accepted + sent_declined)
        conversion = _ratio(sent_converted, sent_accepted)
        responsiveness = _ratio(received_accepted + received_declined, len(received))

        score = self.get(user_id)
        if score is None:
            score = ExchangeTrustScore(user_id=user_id)
            self.session.add(score)

        score.total_sent = len(sent)
        score.sent_accepted = sent_accepted
        score.sent_declined = sent_declined
        score.sent_converted = sent_converted
        score.total_received = len(received)
        score.received_accepted = received_accepted
        score.received_declined = received_declined
        score.received_converted = received_converted
        score.acceptance_rate = acceptance
        score.conversion_rate = conversion
        score.responsiveness = responsiveness
        score.trust_rating = round(
            100
            * (
                ACCEPTANCE_WEIGHT * acceptance
                + CONVERSION_WEIGHT * conversion
                + RESPONSIVENESS_WEIGHT * responsiveness
            )
        )
        score.avg_response_hours = (
            round(sum(response_hours) / len(response_hours), 2) if response_hours else 0.0
        )
        score.last_computed_at = utcnow()
        return score

    def recompute_for_exchange(self, exchange: ReferralExchange) -> None:
        """Refresh both parties after an exchange changes state. The caller commits."""
        self.session.flush()
        self.compute(exchange.sender_user_id)
        if exchange.receiver_user_id:
            self.compute(exchange.receiver_user_id)

    def recompute_all(self) -> int:
        """Recompute every user who has taken part in an exchange."""
        user_ids = set()
        for sender_id, receiver_id in self.session.query(
            ReferralExchange.sender_user_id, ReferralExchange.receiver_user_id
        ).filter(ReferralExchange.status != ExchangeStatus.DRAFT):
            user_ids.add(sender_id)
            if receiver_id:
                user_ids.add(receiver_id)

        for user_id in user_ids:
            self.compute(user_id)
        self.session.commit()
        logger.info(f"Recomputed trust scores for {len(user_ids)} user(s)")
        return len(user_ids)
