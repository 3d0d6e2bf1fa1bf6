"""
Inbound webhook verification and delivery-event handling.

Polar signs with Standard Webhooks headers (webhook-id, webhook-timestamp,
webhook-signature); Resend signs the same way through Svix (svix-id,
svix-timestamp, svix-signature). Both sign "{id}.{timestamp}.{body}" with
HMAC-SHA256 and send "v1,<base64>" signatures separated by spaces.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from trellis.exceptions import AuthenticationError
from trellis.models import Automation, EmailLog, EmailLogStatus, utcnow

logger = logging.getLogger(__name__)

TIMESTAMP_TOLERANCE_SECONDS = 5 * 60


def _secret_bytes(secret: str) -> bytes:
    if secret.startswith("whsec_"):
        return base64.b64decode(secret[len("whsec_"):])
    return secret.encode("utf-8")


def sign_payload(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    """Compute the "v1,<base64>" signature for one message."""
    signed = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(_secret_bytes(secret), signed, hashlib.sha256).digest()
    return f"v1,{base64.b64encode(digest).decode('ascii')}"


def verify_webhook(
    body: bytes,
    headers: Mapping[str, str],
    secret: Optional[str],
    prefix: str = "webhook",
    now: Optional[float] = None,
) -> dict:
    """
    Verify a signed webhook and return its JSON payload.

    Args:
        prefix: header prefix, "webhook" for Standard Webhooks or "svix"

    Raises:
        AuthenticationError: missing secret/headers, stale timestamp or bad signature
    """
    if not secret:
        raise AuthenticationError("Webhook secret is not configured")

    lowered = {k.lower(): v for k, v in headers.items()}
    msg_id = lowered.get(f"{prefix}-id")
    timestamp = lowered.get(f"{prefix}-timestamp")
    signatures = lowered.get(f"{prefix}-signature")
    if not (msg_id and timestamp and signatures):
        raise AuthenticationError("Invalid webhook signature")

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise AuthenticationError("Invalid webhook signature")
    current = now if now is not None else time.time()
    if abs(current - sent_at) > TIMESTAMP_TOLERANCE_SECONDS:
        raise AuthenticationError("Invalid webhook signature")

    expected = sign_payload(secret, msg_id, timestamp, body)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures.split()):
        raise AuthenticationError("Invalid webhook signature")

    try:
        return json.loads(body)
    except json.JSONDecodeError:
        raise AuthenticationError("Invalid webhook payload")


# =============================================================================
# Resend delivery events
# =============================================================================

EMAIL_EVENT_STATUS = {
    "email.delivered": EmailLogStatus.DELIVERED,
    "email.opened": EmailLogStatus.OPENED,
    "email.clicked": EmailLogStatus.CLICKED,
    "email.bounced": EmailLogStatus.BOUNCED,
    "email.complained": EmailLogStatus.COMPLAINED,
}

# Events that also count towards the sending automation's stats
STAT_KEYS = {
    "email.opened": "opened",
    "email.clicked": "clicked",
    "email.bounced": "bounced",
}


class EmailEventService:
    """Applies Resend delivery events to email logs and automation stats."""

    def __init__(self, session: Session):
        self.session = session

    def handle_event(self, event: dict) -> dict:
        event_type = event.get("type", "")
        email_id = (event.get("data") or {}).get("email_id")
        if not email_id:
            return {"received": True}

        status = EMAIL_EVENT_STATUS.get(event_type)
        if status is None:
            logger.info(f"Resend webhook: unhandled event type {event_type}")
            return {"received": True}

        log = self.session.query(EmailLog).filter(EmailLog.resend_id == email_id).first()
        if log is None:
            logger.warning(f"Resend webhook: no email log for {email_id}")
            return {"received": True}

        now = utcnow()
        log.status = status
        if status == EmailLogStatus.OPENED:
            log.opened_at = now
        elif status == EmailLogStatus.CLICKED:
            log.clicked_at = now
        elif status == EmailLogStatus.BOUNCED:
            log.bounced_at = now
            log.error_message = "Email bounced"

        stat_key = STAT_KEYS.get(event_type)
        if stat_key and log.automation_id:
            automation = self.session.get(Automation, log.automation_id)
            if automation:
                automation.bump_stat(stat_key)

        self.session.commit()
        return {"received": True}
