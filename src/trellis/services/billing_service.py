"""
Billing service for Polar API integration.
Creates checkout sessions and applies subscription events to organizations.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from trellis.config import get_settings
from trellis.exceptions import IntegrationError, NotFoundError, ValidationError
from trellis.models import Organization, PlanType, SubscriptionStatus, UserProfile
from trellis.services.plans import apply_plan, map_product_to_plan

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = ("subscription.created", "subscription.updated", "subscription.active")


class PolarClient:
    """Thin client for the Polar REST API."""

    def __init__(self, access_token: Optional[str] = None, base_url: Optional[str] = None):
        self.settings = get_settings()
        self.access_token = access_token or self.settings.polar_access_token
        self.base_url = (base_url or self.settings.polar_api_base).rstrip("/")

    def is_configured(self) -> bool:
        return bool(self.access_token)

    def _get_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        if not self.is_configured():
            raise IntegrationError("POLAR_ACCESS_TOKEN not configured")
        try:
            with httpx.Client(timeout=self.settings.http_timeout_seconds) as client:
                response = client.request(
                    method, f"{self.base_url}{path}", headers=self._get_headers(), json=json
                )
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            raise IntegrationError(
                f"Polar API error: {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise IntegrationError(f"Polar request failed: {e}") from e

    def create_checkout(
        self,
        product_price_id: str,
        success_url: str,
        customer_email: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> dict:
        return self._request(
            "POST",
            "/checkouts/custom",
            json={
                "product_price_id": product_price_id,
                "success_url": success_url,
                "customer_email": customer_email,
                "metadata": metadata or {},
            },
        )


def get_polar_client() -> PolarClient:
    """Dependency factory for the Polar client."""
    return PolarClient()


class BillingService:
    """Service for checkout and subscription state."""

    def __init__(self, session: Session, polar: Optional[PolarClient] = None):
        self.session = session
        self.polar = polar or PolarClient()
        self.settings = get_settings()

    def create_checkout(
        self, user: UserProfile, org: Organization, product_id: str, origin: Optional[str] = None
    ) -> str:
        """Start a Polar checkout for the org and return its URL."""
        if not product_id:
            raise ValidationError("productId is required")
        base = (origin or self.settings.app_url).rstrip("/")
        checkout = self.polar.create_checkout(
            product_price_id=product_id,
            success_url=f"{base}/settings/billing?success=true",
            customer_email=user.email,
            metadata={"org_id": str(org.id), "user_id": str(user.id), "external_id": str(user.id)},
        )
        logger.info(f"Checkout created for org {org.id}")
        return checkout.get("url")

    def _find_org(self, data: dict) -> Optional[Organization]:
        org_id = (data.get("metadata") or {}).get("org_id")
        if org_id:
            try:
                return self.session.get(Organization, int(org_id))
            except (TypeError, ValueError):
                return None
        subscription_id = data.get("id")
        if not subscription_id:
            return None
        return (
            self.session.query(Organization)
            .filter(Organization.polar_subscription_id == subscription_id)
            .first()
        )

    def handle_event(self, event: dict) -> dict:
        """
        Apply a verified Polar webhook event.

        Raises:
            ValidationError: subscription event without org_id metadata
            NotFoundError: cancel/revoke for an unknown organization
        """
        event_type = event.get("type", "")
        data = event.get("data") or {}

        if event_type in SUBSCRIPTION_EVENTS:
            if not (data.get("metadata") or {}).get("org_id"):
                logger.error("Polar webhook: missing org_id in metadata")
                raise ValidationError("Missing org_id in metadata")
            org = self._find_org(data)
            if not org:
                raise NotFoundError("Organization not found")

            product_name = (data.get("product") or {}).get("name", "")
            apply_plan(org, map_product_to_plan(product_name))
            org.polar_subscription_id = data.get("id")
            org.polar_customer_id = data.get("customer_id") or data.get("customerId")
            org.subscription_status = _subscription_status(data.get("status"))
            self.session.commit()
            logger.info(f"Org {org.id} moved to plan {org.plan.value} ({event_type})")

        elif event_type == "subscription.canceled":
            org = self._find_org(data)
            if not org:
                logger.error("Polar webhook: could not find org for canceled subscription")
                raise NotFoundError("Organization not found")
            # Plan stays until the period ends; revoked performs the downgrade
            org.subscription_status = SubscriptionStatus.CANCELED
            self.session.commit()
            logger.info(f"Org {org.id} subscription canceled")

        elif event_type == "subscription.revoked":
            org = self._find_org(data)
            if not org:
                logger.error("Polar webhook: could not find org for revoked subscription")
                raise NotFoundError("Organization not found")
            apply_plan(org, PlanType.FREE)
            org.subscription_status = None
            org.polar_subscription_id = None
            self.session.commit()
            logger.info(f"Org {org.id} downgraded to free")

        else:
            logger.info(f"Polar webhook: unhandled event type {event_type}")

        return {"received": True}


def _subscription_status(value: Optional[str]) -> Optional[SubscriptionStatus]:
    try:
        return SubscriptionStatus(value) if value else None
    except ValueError:
        logger.warning(f"Polar webhook: unknown subscription status {value}")
        return None
