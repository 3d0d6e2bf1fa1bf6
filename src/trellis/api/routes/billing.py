"""
Billing routes: Polar checkout plus the signed Polar and Resend webhooks.
"""

import logging

from fastapi import APIRouter, Depends, Request

from trellis.api import schemas
from trellis.api.deps import get_billing_service, get_email_event_service, get_tenant
from trellis.config import get_settings
from trellis.services.billing_service import BillingService
from trellis.services.organization_service import TenantContext
from trellis.services.webhook_service import EmailEventService, verify_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["billing"])


@router.post("/checkout")
def create_checkout(
    data: schemas.CheckoutRequest,
    request: Request,
    ctx: TenantContext = Depends(get_tenant),
    service: BillingService = Depends(get_billing_service),
):
    """Start a Polar checkout for the caller's active organization."""
    url = service.create_checkout(ctx.user, ctx.org, data.product_id, origin=request.headers.get("origin"))
    return {"url": url}


@router.post("/webhooks/polar")
async def polar_webhook(
    request: Request,
    service: BillingService = Depends(get_billing_service),
):
    """Subscription lifecycle events. Signed with Standard Webhooks headers."""
    body = await request.body()
    event = verify_webhook(body, request.headers, get_settings().polar_webhook_secret, prefix="webhook")
    logger.info(f"Polar webhook received: {event.get('type')}")
    return service.handle_event(event)


@router.post("/webhooks/resend")
async def resend_webhook(
    request: Request,
    service: EmailEventService = Depends(get_email_event_service),
):
    """Delivery, open, click and bounce events for sent email. Signed through Svix."""
    body = await request.body()
    event = verify_webhook(body, request.headers, get_settings().resend_webhook_secret, prefix="svix")
    return service.handle_event(event)
