"""
Referral routes: the in-org referral graph, chains and visualization data.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from trellis.api import schemas
from trellis.api.deps import get_referral_service, get_tenant
from trellis.exceptions import PlanLimitError
from trellis.models import ReferralStatus, ViewType
from trellis.services.organization_service import TenantContext
from trellis.services.plans import can_access_view
from trellis.services.referral_service import ReferralService

router = APIRouter(prefix="/api", tags=["referrals"])


@router.get("/referrals", response_model=schemas.ReferralListResponse)
def list_referrals(
    contact_id: Optional[int] = None,
    status: Optional[ReferralStatus] = None,
    page: int = Query(0, ge=0),
    page_size: int = Query(25, ge=1, le=100),
    ctx: TenantContext = Depends(get_tenant),
    service: ReferralService = Depends(get_referral_service),
):
    """List referrals, newest first. contact_id matches referrer or referred."""
    referrals, total = service.list(
        ctx.org_id, contact_id=contact_id, status=status, page=page, page_size=page_size
    )
    return {"referrals": referrals, "total": total}


@router.get("/referrals/{referral_id}", response_model=schemas.ReferralResponse)
def get_referral(
    referral_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: ReferralService = Depends(get_referral_service),
):
    referral = service.get(ctx.org_id, referral_id)
    if not referral:
        raise HTTPException(404, "Referral not found")
    return referral


@router.post("/referrals", response_model=schemas.ReferralResponse, status_code=201)
def create_referral(
    data: schemas.ReferralCreate,
    ctx: TenantContext = Depends(get_tenant),
    service: ReferralService = Depends(get_referral_service),
):
    """Record that one contact referred another; chain depth is derived."""
    return service.create(ctx.org_id, created_by=ctx.user_id, **data.model_dump())


@router.patch("/referrals/{referral_id}", response_model=schemas.ReferralResponse)
def update_referral(
    referral_id: int,
    data: schemas.ReferralUpdate,
    ctx: TenantContext = Depends(get_tenant),
    service: ReferralService = Depends(get_referral_service),
):
    referral = service.update(ctx.org_id, referral_id, **data.model_dump(exclude_unset=True))
    if not referral:
        raise HTTPException(404, "Referral not found")
    return referral


@router.delete("/referrals/{referral_id}")
def delete_referral(
    referral_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: ReferralService = Depends(get_referral_service),
):
    if not service.delete(ctx.org_id, referral_id):
        raise HTTPException(404, "Referral not found")
    return {"success": True}


@router.get("/contacts/{contact_id}/referral-chain", response_model=list[schemas.ChainNode])
def get_referral_chain(
    contact_id: int,
    direction: str = Query("downstream", pattern="^(upstream|downstream)$"),
    max_depth: int = Query(10, ge=1, le=50),
    ctx: TenantContext = Depends(get_tenant),
    service: ReferralService = Depends(get_referral_service),
):
    """Walk who a contact referred (downstream) or who referred them (upstream)."""
    return service.get_referral_chain(ctx.org_id, contact_id, direction=direction, max_depth=max_depth)


@router.get("/visualize/{view}")
def get_visualization(
    view: ViewType,
    ctx: TenantContext = Depends(get_tenant),
    service: ReferralService = Depends(get_referral_service),
):
    """Contacts as nodes and referrals as edges for one of the network views."""
    if not can_access_view(ctx.org.plan, view.value):
        raise PlanLimitError(f"The {view.value} view requires a paid plan")
    return {"view": view.value, **service.build_graph(ctx.org_id)}
