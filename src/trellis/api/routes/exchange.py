"""
Referral exchange routes: cross-organization referrals, their message
threads, the public directory and trust scores.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from trellis.api import schemas
from trellis.api.deps import (
    get_current_user,
    get_directory_service,
    get_exchange_service,
    get_tenant,
    get_trust_service,
)
from trellis.models import ExchangeStatus, UserProfile
from trellis.services.directory_service import DirectoryService
from trellis.services.exchange_service import ExchangeService
from trellis.services.organization_service import TenantContext
from trellis.services.trust_service import TrustScoreService

router = APIRouter(prefix="/api", tags=["exchange"])


# ============================================================================
# Exchanges
# ============================================================================
@router.post("/referrals/exchange", response_model=schemas.ExchangeResponse, status_code=201)
def create_exchange(
    data: schemas.ExchangeCreate,
    ctx: TenantContext = Depends(get_tenant),
    service: ExchangeService = Depends(get_exchange_service),
):
    """Send a referral to another user, or save it as a draft."""
    fields = data.model_dump(exclude={"contact_snapshot"})
    snapshot = data.contact_snapshot.model_dump(exclude_none=True) if data.contact_snapshot else None
    return service.create(ctx, contact_snapshot=snapshot, **fields)


@router.get("/referrals/exchange", response_model=schemas.ExchangeListResponse)
def list_exchanges(
    direction: str = Query("received", pattern="^(sent|received)$"),
    status: Optional[ExchangeStatus] = None,
    page: int = Query(0, ge=0),
    page_size: int = Query(25, ge=1, le=100, alias="pageSize"),
    user: UserProfile = Depends(get_current_user),
    service: ExchangeService = Depends(get_exchange_service),
):
    rows, total = service.list(user.id, direction=direction, status=status, page=page, page_size=page_size)
    exchanges = []
    for row in rows:
        item = schemas.ExchangeListItem.model_validate(row["exchange"])
        exchanges.append(
            item.model_copy(
                update={
                    "sender_profile": row["sender_profile"]
                    and schemas.ProfileSummary.model_validate(row["sender_profile"]),
                    "sender_org_name": row["sender_org"].name if row["sender_org"] else None,
                    "receiver_profile": row["receiver_profile"]
                    and schemas.ProfileSummary.model_validate(row["receiver_profile"]),
                }
            )
        )
    return {"exchanges": exchanges, "totalCount": total}


@router.patch("/exchange/{exchange_id}")
def update_exchange(
    exchange_id: int,
    data: schemas.ExchangeAction,
    ctx: TenantContext = Depends(get_tenant),
    service: ExchangeService = Depends(get_exchange_service),
):
    """Run an action: accept, decline, update_status, update_draft or publish_draft."""
    payload = data.model_dump(exclude={"action"}, exclude_unset=True)
    return service.apply_action(ctx, exchange_id, data.action, payload)


@router.delete("/exchange/{exchange_id}")
def delete_exchange(
    exchange_id: int,
    user: UserProfile = Depends(get_current_user),
    service: ExchangeService = Depends(get_exchange_service),
):
    service.delete(user, exchange_id)
    return {"success": True}


@router.get("/exchange/{exchange_id}/messages", response_model=list[schemas.MessageResponse])
def list_messages(
    exchange_id: int,
    user: UserProfile = Depends(get_current_user),
    service: ExchangeService = Depends(get_exchange_service),
):
    """The exchange's thread, oldest first. Parties only."""
    return service.list_messages(user, exchange_id)


@router.post("/exchange/{exchange_id}/messages", response_model=schemas.MessageResponse, status_code=201)
def post_message(
    exchange_id: int,
    data: schemas.MessageCreate,
    ctx: TenantContext = Depends(get_tenant),
    service: ExchangeService = Depends(get_exchange_service),
):
    return service.post_message(ctx, exchange_id, data.message)


# ============================================================================
# Directory
# ============================================================================
@router.get(
    "/directory",
    response_model=schemas.DirectoryListResponse,
    dependencies=[Depends(get_current_user)],
)
def list_directory(
    search: Optional[str] = None,
    industry: Optional[str] = None,
    location: Optional[str] = None,
    specialty: Optional[str] = None,
    page: int = Query(1, ge=1),
    service: DirectoryService = Depends(get_directory_service),
):
    """Visible directory profiles, 24 per page."""
    return service.list(search=search, industry=industry, location=location, specialty=specialty, page=page)


@router.get("/directory/me", response_model=Optional[schemas.DirectoryProfileResponse])
def get_my_profile(
    user: UserProfile = Depends(get_current_user),
    service: DirectoryService = Depends(get_directory_service),
):
    return service.get_for_user(user.id)


@router.patch("/directory/me", response_model=schemas.DirectoryProfileResponse)
def upsert_my_profile(
    data: schemas.DirectoryProfileUpdate,
    response: Response,
    ctx: TenantContext = Depends(get_tenant),
    service: DirectoryService = Depends(get_directory_service),
):
    """Create or replace the caller's listing; 201 when it is new."""
    profile, created = service.upsert(ctx.user, data.model_dump(), is_impersonating=ctx.is_impersonating)
    if created:
        response.status_code = 201
    return profile


# ============================================================================
# Trust scores
# ============================================================================
@router.get("/trust-score", dependencies=[Depends(get_current_user)])
def get_trust_scores(
    user_id: Optional[int] = Query(None, alias="userId"),
    user_ids: Optional[str] = Query(None, alias="userIds"),
    service: TrustScoreService = Depends(get_trust_service),
):
    """One user's score (userId) or several (userIds, comma separated)."""
    if user_id is not None:
        score = service.get(user_id)
        return {"score": score and schemas.TrustScoreResponse.model_validate(score)}
    if user_ids:
        try:
            ids = [int(part) for part in user_ids.split(",") if part.strip()]
        except ValueError:
            raise HTTPException(400, "userIds must be a comma separated list of ids")
        return {
            "scores": [schemas.TrustScoreResponse.model_validate(s) for s in service.get_many(ids)]
        }
    raise HTTPException(400, "Provide userId or userIds parameter")
