"""
CRM routes: contacts, companies, deals, pipeline stages, tags and activities.

Everything is scoped to the caller's active organization.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from trellis.api import schemas
from trellis.api.deps import (
    get_activity_service,
    get_company_service,
    get_contact_service,
    get_deal_service,
    get_tag_service,
    get_tenant,
)
from trellis.models import DealStatus, EntityType, RelationshipType
from trellis.services.activity_service import ActivityService
from trellis.services.company_service import CompanyService
from trellis.services.contact_service import ContactService
from trellis.services.deal_service import DealService
from trellis.services.organization_service import TenantContext
from trellis.services.tag_service import TagService

router = APIRouter(prefix="/api", tags=["crm"])


# ============================================================================
# Contacts
# ============================================================================
@router.get("/contacts", response_model=schemas.ContactListResponse)
def list_contacts(
    search: Optional[str] = None,
    relationship_type: Optional[RelationshipType] = None,
    industry: Optional[str] = None,
    company_id: Optional[int] = None,
    tag_ids: Optional[list[int]] = Query(None),
    tag_mode: str = Query("or", pattern="^(or|and)$"),
    activity: Optional[str] = Query(None, description="active_within:N, inactive_since:N or never:0"),
    generation: Optional[int] = None,
    location: Optional[str] = None,
    min_score: Optional[int] = None,
    has_email: Optional[bool] = None,
    has_phone: Optional[bool] = None,
    sort: str = "created_at",
    sort_dir: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(0, ge=0),
    page_size: int = Query(25, ge=1, le=100),
    ctx: TenantContext = Depends(get_tenant),
    service: ContactService = Depends(get_contact_service),
):
    """List contacts with filtering. Pages are 0-based."""
    contacts, total = service.list(
        ctx.org_id,
        search=search,
        relationship_type=relationship_type,
        industry=industry,
        company_id=company_id,
        tag_ids=tag_ids,
        tag_mode=tag_mode,
        activity=activity,
        generation=generation,
        location=location,
        min_score=min_score,
        has_email=has_email,
        has_phone=has_phone,
        sort=sort,
        sort_desc=sort_dir == "desc",
        page=page,
        page_size=page_size,
    )
    return {"contacts": contacts, "total": total, "page": page, "page_size": page_size}


@router.get("/contacts/{contact_id}", response_model=schemas.ContactResponse)
def get_contact(
    contact_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: ContactService = Depends(get_contact_service),
):
    contact = service.get(ctx.org_id, contact_id)
    if not contact:
        raise HTTPException(404, "Contact not found")
    return contact


@router.post("/contacts", response_model=schemas.ContactResponse, status_code=201)
def create_contact(
    data: schemas.ContactCreate,
    ctx: TenantContext = Depends(get_tenant),
    service: ContactService = Depends(get_contact_service),
):
    """Create a contact. Enforces the plan's contact limit."""
    return service.create(ctx.org, created_by=ctx.user_id, **data.model_dump(exclude_none=True))


@router.patch("/contacts/{contact_id}", response_model=schemas.ContactResponse)
def update_contact(
    contact_id: int,
    data: schemas.ContactUpdate,
    ctx: TenantContext = Depends(get_tenant),
    service: ContactService = Depends(get_contact_service),
):
    contact = service.update(
        ctx.org_id, contact_id, updated_by=ctx.user_id, **data.model_dump(exclude_unset=True)
    )
    if not contact:
        raise HTTPException(404, "Contact not found")
    return contact


@router.delete("/contacts/{contact_id}")
def delete_contact(
    contact_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: ContactService = Depends(get_contact_service),
):
    if not service.delete(ctx.org_id, contact_id):
        raise HTTPException(404, "Contact not found")
    return {"success": True}


# ============================================================================
# Companies
# ============================================================================
@router.get("/companies", response_model=schemas.CompanyListResponse)
def list_companies(
    search: Optional[str] = None,
    industry: Optional[str] = None,
    page: int = Query(0, ge=0),
    page_size: int = Query(25, ge=1, le=100),
    ctx: TenantContext = Depends(get_tenant),
    service: CompanyService = Depends(get_company_service),
):
    rows, total = service.list(ctx.org_id, search=search, industry=industry, page=page, page_size=page_size)
    companies = [
        schemas.CompanyResponse.model_validate(row["company"]).model_copy(
            update={"contact_count": row["contact_count"]}
        )
        for row in rows
    ]
    return {"companies": companies, "total": total}


@router.get("/companies/{company_id}", response_model=schemas.CompanyResponse)
def get_company(
    company_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: CompanyService = Depends(get_company_service),
):
    company = service.get(ctx.org_id, company_id)
    if not company:
        raise HTTPException(404, "Company not found")
    return company


@router.post("/companies", response_model=schemas.CompanyResponse, status_code=201)
def create_company(
    data: schemas.CompanyCreate,
    ctx: TenantContext = Depends(get_tenant),
    service: CompanyService = Depends(get_company_service),
):
    return service.create(ctx.org_id, created_by=ctx.user_id, **data.model_dump(exclude_none=True))


@router.patch("/companies/{company_id}", response_model=schemas.CompanyResponse)
def update_company(
    company_id: int,
    data: schemas.CompanyUpdate,
    ctx: TenantContext = Depends(get_tenant),
    service: CompanyService = Depends(get_company_service),
):
    company = service.update(ctx.org_id, company_id, **data.model_dump(exclude_unset=True))
    if not company:
        raise HTTPException(404, "Company not found")
    return company


@router.delete("/companies/{company_id}")
def delete_company(
    company_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: CompanyService = Depends(get_company_service),
):
    if not service.delete(ctx.org_id, company_id):
        raise HTTPException(404, "Company not found")
    return {"success": True}


# ============================================================================
# Deals
# ============================================================================
@router.get("/deals", response_model=schemas.DealListResponse)
def list_deals(
    status: Optional[DealStatus] = None,
    stage_id: Optional[int] = None,
    contact_id: Optional[int] = None,
    company_id: Optional[int] = None,
    search: Optional[str] = None,
    page: int = Query(0, ge=0),
    page_size: int = Query(25, ge=1, le=100),
    ctx: TenantContext = Depends(get_tenant),
    service: DealService = Depends(get_deal_service),
):
    deals, total = service.list(
        ctx.org_id,
        status=status,
        stage_id=stage_id,
        contact_id=contact_id,
        company_id=company_id,
        search=search,
        page=page,
        page_size=page_size,
    )
    return {"deals": deals, "total": total}


@router.get("/deals/pipeline", response_model=list[schemas.PipelineColumn])
def get_pipeline(
    ctx: TenantContext = Depends(get_tenant),
    service: DealService = Depends(get_deal_service),
):
    """Deal count and value per pipeline stage."""
    return service.pipeline_summary(ctx.org_id)


@router.get("/deals/{deal_id}", response_model=schemas.DealResponse)
def get_deal(
    deal_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: DealService = Depends(get_deal_service),
):
    deal = service.get(ctx.org_id, deal_id)
    if not deal:
        raise HTTPException(404, "Deal not found")
    return deal


@router.post("/deals", response_model=schemas.DealResponse, status_code=201)
def create_deal(
    data: schemas.DealCreate,
    ctx: TenantContext = Depends(get_tenant),
    service: DealService = Depends(get_deal_service),
):
    return service.create(ctx.org_id, created_by=ctx.user_id, **data.model_dump(exclude_none=True))


@router.patch("/deals/{deal_id}", response_model=schemas.DealResponse)
def update_deal(
    deal_id: int,
    data: schemas.DealUpdate,
    ctx: TenantContext = Depends(get_tenant),
    service: DealService = Depends(get_deal_service),
):
    """Update a deal. Moving it to a won/lost stage closes it."""
    deal = service.update(ctx.org_id, deal_id, updated_by=ctx.user_id, **data.model_dump(exclude_unset=True))
    if not deal:
        raise HTTPException(404, "Deal not found")
    return deal


@router.delete("/deals/{deal_id}")
def delete_deal(
    deal_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: DealService = Depends(get_deal_service),
):
    if not service.delete(ctx.org_id, deal_id):
        raise HTTPException(404, "Deal not found")
    return {"success": True}


# ============================================================================
# Pipeline stages
# ============================================================================
STAGE_EDIT_MESSAGE = "Customizing pipeline stages requires a paid plan"


@router.get("/stages", response_model=list[schemas.StageResponse])
def list_stages(
    ctx: TenantContext = Depends(get_tenant),
    service: DealService = Depends(get_deal_service),
):
    return service.list_stages(ctx.org_id)


@router.post("/stages", response_model=schemas.StageResponse, status_code=201)
def create_stage(
    data: schemas.StageCreate,
    ctx: TenantContext = Depends(get_tenant),
    service: DealService = Depends(get_deal_service),
):
    ctx.require_paid(STAGE_EDIT_MESSAGE)
    return service.create_stage(ctx.org_id, **data.model_dump())


@router.put("/stages/order", response_model=list[schemas.StageResponse])
def reorder_stages(
    data: schemas.StageReorder,
    ctx: TenantContext = Depends(get_tenant),
    service: DealService = Depends(get_deal_service),
):
    ctx.require_paid(STAGE_EDIT_MESSAGE)
    return service.reorder_stages(ctx.org_id, data.stage_ids)


@router.patch("/stages/{stage_id}", response_model=schemas.StageResponse)
def update_stage(
    stage_id: int,
    data: schemas.StageUpdate,
    ctx: TenantContext = Depends(get_tenant),
    service: DealService = Depends(get_deal_service),
):
    ctx.require_paid(STAGE_EDIT_MESSAGE)
    return service.update_stage(ctx.org_id, stage_id, **data.model_dump(exclude_unset=True))


@router.delete("/stages/{stage_id}")
def delete_stage(
    stage_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: DealService = Depends(get_deal_service),
):
    ctx.require_paid(STAGE_EDIT_MESSAGE)
    if not service.delete_stage(ctx.org_id, stage_id):
        raise HTTPException(404, "Pipeline stage not found")
    return {"success": True}


# ============================================================================
# Tags
# ============================================================================
@router.get("/tags", response_model=list[schemas.TagResponse])
def list_tags(
    entity_type: Optional[EntityType] = None,
    ctx: TenantContext = Depends(get_tenant),
    service: TagService = Depends(get_tag_service),
):
    return service.list(ctx.org_id, entity_type)


@router.post("/tags", response_model=schemas.TagResponse, status_code=201)
def create_tag(
    data: schemas.TagCreate,
    ctx: TenantContext = Depends(get_tenant),
    service: TagService = Depends(get_tag_service),
):
    return service.create(ctx.org_id, data.name, data.entity_type, color=data.color)


@router.delete("/tags/{tag_id}")
def delete_tag(
    tag_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: TagService = Depends(get_tag_service),
):
    if not service.delete(ctx.org_id, tag_id):
        raise HTTPException(404, "Tag not found")
    return {"success": True}


@router.post("/tags/{tag_id}/attach")
def attach_tag(
    tag_id: int,
    data: schemas.TagAttach,
    ctx: TenantContext = Depends(get_tenant),
    service: TagService = Depends(get_tag_service),
):
    """Tag a record; tagging a contact can start on_tag_added automations."""
    link = service.attach(ctx.org_id, tag_id, data.entity_id)
    return {"success": True, "tag_id": link.tag_id, "entity_id": link.entity_id}


@router.post("/tags/{tag_id}/detach")
def detach_tag(
    tag_id: int,
    data: schemas.TagAttach,
    ctx: TenantContext = Depends(get_tenant),
    service: TagService = Depends(get_tag_service),
):
    if not service.detach(ctx.org_id, tag_id, data.entity_id):
        raise HTTPException(404, "Tag not found")
    return {"success": True}


@router.get("/tags/{entity_type}/{entity_id}", response_model=list[schemas.TagResponse])
def get_entity_tags(
    entity_type: EntityType,
    entity_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: TagService = Depends(get_tag_service),
):
    return service.tags_for(ctx.org_id, entity_type, entity_id)


# ============================================================================
# Activities
# ============================================================================
@router.get("/activities", response_model=list[schemas.ActivityResponse])
def list_activities(
    entity_type: Optional[EntityType] = None,
    entity_id: Optional[int] = None,
    limit: int = Query(50, ge=1, le=200),
    ctx: TenantContext = Depends(get_tenant),
    service: ActivityService = Depends(get_activity_service),
):
    """An entity's timeline, or the org's recent activity when no entity is given."""
    if entity_type and entity_id:
        return service.list_for_entity(ctx.org_id, entity_type, entity_id, limit=limit)
    return service.list_recent(ctx.org_id, limit=limit)


@router.post("/activities", response_model=schemas.ActivityResponse, status_code=201)
def create_activity(
    data: schemas.ActivityCreate,
    ctx: TenantContext = Depends(get_tenant),
    service: ActivityService = Depends(get_activity_service),
):
    """Log a manual note, call, meeting or task."""
    return service.create(ctx.org_id, created_by=ctx.user_id, **data.model_dump())
