"""
Organization and user routes: registration, orgs, membership and stats.
"""

from fastapi import APIRouter, Depends, HTTPException

from trellis.api import schemas
from trellis.api.deps import get_current_user, get_organization_service, get_tenant, get_user_service
from trellis.exceptions import PermissionDeniedError
from trellis.models import OrgRole, UserProfile
from trellis.services.organization_service import OrganizationService, TenantContext, UserService

router = APIRouter(prefix="/api", tags=["organizations"])


# ============================================================================
# Users
# ============================================================================
@router.post("/users", response_model=schemas.UserResponse, status_code=201)
def register_user(
    data: schemas.UserCreate,
    service: UserService = Depends(get_user_service),
):
    """Register a profile. Pending exchanges sent to the email are claimed."""
    return service.create(**data.model_dump())


@router.get("/users/me", response_model=schemas.UserResponse)
def get_me(user: UserProfile = Depends(get_current_user)):
    return user


# ============================================================================
# Organizations
# ============================================================================
@router.post("/orgs", response_model=schemas.OrganizationResponse, status_code=201)
def create_org(
    data: schemas.OrganizationCreate,
    user: UserProfile = Depends(get_current_user),
    service: OrganizationService = Depends(get_organization_service),
):
    """Create an organization on the free plan, owned by the caller."""
    return service.create(data.name, owner=user, website=data.website, industry=data.industry)


@router.get("/orgs", response_model=list[schemas.OrganizationResponse])
def list_orgs(
    user: UserProfile = Depends(get_current_user),
    service: OrganizationService = Depends(get_organization_service),
):
    return service.list_for_user(user.id)


@router.post("/orgs/switch", response_model=schemas.OrganizationResponse)
def switch_org(
    data: schemas.SwitchOrgRequest,
    user: UserProfile = Depends(get_current_user),
    service: OrganizationService = Depends(get_organization_service),
):
    return service.switch_active_org(user, data.org_id)


@router.get("/orgs/current/stats", response_model=schemas.OrgStats)
def get_org_stats(
    ctx: TenantContext = Depends(get_tenant),
    service: OrganizationService = Depends(get_organization_service),
):
    """Dashboard totals for the active organization."""
    return service.get_stats(ctx.org_id)


@router.get("/orgs/current/members", response_model=list[schemas.MemberResponse])
def list_members(
    ctx: TenantContext = Depends(get_tenant),
    service: OrganizationService = Depends(get_organization_service),
):
    return service.list_members(ctx.org_id)


@router.post("/orgs/current/members", response_model=schemas.MemberResponse, status_code=201)
def add_member(
    data: schemas.MemberAdd,
    ctx: TenantContext = Depends(get_tenant),
    service: OrganizationService = Depends(get_organization_service),
    users: UserService = Depends(get_user_service),
):
    """Add a registered user to the org, within the plan's seat limit."""
    membership = service.get_membership(ctx.org_id, ctx.user_id)
    if not membership or membership.role not in (OrgRole.OWNER, OrgRole.ADMIN):
        raise PermissionDeniedError("Only owners and admins can add members")
    if data.role == OrgRole.OWNER:
        raise HTTPException(400, "An organization has exactly one owner")
    user = users.get_by_email(data.email)
    if not user:
        raise HTTPException(404, "User not found")
    return service.add_member(ctx.org, user, role=data.role)


@router.delete("/orgs/current/members/{user_id}")
def remove_member(
    user_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: OrganizationService = Depends(get_organization_service),
):
    membership = service.get_membership(ctx.org_id, ctx.user_id)
    if not membership or membership.role not in (OrgRole.OWNER, OrgRole.ADMIN):
        raise PermissionDeniedError("Only owners and admins can remove members")
    if not service.remove_member(ctx.org_id, user_id):
        raise HTTPException(404, "Member not found")
    return {"success": True}
