"""
Platform admin routes. Every route requires a platform admin.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from trellis.api import schemas
from trellis.api.deps import get_admin_service, get_platform_admin
from trellis.models import UserProfile
from trellis.services.admin_service import AdminService

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(get_platform_admin)])


@router.get("/stats")
def get_stats(
    service: AdminService = Depends(get_admin_service),
):
    """Platform totals and plan distribution."""
    return service.get_stats()


@router.get("/organizations")
def list_organizations(
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1, le=100),
    service: AdminService = Depends(get_admin_service),
):
    result = service.list_organizations(search=search, page=page, limit=limit)
    result["organizations"] = [
        {
            **schemas.OrganizationResponse.model_validate(row["organization"]).model_dump(mode="json"),
            **{k: v for k, v in row.items() if k != "organization"},
        }
        for row in result["organizations"]
    ]
    return result


@router.get("/users")
def list_users(
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1, le=100),
    service: AdminService = Depends(get_admin_service),
):
    result = service.list_users(search=search, page=page, limit=limit)
    result["users"] = [
        {
            **schemas.UserResponse.model_validate(row["user"]).model_dump(mode="json"),
            "organizations": row["organizations"],
        }
        for row in result["users"]
    ]
    return result


@router.get("/users/{user_id}")
def get_user_detail(
    user_id: int,
    service: AdminService = Depends(get_admin_service),
):
    detail = service.get_user_detail(user_id)
    profile = detail["directory_profile"]
    trust = detail["trust_score"]
    return {
        "user": schemas.UserResponse.model_validate(detail["user"]),
        "memberships": detail["memberships"],
        "directory_profile": profile and schemas.DirectoryProfileResponse.model_validate(profile),
        "trust_score": trust and schemas.TrustScoreResponse.model_validate(trust),
    }


@router.post("/impersonate")
def start_impersonation(
    data: schemas.ImpersonateRequest,
    admin: UserProfile = Depends(get_platform_admin),
    service: AdminService = Depends(get_admin_service),
):
    """Switch into another organization; outward-facing writes are blocked there."""
    return service.start_impersonation(admin, data.org_id)


@router.delete("/impersonate")
def stop_impersonation(
    data: schemas.StopImpersonationRequest,
    admin: UserProfile = Depends(get_platform_admin),
    service: AdminService = Depends(get_admin_service),
):
    return service.stop_impersonation(admin, data.original_org_id)
