"""
CSV import and export routes.
"""

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import Response

from trellis.api import schemas
from trellis.api.deps import get_import_export_service, get_tenant
from trellis.models import EntityType
from trellis.services.import_export_service import ImportExportService
from trellis.services.organization_service import TenantContext

router = APIRouter(prefix="/api", tags=["import-export"])

IMPORT_EXPORT_MESSAGE = "Import and export require a paid plan"


@router.post("/import")
async def import_csv(
    file: UploadFile = File(...),
    entity_type: EntityType = Form(EntityType.CONTACT),
    ctx: TenantContext = Depends(get_tenant),
    service: ImportExportService = Depends(get_import_export_service),
):
    """Import contacts, companies or deals from a CSV upload."""
    ctx.forbid_impersonation("Cannot import data while impersonating an organization")
    ctx.require_paid(IMPORT_EXPORT_MESSAGE)
    raw = await file.read()
    try:
        content = raw.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(400, "CSV file must be UTF-8 encoded")
    return service.import_csv(ctx.org_id, ctx.user_id, file.filename or "", content, entity_type)


@router.get("/import/jobs", response_model=list[schemas.ImportJobResponse])
def list_import_jobs(
    ctx: TenantContext = Depends(get_tenant),
    service: ImportExportService = Depends(get_import_export_service),
):
    return service.list_jobs(ctx.org_id)


@router.get("/export")
def export_csv(
    entity_type: EntityType = EntityType.CONTACT,
    ctx: TenantContext = Depends(get_tenant),
    service: ImportExportService = Depends(get_import_export_service),
):
    """Download every row of one entity type as CSV."""
    ctx.require_paid(IMPORT_EXPORT_MESSAGE)
    file_name, text = service.export_csv(ctx.org_id, entity_type)
    return Response(
        content=text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )
