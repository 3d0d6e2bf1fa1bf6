"""
Automation routes: email templates, automations, enrollments, manual sends
and the cron entry point that advances due enrollments.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from trellis.api import schemas
from trellis.api.deps import (
    get_automation_service,
    get_contact_service,
    get_enrollment_processor,
    get_template_service,
    get_tenant,
    require_cron,
)
from trellis.models import AutomationStatus, EnrollmentStatus
from trellis.services.automation_service import AutomationService, EnrollmentProcessor, TemplateService
from trellis.services.contact_service import ContactService
from trellis.services.organization_service import TenantContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["automations"])

AUTOMATIONS_MESSAGE = "Automations require a paid plan"


def _automation_response(automation, enrollment_count: int = 0) -> schemas.AutomationResponse:
    return schemas.AutomationResponse.model_validate(automation).model_copy(
        update={"enrollment_count": enrollment_count}
    )


# ============================================================================
# Cron
# ============================================================================
@router.get("/automations/process", response_model=schemas.ProcessResult, dependencies=[Depends(require_cron)])
def process_automations(processor: EnrollmentProcessor = Depends(get_enrollment_processor)):
    """Advance every due enrollment by one step. Called by the scheduler."""
    result = processor.process_due()
    logger.info(f"Automation cron: {result['processed']} processed, {result['errors']} errors")
    return result


# ============================================================================
# Manual send
# ============================================================================
@router.post("/automations/send", response_model=schemas.EmailLogResponse)
def send_email(
    data: schemas.SendEmailRequest,
    ctx: TenantContext = Depends(get_tenant),
    service: AutomationService = Depends(get_automation_service),
):
    """Send one template to one contact. The contact is checked before any gate."""
    service.get_sendable_contact(ctx.org_id, data.contact_id)
    ctx.forbid_impersonation("Cannot send emails while impersonating an organization")
    ctx.require_paid(AUTOMATIONS_MESSAGE)
    return service.send_template(
        ctx.org,
        data.contact_id,
        data.template_id,
        sent_by=ctx.user_id,
        subject_override=data.subject_override,
    )


# ============================================================================
# Templates
# ============================================================================
@router.get("/templates", response_model=list[schemas.TemplateResponse])
def list_templates(
    include_archived: bool = False,
    ctx: TenantContext = Depends(get_tenant),
    service: TemplateService = Depends(get_template_service),
):
    return service.list(ctx.org_id, include_archived=include_archived)


@router.get("/templates/{template_id}", response_model=schemas.TemplateResponse)
def get_template(
    template_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: TemplateService = Depends(get_template_service),
):
    template = service.get(ctx.org_id, template_id)
    if not template:
        raise HTTPException(404, "Template not found")
    return template


@router.post("/templates", response_model=schemas.TemplateResponse, status_code=201)
def create_template(
    data: schemas.TemplateCreate,
    ctx: TenantContext = Depends(get_tenant),
    service: TemplateService = Depends(get_template_service),
):
    ctx.require_paid(AUTOMATIONS_MESSAGE)
    return service.create(ctx.org_id, created_by=ctx.user_id, **data.model_dump())


@router.patch("/templates/{template_id}", response_model=schemas.TemplateResponse)
def update_template(
    template_id: int,
    data: schemas.TemplateUpdate,
    ctx: TenantContext = Depends(get_tenant),
    service: TemplateService = Depends(get_template_service),
):
    template = service.update(ctx.org_id, template_id, **data.model_dump(exclude_unset=True))
    if not template:
        raise HTTPException(404, "Template not found")
    return template


@router.delete("/templates/{template_id}")
def archive_template(
    template_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: TemplateService = Depends(get_template_service),
):
    """Templates are archived, never deleted."""
    if not service.archive(ctx.org_id, template_id):
        raise HTTPException(404, "Template not found")
    return {"success": True}


@router.get("/templates/{template_id}/preview", response_model=schemas.TemplatePreview)
def preview_template(
    template_id: int,
    contact_id: Optional[int] = None,
    ctx: TenantContext = Depends(get_tenant),
    service: TemplateService = Depends(get_template_service),
    contacts: ContactService = Depends(get_contact_service),
):
    template = service.get(ctx.org_id, template_id)
    if not template:
        raise HTTPException(404, "Template not found")
    contact = None
    if contact_id is not None:
        contact = contacts.get(ctx.org_id, contact_id)
        if not contact:
            raise HTTPException(404, "Contact not found")
    return service.preview(template, contact)


# ============================================================================
# Automations
# ============================================================================
@router.get("/automations", response_model=list[schemas.AutomationResponse])
def list_automations(
    status: Optional[AutomationStatus] = None,
    ctx: TenantContext = Depends(get_tenant),
    service: AutomationService = Depends(get_automation_service),
):
    return [
        _automation_response(row["automation"], row["enrollment_count"])
        for row in service.list(ctx.org_id, status=status)
    ]


@router.get("/automations/{automation_id}", response_model=schemas.AutomationResponse)
def get_automation(
    automation_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: AutomationService = Depends(get_automation_service),
):
    automation = service.get(ctx.org_id, automation_id)
    if not automation:
        raise HTTPException(404, "Automation not found")
    return _automation_response(automation)


@router.post("/automations", response_model=schemas.AutomationResponse, status_code=201)
def create_automation(
    data: schemas.AutomationCreate,
    ctx: TenantContext = Depends(get_tenant),
    service: AutomationService = Depends(get_automation_service),
):
    ctx.require_paid(AUTOMATIONS_MESSAGE)
    automation = service.create(
        ctx.org_id,
        data.name,
        trigger_type=data.trigger_type,
        trigger_config=data.trigger_config,
        description=data.description,
        steps=[step.model_dump() for step in data.steps],
        created_by=ctx.user_id,
    )
    return _automation_response(automation)


@router.patch("/automations/{automation_id}", response_model=schemas.AutomationResponse)
def update_automation(
    automation_id: int,
    data: schemas.AutomationUpdate,
    ctx: TenantContext = Depends(get_tenant),
    service: AutomationService = Depends(get_automation_service),
):
    """Update an automation; a steps list replaces every step."""
    fields = data.model_dump(exclude_unset=True)
    automation = service.update(ctx.org_id, automation_id, **fields)
    if not automation:
        raise HTTPException(404, "Automation not found")
    return _automation_response(automation)


@router.delete("/automations/{automation_id}")
def delete_automation(
    automation_id: int,
    ctx: TenantContext = Depends(get_tenant),
    service: AutomationService = Depends(get_automation_service),
):
    if not service.delete(ctx.org_id, automation_id):
        raise HTTPException(404, "Automation not found")
    return {"success": True}


# ============================================================================
# Enrollments
# ============================================================================
@router.get("/automations/{automation_id}/enrollments", response_model=list[schemas.EnrollmentResponse])
def list_enrollments(
    automation_id: int,
    status: Optional[EnrollmentStatus] = None,
    ctx: TenantContext = Depends(get_tenant),
    service: AutomationService = Depends(get_automation_service),
):
    return service.list_enrollments(ctx.org_id, automation_id, status=status)


@router.post("/automations/{automation_id}/enroll", response_model=list[schemas.EnrollmentResponse])
def enroll_contacts(
    automation_id: int,
    data: schemas.EnrollRequest,
    ctx: TenantContext = Depends(get_tenant),
    service: AutomationService = Depends(get_automation_service),
):
    """Enroll contacts manually. Contacts already active in it are skipped."""
    ctx.require_paid(AUTOMATIONS_MESSAGE)
    automation = service.get(ctx.org_id, automation_id)
    if not automation:
        raise HTTPException(404, "Automation not found")
    return service.enroll(automation, data.contact_ids)


@router.patch("/enrollments/{enrollment_id}", response_model=schemas.EnrollmentResponse)
def update_enrollment(
    enrollment_id: int,
    data: schemas.EnrollmentStatusUpdate,
    ctx: TenantContext = Depends(get_tenant),
    service: AutomationService = Depends(get_automation_service),
):
    """Pause, resume or cancel an enrollment."""
    return service.set_enrollment_status(ctx.org_id, enrollment_id, data.status)
