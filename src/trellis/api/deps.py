"""
Request dependencies: identity, tenant context and service factories.

Identity arrives in the X-User-Id header, set by the auth proxy in front of
the API. Every CRM route runs inside the caller's active organization.
"""

from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from trellis.config import get_settings
from trellis.exceptions import AuthenticationError, NotFoundError, PermissionDeniedError
from trellis.models import UserProfile, get_session
from trellis.services.achievement_service import AchievementService
from trellis.services.activity_service import ActivityService
from trellis.services.admin_service import AdminService, require_platform_admin
from trellis.services.automation_service import AutomationService, EnrollmentProcessor, TemplateService
from trellis.services.billing_service import BillingService, PolarClient, get_polar_client
from trellis.services.company_service import CompanyService
from trellis.services.contact_service import ContactService
from trellis.services.deal_service import DealService
from trellis.services.directory_service import DirectoryService
from trellis.services.email_service import EmailService, get_email_service
from trellis.services.exchange_service import ExchangeService
from trellis.services.import_export_service import ImportExportService
from trellis.services.insight_service import CompletionClient, InsightService, get_completion_client
from trellis.services.organization_service import OrganizationService, TenantContext, UserService
from trellis.services.referral_service import ReferralService
from trellis.services.tag_service import TagService
from trellis.services.trust_service import TrustScoreService
from trellis.services.webhook_service import EmailEventService


# ============================================================================
# Identity
# ============================================================================
def get_current_user(
    x_user_id: Optional[str] = Header(None),
    session: Session = Depends(get_session),
) -> UserProfile:
    """Resolve the calling user from the X-User-Id header."""
    if not x_user_id or not x_user_id.isdigit():
        raise AuthenticationError("Unauthorized")
    user = session.get(UserProfile, int(x_user_id))
    if not user:
        raise AuthenticationError("Unauthorized")
    return user


def get_tenant(
    user: UserProfile = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> TenantContext:
    """The caller's active organization and impersonation flag."""
    return OrganizationService(session).resolve_context(user)


def get_platform_admin(user: UserProfile = Depends(get_current_user)) -> UserProfile:
    require_platform_admin(user)
    return user


def require_cron(authorization: Optional[str] = Header(None)) -> None:
    """Scheduled jobs authenticate with "Authorization: Bearer <CRON_SECRET>"."""
    secret = get_settings().cron_secret
    if not secret or authorization != f"Bearer {secret}":
        raise AuthenticationError("Unauthorized")


def get_member_org(org_id: int, ctx: TenantContext, session: Session):
    """Load an org the caller belongs to (platform admins may see any)."""
    service = OrganizationService(session)
    org = service.get(org_id)
    if not org:
        raise NotFoundError("Organization not found")
    if not service.get_membership(org_id, ctx.user_id) and not ctx.user.is_platform_admin:
        raise PermissionDeniedError("Forbidden")
    return org


# ============================================================================
# Services
# ============================================================================
def get_contact_service(session=Depends(get_session)) -> ContactService:
    """Dependency for contact service."""
    return ContactService(session)


def get_company_service(session=Depends(get_session)) -> CompanyService:
    """Dependency for company service."""
    return CompanyService(session)


def get_deal_service(session=Depends(get_session)) -> DealService:
    """Dependency for deal service."""
    return DealService(session)


def get_referral_service(session=Depends(get_session)) -> ReferralService:
    """Dependency for referral service."""
    return ReferralService(session)


def get_tag_service(session=Depends(get_session)) -> TagService:
    return TagService(session)


def get_activity_service(session=Depends(get_session)) -> ActivityService:
    return ActivityService(session)


def get_template_service(session=Depends(get_session)) -> TemplateService:
    return TemplateService(session)


def get_automation_service(
    session=Depends(get_session),
    email_service: EmailService = Depends(get_email_service),
) -> AutomationService:
    """Dependency for automation service."""
    return AutomationService(session, email_service=email_service)


def get_enrollment_processor(
    session=Depends(get_session),
    email_service: EmailService = Depends(get_email_service),
) -> EnrollmentProcessor:
    return EnrollmentProcessor(session, email_service=email_service)


def get_exchange_service(
    session=Depends(get_session),
    email_service: EmailService = Depends(get_email_service),
) -> ExchangeService:
    """Dependency for exchange service."""
    return ExchangeService(session, email_service=email_service)


def get_directory_service(session=Depends(get_session)) -> DirectoryService:
    return DirectoryService(session)


def get_trust_service(session=Depends(get_session)) -> TrustScoreService:
    return TrustScoreService(session)


def get_achievement_service(session=Depends(get_session)) -> AchievementService:
    return AchievementService(session)


def get_insight_service(
    session=Depends(get_session),
    llm: CompletionClient = Depends(get_completion_client),
) -> InsightService:
    """Dependency for AI insight service."""
    return InsightService(session, llm=llm)


def get_billing_service(
    session=Depends(get_session),
    polar: PolarClient = Depends(get_polar_client),
) -> BillingService:
    return BillingService(session, polar=polar)


def get_email_event_service(session=Depends(get_session)) -> EmailEventService:
    return EmailEventService(session)


def get_import_export_service(session=Depends(get_session)) -> ImportExportService:
    return ImportExportService(session)


def get_admin_service(session=Depends(get_session)) -> AdminService:
    return AdminService(session)


def get_organization_service(session=Depends(get_session)) -> OrganizationService:
    return OrganizationService(session)


def get_user_service(session=Depends(get_session)) -> UserService:
    return UserService(session)
