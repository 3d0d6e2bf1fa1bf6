"""
Service layer for Trellis.
"""

from trellis.services.achievement_service import ACHIEVEMENT_DEFINITIONS, AchievementService
from trellis.services.activity_service import ActivityService
from trellis.services.admin_service import AdminService, require_platform_admin
from trellis.services.automation_service import AutomationService, EnrollmentProcessor, TemplateService
from trellis.services.billing_service import BillingService, PolarClient, get_polar_client
from trellis.services.company_service import CompanyService
from trellis.services.contact_service import ContactService
from trellis.services.deal_service import DealService
from trellis.services.directory_service import DirectoryService
from trellis.services.email_service import EmailService, SentEmail, get_email_service
from trellis.services.exchange_service import ExchangeService
from trellis.services.import_export_service import ImportExportService
from trellis.services.insight_service import (
    AnthropicCompletionClient,
    CompletionClient,
    InsightService,
    get_completion_client,
)
from trellis.services.organization_service import OrganizationService, TenantContext, UserService
from trellis.services.plans import PLAN_LIMITS, can_access_feature, can_access_view, get_plan_limits
from trellis.services.referral_service import ReferralService
from trellis.services.tag_service import TagService
from trellis.services.trust_service import TrustScoreService
from trellis.services.webhook_service import EmailEventService, sign_payload, verify_webhook

__all__ = [
    "ACHIEVEMENT_DEFINITIONS",
    "AchievementService",
    "ActivityService",
    "AdminService",
    "require_platform_admin",
    "AutomationService",
    "EnrollmentProcessor",
    "TemplateService",
    "BillingService",
    "PolarClient",
    "get_polar_client",
    "CompanyService",
    "ContactService",
    "DealService",
    "DirectoryService",
    "EmailService",
    "SentEmail",
    "get_email_service",
    "ExchangeService",
    "ImportExportService",
    "AnthropicCompletionClient",
    "CompletionClient",
    "InsightService",
    "get_completion_client",
    "OrganizationService",
    "TenantContext",
    "UserService",
    "PLAN_LIMITS",
    "can_access_feature",
    "can_access_view",
    "get_plan_limits",
    "ReferralService",
    "TagService",
    "TrustScoreService",
    "EmailEventService",
    "sign_payload",
    "verify_webhook",
]
