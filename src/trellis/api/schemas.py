"""
Pydantic schemas for the Trellis API.
"""

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from trellis.models import (
    AchievementTier,
    ActivityType,
    AutomationStatus,
    AutomationTriggerType,
    ContactMethod,
    DealStatus,
    DealType,
    DelayUnit,
    EmailLogStatus,
    EnrollmentStatus,
    EntityType,
    ExchangeStatus,
    ImportStatus,
    InsightType,
    OrgRole,
    PlanType,
    ReceiverStatus,
    ReferralStatus,
    ReferralType,
    RelationshipType,
    StepType,
    SubscriptionStatus,
)


# ============================================================================
# Tenancy
# ============================================================================
class UserCreate(BaseModel):
    email: str
    full_name: Optional[str] = None
    job_title: Optional[str] = None
    phone: Optional[str] = None


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    job_title: Optional[str] = None
    active_org_id: Optional[int] = None
    onboarding_completed: bool = False
    is_platform_admin: bool = False
    created_at: datetime


class ProfileSummary(BaseModel):
    """A user as shown on another user's exchange or message."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    full_name: Optional[str] = None
    email: str
    avatar_url: Optional[str] = None


class OrganizationCreate(BaseModel):
    name: str
    website: Optional[str] = None
    industry: Optional[str] = None


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    slug: str
    logo_url: Optional[str] = None
    website: Optional[str] = None
    industry: Optional[str] = None
    plan: PlanType
    subscription_status: Optional[SubscriptionStatus] = None
    max_contacts: int
    max_users: int
    created_at: datetime


class MemberAdd(BaseModel):
    email: str
    role: OrgRole = OrgRole.MEMBER


class MemberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    org_id: int
    user_id: int
    role: OrgRole
    invited_email: Optional[str] = None
    accepted_at: Optional[datetime] = None


class SwitchOrgRequest(BaseModel):
    org_id: int


class OrgStats(BaseModel):
    total_contacts: int
    total_companies: int
    total_deals: int
    total_referrals: int
    total_deal_value: float
    won_deal_value: float
    pipeline_value: float
    avg_referral_chain_depth: float
    conversion_rate: float


# ============================================================================
# Contacts & Companies
# ============================================================================
class ContactBase(BaseModel):
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    mobile_phone: Optional[str] = None
    job_title: Optional[str] = None
    company_id: Optional[int] = None
    industry: Optional[str] = None
    # Address
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state_province: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    # Social
    linkedin_url: Optional[str] = None
    twitter_url: Optional[str] = None
    facebook_url: Optional[str] = None
    website_url: Optional[str] = None
    # Relationship
    relationship_type: Optional[RelationshipType] = None
    rating: Optional[int] = Field(None, ge=1, le=5)
    generation: Optional[int] = None
    profile_photo_url: Optional[str] = None
    notes: Optional[str] = None
    birthday: Optional[date] = None
    anniversary: Optional[date] = None
    spouse_partner_name: Optional[str] = None
    preferred_contact_method: Optional[ContactMethod] = None
    custom_fields: Optional[dict] = None


class ContactCreate(ContactBase):
    first_name: str


class ContactUpdate(ContactBase):
    first_name: Optional[str] = None


class ContactResponse(ContactBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    org_id: int
    first_name: str
    full_name: str
    relationship_type: RelationshipType
    referral_score: int
    lifetime_referral_value: float
    created_at: datetime
    updated_at: datetime


class ContactListResponse(BaseModel):
    contacts: list[ContactResponse]
    total: int
    page: int
    page_size: int


class CompanyBase(BaseModel):
    industry: Optional[str] = None
    website: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state_province: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    employee_count: Optional[int] = None
    annual_revenue: Optional[float] = None
    description: Optional[str] = None
    logo_url: Optional[str] = None
    linkedin_url: Optional[str] = None
    custom_fields: Optional[dict] = None


class CompanyCreate(CompanyBase):
    name: str


class CompanyUpdate(CompanyBase):
    name: Optional[str] = None


class CompanyResponse(CompanyBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    org_id: int
    name: str
    contact_count: int = 0
    created_at: datetime
    updated_at: datetime


class CompanyListResponse(BaseModel):
    companies: list[CompanyResponse]
    total: int


# ============================================================================
# Deals & Pipeline
# ============================================================================
class DealBase(BaseModel):
    value: Optional[float] = None
    currency: Optional[str] = None
    stage_id: Optional[int] = None
    probability: Optional[int] = Field(None, ge=0, le=100)
    contact_id: Optional[int] = None
    company_id: Optional[int] = None
    deal_type: Optional[DealType] = None
    recurring_interval: Optional[str] = None
    recurring_value: Optional[float] = None
    expected_close_date: Optional[date] = None
    actual_close_date: Optional[date] = None
    status: Optional[DealStatus] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    custom_fields: Optional[dict] = None
    assigned_to: Optional[int] = None


class DealCreate(DealBase):
    name: str


class DealUpdate(DealBase):
    name: Optional[str] = None


class DealResponse(DealBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    org_id: int
    name: str
    currency: str
    deal_type: DealType
    status: DealStatus
    created_at: datetime
    updated_at: datetime


class DealListResponse(BaseModel):
    deals: list[DealResponse]
    total: int


class StageCreate(BaseModel):
    name: str
    color: str = "#94a3b8"
    is_won: bool = False
    is_lost: bool = False
    display_order: Optional[int] = None


class StageUpdate(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None
    is_won: Optional[bool] = None
    is_lost: Optional[bool] = None
    display_order: Optional[int] = None


class StageReorder(BaseModel):
    stage_ids: list[int]


class StageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    display_order: int
    color: str
    is_won: bool
    is_lost: bool


class PipelineColumn(BaseModel):
    stage: StageResponse
    deal_count: int
    total_value: float


# ============================================================================
# Referrals
# ============================================================================
class ReferralCreate(BaseModel):
    referrer_id: int
    referred_id: int
    referral_type: ReferralType = ReferralType.DIRECT
    status: ReferralStatus = ReferralStatus.PENDING
    referral_date: Optional[datetime] = None
    deal_id: Optional[int] = None
    referral_value: Optional[float] = None
    notes: Optional[str] = None


class ReferralUpdate(BaseModel):
    referral_type: Optional[ReferralType] = None
    status: Optional[ReferralStatus] = None
    deal_id: Optional[int] = None
    referral_value: Optional[float] = None
    notes: Optional[str] = None


class ReferralResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    org_id: int
    referrer_id: int
    referred_id: int
    deal_id: Optional[int] = None
    referral_date: datetime
    referral_type: ReferralType
    status: ReferralStatus
    referral_value: Optional[float] = None
    depth: int
    root_referrer_id: Optional[int] = None
    notes: Optional[str] = None
    created_at: datetime


class ReferralListResponse(BaseModel):
    referrals: list[ReferralResponse]
    total: int


class ChainNode(BaseModel):
    contact_id: int
    first_name: str
    last_name: Optional[str] = None
    depth: int
    path: list[int]


# ============================================================================
# Tags & Activities
# ============================================================================
class TagCreate(BaseModel):
    name: str
    entity_type: EntityType
    color: Optional[str] = None


class TagResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: str
    entity_type: EntityType


class TagAttach(BaseModel):
    entity_id: int


class ActivityCreate(BaseModel):
    entity_type: EntityType
    entity_id: int
    activity_type: ActivityType = ActivityType.NOTE
    title: str
    description: Optional[str] = None


class ActivityResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: EntityType
    entity_id: int
    activity_type: ActivityType
    title: str
    description: Optional[str] = None
    meta: dict = Field(default_factory=dict, serialization_alias="metadata")
    created_by: Optional[int] = None
    created_at: datetime


# ============================================================================
# Automations
# ============================================================================
class TemplateCreate(BaseModel):
    name: str
    subject: str
    html_content: str
    text_content: Optional[str] = None


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    subject: Optional[str] = None
    html_content: Optional[str] = None
    text_content: Optional[str] = None
    is_archived: Optional[bool] = None


class TemplateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    subject: str
    html_content: str
    text_content: Optional[str] = None
    variables: list = Field(default_factory=list)
    is_archived: bool
    created_at: datetime
    updated_at: datetime


class TemplatePreview(BaseModel):
    subject: str
    html: str
    text: Optional[str] = None
    variables: list[str]
    available_variables: list[dict] = Field(default_factory=list)


class StepIn(BaseModel):
    step_type: StepType
    template_id: Optional[int] = None
    subject_override: Optional[str] = None
    delay_amount: Optional[int] = Field(None, ge=1)
    delay_unit: Optional[DelayUnit] = None
    config: Optional[dict] = None


class StepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    step_order: int
    step_type: StepType
    template_id: Optional[int] = None
    subject_override: Optional[str] = None
    delay_amount: Optional[int] = None
    delay_unit: Optional[DelayUnit] = None


class AutomationCreate(BaseModel):
    name: str
    description: Optional[str] = None
    trigger_type: AutomationTriggerType = AutomationTriggerType.MANUAL
    trigger_config: Optional[dict] = None
    steps: list[StepIn] = Field(default_factory=list)


class AutomationUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[AutomationStatus] = None
    trigger_type: Optional[AutomationTriggerType] = None
    trigger_config: Optional[dict] = None
    steps: Optional[list[StepIn]] = None


class AutomationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    status: AutomationStatus
    trigger_type: AutomationTriggerType
    trigger_config: dict = Field(default_factory=dict)
    stats: dict = Field(default_factory=dict)
    steps: list[StepResponse] = Field(default_factory=list)
    enrollment_count: int = 0
    created_at: datetime


class EnrollRequest(BaseModel):
    contact_ids: list[int]


class EnrollmentStatusUpdate(BaseModel):
    status: EnrollmentStatus


class EnrollmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    automation_id: int
    contact_id: int
    status: EnrollmentStatus
    current_step_order: int
    next_action_at: Optional[datetime] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class SendEmailRequest(BaseModel):
    contact_id: int
    template_id: int
    subject_override: Optional[str] = None


class EmailLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    resend_id: Optional[str] = None
    to_email: str
    subject: str
    status: EmailLogStatus
    created_at: datetime


class ProcessResult(BaseModel):
    processed: int
    errors: int


# ============================================================================
# Referral Exchange
# ============================================================================
class ContactSnapshot(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    industry: Optional[str] = None


class ExchangeCreate(BaseModel):
    receiver_email: Optional[str] = None
    contact_snapshot: Optional[ContactSnapshot] = None
    context_note: Optional[str] = None
    source_contact_id: Optional[int] = None
    save_as_draft: bool = False
    interest_level: Optional[str] = None
    contact_approach: Optional[str] = None
    internal_notes: Optional[str] = None
    sender_metadata: Optional[dict] = None
    notify_on_connect: Optional[bool] = None
    remind_follow_up: Optional[bool] = None


class ExchangeAction(BaseModel):
    """PATCH body: an action name plus the fields that action reads."""

    model_config = ConfigDict(extra="allow")

    action: str
    receiver_status: Optional[str] = None
    receiver_status_visible: Optional[bool] = None


class ExchangeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    token: str
    sender_user_id: int
    sender_org_id: int
    receiver_user_id: Optional[int] = None
    receiver_email: Optional[str] = None
    contact_snapshot: dict = Field(default_factory=dict)
    context_note: Optional[str] = None
    source_contact_id: Optional[int] = None
    status: ExchangeStatus
    receiver_status: ReceiverStatus
    receiver_status_visible: bool
    imported_contact_id: Optional[int] = None
    accepted_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    interest_level: Optional[str] = None
    contact_approach: Optional[str] = None
    notify_on_connect: bool = False
    remind_follow_up: bool = False
    created_at: datetime


class ExchangeListItem(ExchangeResponse):
    sender_profile: Optional[ProfileSummary] = None
    sender_org_name: Optional[str] = None
    receiver_profile: Optional[ProfileSummary] = None


class ExchangeListResponse(BaseModel):
    exchanges: list[ExchangeListItem]
    totalCount: int


class MessageCreate(BaseModel):
    message: Optional[str] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    exchange_id: int
    sender_user_id: int
    message: str
    created_at: datetime
    sender: Optional[ProfileSummary] = None


# ============================================================================
# Directory & Trust
# ============================================================================
class DirectoryProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    company_name: Optional[str] = None
    industry: Optional[str] = None
    location: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    specialties: list[str] = Field(default_factory=list)
    referral_categories: list[str] = Field(default_factory=list)
    accepts_referrals: Optional[bool] = None
    is_visible: Optional[bool] = None


class DirectoryProfileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    display_name: str
    company_name: Optional[str] = None
    industry: Optional[str] = None
    location: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    specialties: list = Field(default_factory=list)
    referral_categories: list = Field(default_factory=list)
    accepts_referrals: bool
    is_visible: bool
    updated_at: datetime


class DirectoryListResponse(BaseModel):
    profiles: list[DirectoryProfileResponse]
    total: int
    page: int
    per_page: int
    total_pages: int


class TrustScoreResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    total_sent: int
    sent_accepted: int
    sent_declined: int
    sent_converted: int
    total_received: int
    received_accepted: int
    received_declined: int
    received_converted: int
    acceptance_rate: float
    conversion_rate: float
    responsiveness: float
    trust_rating: int
    avg_response_hours: float
    last_computed_at: datetime


# ============================================================================
# Achievements
# ============================================================================
class AchievementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    achievement_key: str
    tier: AchievementTier
    points: int
    unlocked_at: datetime


class StreakResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    current_streak: int
    longest_streak: int
    last_active_date: Optional[date] = None


class AchievementSummary(BaseModel):
    achievements: list[AchievementResponse]
    streak: Optional[StreakResponse] = None
    progress: dict[str, Any]
    total_points: int
    max_points: int


class UnlockedTier(BaseModel):
    achievement_key: str
    tier: AchievementTier
    points: int


class AchievementCheckResult(BaseModel):
    newly_unlocked: list[UnlockedTier]
    streak_updated: bool


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: int
    display_name: str
    avatar_url: Optional[str] = None
    total_points: int
    achievement_count: int


# ============================================================================
# AI
# ============================================================================
class InsightRequest(BaseModel):
    org_id: int


class InsightResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    insight_type: InsightType
    title: str
    summary: str
    details: dict = Field(default_factory=dict)
    confidence: Optional[float] = None
    is_dismissed: bool
    expires_at: Optional[datetime] = None
    created_at: datetime


# ============================================================================
# Billing, Admin & Import
# ============================================================================
class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: Optional[str] = Field(None, alias="productId")


class ImpersonateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    org_id: Optional[int] = Field(None, alias="orgId")


class StopImpersonationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    original_org_id: Optional[int] = Field(None, alias="originalOrgId")


class ImportJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    file_name: str
    entity_type: EntityType
    status: ImportStatus
    total_rows: int
    processed_rows: int
    error_rows: int
    errors: list = Field(default_factory=list)
    created_at: datetime
