"""
Database models for Trellis.

This module exports all models, enums, and database utilities.
"""

from trellis.models.base import (
    Base,
    SessionLocal,
    engine,
    get_session,
    init_db,
    reset_db,
    session_scope,
    utcnow,
)

# Enums
from trellis.models.enums import (
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
    ViewType,
)

# Tenancy models
from trellis.models.organization import OrgMember, Organization, UserProfile

# CRM models
from trellis.models.crm import (
    Activity,
    Company,
    Contact,
    Deal,
    EntityTag,
    PipelineStage,
    Referral,
    Tag,
)

# Automation models
from trellis.models.automation import (
    Automation,
    AutomationEnrollment,
    AutomationStep,
    EmailLog,
    EmailTemplate,
)

# Exchange models
from trellis.models.exchange import (
    DirectoryProfile,
    ExchangeMessage,
    ExchangeTrustScore,
    ReferralExchange,
)

# Engagement models
from trellis.models.engagement import AiInsight, ImportJob, UserAchievement, UserStreak

__all__ = [
    # Base and utilities
    "Base",
    "SessionLocal",
    "engine",
    "get_session",
    "init_db",
    "reset_db",
    "session_scope",
    "utcnow",
    # Enums
    "AchievementTier",
    "ActivityType",
    "AutomationStatus",
    "AutomationTriggerType",
    "ContactMethod",
    "DealStatus",
    "DealType",
    "DelayUnit",
    "EmailLogStatus",
    "EnrollmentStatus",
    "EntityType",
    "ExchangeStatus",
    "ImportStatus",
    "InsightType",
    "OrgRole",
    "PlanType",
    "ReceiverStatus",
    "ReferralStatus",
    "ReferralType",
    "RelationshipType",
    "StepType",
    "SubscriptionStatus",
    "ViewType",
    # Tenancy
    "Organization",
    "OrgMember",
    "UserProfile",
    # CRM
    "Activity",
    "Company",
    "Contact",
    "Deal",
    "EntityTag",
    "PipelineStage",
    "Referral",
    "Tag",
    # Automations
    "Automation",
    "AutomationEnrollment",
    "AutomationStep",
    "EmailLog",
    "EmailTemplate",
    # Exchange
    "DirectoryProfile",
    "ExchangeMessage",
    "ExchangeTrustScore",
    "ReferralExchange",
    # Engagement
    "AiInsight",
    "ImportJob",
    "UserAchievement",
    "UserStreak",
]
