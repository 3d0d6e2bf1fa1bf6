"""
Enum definitions for the Trellis CRM.

This module centralizes all enum types used across the application
to ensure consistency in status values, roles, and categorizations.
"""

import enum


# =============================================================================
# TENANCY
# =============================================================================


class PlanType(enum.Enum):
    """Subscription plan of an organization."""

    FREE = "free"
    PRO = "pro"
    TEAM = "team"


class SubscriptionStatus(enum.Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"


class OrgRole(enum.Enum):
    """Role of a user inside an organization."""

    OWNER = "owner"
    ADMIN = "admin"  # Also used for platform admins impersonating an org
    MEMBER = "member"
    VIEWER = "viewer"


# =============================================================================
# CRM
# =============================================================================


class EntityType(enum.Enum):
    """Kinds of records that can carry tags and activities."""

    CONTACT = "contact"
    COMPANY = "company"
    DEAL = "deal"
    REFERRAL = "referral"  # Activities only


class RelationshipType(enum.Enum):
    CONTACT = "contact"
    CLIENT = "client"
    REFERRAL_PARTNER = "referral_partner"
    VENDOR = "vendor"
    COLLEAGUE = "colleague"
    FRIEND = "friend"
    FAMILY = "family"


class ReferralType(enum.Enum):
    DIRECT = "direct"
    INTRODUCTION = "introduction"
    RECOMMENDATION = "recommendation"
    MUTUAL = "mutual"


class ReferralStatus(enum.Enum):
    """Lifecycle of a referral between two contacts of the same org."""

    PENDING = "pending"  # Introduction made, nothing happened yet
    ACTIVE = "active"  # Referred contact is engaged
    CONVERTED = "converted"  # Referred contact closed a won deal
    INACTIVE = "inactive"
    DECLINED = "declined"


class DealType(enum.Enum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"
    RETAINER = "retainer"
    PROJECT = "project"


class DealStatus(enum.Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"
    ABANDONED = "abandoned"


class ActivityType(enum.Enum):
    """Timeline entry types."""

    NOTE = "note"
    CALL = "call"
    EMAIL = "email"
    MEETING = "meeting"
    TASK = "task"
    DEAL_CREATED = "deal_created"
    DEAL_UPDATED = "deal_updated"
    DEAL_WON = "deal_won"
    DEAL_LOST = "deal_lost"
    REFERRAL_MADE = "referral_made"
    REFERRAL_RECEIVED = "referral_received"
    CONTACT_CREATED = "contact_created"
    CONTACT_UPDATED = "contact_updated"
    COMPANY_CREATED = "company_created"


class ContactMethod(enum.Enum):
    EMAIL = "email"
    PHONE = "phone"
    TEXT = "text"
    LINKEDIN = "linkedin"
    IN_PERSON = "in_person"


# =============================================================================
# AUTOMATIONS
# =============================================================================


class AutomationStatus(enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"  # Only active automations are processed or auto-enroll
    PAUSED = "paused"
    ARCHIVED = "archived"


class AutomationTriggerType(enum.Enum):
    MANUAL = "manual"
    ON_CONTACT_CREATE = "on_contact_create"
    ON_TAG_ADDED = "on_tag_added"  # trigger_config: {"tag_id": ...}


class StepType(enum.Enum):
    EMAIL = "email"
    DELAY = "delay"
    CONDITION = "condition"


class DelayUnit(enum.Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


class EnrollmentStatus(enum.Enum):
    """Progress of a contact through an automation."""

    ACTIVE = "active"  # Eligible for processing once next_action_at passes
    COMPLETED = "completed"  # Ran out of steps
    PAUSED = "paused"
    CANCELED = "canceled"
    FAILED = "failed"  # See error_message


class EmailLogStatus(enum.Enum):
    """Delivery status of a sent email, updated by provider webhooks."""

    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    COMPLAINED = "complained"
    FAILED = "failed"


# =============================================================================
# REFERRAL EXCHANGE
# =============================================================================


class ExchangeStatus(enum.Enum):
    """Lifecycle of a cross-organization referral exchange."""

    DRAFT = "draft"  # Sender is still editing
    PENDING = "pending"  # Waiting for the receiver
    ACCEPTED = "accepted"  # Contact imported into receiver's org
    DECLINED = "declined"
    EXPIRED = "expired"  # Pending past expires_at
    UNDELIVERABLE = "undeliverable"  # Receiver exists but is on the free plan


class ReceiverStatus(enum.Enum):
    """Receiver-reported outcome of an accepted exchange."""

    NONE = "none"
    IN_PROGRESS = "in_progress"
    CONVERTED = "converted"
    LOST = "lost"


# =============================================================================
# ENGAGEMENT
# =============================================================================


class InsightType(enum.Enum):
    REFERRAL_PATTERN = "referral_pattern"
    TOP_REFERRERS = "top_referrers"
    NETWORK_GAP = "network_gap"
    DEAL_PREDICTION = "deal_prediction"
    CLUSTER_ANALYSIS = "cluster_analysis"
    GROWTH_OPPORTUNITY = "growth_opportunity"


class ImportStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"  # Every row errored


class AchievementTier(enum.Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"


class ViewType(enum.Enum):
    """Visualization views, gated by plan."""

    TREE = "tree"
    NETWORK = "network"
    GALAXY = "galaxy"
