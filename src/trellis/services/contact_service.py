"""
Contact service - CRUD and filtered listing for contacts.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, joinedload

from trellis.exceptions import PlanLimitError, ValidationError
from trellis.models import (
    Activity,
    ActivityType,
    Company,
    Contact,
    EntityTag,
    EntityType,
    Organization,
    RelationshipType,
    utcnow,
)
from trellis.services.activity_service import ActivityService
from trellis.services.automation_service import AutomationService

logger = logging.getLogger(__name__)

# Record-keeping entries that do not count as touching base with a contact
BOOKKEEPING_ACTIVITIES = (ActivityType.CONTACT_CREATED, ActivityType.CONTACT_UPDATED)

SORTABLE_FIELDS = {
    "created_at",
    "updated_at",
    "first_name",
    "last_name",
    "referral_score",
    "lifetime_referral_value",
    "generation",
}

EDITABLE_FIELDS = {
    "first_name",
    "last_name",
    "email",
    "phone",
    "mobile_phone",
    "job_title",
    "company_id",
    "industry",
    "address_line1",
    "address_line2",
    "city",
    "state_province",
    "postal_code",
    "country",
    "linkedin_url",
    "twitter_url",
    "facebook_url",
    "website_url",
    "relationship_type",
    "rating",
    "generation",
    "profile_photo_url",
    "notes",
    "birthday",
    "anniversary",
    "spouse_partner_name",
    "preferred_contact_method",
    "custom_fields",
}


def parse_activity_filter(value: str) -> tuple[str, int]:
    """Parse "active_within:N", "inactive_since:N" or "never:0"."""
    try:
        mode, days = value.split(":", 1)
        days_int = int(days)
    except ValueError:
        raise ValidationError(f"Invalid activity filter: {value}")
    if mode not in ("active_within", "inactive_since", "never") or days_int < 0:
        raise ValidationError(f"Invalid activity filter: {value}")
    return mode, days_int


class ContactService:
    """Service for managing contacts."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, org_id: int, contact_id: int) -> Optional[Contact]:
        return (
            self.session.query(Contact)
            .options(joinedload(Contact.company))
            .filter(Contact.org_id == org_id, Contact.id == contact_id)
            .first()
        )

    def count(self, org_id: int) -> int:
        return self.session.query(func.count(Contact.id)).filter(Contact.org_id == org_id).scalar() or 0

    def list(
        self,
        org_id: int,
        search: Optional[str] = None,
        relationship_type: Optional[RelationshipType] = None,
        industry: Optional[str] = None,
        company_id: Optional[int] = None,
        tag_ids: Optional[list[int]] = None,
        tag_mode: str = "or",
        activity: Optional[str] = None,
        generation: Optional[int] = None,
        location: Optional[str] = None,
        min_score: Optional[int] = None,
        has_email: Optional[bool] = None,
        has_phone: Optional[bool] = None,
        sort: str = "created_at",
        sort_desc: bool = True,
        page: int = 0,
        page_size: int = 25,
    ) -> tuple[list[Contact], int]:
        """
        List contacts with filtering. Pages are 0-based.

        Returns:
            (contacts on the page, total matching count)
        """
        query = self.session.query(Contact).filter(Contact.org_id == org_id)

        if search:
            term = f"%{search}%"
            query = query.filter(
                or_(
                    Contact.first_name.ilike(term),
                    Contact.last_name.ilike(term),
                    Contact.email.ilike(term),
                )
            )
        if relationship_type:
            query = query.filter(Contact.relationship_type == relationship_type)
        if industry:
            query = query.filter(Contact.industry == industry)
        if company_id:
            query = query.filter(Contact.company_id == company_id)
        if generation is not None:
            query = query.filter(Contact.generation == generation)
        if location:
            term = f"%{location}%"
            query = query.filter(
                or_(
                    Contact.city.ilike(term),
                    Contact.state_province.ilike(term),
                    Contact.country.ilike(term),
                )
            )
        if min_score is not None:
            query = query.filter(Contact.referral_score >= min_score)
        if has_email is not None:
            query = query.filter(
                Contact.email.isnot(None) & (Contact.email != "")
                if has_email
                else or_(Contact.email.is_(None), Contact.email == "")
            )
        if has_phone is not None:
            query = query.filter(
                Contact.phone.isnot(None) & (Contact.phone != "")
                if has_phone
                else or_(Contact.phone.is_(None), Contact.phone == "")
            )
        if tag_ids:
            query = self._filter_tags(query, tag_ids, tag_mode)
        if activity:
            query = self._filter_activity(query, org_id, activity)

        total = query.count()

        sort_field = sort if sort in SORTABLE_FIELDS else "created_at"
        column = getattr(Contact, sort_field)
        query = query.order_by(column.desc() if sort_desc else column.asc(), Contact.id.desc())
        contacts = (
            query.options(joinedload(Contact.company))
            .offset(max(page, 0) * page_size)
            .limit(page_size)
            .all()
        )
        return contacts, total

    def _filter_tags(self, query, tag_ids: list[int], tag_mode: str):
        tagged = (
            select(EntityTag.entity_id)
            .where(EntityTag.entity_type == EntityType.CONTACT, EntityTag.tag_id.in_(tag_ids))
            .group_by(EntityTag.entity_id)
        )
        if tag_mode == "and":
            tagged = tagged.having(func.count(func.distinct(EntityTag.tag_id)) == len(set(tag_ids)))
        return query.filter(Contact.id.in_(tagged))

    def _filter_activity(self, query, org_id: int, activity: str):
        mode, days = parse_activity_filter(activity)
        contact_activity = select(Activity.entity_id).where(
            Activity.org_id == org_id,
            Activity.entity_type == EntityType.CONTACT,
            Activity.activity_type.notin_(BOOKKEEPING_ACTIVITIES),
        )
        if mode == "never":
            return query.filter(Contact.id.notin_(contact_activity))

        cutoff = utcnow() - timedelta(days=days)
        recent = contact_activity.where(Activity.created_at >= cutoff)
        if mode == "active_within":
            return query.filter(Contact.id.in_(recent))
        # inactive_since: had activity at some point but none since the cutoff
        return query.filter(Contact.id.in_(contact_activity), Contact.id.notin_(recent))

    def create(self, org: Organization, created_by: Optional[int] = None, **kwargs) -> Contact:
        """Create a contact, enforcing the org's contact limit and firing triggers."""
        if not kwargs.get("first_name"):
            raise ValidationError("first_name is required")
        if self.count(org.id) >= org.max_contacts:
            raise PlanLimitError(
                f"Contact limit reached ({org.max_contacts}). Upgrade your plan to add more contacts."
            )
        self._check_company(org.id, kwargs.get("company_id"))

        data = {k: v for k, v in kwargs.items() if k in EDITABLE_FIELDS and v is not None}
        contact = Contact(org_id=org.id, **data)
        self.session.add(contact)
        self.session.flush()

        ActivityService(self.session).log(
            org_id=org.id,
            entity_type=EntityType.CONTACT,
            entity_id=contact.id,
            activity_type=ActivityType.CONTACT_CREATED,
            title=f"{contact.full_name} was added",
            created_by=created_by,
        )
        AutomationService(self.session).handle_contact_created(contact)

        self.session.commit()
        self.session.refresh(contact)
        logger.info(f"Contact {contact.id} created in org {org.id}")
        return contact

    def update(
        self, org_id: int, contact_id: int, updated_by: Optional[int] = None, **kwargs
    ) -> Optional[Contact]:
        """Update a contact and log the changed fields."""
        contact = self.get(org_id, contact_id)
        if not contact:
            return None
        if "company_id" in kwargs:
            self._check_company(org_id, kwargs["company_id"])

        changed = {}
        for field, new_value in kwargs.items():
            if field not in EDITABLE_FIELDS:
                continue
            old_value = getattr(contact, field)
            if old_value != new_value:
                setattr(contact, field, new_value)
                changed[field] = {
                    "old": str(old_value) if old_value is not None else None,
                    "new": str(new_value) if new_value is not None else None,
                }

        if changed:
            ActivityService(self.session).log(
                org_id=org_id,
                entity_type=EntityType.CONTACT,
                entity_id=contact.id,
                activity_type=ActivityType.CONTACT_UPDATED,
                title=f"{contact.full_name} was updated",
                meta={"changes": changed},
                created_by=updated_by,
            )
        self.session.commit()
        self.session.refresh(contact)
        return contact

    def delete(self, org_id: int, contact_id: int) -> bool:
        contact = self.get(org_id, contact_id)
        if not contact:
            return False
        self.session.query(EntityTag).filter(
            EntityTag.entity_type == EntityType.CONTACT, EntityTag.entity_id == contact_id
        ).delete(synchronize_session=False)
        self.session.delete(contact)
        self.session.commit()
        return True

    def _check_company(self, org_id: int, company_id: Optional[int]) -> None:
        if company_id is None:
            return
        exists = (
            self.session.query(Company.id)
            .filter(Company.org_id == org_id, Company.id == company_id)
            .first()
        )
        if not exists:
            raise ValidationError("Company not found")
