"""
Company service - CRUD for companies.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from trellis.exceptions import ValidationError
from trellis.models import ActivityType, Company, Contact, EntityTag, EntityType
from trellis.services.activity_service import ActivityService

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    "name",
    "industry",
    "website",
    "phone",
    "email",
    "address_line1",
    "address_line2",
    "city",
    "state_province",
    "postal_code",
    "country",
    "employee_count",
    "annual_revenue",
    "description",
    "logo_url",
    "linkedin_url",
    "custom_fields",
}


class CompanyService:
    """Service for managing companies."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, org_id: int, company_id: int) -> Optional[Company]:
        return (
            self.session.query(Company)
            .filter(Company.org_id == org_id, Company.id == company_id)
            .first()
        )

    def list(
        self,
        org_id: int,
        search: Optional[str] = None,
        industry: Optional[str] = None,
        page: int = 0,
        page_size: int = 25,
    ) -> tuple[list[dict], int]:
        """List companies with their contact counts. Pages are 0-based."""
        query = self.session.query(Company).filter(Company.org_id == org_id)
        if search:
            term = f"%{search}%"
            query = query.filter(or_(Company.name.ilike(term), Company.website.ilike(term)))
        if industry:
            query = query.filter(Company.industry == industry)

        total = query.count()
        companies = (
            query.order_by(Company.name.asc())
            .offset(max(page, 0) * page_size)
            .limit(page_size)
            .all()
        )

        ids = [c.id for c in companies]
        counts = {}
        if ids:
            counts = dict(
                self.session.query(Contact.company_id, func.count(Contact.id))
                .filter(Contact.company_id.in_(ids))
                .group_by(Contact.company_id)
                .all()
            )
        return [{"company": c, "contact_count": counts.get(c.id, 0)} for c in companies], total

    def create(self, org_id: int, created_by: Optional[int] = None, **kwargs) -> Company:
        if not kwargs.get("name"):
            raise ValidationError("name is required")
        data = {k: v for k, v in kwargs.items() if k in EDITABLE_FIELDS and v is not None}
        company = Company(org_id=org_id, **data)
        self.session.add(company)
        self.session.flush()

        ActivityService(self.session).log(
            org_id=org_id,
            entity_type=EntityType.COMPANY,
            entity_id=company.id,
            activity_type=ActivityType.COMPANY_CREATED,
            title=f"{company.name} was added",
            created_by=created_by,
        )
        self.session.commit()
        self.session.refresh(company)
        logger.info(f"Company {company.id} created in org {org_id}")
        return company

    def update(self, org_id: int, company_id: int, **kwargs) -> Optional[Company]:
        company = self.get(org_id, company_id)
        if not company:
            return None
        for field, value in kwargs.items():
            if field in EDITABLE_FIELDS:
                setattr(company, field, value)
        if not company.name:
            raise ValidationError("name is required")
        self.session.commit()
        self.session.refresh(company)
        return company

    def delete(self, org_id: int, company_id: int) -> bool:
        company = self.get(org_id, company_id)
        if not company:
            return False
        self.session.query(EntityTag).filter(
            EntityTag.entity_type == EntityType.COMPANY, EntityTag.entity_id == company_id
        ).delete(synchronize_session=False)
        self.session.delete(company)
        self.session.commit()
        return True
