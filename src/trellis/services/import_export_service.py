"""
CSV import and export for contacts, companies and deals.

Imports run in batches of 50 rows; each row is inserted inside its own
savepoint so one bad row never loses the rest of the batch. The import job
row tracks progress and keeps the most recent errors.
"""

from __future__ import annotations

import csv
import io
import logging
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from trellis.exceptions import ValidationError
from trellis.models import (
    Company,
    Contact,
    Deal,
    DealStatus,
    DealType,
    EntityType,
    ImportJob,
    ImportStatus,
    RelationshipType,
    utcnow,
)

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
MAX_STORED_ERRORS = 100
RESPONSE_ERRORS = 20

EXPORT_COLUMNS = {
    EntityType.CONTACT: [
        "first_name",
        "last_name",
        "email",
        "phone",
        "mobile_phone",
        "job_title",
        "industry",
        "city",
        "state_province",
        "country",
        "linkedin_url",
        "website_url",
        "relationship_type",
        "referral_score",
        "lifetime_referral_value",
        "notes",
        "created_at",
    ],
    EntityType.COMPANY: [
        "name",
        "industry",
        "website",
        "phone",
        "email",
        "city",
        "state_province",
        "country",
        "employee_count",
        "annual_revenue",
        "description",
        "created_at",
    ],
    EntityType.DEAL: [
        "name",
        "value",
        "currency",
        "deal_type",
        "status",
        "probability",
        "expected_close_date",
        "actual_close_date",
        "description",
        "notes",
        "created_at",
    ],
}

EXPORT_MODELS = {
    EntityType.CONTACT: (Contact, "contacts"),
    EntityType.COMPANY: (Company, "companies"),
    EntityType.DEAL: (Deal, "deals"),
}


class RowError(Exception):
    """A CSV row that cannot be imported."""


# =============================================================================
# Parsing helpers
# =============================================================================


def normalize_header(header: str) -> str:
    """Lowercase and drop punctuation, so "First Name" and "first_name" match."""
    return "".join(ch for ch in (header or "").lower() if ch.isalnum())


def parse_csv(text: str) -> list[dict[str, str]]:
    """Parse CSV text into rows keyed by normalized header; blank lines are skipped."""
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    lines = [line for line in reader if any(cell.strip() for cell in line)]
    if len(lines) < 2:
        return []
    headers = [normalize_header(h) for h in lines[0]]
    rows = []
    for values in lines[1:]:
        rows.append(
            {header: (values[i].strip() if i < len(values) else "") for i, header in enumerate(headers)}
        )
    return rows


def pick(row: dict[str, str], *aliases: str) -> Optional[str]:
    """First non-empty value among the header aliases."""
    for alias in aliases:
        value = row.get(normalize_header(alias))
        if value:
            return value
    return None


def _enum(enum_cls, value: Optional[str], default, field: str):
    if not value:
        return default
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        raise RowError(f"Invalid {field}: {value}")


def _number(value: Optional[str], field: str, cast: Callable = float):
    if not value:
        return None
    try:
        return cast(value.replace(",", "").replace("$", ""))
    except ValueError:
        raise RowError(f"Invalid {field}: {value}")


def _date(value: Optional[str], field: str) -> Optional[date]:
    if not value:
        return None
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise RowError(f"Invalid {field}: {value}")


# =============================================================================
# Row mapping
# =============================================================================


def map_contact_row(row: dict[str, str], org_id: int) -> Contact:
    first_name = pick(row, "first_name", "first", "given_name")
    if not first_name:
        raise RowError("Missing first_name")
    return Contact(
        org_id=org_id,
        first_name=first_name,
        last_name=pick(row, "last_name", "surname", "family_name"),
        email=pick(row, "email", "email_address", "e-mail"),
        phone=pick(row, "phone", "phone_number", "telephone"),
        job_title=pick(row, "job_title", "title", "position"),
        industry=pick(row, "industry", "sector"),
        city=pick(row, "city", "town"),
        state_province=pick(row, "state", "state_province", "province", "region"),
        country=pick(row, "country"),
        linkedin_url=pick(row, "linkedin", "linkedin_url"),
        website_url=pick(row, "website", "website_url", "url"),
        relationship_type=_enum(
            RelationshipType,
            pick(row, "relationship_type", "type"),
            RelationshipType.CONTACT,
            "relationship_type",
        ),
        notes=pick(row, "notes"),
    )


def map_company_row(row: dict[str, str], org_id: int) -> Company:
    name = pick(row, "name", "company", "company_name", "organization")
    if not name:
        raise RowError("Missing company name")
    return Company(
        org_id=org_id,
        name=name,
        industry=pick(row, "industry", "sector"),
        website=pick(row, "website", "url"),
        phone=pick(row, "phone"),
        email=pick(row, "email"),
        city=pick(row, "city"),
        state_province=pick(row, "state", "state_province", "province"),
        country=pick(row, "country"),
        employee_count=_number(pick(row, "employee_count", "employees"), "employee_count", int),
        description=pick(row, "description", "details"),
    )


def map_deal_row(row: dict[str, str], org_id: int) -> Deal:
    name = pick(row, "name", "deal", "deal_name")
    if not name:
        raise RowError("Missing deal name")
    return Deal(
        org_id=org_id,
        name=name,
        value=_number(pick(row, "value", "amount", "deal_value"), "value"),
        currency=(pick(row, "currency") or "USD").upper()[:3],
        deal_type=_enum(DealType, pick(row, "deal_type", "type"), DealType.ONE_TIME, "deal_type"),
        status=_enum(DealStatus, pick(row, "status"), DealStatus.OPEN, "status"),
        description=pick(row, "description", "details"),
        expected_close_date=_date(
            pick(row, "expected_close_date", "close_date"), "expected_close_date"
        ),
    )


ROW_MAPPERS = {
    EntityType.CONTACT: map_contact_row,
    EntityType.COMPANY: map_company_row,
    EntityType.DEAL: map_deal_row,
}


def _csv_value(value) -> str:
    if value is None:
        return ""
    if hasattr(value, "value"):
        return str(value.value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


# =============================================================================
# Service
# =============================================================================


class ImportExportService:
    """Service for CSV imports and exports."""

    def __init__(self, session: Session):
        self.session = session

    def import_csv(
        self,
        org_id: int,
        user_id: Optional[int],
        file_name: str,
        content: str,
        entity_type: EntityType = EntityType.CONTACT,
    ) -> dict:
        """
        Import CSV rows for one entity type.

        Returns:
            Summary dict with job_id, status, row counts and the first errors
        """
        if not file_name or not file_name.lower().endswith(".csv"):
            raise ValidationError("Only CSV files are supported")
        mapper = ROW_MAPPERS.get(entity_type)
        if mapper is None:
            raise ValidationError(f"Unsupported entity type: {entity_type.value}")

        rows = parse_csv(content)
        if not rows:
            raise ValidationError("CSV file is empty or has no data rows")

        job = ImportJob(
            org_id=org_id,
            user_id=user_id,
            file_name=file_name,
            entity_type=entity_type,
            status=ImportStatus.PROCESSING,
            total_rows=len(rows),
            errors=[],
            field_mapping={},
        )
        self.session.add(job)
        self.session.commit()

        processed = 0
        errors: list[dict] = []
        for start in range(0, len(rows), BATCH_SIZE):
            batch = rows[start : start + BATCH_SIZE]
            for offset, row in enumerate(batch):
                # +2: one for the header line, one for 1-based numbering
                line = start + offset + 2
                try:
                    record = mapper(row, org_id)
                    with self.session.begin_nested():
                        self.session.add(record)
                    processed += 1
                except RowError as e:
                    errors.append({"row": line, "error": str(e)})
                except SQLAlchemyError as e:
                    errors.append({"row": line, "error": str(e.__cause__ or e)})

            job.processed_rows = processed
            job.error_rows = len(errors)
            job.errors = errors[-MAX_STORED_ERRORS:]
            self.session.commit()

        job.status = ImportStatus.FAILED if len(errors) == len(rows) else ImportStatus.COMPLETED
        self.session.commit()
        logger.info(
            f"Import job {job.id} ({entity_type.value}) finished: "
            f"{processed} imported, {len(errors)} failed"
        )
        return {
            "job_id": job.id,
            "status": job.status.value,
            "total_rows": len(rows),
            "processed_rows": processed,
            "error_rows": len(errors),
            "errors": errors[:RESPONSE_ERRORS],
        }

    def list_jobs(self, org_id: int, limit: int = 20) -> list[ImportJob]:
        return (
            self.session.query(ImportJob)
            .filter(ImportJob.org_id == org_id)
            .order_by(ImportJob.created_at.desc())
            .limit(limit)
            .all()
        )

    def export_csv(self, org_id: int, entity_type: EntityType, today: Optional[date] = None) -> tuple[str, str]:
        """Return (file_name, csv_text) for every row of one entity type, newest first."""
        if entity_type not in EXPORT_MODELS:
            raise ValidationError(f"Unsupported entity type: {entity_type.value}")
        model, label = EXPORT_MODELS[entity_type]
        columns = EXPORT_COLUMNS[entity_type]

        records = (
            self.session.query(model)
            .filter(model.org_id == org_id)
            .order_by(model.created_at.desc())
            .all()
        )
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(columns)
        for record in records:
            writer.writerow([_csv_value(getattr(record, column)) for column in columns])

        stamp = (today or utcnow().date()).isoformat()
        return f"{label}-export-{stamp}.csv", buffer.getvalue()
