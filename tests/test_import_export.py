"""CSV import and export."""

import csv
import io
from datetime import date

import pytest

from trellis.exceptions import ValidationError
from trellis.models import Company, Contact, Deal, DealStatus, EntityType, ImportStatus, RelationshipType
from trellis.services.contact_service import ContactService
from trellis.services.import_export_service import ImportExportService, normalize_header, parse_csv

CONTACTS_CSV = """First Name,Last Name,E-mail,Type,City
Ada,Lovelace,ada@example.com,client,London
,Nameless,nobody@example.com,,
Grace,Hopper,grace@example.com,admiral,Arlington
Alan,Turing,,,
"""


@pytest.fixture
def data(session):
    return ImportExportService(session)


def test_normalize_header():
    assert normalize_header("First Name") == normalize_header("first_name") == "firstname"
    assert normalize_header("E-mail") == "email"


def test_parse_csv_skips_blank_lines_and_bom():
    rows = parse_csv("\ufeffname,value\n\nAcme,10\n")
    assert rows == [{"name": "Acme", "value": "10"}]


def test_import_contacts_reports_bad_rows(session, owner, org, data):
    result = data.import_csv(org.id, owner.id, "people.csv", CONTACTS_CSV, EntityType.CONTACT)

    assert result["status"] == "completed"
    assert result["total_rows"] == 4
    assert result["processed_rows"] == 2
    assert result["error_rows"] == 2
    assert result["errors"] == [
        {"row": 3, "error": "Missing first_name"},
        {"row": 4, "error": "Invalid relationship_type: admiral"},
    ]

    imported = session.query(Contact).filter(Contact.org_id == org.id).order_by(Contact.id).all()
    assert [c.first_name for c in imported] == ["Ada", "Alan"]
    assert imported[0].relationship_type == RelationshipType.CLIENT
    assert imported[0].email == "ada@example.com"
    assert data.list_jobs(org.id)[0].status == ImportStatus.COMPLETED


def test_import_all_rows_failing_marks_job_failed(owner, org, data):
    result = data.import_csv(org.id, owner.id, "bad.csv", "last_name\nSmith\nJones\n")
    assert result["status"] == "failed"
    assert result["processed_rows"] == 0


def test_import_companies_and_deals(session, owner, org, data):
    data.import_csv(
        org.id, owner.id, "companies.csv", "Company,Employees\nAcme,\"1,200\"\n", EntityType.COMPANY
    )
    company = session.query(Company).filter(Company.org_id == org.id).one()
    assert company.employee_count == 1200

    data.import_csv(
        org.id,
        owner.id,
        "deals.csv",
        "Deal Name,Amount,Status,Close Date\nRetainer,$5000,won,03/15/2026\n",
        EntityType.DEAL,
    )
    deal = session.query(Deal).filter(Deal.org_id == org.id).one()
    assert deal.value == 5000
    assert deal.status == DealStatus.WON
    assert deal.expected_close_date == date(2026, 3, 15)


def test_import_rejects_non_csv_and_empty(owner, org, data):
    with pytest.raises(ValidationError):
        data.import_csv(org.id, owner.id, "people.xlsx", CONTACTS_CSV)
    with pytest.raises(ValidationError):
        data.import_csv(org.id, owner.id, "empty.csv", "first_name\n")


def test_export_contacts(org, data, session):
    ContactService(session).create(org, first_name="Ada", email="ada@example.com")
    name, text = data.export_csv(org.id, EntityType.CONTACT, today=date(2026, 1, 2))

    assert name == "contacts-export-2026-01-02.csv"
    rows = list(csv.DictReader(io.StringIO(text)))
    assert len(rows) == 1
    assert rows[0]["first_name"] == "Ada"
    assert rows[0]["relationship_type"] == "contact"
    assert rows[0]["last_name"] == ""


def test_export_rejects_referrals(org, data):
    with pytest.raises(ValidationError):
        data.export_csv(org.id, EntityType.REFERRAL)
