"""Tests for model -> row writers."""

import json
from datetime import datetime

import pytest

from edcrm.models import (
    Booking,
    BookingAmendment,
    Candidate,
    Email,
    EmailTemplate,
    EmailTemplateAttachment,
    ManualAttachment,
    Opportunity,
    OpportunityNote,
    School,
    SharePointAttachment,
    Task,
)
from edcrm.services.parsers import parse_bookings, parse_emails, parse_opportunities, parse_schools
from edcrm.services.schema import SCHEMAS, build_row
from edcrm.services.writers import (
    booking_values,
    candidate_values,
    email_template_attachment_values,
    email_template_values,
    email_values,
    entity_values,
    opportunity_values,
    school_values,
    task_values,
)


NOW = datetime(2024, 3, 13, 15, 30, 5)


class TestTimestamps:
    def test_new_record_gets_now_in_us_form(self):
        values = task_values(Task(school_name="Oakfield", task_description="Call"), NOW)
        assert values["date_created"] == "3/13/2024 3:30:05 PM"

    def test_existing_uk_timestamp_is_kept(self):
        task = Task(school_name="Oakfield", task_description="Call", date_created="01/02/2024 09:15")
        assert task_values(task, NOW)["date_created"] == "2/1/2024 9:15:00 AM"

    def test_due_date_normalised(self):
        task = Task(school_name="Oakfield", task_description="Call", due_date="1/2/24")
        assert task_values(task, NOW)["due_date"] == "01/02/2024"

    def test_blank_due_date(self):
        task = Task(school_name="Oakfield", task_description="Call")
        assert task_values(task, NOW)["due_date"] == ""


class TestSchools:
    def test_parse_of_written_row(self):
        school = School(name="Oakfield", account_manager="Jay Norton", spoke_to_cover_manager=True, contact2="Mr Jones")
        parsed = parse_schools([build_row(SCHEMAS["schools"], school_values(school))])[0]
        assert parsed.name == "Oakfield"
        assert parsed.spoke_to_cover_manager is True
        assert parsed.contact2 == "Mr Jones"
        assert parsed.website is None


class TestEmails:
    def test_received_gets_prefix(self):
        email = Email(school_name="Oakfield", subject="Cover", direction="received")
        values = email_values(email, NOW)
        assert values["subject"] == "[Received] Cover"
        assert parse_emails([build_row(SCHEMAS["emails"], values)])[0].direction == "received"

    def test_sent_has_no_prefix(self):
        assert email_values(Email(school_name="Oakfield", subject="Cover"), NOW)["subject"] == "Cover"


class TestOpportunities:
    def test_notes_as_json_in_current_layout(self):
        opportunity = Opportunity(
            name="Supply cover",
            school_name="Oakfield",
            account_manager="Jay Norton",
            notes=[OpportunityNote(author="Jay", date="2024-03-01T10:00:00Z", note="Met head")],
        )
        values = opportunity_values(opportunity, NOW)
        assert json.loads(values["notes"]) == [{"author": "Jay", "date": "2024-03-01T10:00:00Z", "note": "Met head"}]

        row = build_row(SCHEMAS["opportunities"], values)
        assert row[6:10] == ["", "", "", ""]
        parsed = parse_opportunities([row])[0]
        assert parsed.notes[0].author == "Jay"
        assert parsed.account_manager == "Jay Norton"


class TestCandidates:
    def test_travel_blank_when_unknown(self):
        candidate = Candidate(name="Sam")
        assert candidate_values(candidate, NOW)["willing_to_travel_miles"] == ""

    def test_availability_flattened(self):
        candidate = Candidate(name="Sam", availability={"monday": True})
        values = candidate_values(candidate, NOW)
        assert values["monday"] is True
        assert values["friday"] is False


class TestTemplates:
    def test_template_row_has_no_attachments(self):
        template = EmailTemplate(
            id="t1",
            name="Intro",
            attachments=[ManualAttachment(name="a.txt", content_bytes="YQ==")],
        )
        values = email_template_values(template, NOW)
        assert "legacy_attachments" not in values
        assert build_row(SCHEMAS["email_templates"], values)[4] == ""

    def test_manual_attachment_row(self):
        linked = EmailTemplateAttachment(
            template_id="t1",
            attachment=ManualAttachment(name="a.txt", content_type="text/plain", content_bytes="YQ=="),
        )
        values = email_template_attachment_values(linked, NOW)
        assert values["type"] == "manual"
        assert values["content_bytes"] == "YQ=="
        assert values["file_id"] == ""

    def test_sharepoint_attachment_row(self):
        linked = EmailTemplateAttachment(
            template_id="t1",
            attachment=SharePointAttachment(name="Map.png", file_id="f1", drive_id="d1"),
        )
        values = email_template_attachment_values(linked, NOW)
        assert (values["file_id"], values["drive_id"], values["content_bytes"]) == ("f1", "d1", "")


class TestBookings:
    def test_amendments_written_with_camel_case_keys(self):
        booking = Booking(
            school_name="Oakfield",
            candidate_name="Sam",
            parsed_amendments={"04/03/2024": BookingAmendment(school_deduction=20, notes="Half day")},
        )
        values = booking_values(booking, NOW)
        assert json.loads(values["amendments"]) == {
            "04/03/2024": {"schoolDeduction": 20, "candidateDeduction": 0, "notes": "Half day"}
        }
        parsed = parse_bookings([build_row(SCHEMAS["bookings"], values)])[0]
        assert parsed.parsed_amendments["04/03/2024"].school_deduction == 20

    def test_raw_amendments_kept(self):
        booking = Booking(school_name="Oakfield", candidate_name="Sam", amendments="{bad")
        assert booking_values(booking, NOW)["amendments"] == "{bad"


class TestEntityValues:
    def test_dispatch(self):
        values = entity_values("schools", School(name="Oakfield"), NOW)
        assert values["name"] == "Oakfield"

    def test_unknown_kind(self):
        with pytest.raises(KeyError):
            entity_values("invoices", School(name="Oakfield"))
