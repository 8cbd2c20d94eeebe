"""Tests for the CRM service with the workbook and mail adapters patched out."""

import asyncio
import json
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from edcrm.adapters.ms365 import mail, workbook
from edcrm.adapters.ms365.workbook import SheetValues
from edcrm.models import (
    CallLog,
    CrmData,
    Email,
    EmailTemplate,
    ManualAttachment,
    OpportunityNote,
    School,
    SharePointAttachment,
    Task,
    User,
)
from edcrm.services import crm_service
from edcrm.services.crm_service import OperationNotAllowedError, UnknownEntityError
from edcrm.services.schema import SchemaMismatchError


NOW = datetime(2024, 3, 13, 15, 30)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def fresh_columns(monkeypatch):
    monkeypatch.setattr(crm_service, "_COLUMNS", {})


@pytest.fixture
def writes(monkeypatch):
    """Patch every workbook write; each mock records its calls."""
    mocks = {
        "add_row": AsyncMock(side_effect=lambda cred, ws, values: {"excel_row_index": 42}),
        "update_row": AsyncMock(return_value={}),
        "delete_row": AsyncMock(return_value={"success": True}),
        "update_cell": AsyncMock(return_value={}),
        "clear_sheet": AsyncMock(return_value={}),
    }
    for name, mock in mocks.items():
        monkeypatch.setattr(workbook, name, mock)
    return mocks


NOTES_HEADER = ["Note", "Date", "School Name", "Account Manager", "Cover Manager", "Contact 2"]


class TestLoad:
    def test_build_from_sheets(self):
        sheets = {
            "schools": SheetValues(
                header=["School Name", "Location"],
                rows=[["Oakfield", "Leeds"], ["", ""], ["Elm", "York"]],
            ),
            "notes": SheetValues(header=NOTES_HEADER, rows=[["Rang twice", 44927, "Oakfield", "Jay Norton", "", ""]]),
        }
        data = crm_service.build_crm_data(sheets)
        assert [s.excel_row_index for s in data.schools] == [2, 4]
        assert data.notes[0].note == "Rang twice"
        assert data.notes[0].date == "01/01/2023"
        assert data.tasks == []

    def test_strict_header_check(self):
        sheets = {"notes": SheetValues(header=["School Name", "Date"], rows=[])}
        with pytest.raises(SchemaMismatchError):
            crm_service.build_crm_data(sheets, strict=True)

    def test_load_reads_every_sheet(self, monkeypatch, credential):
        fetch = AsyncMock(return_value={"schools": SheetValues(rows=[["Oakfield"]])})
        monkeypatch.setattr(workbook, "get_all_crm_data", fetch)

        data = run(crm_service.load_crm_data(credential))

        assert data.schools[0].name == "Oakfield"
        worksheet_map = fetch.call_args.args[1]
        assert worksheet_map["call_logs"] == "Call Log"
        assert len(worksheet_map) == 13

    def test_load_with_mailbox(self, monkeypatch, credential):
        monkeypatch.setattr(workbook, "get_all_crm_data", AsyncMock(return_value={}))
        synced = [Email(school_name="Oakfield", subject="Cover")]
        monkeypatch.setattr(crm_service, "sync_emails", AsyncMock(return_value=synced))
        data = run(crm_service.load_crm_data(credential, sync_mailbox=True))
        assert data.emails == synced

    def test_mailbox_copy_of_logged_email_kept_once(self, monkeypatch, credential):
        logged = Email(school_name="Oakfield", subject="Cover", date="13/03/2024 10:00", body="logged", excel_row_index=5)
        monkeypatch.setattr(workbook, "get_all_crm_data", AsyncMock(return_value={}))
        monkeypatch.setattr(crm_service, "build_crm_data", lambda sheets, strict=False: CrmData(emails=[logged]))
        synced = [
            Email(school_name="Oakfield", subject="Cover", date="13/03/2024 10:00", body="mailbox", direction="received"),
            Email(school_name="Elm", subject="Cover", date="13/03/2024 10:00"),
        ]
        monkeypatch.setattr(crm_service, "sync_emails", AsyncMock(return_value=synced))

        data = run(crm_service.load_crm_data(credential, sync_mailbox=True))

        assert [(e.school_name, e.body) for e in data.emails] == [("Oakfield", "mailbox"), ("Elm", "")]

    def test_last_called_date_from_latest_call(self):
        sheets = {
            "schools": SheetValues(rows=[["Oakfield"], ["Elm"], ["Birch"]]),
            "call_logs": SheetValues(rows=[
                ["Oakfield", "", "", "", "", 45355],
                ["Elm", "", "", "", "", 45355],
                ["Oakfield", "", "", "", "", 45364.5],
            ]),
        }
        data = crm_service.build_crm_data(sheets)
        assert [s.last_called_date for s in data.schools] == ["13/03/2024 12:00", "04/03/2024", None]


class TestWrites:
    def test_each_append_goes_through_runner(self, writes, credential):
        appends = []

        async def run_append(append):
            appends.append(append)
            return await append()

        template = EmailTemplate(id="t1", attachments=[ManualAttachment(name="a.txt", content_bytes="YQ==")])
        run(crm_service.add_entity(credential, "email_templates", template, NOW, run_append=run_append))

        assert len(appends) == 2
        assert writes["add_row"].await_count == 2

    def test_add_uses_loaded_column_order(self, writes, credential):
        crm_service.build_crm_data({"notes": SheetValues(header=NOTES_HEADER, rows=[])})

        saved = run(crm_service.add_entity(
            credential, "notes", {"school_name": "Oakfield", "note": "Left voicemail", "account_manager": "Jay Norton"}, NOW,
        ))

        assert saved.excel_row_index == 42
        worksheet, row = writes["add_row"].call_args.args[1:]
        assert worksheet == "Notes"
        assert row[0] == "Left voicemail"
        assert row[1] == "3/13/2024 3:30:00 PM"
        assert row[2] == "Oakfield"

    def test_template_adds_attachment_rows(self, writes, credential):
        template = EmailTemplate(
            id="t1",
            name="Intro",
            attachments=[
                ManualAttachment(name="a.txt", content_bytes="YQ=="),
                SharePointAttachment(name="b.pdf", file_id="f1", drive_id="d1"),
            ],
        )
        run(crm_service.add_entity(credential, "email_templates", template, NOW))
        worksheets = [call.args[1] for call in writes["add_row"].call_args_list]
        assert worksheets == ["EmailTemplates", "EmailTemplateAttachments", "EmailTemplateAttachments"]
        attachment_row = writes["add_row"].call_args_list[2].args[2]
        assert attachment_row[:2] == ["t1", "sharepoint"]

    def test_invalid_entity(self, writes, credential):
        with pytest.raises(ValidationError):
            run(crm_service.add_entity(credential, "tasks", {"school_name": "Oakfield"}))
        writes["add_row"].assert_not_called()

    def test_unknown_kind(self, writes, credential):
        with pytest.raises(UnknownEntityError):
            run(crm_service.add_entity(credential, "users", {"email": "a@b.c"}))

    def test_operation_not_allowed(self, writes, credential):
        with pytest.raises(OperationNotAllowedError):
            run(crm_service.delete_entity(credential, "schools", 5))
        with pytest.raises(OperationNotAllowedError):
            run(crm_service.update_entity(credential, "emails", 5, {"school_name": "x", "subject": "y"}))

    def test_update(self, writes, credential):
        task = Task(school_name="Oakfield", task_description="Call", is_completed=True, date_created="01/02/2024 09:00")
        saved = run(crm_service.update_entity(credential, "tasks", 7, task, NOW))
        assert saved.excel_row_index == 7
        worksheet, row_index, row = writes["update_row"].call_args.args[1:]
        assert (worksheet, row_index) == ("Task", 7)
        assert row[8] == "2/1/2024 9:00:00 AM"
        assert row[11] == ""
        assert row[13] is True

    def test_delete(self, writes, credential):
        assert run(crm_service.delete_entity(credential, "call_logs", 9)) == {"success": True}
        writes["delete_row"].assert_awaited_once_with(credential, "Call Log", 9)


class TestFieldUpdates:
    def test_spoke_to_cover_manager(self, writes, credential):
        run(crm_service.set_spoke_to_cover_manager(credential, 12, True))
        writes["update_cell"].assert_awaited_once_with(credential, "Schools", "I12", True)

    def test_opportunity_notes(self, writes, credential):
        notes = [OpportunityNote(author="Jay", date="2024-03-01T10:00:00Z", note="Met head")]
        run(crm_service.set_opportunity_notes(credential, 3, notes))
        _, worksheet, address, value = writes["update_cell"].call_args.args
        assert (worksheet, address) == ("Opportunities", "F3")
        assert json.loads(value)[0]["note"] == "Met head"

    def test_transcript(self, writes, credential):
        run(crm_service.set_call_log_transcript(credential, 4, "Hello?"))
        writes["update_cell"].assert_awaited_once_with(credential, "Call Log", "J4", "Hello?")

    def test_header_row_rejected(self, writes, credential):
        with pytest.raises(ValueError):
            run(crm_service.set_call_log_transcript(credential, 1, "x"))
        writes["update_cell"].assert_not_called()

    def test_clear_templates(self, writes, credential):
        writes["clear_sheet"].side_effect = [{}, None]
        assert run(crm_service.clear_email_templates(credential)) == {
            "email_templates": True,
            "email_template_attachments": False,
        }
        assert [c.args[1] for c in writes["clear_sheet"].call_args_list] == ["EmailTemplates", "EmailTemplateAttachments"]


class TestSyncEmails:
    SCHOOLS = [School(name="Oakfield", cover_manager="Mrs Smith", email="smith@oakfield.sch.uk")]

    def message(self, sender, to):
        return {
            "id": sender,
            "subject": "Cover",
            "from": {"address": sender},
            "to_recipients": [to],
            "cc_recipients": [],
            "sent_at": "2024-03-13T10:00:00Z",
            "body_content": "",
        }

    def test_crm_users_count_as_sent(self, monkeypatch, credential):
        monkeypatch.setattr(mail, "get_user_profile", AsyncMock(return_value={
            "mail": "jay@agency.co.uk", "proxy_addresses": [], "user_principal_name": None, "display_name": "Jay Norton",
        }))
        monkeypatch.setattr(mail, "get_user_emails", AsyncMock(return_value=[
            self.message("adam@agency.co.uk", "smith@oakfield.sch.uk"),
            self.message("smith@oakfield.sch.uk", "jay@agency.co.uk"),
        ]))

        emails = run(crm_service.sync_emails(credential, self.SCHOOLS, [User(email="Adam@agency.co.uk")]))

        assert [e.direction for e in emails] == ["sent", "received"]
        assert emails[0].account_manager == "Jay Norton"

    def test_no_profile(self, monkeypatch, credential):
        monkeypatch.setattr(mail, "get_user_profile", AsyncMock(return_value=None))
        fetch = AsyncMock()
        monkeypatch.setattr(mail, "get_user_emails", fetch)
        assert run(crm_service.sync_emails(credential, self.SCHOOLS)) == []
        fetch.assert_not_called()


class TestDashboardSummary:
    def data(self):
        return CrmData(
            tasks=[
                Task(school_name="A", task_description="x", due_date="12/03/2024", account_manager="Jay Norton"),
                Task(school_name="A", task_description="x", due_date="15/03/2024", account_manager="Jay Norton"),
                Task(school_name="A", task_description="x", due_date="01/03/2024", is_completed=True, account_manager="Jay Norton"),
                Task(school_name="A", task_description="x", due_date="01/03/2024", account_manager="Adam Young"),
                Task(school_name="A", task_description="x", account_manager="Jay Norton"),
            ],
            call_logs=[
                CallLog(school_name="A", date_called="13/03/2024 09:00", duration="2:00", account_manager="Jay Norton"),
                CallLog(school_name="A", date_called="11/03/2024 10:00", duration="1:30", account_manager="Jay Norton"),
                CallLog(school_name="A", date_called="07/03/2024 10:00", duration="", account_manager="Jay Norton"),
                CallLog(school_name="A", date_called="01/03/2024 10:00", duration="3:00", account_manager="Jay Norton"),
            ],
            emails=[
                Email(school_name="A", subject="s", date="12/03/2024 10:00", account_manager="Jay Norton"),
                Email(school_name="A", subject="s", date="12/03/2024 11:00", direction="received", account_manager="Jay Norton"),
                Email(school_name="A", subject="s", date="01/03/2024 10:00", account_manager="Jay Norton"),
            ],
        )

    def test_counts_for_manager(self):
        summary = crm_service.dashboard_summary(self.data(), "Jay Norton", NOW)
        assert summary.overdue_tasks == 1
        assert summary.tasks_due_next_7_days == 1
        assert summary.calls_today == 1
        assert summary.calls_this_week == 2
        assert summary.calls_last_7_days == 3
        assert summary.emails_sent_last_7_days == 1
        assert summary.talk_time_this_week_seconds == 210
        assert summary.average_call_duration == "2m 10s"

    def test_all_managers(self):
        summary = crm_service.dashboard_summary(self.data(), now=NOW)
        assert summary.overdue_tasks == 2

    def test_no_calls(self):
        summary = crm_service.dashboard_summary(CrmData(), now=NOW)
        assert summary.average_call_duration == "N/A"

    def test_short_average(self):
        data = CrmData(call_logs=[CallLog(school_name="A", date_called="13/03/2024 09:00", duration="0:45")])
        assert crm_service.dashboard_summary(data, now=NOW).average_call_duration == "45s"
