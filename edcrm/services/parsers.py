"""
Row parsers: worksheet rows -> CRM models.

Each parser takes the data rows of one sheet (header already removed) and an
optional column map from schema.resolve_columns(). Rows missing required
fields are skipped; they are blank or half-filled rows, not errors.
excel_row_index is array index + 2 (1-based rows, plus the header row).
"""

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import TypeAdapter, ValidationError

from ..models import (
    Announcement,
    Availability,
    Booking,
    BookingAmendment,
    CallLog,
    Candidate,
    DEFAULT_OPPORTUNITY_STAGE,
    Email,
    EmailTemplate,
    EmailTemplateAttachment,
    JobAlert,
    ManualAttachment,
    Note,
    Opportunity,
    OpportunityNote,
    School,
    SharePointAttachment,
    Task,
    User,
)
from .dates import (
    format_date_uk,
    format_datetime_uk,
    format_excel_datetime_uk,
    format_excel_duration,
    parse_uk_datetime_string,
)
from .schema import ColumnMap, SCHEMAS
from .text import normalize_manager_name


log = logging.getLogger("edcrm.parsers")

RECEIVED_PREFIX = "[Received] "

_LEADING_FLOAT = re.compile(r"^\s*([+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?)")
_NOTES_ADAPTER = TypeAdapter(List[OpportunityNote])
_AMENDMENTS_ADAPTER = TypeAdapter(Dict[str, BookingAmendment])

Rows = Sequence[Sequence[Any]]


class _Row:
    """Field access to one row through a column map."""

    def __init__(self, cells: Sequence[Any], columns: ColumnMap):
        self.cells = cells
        self.columns = columns

    def __getitem__(self, field: str) -> Any:
        index = self.columns.get(field)
        if index is None or index >= len(self.cells):
            return None
        return self.cells[index]

    def text(self, field: str) -> str:
        return _text(self[field])

    def optional(self, field: str) -> Optional[str]:
        return _text(self[field]) or None

    def flag(self, field: str) -> bool:
        return _bool(self[field])


def _text(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, bool):
        return "true"
    return str(value)


def _bool(value: Any) -> bool:
    return value is True or str(value).lower() == "true"


def _float(value: Any) -> float:
    match = _LEADING_FLOAT.match(_text(value) or "0")
    return float(match.group(1)) if match else 0.0


def _int(value: Any) -> Optional[int]:
    match = re.match(r"^\s*([+-]?\d+)", _text(value))
    return int(match.group(1)) if match else None


def _rows(rows: Rows, key: str, columns: Optional[ColumnMap]):
    columns = columns or SCHEMAS[key].positional()
    for index, cells in enumerate(rows):
        yield index + 2, _Row(cells or [], columns)


def parse_schools(rows: Rows, columns: Optional[ColumnMap] = None) -> List[School]:
    schools = []
    for row_index, row in _rows(rows, "schools", columns):
        name = row.text("name")
        if not name:
            continue
        schools.append(School(
            name=name,
            location=row.text("location"),
            contact_number=row.text("contact_number"),
            account_manager=normalize_manager_name(row.text("account_manager")),
            cover_manager=row.text("cover_manager"),
            email=row.text("email"),
            contact2=row.optional("contact2"),
            contact2_email=row.optional("contact2_email"),
            spoke_to_cover_manager=row.flag("spoke_to_cover_manager"),
            email_name=row.optional("email_name"),
            switchboard=row.optional("switchboard"),
            engagement_score=row.text("engagement_score"),
            website=row.optional("website"),
            status=row.optional("status"),
            excel_row_index=row_index,
        ))
    return schools


def parse_tasks(rows: Rows, columns: Optional[ColumnMap] = None) -> List[Task]:
    tasks = []
    for row_index, row in _rows(rows, "tasks", columns):
        school_name = row.text("school_name")
        description = row.text("task_description")
        if not school_name or not description:
            continue
        tasks.append(Task(
            school_name=school_name,
            type=row.text("type") or "General or other",
            phone_number=row.optional("phone_number"),
            account_manager=normalize_manager_name(row.text("account_manager")),
            cover_manager=row.optional("cover_manager"),
            cover_manager_email=row.optional("cover_manager_email"),
            contact2=row.optional("contact2"),
            contact2_email=row.optional("contact2_email"),
            date_created=format_excel_datetime_uk(row["date_created"]),
            task_description=description,
            due_date=format_date_uk(row["due_date"]),
            due_time=row.optional("due_time"),
            is_completed=row.flag("is_completed"),
            excel_row_index=row_index,
        ))
    return tasks


def parse_notes(rows: Rows, columns: Optional[ColumnMap] = None) -> List[Note]:
    notes = []
    for row_index, row in _rows(rows, "notes", columns):
        school_name = row.text("school_name")
        note = row.text("note")
        if not school_name or not note:
            continue
        notes.append(Note(
            school_name=school_name,
            account_manager=normalize_manager_name(row.text("account_manager")),
            cover_manager=row.optional("cover_manager"),
            contact2=row.optional("contact2"),
            date=format_excel_datetime_uk(row["date"]),
            note=note,
            excel_row_index=row_index,
        ))
    return notes


def parse_emails(rows: Rows, columns: Optional[ColumnMap] = None) -> List[Email]:
    """Logged emails. A "[Received] " subject prefix marks inbound mail."""
    emails = []
    for row_index, row in _rows(rows, "emails", columns):
        subject = row.text("subject")
        direction = "sent"
        if subject.startswith(RECEIVED_PREFIX):
            direction = "received"
            subject = subject[len(RECEIVED_PREFIX):]

        school_name = row.text("school_name")
        if not school_name or not subject:
            continue
        emails.append(Email(
            school_name=school_name,
            account_manager=normalize_manager_name(row.text("account_manager")),
            cover_manager=row.text("cover_manager"),
            date=format_excel_datetime_uk(row["date"]),
            subject=subject,
            body=row.text("body"),
            direction=direction,
            excel_row_index=row_index,
        ))
    return emails


def parse_call_logs(rows: Rows, columns: Optional[ColumnMap] = None) -> List[CallLog]:
    logs = []
    for row_index, row in _rows(rows, "call_logs", columns):
        school_name = row.text("school_name")
        date_called = format_excel_datetime_uk(row["date_called"])
        if not school_name or not date_called:
            continue
        contact = row.text("contact_called")
        logs.append(CallLog(
            school_name=school_name,
            location=row.text("location"),
            phone_number=row.text("phone_number"),
            account_manager=normalize_manager_name(row.text("account_manager")),
            contact_called=contact,
            cover_manager=contact,
            date_called=date_called,
            spoke_to_cover_manager=row.flag("spoke_to_cover_manager"),
            duration=format_excel_duration(row["duration"]),
            notes=row.text("notes"),
            transcript=row.optional("transcript"),
            excel_row_index=row_index,
        ))
    return logs


def parse_users(rows: Rows, columns: Optional[ColumnMap] = None) -> List[User]:
    users = []
    for _, row in _rows(rows, "users", columns):
        email = row.text("email").strip().lower()
        if not email:
            continue
        first_name = row.text("first_name").strip()
        last_name = row.text("last_name").strip()
        users.append(User(
            first_name=first_name,
            last_name=last_name,
            email=email,
            name=f"{first_name} {last_name}".strip(),
            mobile_number=row.optional("mobile_number"),
            address=row.optional("address"),
            last_seen=row.optional("last_seen"),
            status=row.text("status") or "Offline",
        ))
    return users


def parse_candidates(rows: Rows, columns: Optional[ColumnMap] = None) -> List[Candidate]:
    candidates = []
    for row_index, row in _rows(rows, "candidates", columns):
        name = row.text("name")
        if not name:
            continue
        candidates.append(Candidate(
            id=row.text("id"),
            name=name,
            dob=format_date_uk(row["dob"]),
            location=row.text("location"),
            drives=row.flag("drives"),
            willing_to_travel_miles=_int(row["willing_to_travel_miles"]),
            email=row.text("email"),
            phone=row.text("phone"),
            dbs=row.flag("dbs"),
            on_update_service=row.flag("on_update_service"),
            dbs_certificate_url=row.text("dbs_certificate_url"),
            cv_url=row.text("cv_url"),
            availability=Availability(
                monday=row.flag("monday"),
                tuesday=row.flag("tuesday"),
                wednesday=row.flag("wednesday"),
                thursday=row.flag("thursday"),
                friday=row.flag("friday"),
            ),
            notes=row.text("notes"),
            excel_row_index=row_index,
        ))
    return candidates


def parse_opportunity_notes(raw: Any, row_index: int) -> List[OpportunityNote]:
    """Decode the JSON array kept in an opportunity's notes cell."""
    if not isinstance(raw, str) or not raw.strip().startswith("["):
        return []
    try:
        return _NOTES_ADAPTER.validate_python(json.loads(raw))
    except (json.JSONDecodeError, ValidationError):
        log.warning("Could not parse notes JSON for opportunity at row %d: %s", row_index, raw)
        return []


def parse_opportunities(rows: Rows, columns: Optional[ColumnMap] = None) -> List[Opportunity]:
    """
    Opportunities come in two layouts.

    Legacy rows keep manager / date / notes in G / H / J; current rows keep
    them in D / E / F. A non-blank G marks a legacy row.
    """
    opportunities = []
    for row_index, row in _rows(rows, "opportunities", columns):
        if not row["name"] and not row["school_name"]:
            continue

        legacy_manager = row["legacy_account_manager"]
        if legacy_manager and str(legacy_manager).strip():
            manager = legacy_manager
            date_created = row["legacy_date_created"]
            notes_json = row["legacy_notes"]
        else:
            manager = row["account_manager"]
            date_created = row["date_created"]
            notes_json = row["notes"]

        name = row.text("name")
        school_name = row.text("school_name")
        if not name or not school_name:
            continue

        opportunities.append(Opportunity(
            id=str(row_index),
            name=name,
            school_name=school_name,
            progress_stage=row.text("progress_stage") or DEFAULT_OPPORTUNITY_STAGE,
            account_manager=normalize_manager_name(_text(manager)),
            date_created=format_excel_datetime_uk(date_created),
            notes=parse_opportunity_notes(notes_json, row_index),
            excel_row_index=row_index,
        ))
    return opportunities


def parse_email_template_attachments(
    rows: Rows, columns: Optional[ColumnMap] = None
) -> List[EmailTemplateAttachment]:
    attachments = []
    for row_index, row in _rows(rows, "email_template_attachments", columns):
        template_id = row.text("template_id")
        if not template_id:
            continue

        kind = row["type"]
        if kind == "sharepoint":
            attachment = SharePointAttachment(
                name=row.text("name"),
                content_type=row.text("content_type"),
                file_id=row.text("file_id"),
                drive_id=row.text("drive_id"),
                excel_row_index=row_index,
            )
        elif kind == "manual":
            attachment = ManualAttachment(
                name=row.text("name"),
                content_type=row.text("content_type"),
                content_bytes=row.text("content_bytes"),
                excel_row_index=row_index,
            )
        else:
            continue

        attachments.append(EmailTemplateAttachment(
            template_id=template_id,
            attachment=attachment,
            excel_row_index=row_index,
        ))
    return attachments


def _legacy_attachment(raw: Any):
    # Compact form: ["sp", driveId, fileId, name, contentType]
    if isinstance(raw, list) and raw and raw[0] == "sp":
        padded = list(raw) + [""] * (5 - len(raw))
        return SharePointAttachment(
            drive_id=_text(padded[1]),
            file_id=_text(padded[2]),
            name=_text(padded[3]),
            content_type=_text(padded[4]),
        )
    if isinstance(raw, dict) and raw.get("type") == "sharepoint":
        return SharePointAttachment(
            name=_text(raw.get("name")),
            content_type=_text(raw.get("contentType")),
            file_id=_text(raw.get("fileId")),
            drive_id=_text(raw.get("driveId")),
            size=raw.get("size"),
        )
    if isinstance(raw, dict) and raw.get("type") == "manual":
        return ManualAttachment(
            name=_text(raw.get("name")),
            content_type=_text(raw.get("contentType")),
            content_bytes=_text(raw.get("contentBytes")),
            size=raw.get("size"),
        )
    return None


def parse_legacy_attachments(raw: Any, template_id: str) -> list:
    """Attachments stored as JSON in the template row itself (older templates)."""
    if not isinstance(raw, str) or not raw.strip().startswith("["):
        return []
    try:
        items = json.loads(raw)
    except json.JSONDecodeError as e:
        log.error("Failed to parse legacy attachments for template ID %s: %s", template_id, e)
        return []
    if not isinstance(items, list):
        return []

    attachments = []
    for item in items:
        try:
            attachment = _legacy_attachment(item)
        except ValidationError as e:
            log.warning("Skipping malformed attachment on template %s: %s", template_id, e)
            continue
        if attachment is not None:
            attachments.append(attachment)
    return attachments


def parse_email_templates(
    rows: Rows,
    attachments: Iterable[EmailTemplateAttachment] = (),
    columns: Optional[ColumnMap] = None,
) -> List[EmailTemplate]:
    """Templates with legacy JSON attachments followed by attachment-sheet rows."""
    by_template: Dict[str, list] = {}
    for linked in attachments:
        by_template.setdefault(linked.template_id, []).append(linked.attachment)

    templates = []
    for row_index, row in _rows(rows, "email_templates", columns):
        template_id = row.text("id")
        if not template_id:
            continue
        legacy = parse_legacy_attachments(row["legacy_attachments"], template_id)
        templates.append(EmailTemplate(
            id=template_id,
            name=row.text("name"),
            subject=row.text("subject"),
            body=row.text("body"),
            attachments=legacy + by_template.get(template_id, []),
            excel_row_index=row_index,
        ))
    return templates


def parse_announcements(rows: Rows, columns: Optional[ColumnMap] = None) -> List[Announcement]:
    """Announcements, newest first."""
    announcements = []
    for row_index, row in _rows(rows, "announcements", columns):
        author = row.text("author") or "Admin"
        title = row.text("title") or "Announcement"
        message = row.text("message")
        raw_created = row["created_at"]
        created_at = format_excel_datetime_uk(raw_created)
        if not created_at or not message:
            continue
        announcements.append(Announcement(
            # Acknowledgements are keyed on this, so it must be stable across loads
            id=f"{author}-{raw_created}-{title}",
            author=author,
            title=title,
            message=message,
            created_at=created_at,
            excel_row_index=row_index,
        ))

    def newest(announcement: Announcement) -> float:
        parsed = parse_uk_datetime_string(announcement.created_at)
        return parsed.timestamp() if parsed else 0

    return sorted(announcements, key=newest, reverse=True)


def parse_booking_amendments(raw: str, row_index: int):
    if not raw or not raw.strip().startswith("{"):
        return None
    try:
        return _AMENDMENTS_ADAPTER.validate_python(json.loads(raw))
    except (json.JSONDecodeError, ValidationError):
        log.warning("Could not parse amendments JSON for booking at row %d: %s", row_index, raw)
        return None


def parse_bookings(rows: Rows, columns: Optional[ColumnMap] = None) -> List[Booking]:
    bookings = []
    for row_index, row in _rows(rows, "bookings", columns):
        if not row["school_name"] or not row["candidate_name"]:
            continue
        amendments = row.text("amendments")
        bookings.append(Booking(
            school_name=row.text("school_name"),
            school_id=row.text("school_id"),
            candidate_name=row.text("candidate_name"),
            candidate_id=row.text("candidate_id"),
            duration_days=_int(row["duration_days"]) or 0,
            school_hourly_rate=_float(row["school_hourly_rate"]),
            candidate_hourly_rate=_float(row["candidate_hourly_rate"]),
            school_daily_rate=_float(row["school_daily_rate"]),
            candidate_daily_rate=_float(row["candidate_daily_rate"]),
            hourly_profit=_float(row["hourly_profit"]),
            daily_profit=_float(row["daily_profit"]),
            school_week_charge=_float(row["school_week_charge"]),
            candidate_week_charge=_float(row["candidate_week_charge"]),
            week_profit=_float(row["week_profit"]),
            total_school_charge=_float(row["total_school_charge"]),
            total_candidate_charge=_float(row["total_candidate_charge"]),
            amendments=amendments,
            parsed_amendments=parse_booking_amendments(amendments, row_index),
            total_profit=_float(row["total_profit"]),
            start_date=format_date_uk(row["start_date"]),
            id=row.text("id") or f"booking_{row_index}",
            account_manager=row.text("account_manager"),
            excel_row_index=row_index,
        ))
    return bookings


def parse_job_alerts(rows: Rows, columns: Optional[ColumnMap] = None) -> List[JobAlert]:
    jobs = []
    for row_index, row in _rows(rows, "job_alerts", columns):
        if not row["school_name"] or not row["job_title"]:
            continue
        jobs.append(JobAlert(
            school_id=row.text("school_id"),
            school_name=row.text("school_name"),
            job_title=row.text("job_title"),
            subject=row.text("subject"),
            salary=row.text("salary"),
            close_date=format_date_uk(row["close_date"]),
            location=row.text("location"),
            job_description=row.text("job_description"),
            source_url=row.text("source_url"),
            excel_row_index=row_index,
        ))
    return jobs


def parse_synced_emails(
    messages: Iterable[Dict[str, Any]],
    schools: Iterable[School],
    account_manager: str,
    user_emails: Iterable[str],
) -> List[Email]:
    """
    Match mailbox messages to schools by participant address.

    Args:
        messages: Normalised messages from adapters.ms365.mail
        schools: Parsed schools; primary and contact-2 emails are matched
        account_manager: Display name of the signed-in user
        user_emails: Every address of the signed-in user (aliases included)

    Returns:
        One Email per (message, school) pair. Messages with no school
        participant are dropped.
    """
    messages = list(messages or [])
    own_addresses = {address.lower() for address in user_emails if address}
    if not messages or not own_addresses:
        return []

    school_by_email: Dict[str, School] = {}
    for school in schools:
        if school.email:
            school_by_email[school.email.lower()] = school
        if school.contact2_email:
            school_by_email[school.contact2_email.lower()] = school

    synced: List[Email] = []
    for message in messages:
        sender = ((message.get("from") or {}).get("address") or "").lower()
        if not sender:
            continue

        recipients = [
            address.lower()
            for address in (message.get("to_recipients") or []) + (message.get("cc_recipients") or [])
            if address
        ]
        participants = [
            (address, school_by_email[address])
            for address in [sender] + recipients
            if address in school_by_email
        ]
        if not participants:
            continue

        direction = "sent" if sender in own_addresses else "received"
        seen = set()
        for address, school in participants:
            if school.name in seen:
                continue
            seen.add(school.name)

            contact = school.cover_manager
            if school.email.lower() == address:
                contact = school.cover_manager
            elif school.contact2_email and school.contact2_email.lower() == address:
                contact = school.contact2 or school.cover_manager

            synced.append(Email(
                school_name=school.name,
                account_manager=account_manager,
                cover_manager=contact or "Unknown Contact",
                date=format_datetime_uk(message.get("sent_at") or message.get("received_at")),
                subject=message.get("subject") or "No Subject",
                body=message.get("body_content") or "",
                direction=direction,
            ))
    return synced
