"""
Worksheet schemas.

Each sheet is described by its tab name, the range read on load, and an
ordered list of columns. A column maps a logical field to the header text
found in row 1. On load the real header row is matched against those names so
a reordered sheet still parses; when the header row is blank the declared
order is used.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple


log = logging.getLogger("edcrm.schema")

ColumnMap = Dict[str, int]

ADD = "add"
UPDATE = "update"
DELETE = "delete"
CLEAR = "clear"


class SchemaMismatchError(Exception):
    """Raised in strict mode when a sheet's header row lacks expected columns."""

    def __init__(self, worksheet: str, missing: Sequence[str]):
        self.worksheet = worksheet
        self.missing = list(missing)
        super().__init__(
            f"Worksheet '{worksheet}' is missing columns: {', '.join(self.missing)}"
        )


@dataclass(frozen=True)
class Column:
    field: str
    header: str
    aliases: Tuple[str, ...] = ()
    # Reserved columns keep their position but are never read
    reserved: bool = False

    @property
    def names(self) -> Tuple[str, ...]:
        return (self.header,) + self.aliases


@dataclass(frozen=True)
class SheetSchema:
    key: str
    worksheet: str
    range: str
    columns: Tuple[Column, ...]
    operations: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def width(self) -> int:
        return len(self.columns)

    def positional(self) -> ColumnMap:
        return {column.field: index for index, column in enumerate(self.columns)}

    def allows(self, operation: str) -> bool:
        return operation in self.operations

    def column_letter(self, field_name: str, columns: Optional[ColumnMap] = None) -> str:
        columns = columns or self.positional()
        if field_name not in columns:
            raise KeyError(f"{self.key} has no column '{field_name}'")
        return column_letter(columns[field_name])


def column_letter(index: int) -> str:
    """0-based column index -> spreadsheet letters (0 -> A, 26 -> AA)."""
    if index < 0:
        raise ValueError(f"Column index must be >= 0, got {index}")
    letters = ""
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        letters = chr(ord("A") + remainder) + letters
    return letters


def _normalize_header(value: Any) -> str:
    if value is None:
        return ""
    return re.sub(r"[^a-z0-9]", "", str(value).lower())


def resolve_columns(
    schema: SheetSchema,
    header_row: Optional[Sequence[Any]],
    strict: bool = False,
) -> ColumnMap:
    """
    Map each field of a schema to its column index in the actual sheet.

    Args:
        schema: Sheet description
        header_row: Cells of row 1 as returned by Graph
        strict: Raise instead of falling back when headers are missing

    Returns:
        Dict of field name -> 0-based column index

    Raises:
        SchemaMismatchError: In strict mode, if any non-reserved column is absent
    """
    positional = schema.positional()
    if not header_row or not any(_normalize_header(cell) for cell in header_row):
        return positional

    found: Dict[str, int] = {}
    for index, cell in enumerate(header_row):
        name = _normalize_header(cell)
        if name and name not in found:
            found[name] = index

    resolved: ColumnMap = {}
    missing: List[str] = []
    for position, column in enumerate(schema.columns):
        for name in column.names:
            key = _normalize_header(name)
            if key in found:
                resolved[column.field] = found[key]
                break
        else:
            resolved[column.field] = position
            if not column.reserved:
                missing.append(column.field)

    if missing:
        if strict:
            raise SchemaMismatchError(schema.worksheet, missing)
        log.warning(
            "Worksheet '%s' header row lacks %s; using declared positions",
            schema.worksheet, ", ".join(missing),
        )
    return resolved


def build_row(schema: SheetSchema, values: Dict[str, Any], columns: Optional[ColumnMap] = None) -> List[Any]:
    """
    Lay out field values as a row for the range API.

    Positions not covered by a field are None, which Graph leaves unchanged.
    """
    columns = columns or schema.positional()
    width = max(columns.values()) + 1 if columns else 0
    row: List[Any] = [None] * width
    for column in schema.columns:
        index = columns[column.field]
        if column.field in values:
            row[index] = values[column.field]
        elif column.reserved:
            row[index] = ""
    return row


def _col(field_name: str, header: str, *aliases: str, reserved: bool = False) -> Column:
    return Column(field_name, header, tuple(aliases), reserved)


_SCHOOL_NAME = _col("school_name", "School Name", "School")
_ACCOUNT_MANAGER = _col("account_manager", "Account Manager", "Manager")
_COVER_MANAGER = _col("cover_manager", "Cover Manager")
_CONTACT2 = _col("contact2", "Contact 2", "Second Contact")
_CONTACT2_EMAIL = _col("contact2_email", "Contact 2 Email", "Second Contact Email")


SCHEMAS: Dict[str, SheetSchema] = {
    "schools": SheetSchema(
        key="schools",
        worksheet="Schools",
        range="A1:N5000",
        columns=(
            _col("name", "School Name", "School", "Name"),
            _col("location", "Location"),
            _col("contact_number", "Contact Number", "Phone Number", "Phone"),
            _ACCOUNT_MANAGER,
            _COVER_MANAGER,
            _col("email", "Email", "Cover Manager Email"),
            _CONTACT2,
            _CONTACT2_EMAIL,
            _col("spoke_to_cover_manager", "Spoke To Cover Manager", "Spoken To CM"),
            _col("email_name", "Email Name"),
            _col("switchboard", "Switchboard"),
            _col("engagement_score", "Engagement Score", "Engagement"),
            _col("website", "Website"),
            _col("status", "Status"),
        ),
        operations=frozenset({ADD, UPDATE}),
    ),
    "tasks": SheetSchema(
        key="tasks",
        worksheet="Task",
        range="A1:N5000",
        columns=(
            _SCHOOL_NAME,
            _col("type", "Type", "Task Type"),
            _col("phone_number", "Phone Number", "Phone"),
            _ACCOUNT_MANAGER,
            _COVER_MANAGER,
            _col("cover_manager_email", "Cover Manager Email"),
            _CONTACT2,
            _CONTACT2_EMAIL,
            _col("date_created", "Date Created", "Created"),
            _col("task_description", "Task Description", "Task", "Description"),
            _col("due_date", "Due Date"),
            _col("reminder_date", "Reminder Date", reserved=True),
            _col("due_time", "Due Time"),
            _col("is_completed", "Completed", "Is Completed"),
        ),
        operations=frozenset({ADD, UPDATE, DELETE}),
    ),
    "notes": SheetSchema(
        key="notes",
        worksheet="Notes",
        range="A1:F5000",
        columns=(
            _SCHOOL_NAME,
            _ACCOUNT_MANAGER,
            _COVER_MANAGER,
            _CONTACT2,
            _col("date", "Date"),
            _col("note", "Note", "Notes"),
        ),
        operations=frozenset({ADD, UPDATE, DELETE}),
    ),
    "emails": SheetSchema(
        key="emails",
        worksheet="Email",
        range="A1:F5000",
        columns=(
            _SCHOOL_NAME,
            _ACCOUNT_MANAGER,
            _COVER_MANAGER,
            _col("date", "Date"),
            _col("subject", "Subject"),
            _col("body", "Body", "Email Body"),
        ),
        operations=frozenset({ADD}),
    ),
    "call_logs": SheetSchema(
        key="call_logs",
        worksheet="Call Log",
        range="A1:J5000",
        columns=(
            _SCHOOL_NAME,
            _col("location", "Location"),
            _col("phone_number", "Phone Number", "Phone"),
            _ACCOUNT_MANAGER,
            _col("contact_called", "Contact Called", "Contact"),
            _col("date_called", "Date Called", "Date"),
            _col("spoke_to_cover_manager", "Spoke To Cover Manager", "Spoken To CM"),
            _col("duration", "Duration"),
            _col("notes", "Notes"),
            _col("transcript", "Transcript"),
        ),
        operations=frozenset({ADD, UPDATE, DELETE}),
    ),
    "users": SheetSchema(
        key="users",
        worksheet="Users",
        range="A1:G100",
        columns=(
            _col("first_name", "First Name"),
            _col("last_name", "Last Name", "Surname"),
            _col("email", "Email"),
            _col("mobile_number", "Mobile Number", "Mobile"),
            _col("address", "Address"),
            _col("last_seen", "Last Seen"),
            _col("status", "Status"),
        ),
    ),
    "candidates": SheetSchema(
        key="candidates",
        worksheet="Candidates",
        range="A1:R5000",
        columns=(
            _col("id", "Candidate ID", "ID"),
            _col("name", "Name", "Candidate Name"),
            _col("dob", "DOB", "Date Of Birth"),
            _col("location", "Location"),
            _col("drives", "Drives", "Driver"),
            _col("willing_to_travel_miles", "Willing To Travel (Miles)", "Travel Miles"),
            _col("email", "Email"),
            _col("phone", "Phone", "Phone Number"),
            _col("dbs", "DBS"),
            _col("on_update_service", "On Update Service", "Update Service"),
            _col("dbs_certificate_url", "DBS Certificate", "DBS Certificate URL"),
            _col("cv_url", "CV", "CV URL"),
            _col("monday", "Monday", "Mon"),
            _col("tuesday", "Tuesday", "Tue"),
            _col("wednesday", "Wednesday", "Wed"),
            _col("thursday", "Thursday", "Thu"),
            _col("friday", "Friday", "Fri"),
            _col("notes", "Notes"),
        ),
        operations=frozenset({ADD, UPDATE}),
    ),
    "opportunities": SheetSchema(
        key="opportunities",
        worksheet="Opportunities",
        range="A1:J5000",
        columns=(
            _col("name", "Opportunity", "Name", "Description"),
            _SCHOOL_NAME,
            _col("progress_stage", "Progress Stage", "Stage"),
            _ACCOUNT_MANAGER,
            _col("date_created", "Date Created", "Created"),
            _col("notes", "Notes"),
            # Rows written before the sheet was reorganised keep manager,
            # date and notes in G, H and J
            _col("legacy_account_manager", "Legacy Account Manager", reserved=True),
            _col("legacy_date_created", "Legacy Date Created", reserved=True),
            _col("legacy_unused", "Legacy Unused", reserved=True),
            _col("legacy_notes", "Legacy Notes", reserved=True),
        ),
        operations=frozenset({ADD, UPDATE, DELETE}),
    ),
    "email_templates": SheetSchema(
        key="email_templates",
        worksheet="EmailTemplates",
        range="A1:E500",
        columns=(
            _col("id", "Template ID", "ID"),
            _col("name", "Name", "Template Name"),
            _col("subject", "Subject"),
            _col("body", "Body"),
            _col("legacy_attachments", "Attachments", reserved=True),
        ),
        operations=frozenset({ADD, UPDATE, DELETE, CLEAR}),
    ),
    "email_template_attachments": SheetSchema(
        key="email_template_attachments",
        worksheet="EmailTemplateAttachments",
        range="A1:G5000",
        columns=(
            _col("template_id", "Template ID"),
            _col("type", "Type"),
            _col("name", "Name", "File Name"),
            _col("content_type", "Content Type"),
            _col("file_id", "File ID"),
            _col("drive_id", "Drive ID"),
            _col("content_bytes", "Content Bytes", "Content"),
        ),
        operations=frozenset({ADD, DELETE, CLEAR}),
    ),
    "announcements": SheetSchema(
        key="announcements",
        worksheet="Announcements",
        range="A1:E500",
        columns=(
            _col("author", "Author"),
            _col("title", "Title"),
            _col("message", "Message"),
            _col("created_at", "Created At", "Date"),
        ),
        operations=frozenset({ADD}),
    ),
    "bookings": SheetSchema(
        key="bookings",
        worksheet="Bookings",
        range="A1:U5000",
        columns=(
            _SCHOOL_NAME,
            _col("school_id", "School ID"),
            _col("candidate_name", "Candidate Name", "Candidate"),
            _col("candidate_id", "Candidate ID"),
            _col("duration_days", "Duration (Days)", "Duration Days"),
            _col("school_hourly_rate", "School Hourly Rate"),
            _col("candidate_hourly_rate", "Candidate Hourly Rate"),
            _col("school_daily_rate", "School Daily Rate"),
            _col("candidate_daily_rate", "Candidate Daily Rate"),
            _col("hourly_profit", "Hourly Profit"),
            _col("daily_profit", "Daily Profit"),
            _col("school_week_charge", "School Week Charge"),
            _col("candidate_week_charge", "Candidate Week Charge"),
            _col("week_profit", "Week Profit"),
            _col("total_school_charge", "Total School Charge"),
            _col("total_candidate_charge", "Total Candidate Charge"),
            _col("amendments", "Amendments"),
            _col("total_profit", "Total Profit"),
            _col("start_date", "Start Date"),
            _col("id", "Booking ID", "ID"),
            _ACCOUNT_MANAGER,
        ),
        operations=frozenset({ADD, UPDATE, DELETE}),
    ),
    "job_alerts": SheetSchema(
        key="job_alerts",
        worksheet="Jobs",
        range="A1:I2000",
        columns=(
            _col("school_id", "School ID"),
            _SCHOOL_NAME,
            _col("job_title", "Job Title", "Title"),
            _col("subject", "Subject"),
            _col("salary", "Salary"),
            _col("close_date", "Close Date", "Closing Date"),
            _col("location", "Location"),
            _col("job_description", "Job Description", "Description"),
            _col("source_url", "Source URL", "URL", "Link"),
        ),
        operations=frozenset({ADD, DELETE}),
    ),
}


def get_worksheet_map() -> Dict[str, str]:
    """Logical sheet key -> worksheet tab name. Tab names must match exactly."""
    return {key: schema.worksheet for key, schema in SCHEMAS.items()}


def get_sheet_ranges() -> Dict[str, str]:
    return {key: schema.range for key, schema in SCHEMAS.items()}


def get_schema(key: str) -> SheetSchema:
    try:
        return SCHEMAS[key]
    except KeyError:
        raise KeyError(f"Unknown sheet '{key}'") from None
