"""
CRM service.

Loads the whole workbook into typed models and writes entities back as rows.
Column positions found on the last load are reused for writes so a sheet with
reordered columns is written back in its own order.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type

from azure.core.credentials import TokenCredential
from pydantic import BaseModel

from ..adapters.ms365 import mail, workbook
from ..adapters.ms365.workbook import SheetValues
from ..models import (
    Announcement,
    Booking,
    CallLog,
    Candidate,
    CrmData,
    Email,
    EmailTemplate,
    EmailTemplateAttachment,
    JobAlert,
    Note,
    Opportunity,
    OpportunityNote,
    School,
    Task,
    User,
)
from . import parsers
from .dates import (
    is_due_in_next_7_days,
    is_in_last_7_days,
    is_overdue,
    is_this_week,
    is_today,
    parse_duration_to_seconds,
    parse_uk_datetime_string,
)
from .schema import (
    ADD,
    CLEAR,
    DELETE,
    SCHEMAS,
    UPDATE,
    ColumnMap,
    SheetSchema,
    build_row,
    get_worksheet_map,
    resolve_columns,
)
from .writers import entity_values, opportunity_notes_json


log = logging.getLogger("edcrm.crm")

# Runs one workbook append; routes pass a lock-retrying wrapper.
AppendRunner = Callable[[Callable[[], Awaitable[Any]]], Awaitable[Any]]


class CrmServiceError(Exception):
    """Base exception for CRM service errors."""
    pass


class UnknownEntityError(CrmServiceError):
    pass


class OperationNotAllowedError(CrmServiceError):
    pass


ENTITY_MODELS: Dict[str, Type[BaseModel]] = {
    "schools": School,
    "tasks": Task,
    "notes": Note,
    "emails": Email,
    "call_logs": CallLog,
    "candidates": Candidate,
    "opportunities": Opportunity,
    "email_templates": EmailTemplate,
    "email_template_attachments": EmailTemplateAttachment,
    "announcements": Announcement,
    "bookings": Booking,
    "job_alerts": JobAlert,
}

# Column positions from the most recent load, per sheet key
_COLUMNS: Dict[str, ColumnMap] = {}


def _columns(key: str) -> ColumnMap:
    return _COLUMNS.get(key) or SCHEMAS[key].positional()


def _schema_for(kind: str, operation: str) -> SheetSchema:
    if kind not in ENTITY_MODELS:
        raise UnknownEntityError(f"Unknown entity kind '{kind}'")
    schema = SCHEMAS[kind]
    if not schema.allows(operation):
        raise OperationNotAllowedError(f"Cannot {operation} rows on '{schema.worksheet}'")
    return schema


def _as_model(kind: str, entity: Any) -> BaseModel:
    model = ENTITY_MODELS[kind]
    return entity if isinstance(entity, model) else model.model_validate(entity)


async def _append_once(append: Callable[[], Awaitable[Any]]) -> Any:
    return await append()


def _with_last_called(schools: List[School], call_logs: List[CallLog]) -> List[School]:
    """Set last_called_date from each school's most recent call log."""
    def called_at(call: CallLog):
        parsed = parse_uk_datetime_string(call.date_called)
        return (parsed is not None, parsed or datetime.min)

    last_called: Dict[str, str] = {}
    for call in sorted(call_logs, key=called_at, reverse=True):
        if call.school_name and call.school_name not in last_called:
            last_called[call.school_name] = call.date_called
    return [
        school.model_copy(update={"last_called_date": last_called.get(school.name)})
        for school in schools
    ]


def merge_emails(logged: Sequence[Email], synced: Sequence[Email]) -> List[Email]:
    """Merge logged and mailbox emails, one per school, subject and date. Later entries win."""
    merged: Dict[Tuple[str, str, str], Email] = {}
    for email in [*logged, *synced]:
        merged[(email.school_name, email.subject, email.date)] = email
    return list(merged.values())


def build_crm_data(sheets: Mapping[str, SheetValues], strict: bool = False) -> CrmData:
    """
    Parse fetched sheets into CrmData and remember their column positions.

    Raises:
        SchemaMismatchError: In strict mode, if a sheet lacks expected headers
    """
    columns: Dict[str, ColumnMap] = {}
    for key, sheet in sheets.items():
        if key in SCHEMAS:
            columns[key] = resolve_columns(SCHEMAS[key], sheet.header, strict=strict)
    _COLUMNS.update(columns)

    def rows(key: str) -> List[List[Any]]:
        sheet = sheets.get(key)
        return sheet.rows if sheet else []

    attachments = parsers.parse_email_template_attachments(
        rows("email_template_attachments"), columns.get("email_template_attachments")
    )
    call_logs = parsers.parse_call_logs(rows("call_logs"), columns.get("call_logs"))
    return CrmData(
        schools=_with_last_called(parsers.parse_schools(rows("schools"), columns.get("schools")), call_logs),
        tasks=parsers.parse_tasks(rows("tasks"), columns.get("tasks")),
        notes=parsers.parse_notes(rows("notes"), columns.get("notes")),
        emails=parsers.parse_emails(rows("emails"), columns.get("emails")),
        call_logs=call_logs,
        users=parsers.parse_users(rows("users"), columns.get("users")),
        candidates=parsers.parse_candidates(rows("candidates"), columns.get("candidates")),
        opportunities=parsers.parse_opportunities(rows("opportunities"), columns.get("opportunities")),
        email_templates=parsers.parse_email_templates(
            rows("email_templates"), attachments, columns.get("email_templates")
        ),
        announcements=parsers.parse_announcements(rows("announcements"), columns.get("announcements")),
        bookings=parsers.parse_bookings(rows("bookings"), columns.get("bookings")),
        job_alerts=parsers.parse_job_alerts(rows("job_alerts"), columns.get("job_alerts")),
    )


async def load_crm_data(
    credential: TokenCredential,
    strict: bool = False,
    sync_mailbox: bool = False,
) -> CrmData:
    """
    Read and parse every CRM sheet.

    Args:
        credential: Token credential
        strict: Fail on missing header columns instead of falling back
        sync_mailbox: Merge mailbox messages matched to schools into emails

    Returns:
        CrmData with excel_row_index set on every sheet record. Mailbox
        emails have no row index.
    """
    sheets = await workbook.get_all_crm_data(credential, get_worksheet_map())
    data = build_crm_data(sheets, strict=strict)
    if sync_mailbox:
        synced = await sync_emails(credential, data.schools, data.users)
        data.emails = merge_emails(data.emails, synced)
    log.info(
        "Loaded CRM data: %d schools, %d tasks, %d call logs",
        len(data.schools), len(data.tasks), len(data.call_logs),
    )
    return data


async def add_entity(
    credential: TokenCredential,
    kind: str,
    entity: Any,
    now: Optional[datetime] = None,
    run_append: AppendRunner = _append_once,
) -> BaseModel:
    """
    Append an entity as a new row.

    Email templates also append one attachment row per attachment. Each
    append goes through run_append on its own, so retrying a locked
    attachment write never repeats the template row.

    Returns:
        The entity with excel_row_index of the new row

    Raises:
        UnknownEntityError: If kind is not a CRM sheet
        OperationNotAllowedError: If the sheet does not accept new rows
    """
    schema = _schema_for(kind, ADD)
    entity = _as_model(kind, entity)
    row = build_row(schema, entity_values(kind, entity, now), _columns(kind))
    result = await run_append(lambda: workbook.add_row(credential, schema.worksheet, row))
    saved = entity.model_copy(update={"excel_row_index": result["excel_row_index"]})

    if isinstance(entity, EmailTemplate):
        for attachment in entity.attachments:
            await add_entity(
                credential,
                "email_template_attachments",
                EmailTemplateAttachment(template_id=entity.id, attachment=attachment),
                now,
                run_append,
            )
    return saved


async def update_entity(
    credential: TokenCredential,
    kind: str,
    row_index: int,
    entity: Any,
    now: Optional[datetime] = None,
) -> BaseModel:
    schema = _schema_for(kind, UPDATE)
    entity = _as_model(kind, entity)
    row = build_row(schema, entity_values(kind, entity, now), _columns(kind))
    await workbook.update_row(credential, schema.worksheet, row_index, row)
    return entity.model_copy(update={"excel_row_index": row_index})


async def delete_entity(credential: TokenCredential, kind: str, row_index: int) -> Dict[str, Any]:
    """Delete a row. Row indexes below it shift up; callers should reload."""
    schema = _schema_for(kind, DELETE)
    return await workbook.delete_row(credential, schema.worksheet, row_index)


async def _update_field(credential: TokenCredential, kind: str, field_name: str, row_index: int, value: Any):
    schema = _schema_for(kind, UPDATE)
    if row_index < 2:
        raise ValueError(f"Row {row_index} is not a data row")
    address = f"{schema.column_letter(field_name, _columns(kind))}{row_index}"
    return await workbook.update_cell(credential, schema.worksheet, address, value)


async def set_spoke_to_cover_manager(credential: TokenCredential, row_index: int, spoke: bool):
    return await _update_field(credential, "schools", "spoke_to_cover_manager", row_index, spoke)


async def set_opportunity_notes(credential: TokenCredential, row_index: int, notes: Sequence[OpportunityNote]):
    notes_json = opportunity_notes_json(Opportunity(name="", school_name="", notes=list(notes)))
    return await _update_field(credential, "opportunities", "notes", row_index, notes_json)


async def set_call_log_transcript(credential: TokenCredential, row_index: int, transcript: str):
    return await _update_field(credential, "call_logs", "transcript", row_index, transcript)


async def clear_email_templates(credential: TokenCredential) -> Dict[str, bool]:
    """Clear every template and template attachment row, keeping the headers."""
    cleared = {}
    for kind in ("email_templates", "email_template_attachments"):
        schema = _schema_for(kind, CLEAR)
        cleared[kind] = await workbook.clear_sheet(credential, schema.worksheet) is not None
    return cleared


async def sync_emails(
    credential: TokenCredential,
    schools: Sequence[School],
    users: Sequence[User] = (),
) -> List[Email]:
    """
    Match the user's recent mailbox traffic to schools.

    A message counts as sent when its sender is the signed-in user (any
    alias) or any CRM user. Returns an empty list when the profile cannot be read.
    """
    profile = await mail.get_user_profile(credential)
    own_addresses = mail.get_user_email_addresses(profile)
    if not own_addresses:
        log.warning("No mailbox addresses for the signed-in user; skipping email sync")
        return []
    addresses = own_addresses + [u.email.lower() for u in users if u.email]
    messages = await mail.get_user_emails(credential)
    account_manager = (profile or {}).get("display_name") or own_addresses[0]
    synced = parsers.parse_synced_emails(messages, schools, account_manager, addresses)
    log.info("Matched %d of %d messages to schools", len(synced), len(messages))
    return synced


class DashboardSummary(BaseModel):
    overdue_tasks: int = 0
    tasks_due_next_7_days: int = 0
    calls_today: int = 0
    calls_this_week: int = 0
    calls_last_7_days: int = 0
    emails_sent_last_7_days: int = 0
    talk_time_this_week_seconds: int = 0
    average_call_duration: str = "N/A"


def _average_duration_label(total_seconds: int, count: int) -> str:
    if count == 0:
        return "N/A"
    average = round(total_seconds / count)
    minutes, seconds = divmod(average, 60)
    if minutes == 0:
        return f"{seconds}s"
    return f"{minutes}m {seconds}s"


def dashboard_summary(
    data: CrmData,
    account_manager: Optional[str] = None,
    now: Optional[datetime] = None,
) -> DashboardSummary:
    """
    Headline numbers for the dashboard.

    Args:
        data: Loaded CRM data
        account_manager: Only count this manager's records when given
        now: Reference time (defaults to now)
    """
    def mine(record) -> bool:
        return account_manager is None or record.account_manager == account_manager

    open_tasks = [t for t in data.tasks if mine(t) and not t.is_completed]
    calls = [c for c in data.call_logs if mine(c) and c.date_called]
    timed_calls = [c for c in calls if c.duration]
    sent = [e for e in data.emails if mine(e) and e.direction == "sent" and e.date]

    overdue = [t for t in open_tasks if is_overdue(t.due_date, now)]
    due_soon = [t for t in open_tasks if not is_overdue(t.due_date, now) and is_due_in_next_7_days(t.due_date, now)]
    this_week = [c for c in calls if is_this_week(c.date_called, now)]

    return DashboardSummary(
        overdue_tasks=len(overdue),
        tasks_due_next_7_days=len(due_soon),
        calls_today=sum(1 for c in calls if is_today(c.date_called, now)),
        calls_this_week=len(this_week),
        calls_last_7_days=sum(1 for c in calls if is_in_last_7_days(c.date_called, now)),
        emails_sent_last_7_days=sum(1 for e in sent if is_in_last_7_days(e.date, now)),
        talk_time_this_week_seconds=sum(parse_duration_to_seconds(c.duration) for c in this_week),
        average_call_duration=_average_duration_label(
            sum(parse_duration_to_seconds(c.duration) for c in timed_calls), len(timed_calls)
        ),
    )
