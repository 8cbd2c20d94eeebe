"""
Row writers: CRM models -> worksheet cell values.

The inverse of parsers.py. Each writer returns {field: cell}; schema.build_row()
turns that into a positioned row. Calendar dates go back as DD/MM/YYYY and
timestamps in the US form Excel converts to a serial on entry.
"""

import json
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from ..models import (
    Announcement,
    Booking,
    CallLog,
    Candidate,
    Email,
    EmailTemplate,
    EmailTemplateAttachment,
    JobAlert,
    ManualAttachment,
    Note,
    Opportunity,
    School,
    Task,
)
from .dates import format_date_uk, format_datetime_us_excel, parse_uk_datetime_string
from .parsers import RECEIVED_PREFIX


Values = Dict[str, Any]


def _timestamp(existing: Optional[str], now: Optional[datetime]) -> str:
    parsed = parse_uk_datetime_string(existing) if existing else None
    return format_datetime_us_excel(parsed or now or datetime.now())


def _date(value: Optional[str]) -> str:
    return format_date_uk(value) if value else ""


def school_values(school: School, now: Optional[datetime] = None) -> Values:
    return {
        "name": school.name,
        "location": school.location,
        "contact_number": school.contact_number,
        "account_manager": school.account_manager,
        "cover_manager": school.cover_manager,
        "email": school.email,
        "contact2": school.contact2 or "",
        "contact2_email": school.contact2_email or "",
        "spoke_to_cover_manager": school.spoke_to_cover_manager,
        "email_name": school.email_name or "",
        "switchboard": school.switchboard or "",
        "engagement_score": school.engagement_score or "",
        "website": school.website or "",
        "status": school.status or "",
    }


def task_values(task: Task, now: Optional[datetime] = None) -> Values:
    return {
        "school_name": task.school_name,
        "type": task.type,
        "phone_number": task.phone_number or "",
        "account_manager": task.account_manager,
        "cover_manager": task.cover_manager or "",
        "cover_manager_email": task.cover_manager_email or "",
        "contact2": task.contact2 or "",
        "contact2_email": task.contact2_email or "",
        "date_created": _timestamp(task.date_created, now),
        "task_description": task.task_description,
        "due_date": _date(task.due_date),
        "due_time": task.due_time or "",
        "is_completed": task.is_completed,
    }


def note_values(note: Note, now: Optional[datetime] = None) -> Values:
    return {
        "school_name": note.school_name,
        "account_manager": note.account_manager,
        "cover_manager": note.cover_manager or "",
        "contact2": note.contact2 or "",
        "date": _timestamp(note.date, now),
        "note": note.note,
    }


def email_values(email: Email, now: Optional[datetime] = None) -> Values:
    subject = email.subject
    if email.direction == "received":
        subject = RECEIVED_PREFIX + subject
    return {
        "school_name": email.school_name,
        "account_manager": email.account_manager,
        "cover_manager": email.cover_manager,
        "date": _timestamp(email.date, now),
        "subject": subject,
        "body": email.body,
    }


def call_log_values(call: CallLog, now: Optional[datetime] = None) -> Values:
    return {
        "school_name": call.school_name,
        "location": call.location,
        "phone_number": call.phone_number,
        "account_manager": call.account_manager,
        "contact_called": call.contact_called,
        "date_called": _timestamp(call.date_called, now),
        "spoke_to_cover_manager": call.spoke_to_cover_manager,
        "duration": call.duration,
        "notes": call.notes,
        "transcript": call.transcript or "",
    }


def candidate_values(candidate: Candidate, now: Optional[datetime] = None) -> Values:
    days = candidate.availability
    return {
        "id": candidate.id,
        "name": candidate.name,
        "dob": _date(candidate.dob),
        "location": candidate.location,
        "drives": candidate.drives,
        "willing_to_travel_miles": candidate.willing_to_travel_miles if candidate.willing_to_travel_miles is not None else "",
        "email": candidate.email,
        "phone": candidate.phone,
        "dbs": candidate.dbs,
        "on_update_service": candidate.on_update_service,
        "dbs_certificate_url": candidate.dbs_certificate_url,
        "cv_url": candidate.cv_url,
        "monday": days.monday,
        "tuesday": days.tuesday,
        "wednesday": days.wednesday,
        "thursday": days.thursday,
        "friday": days.friday,
        "notes": candidate.notes,
    }


def opportunity_notes_json(opportunity: Opportunity) -> str:
    return json.dumps([note.model_dump() for note in opportunity.notes])


def opportunity_values(opportunity: Opportunity, now: Optional[datetime] = None) -> Values:
    # Always the current layout; build_row() blanks the legacy G-J columns
    return {
        "name": opportunity.name,
        "school_name": opportunity.school_name,
        "progress_stage": opportunity.progress_stage,
        "account_manager": opportunity.account_manager,
        "date_created": _timestamp(opportunity.date_created, now),
        "notes": opportunity_notes_json(opportunity),
    }


def email_template_values(template: EmailTemplate, now: Optional[datetime] = None) -> Values:
    # Attachments live on the EmailTemplateAttachments sheet
    return {
        "id": template.id,
        "name": template.name,
        "subject": template.subject,
        "body": template.body,
    }


def email_template_attachment_values(linked: EmailTemplateAttachment, now: Optional[datetime] = None) -> Values:
    attachment = linked.attachment
    values = {
        "template_id": linked.template_id,
        "type": attachment.type,
        "name": attachment.name,
        "content_type": attachment.content_type,
        "file_id": "",
        "drive_id": "",
        "content_bytes": "",
    }
    if isinstance(attachment, ManualAttachment):
        values["content_bytes"] = attachment.content_bytes
    else:
        values["file_id"] = attachment.file_id
        values["drive_id"] = attachment.drive_id
    return values


def announcement_values(announcement: Announcement, now: Optional[datetime] = None) -> Values:
    return {
        "author": announcement.author,
        "title": announcement.title,
        "message": announcement.message,
        "created_at": _timestamp(announcement.created_at, now),
    }


def booking_values(booking: Booking, now: Optional[datetime] = None) -> Values:
    amendments = booking.amendments
    if booking.parsed_amendments is not None:
        amendments = json.dumps({
            day: amendment.model_dump(by_alias=True, exclude_none=True)
            for day, amendment in booking.parsed_amendments.items()
        })
    return {
        "school_name": booking.school_name,
        "school_id": booking.school_id,
        "candidate_name": booking.candidate_name,
        "candidate_id": booking.candidate_id,
        "duration_days": booking.duration_days,
        "school_hourly_rate": booking.school_hourly_rate,
        "candidate_hourly_rate": booking.candidate_hourly_rate,
        "school_daily_rate": booking.school_daily_rate,
        "candidate_daily_rate": booking.candidate_daily_rate,
        "hourly_profit": booking.hourly_profit,
        "daily_profit": booking.daily_profit,
        "school_week_charge": booking.school_week_charge,
        "candidate_week_charge": booking.candidate_week_charge,
        "week_profit": booking.week_profit,
        "total_school_charge": booking.total_school_charge,
        "total_candidate_charge": booking.total_candidate_charge,
        "amendments": amendments,
        "total_profit": booking.total_profit,
        "start_date": _date(booking.start_date),
        "id": booking.id,
        "account_manager": booking.account_manager,
    }


def job_alert_values(job: JobAlert, now: Optional[datetime] = None) -> Values:
    return {
        "school_id": job.school_id,
        "school_name": job.school_name,
        "job_title": job.job_title,
        "subject": job.subject,
        "salary": job.salary,
        "close_date": _date(job.close_date),
        "location": job.location,
        "job_description": job.job_description,
        "source_url": job.source_url,
    }


WRITERS: Dict[str, Callable[..., Values]] = {
    "schools": school_values,
    "tasks": task_values,
    "notes": note_values,
    "emails": email_values,
    "call_logs": call_log_values,
    "candidates": candidate_values,
    "opportunities": opportunity_values,
    "email_templates": email_template_values,
    "email_template_attachments": email_template_attachment_values,
    "announcements": announcement_values,
    "bookings": booking_values,
    "job_alerts": job_alert_values,
}


def entity_values(kind: str, entity: BaseModel, now: Optional[datetime] = None) -> Values:
    try:
        writer = WRITERS[kind]
    except KeyError:
        raise KeyError(f"No writer for '{kind}'") from None
    return writer(entity, now)
