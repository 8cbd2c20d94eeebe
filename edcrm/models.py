"""
CRM domain models.

Every record read from the workbook carries excel_row_index, the 1-based
worksheet row it was read from. That index is the record's identity inside
its sheet: updates and deletes address the row by it.
"""

from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


OPPORTUNITY_STAGES = (
    "5% - Opportunity identified",
    "15% - Reached out",
    "50% - Engagement",
    "75% - Negotiation",
    "100% - Closed Won",
    "100% - Closed Lost",
)

DEFAULT_OPPORTUNITY_STAGE = OPPORTUNITY_STAGES[0]


class School(BaseModel):
    name: str
    location: str = ""
    contact_number: str = ""
    account_manager: str = ""
    cover_manager: str = ""
    email: str = ""
    contact2: Optional[str] = None
    contact2_email: Optional[str] = None
    spoke_to_cover_manager: bool = False
    email_name: Optional[str] = None
    switchboard: Optional[str] = None
    engagement_score: str = ""  # '', 'CM Not Known', 'CM Confirmed', 'CM Spoken To'
    website: Optional[str] = None
    status: Optional[str] = None
    last_called_date: Optional[str] = None  # date_called of the latest call log
    excel_row_index: Optional[int] = None


class Task(BaseModel):
    school_name: str
    type: str = "General or other"
    phone_number: Optional[str] = None
    account_manager: str = ""
    cover_manager: Optional[str] = None
    cover_manager_email: Optional[str] = None
    contact2: Optional[str] = None
    contact2_email: Optional[str] = None
    date_created: str = ""
    task_description: str
    due_date: Optional[str] = None
    due_time: Optional[str] = None
    is_completed: bool = False
    excel_row_index: Optional[int] = None


class Note(BaseModel):
    school_name: str
    account_manager: str = ""
    cover_manager: Optional[str] = None
    contact2: Optional[str] = None
    date: str = ""
    note: str
    excel_row_index: Optional[int] = None


class Email(BaseModel):
    school_name: str
    account_manager: str = ""
    cover_manager: str = ""
    date: str = ""
    subject: str
    body: str = ""
    direction: Literal["sent", "received"] = "sent"
    excel_row_index: Optional[int] = None


class CallLog(BaseModel):
    school_name: str
    location: str = ""
    phone_number: str = ""
    account_manager: str = ""
    contact_called: str = ""
    date_called: str
    spoke_to_cover_manager: bool = False
    duration: str = ""
    notes: str = ""
    transcript: Optional[str] = None
    cover_manager: Optional[str] = None
    excel_row_index: Optional[int] = None


class User(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str
    name: str = ""
    mobile_number: Optional[str] = None
    address: Optional[str] = None
    last_seen: Optional[str] = None
    status: str = "Offline"  # 'Online', 'Away', 'On a Call', 'Offline'


class Availability(BaseModel):
    monday: bool = False
    tuesday: bool = False
    wednesday: bool = False
    thursday: bool = False
    friday: bool = False


class Candidate(BaseModel):
    id: str = ""
    name: str
    dob: Optional[str] = None
    location: str = ""
    drives: bool = False
    willing_to_travel_miles: Optional[int] = None
    email: str = ""
    phone: str = ""
    dbs: bool = False
    on_update_service: bool = False
    dbs_certificate_url: str = ""
    cv_url: str = ""
    availability: Availability = Field(default_factory=Availability)
    notes: str = ""
    excel_row_index: Optional[int] = None


class OpportunityNote(BaseModel):
    author: str
    date: str  # ISO timestamp
    note: str


class Opportunity(BaseModel):
    id: str = ""
    name: str
    school_name: str
    progress_stage: str = DEFAULT_OPPORTUNITY_STAGE
    account_manager: str = ""
    date_created: str = ""
    notes: List[OpportunityNote] = Field(default_factory=list)
    excel_row_index: Optional[int] = None


class ManualAttachment(BaseModel):
    type: Literal["manual"] = "manual"
    name: str
    content_type: str = ""
    content_bytes: str = ""  # base64
    size: Optional[int] = None
    excel_row_index: Optional[int] = None


class SharePointAttachment(BaseModel):
    type: Literal["sharepoint"] = "sharepoint"
    name: str
    content_type: str = ""
    file_id: str
    drive_id: str
    size: Optional[int] = None
    excel_row_index: Optional[int] = None


Attachment = Annotated[
    Union[ManualAttachment, SharePointAttachment],
    Field(discriminator="type"),
]


class EmailTemplateAttachment(BaseModel):
    """An attachment row linked to a template by template_id."""
    template_id: str
    attachment: Attachment
    excel_row_index: Optional[int] = None


class EmailTemplate(BaseModel):
    id: str
    name: str = ""
    subject: str = ""
    body: str = ""
    attachments: List[Attachment] = Field(default_factory=list)
    excel_row_index: Optional[int] = None


class Announcement(BaseModel):
    id: str = ""
    author: str = "Admin"
    title: str = "Announcement"
    message: str
    created_at: str = ""
    excel_row_index: Optional[int] = None


class BookingAmendment(BaseModel):
    school_deduction: float = Field(0, alias="schoolDeduction")
    candidate_deduction: float = Field(0, alias="candidateDeduction")
    notes: Optional[str] = None

    model_config = {"populate_by_name": True}


class Booking(BaseModel):
    id: str = ""
    school_name: str
    school_id: str = ""
    candidate_name: str
    candidate_id: str = ""
    duration_days: int = 0
    school_hourly_rate: float = 0
    candidate_hourly_rate: float = 0
    school_daily_rate: float = 0
    candidate_daily_rate: float = 0
    hourly_profit: float = 0
    daily_profit: float = 0
    school_week_charge: float = 0
    candidate_week_charge: float = 0
    week_profit: float = 0
    total_school_charge: float = 0
    total_candidate_charge: float = 0
    amendments: str = ""  # raw JSON text as stored in the sheet
    parsed_amendments: Optional[Dict[str, BookingAmendment]] = None  # keyed by DD/MM/YYYY
    total_profit: float = 0
    start_date: str = ""
    account_manager: str = ""
    excel_row_index: Optional[int] = None


class JobAlert(BaseModel):
    school_id: str = ""
    school_name: str
    job_title: str
    subject: str = ""
    salary: str = ""
    close_date: str = ""
    location: str = ""
    job_description: str = ""
    source_url: str = ""
    notes: str = ""
    excel_row_index: Optional[int] = None


class DialerFilters(BaseModel):
    search_term: str = ""
    spoken_filter: Literal["any", "yes", "no"] = "any"
    selected_locations: List[str] = Field(default_factory=list)
    selected_engagements: List[str] = Field(default_factory=list)
    date_filter_type: Optional[Literal["any", "specific", "between", "before", "after", "blank"]] = None
    date1: Optional[str] = None
    date2: Optional[str] = None


class CustomDialerList(BaseModel):
    id: int
    name: str
    filters: DialerFilters = Field(default_factory=DialerFilters)
    static_school_indices: Optional[List[int]] = None


class CrmData(BaseModel):
    schools: List[School] = Field(default_factory=list)
    tasks: List[Task] = Field(default_factory=list)
    notes: List[Note] = Field(default_factory=list)
    emails: List[Email] = Field(default_factory=list)
    call_logs: List[CallLog] = Field(default_factory=list)
    users: List[User] = Field(default_factory=list)
    candidates: List[Candidate] = Field(default_factory=list)
    opportunities: List[Opportunity] = Field(default_factory=list)
    email_templates: List[EmailTemplate] = Field(default_factory=list)
    announcements: List[Announcement] = Field(default_factory=list)
    bookings: List[Booking] = Field(default_factory=list)
    job_alerts: List[JobAlert] = Field(default_factory=list)
