"""
Mail routes: send from the signed-in mailbox and sync mailbox traffic to schools.
"""

from typing import List

from azure.core.credentials import TokenCredential
from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field

from ..adapters.ms365 import mail
from ..models import Attachment, Email
from ..services import crm_service
from .deps import get_graph_credential, raise_http_error


router = APIRouter(prefix="/crm/emails", tags=["Mail"])


class SendEmailRequest(BaseModel):
    """Request to send an email"""
    to: EmailStr
    subject: str = Field(..., min_length=1)
    body_html: str = Field(..., description="HTML body; a SharePoint signature image is inlined")
    attachments: List[Attachment] = Field(default_factory=list)


@router.post("/send", status_code=202)
async def send_email(
    request: SendEmailRequest,
    credential: TokenCredential = Depends(get_graph_credential),
):
    """
    Send an email and save it to Sent Items.

    Example:
        POST /crm/emails/send
        {"to": "head@oakfield.sch.uk", "subject": "Cover", "body_html": "<p>Hello</p>"}
    """
    try:
        await mail.send_email(
            credential,
            str(request.to),
            request.subject,
            request.body_html,
            request.attachments,
        )
    except Exception as e:
        raise_http_error(e, "Could not send email")
    return {"status": "sent", "to": str(request.to)}


@router.post("/sync", response_model=List[Email])
async def sync_emails(credential: TokenCredential = Depends(get_graph_credential)):
    """Mailbox messages matched to schools (not written to the workbook)."""
    try:
        data = await crm_service.load_crm_data(credential)
        return await crm_service.sync_emails(credential, data.schools, data.users)
    except Exception as e:
        raise_http_error(e, "Could not sync emails")
