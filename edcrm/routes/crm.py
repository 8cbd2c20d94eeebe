"""
CRM workbook routes.

Read the whole CRM, append/update/delete rows per entity kind, and the
single-cell updates used by the dialer and opportunity screens. Writes are
retried while the workbook is locked by another session.
"""

from typing import Any, Dict, List, Optional

from azure.core.credentials import TokenCredential
from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, Field

from ..models import CrmData, OpportunityNote
from ..services import crm_service
from ..services.crm_service import DashboardSummary
from .deps import get_graph_credential, raise_http_error, run_write


router = APIRouter(prefix="/crm", tags=["CRM"])


class SpokeToCoverManagerRequest(BaseModel):
    spoke: bool


class OpportunityNotesRequest(BaseModel):
    notes: List[OpportunityNote] = Field(default_factory=list)


class TranscriptRequest(BaseModel):
    transcript: str


@router.get("/data", response_model=CrmData)
async def get_crm_data(
    strict: bool = Query(False, description="Fail when a sheet lacks expected headers"),
    sync_mailbox: bool = Query(False, description="Include mailbox messages matched to schools"),
    credential: TokenCredential = Depends(get_graph_credential),
):
    """
    Load every CRM sheet.

    Example:
        GET /crm/data?sync_mailbox=true
    """
    try:
        return await crm_service.load_crm_data(credential, strict=strict, sync_mailbox=sync_mailbox)
    except Exception as e:
        raise_http_error(e, "Could not load CRM data")


@router.get("/summary", response_model=DashboardSummary)
async def get_dashboard_summary(
    account_manager: Optional[str] = None,
    credential: TokenCredential = Depends(get_graph_credential),
):
    """Dashboard counts, optionally for one account manager."""
    try:
        data = await crm_service.load_crm_data(credential)
    except Exception as e:
        raise_http_error(e, "Could not load CRM data")
    return crm_service.dashboard_summary(data, account_manager=account_manager)


@router.put("/schools/{row_index}/spoke-to-cover-manager")
async def update_spoke_to_cover_manager(
    row_index: int,
    request: SpokeToCoverManagerRequest,
    credential: TokenCredential = Depends(get_graph_credential),
):
    await run_write(
        lambda: crm_service.set_spoke_to_cover_manager(credential, row_index, request.spoke),
        "Could not update school",
    )
    return {"status": "success", "excel_row_index": row_index}


@router.put("/opportunities/{row_index}/notes")
async def update_opportunity_notes(
    row_index: int,
    request: OpportunityNotesRequest,
    credential: TokenCredential = Depends(get_graph_credential),
):
    await run_write(
        lambda: crm_service.set_opportunity_notes(credential, row_index, request.notes),
        "Could not save opportunity notes",
    )
    return {"status": "success", "excel_row_index": row_index}


@router.put("/call_logs/{row_index}/transcript")
async def update_call_log_transcript(
    row_index: int,
    request: TranscriptRequest,
    credential: TokenCredential = Depends(get_graph_credential),
):
    await run_write(
        lambda: crm_service.set_call_log_transcript(credential, row_index, request.transcript),
        "Could not save call transcript",
    )
    return {"status": "success", "excel_row_index": row_index}


@router.delete("/email_templates")
async def clear_email_templates(credential: TokenCredential = Depends(get_graph_credential)):
    """Remove every email template and template attachment row."""
    cleared = await run_write(
        lambda: crm_service.clear_email_templates(credential),
        "Could not clear email templates",
    )
    return {"status": "success", "cleared": cleared}


@router.post("/{kind}", status_code=201)
async def add_entity(
    kind: str,
    entity: Dict[str, Any] = Body(...),
    credential: TokenCredential = Depends(get_graph_credential),
):
    """
    Append a record to the sheet for kind.

    Example:
        POST /crm/tasks
        {"school_name": "Oakfield Primary", "task_description": "Call back", "due_date": "01/02/2024"}
    """
    action = f"Could not add {kind}"
    try:
        saved = await crm_service.add_entity(
            credential, kind, entity, run_append=lambda append: run_write(append, action)
        )
    except Exception as e:
        raise_http_error(e, action)
    return saved.model_dump()


@router.put("/{kind}/{row_index}")
async def update_entity(
    kind: str,
    row_index: int,
    entity: Dict[str, Any] = Body(...),
    credential: TokenCredential = Depends(get_graph_credential),
):
    saved = await run_write(
        lambda: crm_service.update_entity(credential, kind, row_index, entity),
        f"Could not update {kind}",
    )
    return saved.model_dump()


@router.delete("/{kind}/{row_index}")
async def delete_entity(
    kind: str,
    row_index: int,
    credential: TokenCredential = Depends(get_graph_credential),
):
    """Delete a row. Rows below shift up, so reload before the next row-based write."""
    await run_write(
        lambda: crm_service.delete_entity(credential, kind, row_index),
        f"Could not delete {kind}",
    )
    return {"status": "success", "excel_row_index": row_index}
