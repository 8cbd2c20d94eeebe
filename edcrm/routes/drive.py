"""
Drive routes: browse the user's OneDrive / SharePoint files and share them.
"""

from typing import Any, Dict, List, Optional

from azure.core.credentials import TokenCredential
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..adapters.ms365 import drive
from .deps import get_graph_credential, raise_http_error


router = APIRouter(prefix="/crm/drive", tags=["Drive"])


class ShareLinkRequest(BaseModel):
    drive_id: str
    item_id: str


@router.get("/items")
async def list_items(
    item_id: Optional[str] = None,
    credential: TokenCredential = Depends(get_graph_credential),
) -> List[Dict[str, Any]]:
    """
    List a folder; the drive root when item_id is omitted.

    Example:
        GET /crm/drive/items?item_id=01ABCDEF
    """
    try:
        return await drive.list_drive_items(credential, item_id)
    except Exception as e:
        raise_http_error(e, "Could not list drive items")


@router.post("/share-link")
async def create_share_link(
    request: ShareLinkRequest,
    credential: TokenCredential = Depends(get_graph_credential),
):
    """Organisation-scoped view link for a file."""
    url = await drive.create_share_link(credential, request.drive_id, request.item_id)
    if not url:
        raise HTTPException(status_code=502, detail="Could not create share link")
    return {"url": url}
