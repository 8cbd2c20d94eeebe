"""
MS365 drive adapter.

OneDrive / SharePoint file operations via msgraph-sdk: sharing-link
resolution, file download, folder listing and organisation share links.
"""

import base64
import logging
from typing import Any, Dict, List, Optional

from azure.core.credentials import TokenCredential
from msgraph.generated.drives.item.items.item.create_link.create_link_post_request_body import (
    CreateLinkPostRequestBody,
)

from ._auth import MS365AdapterError, get_graph_client


log = logging.getLogger("edcrm.ms365.drive")


def encode_sharing_url(sharing_url: str) -> str:
    """
    Encode a sharing URL for the /shares endpoint.

    Example:
        f"/shares/u!{encode_sharing_url(url)}/driveItem"
    """
    encoded = base64.urlsafe_b64encode(sharing_url.encode("utf-8")).decode("ascii")
    return encoded.rstrip("=")


def _normalize_item(item) -> Dict[str, Any]:
    parent = item.parent_reference
    return {
        "id": item.id,
        "name": item.name or "",
        "is_folder": item.folder is not None,
        "mime_type": item.file.mime_type if item.file else None,
        "size": item.size,
        "drive_id": parent.drive_id if parent else None,
        "last_modified_at": item.last_modified_date_time.isoformat() if item.last_modified_date_time else None,
    }


async def resolve_sharing_url(credential: TokenCredential, sharing_url: str) -> Optional[Dict[str, str]]:
    """
    Resolve a SharePoint sharing URL to its drive and item ids.

    Returns:
        {"drive_id": ..., "item_id": ...}, or None if the link cannot be resolved
    """
    try:
        client = get_graph_client(credential)
        share_id = f"u!{encode_sharing_url(sharing_url)}"
        item = await client.shares.by_shared_drive_item_id(share_id).drive_item.get()
    except Exception as e:
        log.warning("Could not resolve sharing URL %s: %s", sharing_url, e)
        return None

    if not item or not item.id or not item.parent_reference or not item.parent_reference.drive_id:
        log.warning("Sharing URL %s resolved without drive/item ids", sharing_url)
        return None
    return {"drive_id": item.parent_reference.drive_id, "item_id": item.id}


async def get_drive_item_content(credential: TokenCredential, drive_id: str, item_id: str) -> bytes:
    """
    Download a file's content.

    Raises:
        MS365AdapterError: If the download fails
    """
    try:
        client = get_graph_client(credential)
        content = await client.drives.by_drive_id(drive_id).items.by_drive_item_id(item_id).content.get()
    except MS365AdapterError:
        raise
    except Exception as e:
        raise MS365AdapterError(f"Could not fetch file content for {item_id}: {e}")

    if content is None:
        raise MS365AdapterError(f"File {item_id} has no content")
    return content


async def list_drive_items(credential: TokenCredential, item_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    List the children of a folder in the user's drive.

    Args:
        credential: Token credential
        item_id: Folder id; the drive root when None

    Returns:
        Normalized items with keys id, name, is_folder, mime_type, size,
        drive_id, last_modified_at

    Raises:
        MS365AdapterError: If the listing fails
    """
    try:
        client = get_graph_client(credential)
        drive = await client.me.drive.get()
        if not drive or not drive.id:
            raise MS365AdapterError("Could not determine the user's drive")

        items = client.drives.by_drive_id(drive.id).items.by_drive_item_id(item_id or "root")
        response = await items.children.get()
    except MS365AdapterError:
        raise
    except Exception as e:
        raise MS365AdapterError(f"Could not list drive items: {e}")

    if not response or not response.value:
        return []
    return [_normalize_item(item) for item in response.value]


async def create_share_link(credential: TokenCredential, drive_id: str, item_id: str) -> Optional[str]:
    """Create a view link scoped to the organisation. None on failure."""
    try:
        client = get_graph_client(credential)
        body = CreateLinkPostRequestBody(type="view", scope="organization")
        permission = await client.drives.by_drive_id(drive_id).items.by_drive_item_id(item_id).create_link.post(body)
    except Exception as e:
        log.error("Could not create share link for %s: %s", item_id, e)
        return None

    if not permission or not permission.link:
        return None
    return permission.link.web_url
