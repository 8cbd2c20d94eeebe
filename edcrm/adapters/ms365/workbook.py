"""
MS365 workbook adapter.

Reads and writes the CRM workbook through the Excel REST endpoints of
Microsoft Graph. The workbook is located from a sharing URL, resolved fresh
on every call so a moved or renamed file is still found.

Functions:
- get_workbook_path(access_token): /drives/{id}/items/{id}/workbook
- get_all_crm_data(credential, worksheet_map): one $batch read of every sheet
- add_row / update_row / delete_row: whole-row writes
- update_cell / clear_sheet: single-cell writes and sheet clearing
"""

import asyncio
import logging
import os
import re
import weakref
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
from azure.core.credentials import TokenCredential

from ._auth import GraphAPIError, MS365AdapterError, get_access_token
from .drive import encode_sharing_url
from ...services.schema import column_letter, get_sheet_ranges, get_worksheet_map


log = logging.getLogger("edcrm.ms365.workbook")

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_TIMEOUT_SECONDS = float(os.getenv("GRAPH_TIMEOUT_SECONDS", "30"))

DEFAULT_RANGE = "A1:Z5000"

# Statuses Graph uses while another session holds the workbook
_BUSY_STATUSES = {409, 423, 429, 503}

_RANGE_ADDRESS = re.compile(r"^\$?([A-Z]+)\$?(\d+)(?::\$?([A-Z]+)\$?\d+)?$")


def get_workbook_sharing_url() -> str:
    """Get the CRM workbook sharing URL from environment."""
    url = os.getenv("CRM_WORKBOOK_SHARING_URL")
    if not url:
        raise ValueError("CRM_WORKBOOK_SHARING_URL environment variable not set")
    return url


@dataclass
class SheetValues:
    """Cells of one sheet: the header row and the data rows below it."""
    header: List[Any] = field(default_factory=list)
    rows: List[List[Any]] = field(default_factory=list)


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=GRAPH_TIMEOUT_SECONDS)


def _error_from_response(response: httpx.Response) -> GraphAPIError:
    try:
        data = response.json()
    except ValueError:
        data = {}
    error = data.get("error") if isinstance(data, dict) else None
    if not isinstance(error, dict):
        error = {}
    code = error.get("code")
    message = error.get("message") or response.reason_phrase
    return GraphAPIError(
        f"Graph API call failed ({code or response.status_code}). Server said: {message}",
        status_code=response.status_code,
        code=code,
    )


async def graph_api_call(
    access_token: str,
    url: str,
    method: str = "GET",
    body: Optional[Dict[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """
    Make a Graph REST call.

    Args:
        access_token: Bearer token
        url: Absolute URL, or a path relative to GRAPH_BASE_URL
        method: HTTP method
        body: JSON body

    Returns:
        Parsed JSON response, or None for empty (204) responses

    Raises:
        GraphAPIError: If Graph returns an error status
        MS365AdapterError: If the request could not be sent
    """
    if url.startswith("/"):
        url = GRAPH_BASE_URL + url

    async with _http_client() as client:
        try:
            response = await client.request(
                method,
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                json=body,
            )
        except httpx.RequestError as e:
            raise MS365AdapterError(f"Graph request {method} {url} failed: {e}")

    if response.is_error:
        error = _error_from_response(response)
        log.error("Graph API call failed for %s %s: %s", method, url, error)
        raise error

    if response.status_code == 204 or not response.content:
        return None
    return response.json()


async def get_workbook_path(access_token: str, sharing_url: Optional[str] = None) -> str:
    """
    Convert the sharing URL into the direct API path of the workbook.

    Raises:
        GraphAPIError: If the sharing link cannot be resolved
        MS365AdapterError: If the response lacks the drive or item id
    """
    encoded = encode_sharing_url(sharing_url or get_workbook_sharing_url())
    try:
        item = await graph_api_call(access_token, f"/shares/u!{encoded}/driveItem?$select=id,parentReference")
    except GraphAPIError as e:
        raise GraphAPIError(
            f"Could not find the Excel file using the sharing link. {e}",
            status_code=e.status_code,
            code=e.code,
        ) from e

    item = item or {}
    drive_id = (item.get("parentReference") or {}).get("driveId")
    item_id = item.get("id")
    if not drive_id or not item_id:
        raise MS365AdapterError("The sharing link response did not contain the drive and item ids")
    return f"/drives/{drive_id}/items/{item_id}/workbook"


def _worksheet_url(workbook_path: str, worksheet: str) -> str:
    return f"{workbook_path}/worksheets('{worksheet}')"


def _range_url(workbook_path: str, worksheet: str, address: str) -> str:
    return f"{_worksheet_url(workbook_path, worksheet)}/range(address='{address}')"


async def get_all_crm_data(
    credential: TokenCredential,
    worksheet_map: Optional[Mapping[str, str]] = None,
    ranges: Optional[Mapping[str, str]] = None,
) -> Dict[str, SheetValues]:
    """
    Read every CRM sheet in a single $batch request.

    Args:
        credential: Token credential
        worksheet_map: Logical key -> worksheet tab name (all sheets by default)
        ranges: Logical key -> range to read (schema ranges by default)

    Returns:
        Logical key -> SheetValues. A sheet whose sub-request failed is empty.

    Raises:
        GraphAPIError: If the batch request itself fails
    """
    worksheet_map = worksheet_map if worksheet_map is not None else get_worksheet_map()
    ranges = ranges if ranges is not None else get_sheet_ranges()

    access_token = await get_access_token(credential)
    workbook_path = await get_workbook_path(access_token)

    requests = [
        {
            "id": key,
            "method": "GET",
            "url": f"{_range_url(workbook_path, worksheet, ranges.get(key, DEFAULT_RANGE))}?$select=values",
            "headers": {"Cache-Control": "no-store"},
        }
        for key, worksheet in worksheet_map.items()
    ]

    try:
        batch = await graph_api_call(access_token, "/$batch", "POST", {"requests": requests})
    except GraphAPIError as e:
        raise GraphAPIError(
            f"Could not fetch CRM data. The batch request failed. {e}",
            status_code=e.status_code,
            code=e.code,
        ) from e

    result = {key: SheetValues() for key in worksheet_map}
    for response in (batch or {}).get("responses", []):
        key = response.get("id")
        if key not in result:
            continue
        body = response.get("body") or {}
        if response.get("status") != 200:
            error = body.get("error") or {}
            log.warning(
                "Could not read worksheet '%s' (status %s): %s",
                worksheet_map[key], response.get("status"), error.get("message", "unknown error"),
            )
            continue
        values = body.get("values") or []
        if values:
            result[key] = SheetValues(header=list(values[0]), rows=[list(row) for row in values[1:]])
    return result


async def get_last_used_row(access_token: str, workbook_path: str, worksheet: str) -> int:
    """
    Row count of the used range; 0 when it cannot be read.

    Busy and conflict errors propagate so the write is retried rather than
    landing on row 1.
    """
    url = f"{_worksheet_url(workbook_path, worksheet)}/usedRange(valuesOnly=true)?$select=rowCount"
    try:
        data = await graph_api_call(access_token, url)
    except GraphAPIError as e:
        if e.status_code in _BUSY_STATUSES:
            raise
        log.warning("Could not read used range of '%s', treating as empty: %s", worksheet, e)
        return 0
    return int((data or {}).get("rowCount") or 0)


_APPEND_LOCKS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _append_lock(worksheet: str) -> asyncio.Lock:
    locks = _APPEND_LOCKS.setdefault(asyncio.get_running_loop(), {})
    if worksheet not in locks:
        locks[worksheet] = asyncio.Lock()
    return locks[worksheet]


def _row_address(row_index: int, width: int) -> str:
    return f"A{row_index}:{column_letter(width - 1)}{row_index}"


def _check_data_row(row_index: int) -> None:
    if row_index < 2:
        raise ValueError(f"Row {row_index} is not a data row")


async def add_row(credential: TokenCredential, worksheet: str, values: Sequence[Any]) -> Dict[str, Any]:
    """
    Append a row after the last used row of a worksheet.

    Appends from this process are serialised per worksheet. Two clients
    appending at the same moment can still pick the same row.

    Returns:
        Graph range response with excel_row_index of the written row
    """
    if not values:
        raise ValueError("Cannot add an empty row")

    access_token = await get_access_token(credential)
    workbook_path = await get_workbook_path(access_token)

    async with _append_lock(worksheet):
        row_index = await get_last_used_row(access_token, workbook_path, worksheet) + 1
        url = _range_url(workbook_path, worksheet, _row_address(row_index, len(values)))
        result = await graph_api_call(access_token, url, "PATCH", {"values": [list(values)]})

    log.info("Appended row %d to '%s'", row_index, worksheet)
    return {**(result or {}), "excel_row_index": row_index}


async def update_row(
    credential: TokenCredential,
    worksheet: str,
    row_index: int,
    values: Sequence[Any],
) -> Optional[Dict[str, Any]]:
    """Overwrite a row in place. None cells are left unchanged by Graph."""
    _check_data_row(row_index)
    if not values:
        raise ValueError("Cannot write an empty row")

    access_token = await get_access_token(credential)
    workbook_path = await get_workbook_path(access_token)
    url = _range_url(workbook_path, worksheet, _row_address(row_index, len(values)))
    return await graph_api_call(access_token, url, "PATCH", {"values": [list(values)]})


async def delete_row(credential: TokenCredential, worksheet: str, row_index: int) -> Dict[str, Any]:
    """
    Delete a whole row, shifting the rows below it up.

    Every excel_row_index below the deleted row is stale afterwards; reload.
    """
    _check_data_row(row_index)
    access_token = await get_access_token(credential)
    workbook_path = await get_workbook_path(access_token)
    url = f"{_range_url(workbook_path, worksheet, f'{row_index}:{row_index}')}/delete"
    result = await graph_api_call(access_token, url, "POST", {"shift": "Up"})
    if result is None:
        return {"success": True}
    return result


async def update_cell(credential: TokenCredential, worksheet: str, address: str, value: Any) -> Optional[Dict[str, Any]]:
    """Write a single cell, e.g. update_cell(cred, "Schools", "I12", True)."""
    access_token = await get_access_token(credential)
    workbook_path = await get_workbook_path(access_token)
    url = _range_url(workbook_path, worksheet, address)
    return await graph_api_call(access_token, url, "PATCH", {"values": [[value]]})


async def clear_sheet(credential: TokenCredential, worksheet: str) -> Optional[Dict[str, Any]]:
    """
    Clear the contents of every row below the header.

    Returns:
        The Graph response, or None when there is nothing below the header
    """
    access_token = await get_access_token(credential)
    workbook_path = await get_workbook_path(access_token)

    used = await graph_api_call(access_token, f"{_worksheet_url(workbook_path, worksheet)}/usedRange(valuesOnly=true)")
    row_count = int((used or {}).get("rowCount") or 0)
    if row_count <= 1:
        return None

    address = str(used.get("address", "")).split("!")[-1]
    match = _RANGE_ADDRESS.match(address)
    if not match:
        raise MS365AdapterError(f"Unexpected used range address '{address}' on '{worksheet}'")

    start_column, first_row, end_column = match.group(1), int(match.group(2)), match.group(3) or match.group(1)
    last_row = first_row + row_count - 1
    clear_address = f"{start_column}{first_row + 1}:{end_column}{last_row}"

    log.info("Clearing %s!%s", worksheet, clear_address)
    return await graph_api_call(
        access_token,
        f"{_range_url(workbook_path, worksheet, clear_address)}/clear",
        "POST",
        {"applyTo": "Contents"},
    )
