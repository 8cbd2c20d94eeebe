"""
Shared route dependencies and error mapping.
"""

import logging
from typing import Any, Awaitable, Callable, List, NoReturn

from azure.core.credentials import TokenCredential
from fastapi import Depends, HTTPException
from pydantic import ValidationError

from ..adapters.ms365 import MS365AdapterError, get_credential
from ..services.crm_service import OperationNotAllowedError, UnknownEntityError
from ..services.resilience import is_lock_error, resilient_write
from ..services.schema import SchemaMismatchError
from ..services.settings_store import SettingsStore, get_settings_store


log = logging.getLogger("edcrm.routes")


def get_graph_credential() -> TokenCredential:
    """FastAPI dependency: the signed-in MSAL credential."""
    try:
        return get_credential()
    except (MS365AdapterError, ValueError) as e:
        raise HTTPException(status_code=500, detail=f"Microsoft 365 sign-in is not configured: {e}")


def get_current_user(credential: TokenCredential = Depends(get_graph_credential)) -> str:
    """Settings owner: the signed-in account, or 'default' before first sign-in."""
    return getattr(credential, "username", None) or "default"


def get_store() -> SettingsStore:
    return get_settings_store()


def raise_http_error(error: BaseException, action: str) -> NoReturn:
    """Translate a service or adapter error into an HTTPException."""
    if isinstance(error, HTTPException):
        raise error
    if isinstance(error, UnknownEntityError):
        raise HTTPException(status_code=404, detail=str(error))
    if isinstance(error, OperationNotAllowedError):
        raise HTTPException(status_code=405, detail=str(error))
    if isinstance(error, SchemaMismatchError):
        raise HTTPException(status_code=409, detail=str(error))
    if isinstance(error, ValidationError):
        raise HTTPException(status_code=422, detail=error.errors(include_url=False, include_context=False))
    if isinstance(error, ValueError):
        raise HTTPException(status_code=400, detail=str(error))
    if is_lock_error(error):
        raise HTTPException(status_code=503, detail=f"{action}: workbook is busy, try again shortly")
    if isinstance(error, MS365AdapterError):
        raise HTTPException(status_code=502, detail=f"{action}: {error}")
    raise HTTPException(status_code=500, detail=f"{action}: {error}")


async def run_write(write: Callable[[], Awaitable[Any]], action: str) -> Any:
    """Run a workbook write with lock retries; raise an HTTPException if it gives up."""
    failures: List[BaseException] = []
    result = await resilient_write(write, failures.append)
    if failures:
        log.error("%s failed: %s", action, failures[-1])
        raise_http_error(failures[-1], action)
    return result
