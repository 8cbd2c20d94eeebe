"""
Per-user settings routes.

Keys are declared in services.settings_store; unknown keys are 404 and
values are validated against the key's type.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import ValidationError

from ..services.settings_store import SettingsStore, UnknownSettingError, get_setting_key
from .deps import get_current_user, get_store


router = APIRouter(prefix="/crm/settings", tags=["Settings"])


def _setting(key: str):
    try:
        return get_setting_key(key)
    except UnknownSettingError:
        raise HTTPException(status_code=404, detail=f"Unknown setting '{key}'")


@router.get("/{key}")
def read_setting(
    key: str,
    consume: bool = False,
    user: str = Depends(get_current_user),
    store: SettingsStore = Depends(get_store),
):
    """Read a value; consume=true deletes it after reading."""
    setting = _setting(key)
    value = store.pop(user, setting) if consume else store.get(user, setting)
    if value is None:
        raise HTTPException(status_code=404, detail=f"Setting '{key}' is not set")
    return {"key": key, "scope": setting.scope, "value": value}


@router.put("/{key}")
def write_setting(
    key: str,
    value: Any = Body(..., embed=True),
    user: str = Depends(get_current_user),
    store: SettingsStore = Depends(get_store),
):
    """
    Store a value.

    Example:
        PUT /crm/settings/custom_dialer_lists
        {"value": [{"id": 1, "name": "Leeds primaries"}]}
    """
    setting = _setting(key)
    try:
        stored = store.set(user, setting, value)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    return {"key": key, "scope": setting.scope, "value": stored}


@router.delete("/{key}", status_code=204)
def delete_setting(key: str, user: str = Depends(get_current_user), store: SettingsStore = Depends(get_store)):
    store.delete(user, _setting(key))


@router.post("/session/end")
def end_session(user: str = Depends(get_current_user), store: SettingsStore = Depends(get_store)):
    """Drop session-scoped settings (draft email body, tool to open)."""
    return {"removed": store.end_session(user)}
