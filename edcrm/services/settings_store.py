"""
Typed per-user settings.

Every setting is declared once as a SettingKey with its value type and scope.
Persistent settings live until deleted; session settings are dropped by
end_session(). Values are validated with pydantic on the way in and out and
stored as JSON, in memory or in PostgreSQL (crm.user_settings).
"""

import logging
import threading
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple, Union

from psycopg.types.json import Jsonb
from pydantic import BaseModel, TypeAdapter

from ..models import CustomDialerList
from .database import database_configured, get_db_connection


log = logging.getLogger("edcrm.settings")

PERSISTENT = "persistent"
SESSION = "session"


class UnknownSettingError(KeyError):
    pass


class AiBriefing(BaseModel):
    """Daily briefing text cached for the day it was generated."""
    text: str
    generated_on: str  # DD/MM/YYYY


@dataclass(frozen=True)
class SettingKey:
    name: str
    type: Any
    scope: str = PERSISTENT


@lru_cache(maxsize=None)
def _adapter(key: SettingKey) -> TypeAdapter:
    return TypeAdapter(key.type)


CUSTOM_DIALER_LISTS = SettingKey("custom_dialer_lists", List[CustomDialerList])
AI_BRIEFING = SettingKey("ai_briefing", AiBriefing)
LAST_ACKNOWLEDGED_ANNOUNCEMENT = SettingKey("last_acknowledged_announcement_id", str)
JOB_ALERTS_LAST_RUN = SettingKey("job_alerts_last_run", str)
DRAFT_EMAIL_BODY = SettingKey("draft_email_body", str, SESSION)
AI_TOOL_TO_OPEN = SettingKey("ai_tool_to_open", str, SESSION)

SETTINGS: Dict[str, SettingKey] = {
    key.name: key
    for key in (
        CUSTOM_DIALER_LISTS,
        AI_BRIEFING,
        LAST_ACKNOWLEDGED_ANNOUNCEMENT,
        JOB_ALERTS_LAST_RUN,
        DRAFT_EMAIL_BODY,
        AI_TOOL_TO_OPEN,
    )
}


def get_setting_key(name: str) -> SettingKey:
    try:
        return SETTINGS[name]
    except KeyError:
        raise UnknownSettingError(f"Unknown setting '{name}'") from None


class MemorySettingsBackend:
    """
    Process-local backend, used when no database is configured.

    Sync routes run on the threadpool, so every access holds the lock.
    """

    def __init__(self):
        self._values: Dict[Tuple[str, str], Tuple[str, Any]] = {}
        self._lock = threading.Lock()

    def load(self, user_id: str, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._values.get((user_id, key))
        return entry[1] if entry else None

    def save(self, user_id: str, key: str, scope: str, value: Any) -> None:
        with self._lock:
            self._values[(user_id, key)] = (scope, value)

    def remove(self, user_id: str, key: str) -> bool:
        with self._lock:
            return self._values.pop((user_id, key), None) is not None

    def remove_scope(self, user_id: str, scope: str) -> int:
        with self._lock:
            doomed = [k for k, (s, _) in self._values.items() if k[0] == user_id and s == scope]
            for k in doomed:
                del self._values[k]
        return len(doomed)


class PostgresSettingsBackend:
    """Backend on crm.user_settings (see migrations/0001_crm_settings.sql)."""

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn

    def load(self, user_id: str, key: str) -> Optional[Any]:
        with get_db_connection(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT value FROM crm.user_settings WHERE user_id = %s AND key = %s",
                    (user_id, key),
                )
                row = cur.fetchone()
        return row[0] if row else None

    def save(self, user_id: str, key: str, scope: str, value: Any) -> None:
        with get_db_connection(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO crm.user_settings (user_id, key, scope, value, updated_at)
                    VALUES (%s, %s, %s, %s, now())
                    ON CONFLICT (user_id, key) DO UPDATE
                    SET scope = EXCLUDED.scope,
                        value = EXCLUDED.value,
                        updated_at = now()
                    """,
                    (user_id, key, scope, Jsonb(value)),
                )
            conn.commit()

    def remove(self, user_id: str, key: str) -> bool:
        with get_db_connection(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM crm.user_settings WHERE user_id = %s AND key = %s",
                    (user_id, key),
                )
                deleted = cur.rowcount
            conn.commit()
        return deleted > 0

    def remove_scope(self, user_id: str, scope: str) -> int:
        with get_db_connection(self.dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM crm.user_settings WHERE user_id = %s AND scope = %s",
                    (user_id, scope),
                )
                deleted = cur.rowcount
            conn.commit()
        return deleted


SettingsBackend = Union[MemorySettingsBackend, PostgresSettingsBackend]


class SettingsStore:
    """
    Typed access to per-user settings.

    Example:
        store = SettingsStore(MemorySettingsBackend())
        store.set(user, CUSTOM_DIALER_LISTS, [{"id": 1, "name": "Leeds"}])
        lists = store.get(user, CUSTOM_DIALER_LISTS, [])
    """

    def __init__(self, backend: SettingsBackend):
        self.backend = backend

    @staticmethod
    def _key(key: Union[SettingKey, str]) -> SettingKey:
        return key if isinstance(key, SettingKey) else get_setting_key(key)

    def get(self, user_id: str, key: Union[SettingKey, str], default: Any = None) -> Any:
        """Stored value, or default when unset. A stored value that no longer validates is discarded."""
        key = self._key(key)
        raw = self.backend.load(user_id, key.name)
        if raw is None:
            return default
        try:
            return _adapter(key).validate_python(raw)
        except ValueError as e:
            log.warning("Discarding invalid '%s' setting for %s: %s", key.name, user_id, e)
            self.backend.remove(user_id, key.name)
            return default

    def set(self, user_id: str, key: Union[SettingKey, str], value: Any) -> Any:
        """
        Validate and store a value.

        Raises:
            pydantic.ValidationError: If the value does not match the key's type
        """
        key = self._key(key)
        adapter = _adapter(key)
        validated = adapter.validate_python(value)
        self.backend.save(user_id, key.name, key.scope, adapter.dump_python(validated, mode="json"))
        return validated

    def delete(self, user_id: str, key: Union[SettingKey, str]) -> bool:
        return self.backend.remove(user_id, self._key(key).name)

    def pop(self, user_id: str, key: Union[SettingKey, str], default: Any = None) -> Any:
        """Read and delete in one step (one-shot handoffs such as a drafted email body)."""
        value = self.get(user_id, key, default)
        self.delete(user_id, key)
        return value

    def end_session(self, user_id: str) -> int:
        removed = self.backend.remove_scope(user_id, SESSION)
        log.info("Ended session for %s, dropped %d settings", user_id, removed)
        return removed


_STORE: Optional[SettingsStore] = None


def get_settings_store() -> SettingsStore:
    """Process-wide store: PostgreSQL when DATABASE_URL is set, else in memory."""
    global _STORE
    if _STORE is None:
        backend = PostgresSettingsBackend() if database_configured() else MemorySettingsBackend()
        _STORE = SettingsStore(backend)
    return _STORE
