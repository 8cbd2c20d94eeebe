"""
MS365 authentication adapter.

Provides a custom TokenCredential backed by MSAL so that msgraph-sdk and the
raw workbook REST calls share one signed-in account and one token cache.
The token cache is kept on disk encrypted with Fernet.
"""

import asyncio
import base64
import logging
import os
import time
from typing import Any, Dict, Iterable, List, Optional

import msal
from azure.core.credentials import AccessToken, TokenCredential
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from msgraph import GraphServiceClient


log = logging.getLogger("edcrm.ms365.auth")

MS365_CLIENT_ID = os.getenv("MICROSOFT_CLIENT_ID", "")
MS365_AUTHORITY = os.getenv("MICROSOFT_AUTHORITY", "https://login.microsoftonline.com/common")
MSAL_TOKEN_CACHE_PATH = os.getenv("MSAL_TOKEN_CACHE_PATH", ".msal_token_cache.bin")
MSAL_ACCOUNT = os.getenv("MSAL_ACCOUNT")

MS365_SCOPES = [
    "https://graph.microsoft.com/User.Read",
    "https://graph.microsoft.com/Mail.Send",
    "https://graph.microsoft.com/Mail.ReadWrite",
    "https://graph.microsoft.com/Files.ReadWrite.All",
    "https://graph.microsoft.com/Sites.ReadWrite.All",
]

# MSAL adds these itself and rejects requests that name them
RESERVED_SCOPES = {"openid", "profile", "offline_access"}

INTERACTION_REQUIRED_ERRORS = {
    "interaction_required",
    "login_required",
    "consent_required",
    "invalid_grant",
}


class MS365AdapterError(Exception):
    """Base exception for MS365 adapter errors."""
    pass


class GraphAPIError(MS365AdapterError):
    """
    A Graph REST call returned an error response.

    The message carries the Graph error code (e.g. "EditConflict") so callers
    can classify failures by message text.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


def _get_encryption_key() -> bytes:
    """Get or derive the token cache encryption key from environment."""
    key_str = os.environ.get("MSAL_CACHE_KEY")
    if not key_str:
        raise ValueError("MSAL_CACHE_KEY environment variable not set")

    # If it's already a valid Fernet key (32 bytes base64), use it
    try:
        key_bytes = base64.urlsafe_b64decode(key_str)
        if len(key_bytes) == 32:
            return base64.urlsafe_b64encode(key_bytes)
    except Exception:
        pass

    # Otherwise, derive a key from the provided string
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"edcrm_msal_cache_salt",  # Static salt for deterministic key
        iterations=100000,
    )
    return base64.urlsafe_b64encode(kdf.derive(key_str.encode()))


class EncryptedTokenCache(msal.SerializableTokenCache):
    """MSAL token cache persisted to a Fernet-encrypted file."""

    def __init__(self, path: str, fernet: Fernet):
        super().__init__()
        self.path = path
        self._fernet = fernet

    def load(self) -> None:
        if not os.path.exists(self.path):
            return
        with open(self.path, "rb") as f:
            data = f.read()
        try:
            self.deserialize(self._fernet.decrypt(data).decode())
        except InvalidToken:
            log.warning("Token cache %s could not be decrypted; starting with an empty cache", self.path)

    def persist(self) -> None:
        if not self.has_state_changed:
            return
        with open(self.path, "wb") as f:
            f.write(self._fernet.encrypt(self.serialize().encode()))
        self.has_state_changed = False


def filter_scopes(scopes: Iterable[str]) -> List[str]:
    return [scope for scope in scopes if scope.lower() not in RESERVED_SCOPES]


class MsalTokenCredential(TokenCredential):
    """
    TokenCredential that acquires Graph tokens through MSAL.

    Tokens are taken silently from the cache for the signed-in account and
    fall back to interactive sign-in when MSAL reports that user interaction
    is required.
    """

    def __init__(
        self,
        app: msal.ClientApplication,
        username: Optional[str] = None,
        cache: Optional[EncryptedTokenCache] = None,
    ):
        """
        Args:
            app: MSAL public client application
            username: Account to use; the first cached account when None
            cache: Token cache to persist after each acquisition
        """
        self.app = app
        self.username = username
        self.cache = cache

    def _account(self) -> Optional[Dict[str, Any]]:
        accounts = self.app.get_accounts(username=self.username) if self.username else self.app.get_accounts()
        return accounts[0] if accounts else None

    def get_token(self, *scopes: str, **kwargs) -> AccessToken:
        """
        Get access token for the signed-in account (synchronous).

        Args:
            scopes: OAuth scopes (defaults to MS365_SCOPES)
            **kwargs: Additional arguments (ignored)

        Returns:
            AccessToken with token and expiration timestamp

        Raises:
            MS365AdapterError: If no token could be acquired
        """
        requested = filter_scopes(scopes or MS365_SCOPES)
        result = None

        account = self._account()
        if account:
            result = self.app.acquire_token_silent(requested, account=account)

        if result and "error" in result and result["error"] not in INTERACTION_REQUIRED_ERRORS:
            log.error("MSAL access token error: %s - %s", result.get("error"), result.get("error_description"))
            raise MS365AdapterError("Could not acquire access token.")

        if not result or "access_token" not in result:
            log.info("Interactive sign-in required for %s", self.username or "new account")
            result = self.app.acquire_token_interactive(requested, login_hint=self.username)

        if self.cache is not None:
            self.cache.persist()

        if not result or "access_token" not in result:
            error = (result or {}).get("error_description") or (result or {}).get("error")
            log.error("MSAL interactive sign-in failed: %s", error)
            raise MS365AdapterError(f"Could not acquire access token: {error}")

        if not self.username:
            self.username = (result.get("id_token_claims") or {}).get("preferred_username")

        return AccessToken(
            token=result["access_token"],
            expires_on=int(time.time()) + int(result.get("expires_in", 3600)),
        )


async def get_access_token(credential: TokenCredential) -> str:
    """Get a bearer token without blocking the event loop."""
    token = await asyncio.to_thread(credential.get_token, *MS365_SCOPES)
    return token.token


def build_msal_app(cache: Optional[msal.TokenCache] = None) -> msal.PublicClientApplication:
    if not MS365_CLIENT_ID:
        raise MS365AdapterError("MICROSOFT_CLIENT_ID not configured")
    return msal.PublicClientApplication(
        MS365_CLIENT_ID,
        authority=MS365_AUTHORITY,
        token_cache=cache,
    )


_CREDENTIAL: Optional[MsalTokenCredential] = None


def get_credential() -> MsalTokenCredential:
    """
    Get the process-wide credential, building it on first use.

    Raises:
        MS365AdapterError: If MSAL is not configured
        ValueError: If MSAL_CACHE_KEY is not set
    """
    global _CREDENTIAL
    if _CREDENTIAL is None:
        cache = EncryptedTokenCache(MSAL_TOKEN_CACHE_PATH, Fernet(_get_encryption_key()))
        cache.load()
        _CREDENTIAL = MsalTokenCredential(build_msal_app(cache), username=MSAL_ACCOUNT, cache=cache)
    return _CREDENTIAL


def get_graph_client(credential: TokenCredential) -> GraphServiceClient:
    """
    Create a Microsoft Graph API client for the given credential.

    Raises:
        MS365AdapterError: If client creation fails

    Example:
        client = get_graph_client(get_credential())
        me = await client.me.get()
    """
    try:
        return GraphServiceClient(credentials=credential, scopes=MS365_SCOPES)
    except Exception as e:
        raise MS365AdapterError(f"Failed to create Graph client: {e}")
