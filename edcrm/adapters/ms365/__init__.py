"""
Microsoft 365 adapter package.

Provides normalized interfaces for MS365 operations:
- workbook: CRM workbook reads and row writes (Excel REST API)
- mail: Mailbox sync and sending
- drive: SharePoint / OneDrive files and share links
- _auth: MSAL token credential for Graph API authentication
"""

from ._auth import (
    GraphAPIError,
    MS365AdapterError,
    MsalTokenCredential,
    get_credential,
    get_graph_client,
)
from . import drive, mail, workbook

__all__ = [
    "GraphAPIError",
    "MS365AdapterError",
    "MsalTokenCredential",
    "get_credential",
    "get_graph_client",
    "drive",
    "mail",
    "workbook",
]
