"""Shared fixtures: a fake credential and a stubbed Graph REST endpoint."""

import json
import time
from urllib.parse import unquote

import httpx
import pytest
from azure.core.credentials import AccessToken

from edcrm.adapters.ms365 import workbook


WORKBOOK_PATH = "/drives/drive-1/items/item-1/workbook"
SHARING_URL = "https://contoso.sharepoint.com/:x:/s/crm/EabcDEF"


class FakeCredential:
    """Stands in for MsalTokenCredential."""

    def __init__(self, token="token-123", username="jay@agency.co.uk"):
        self.token = token
        self.username = username
        self.calls = 0

    def get_token(self, *scopes, **kwargs):
        self.calls += 1
        return AccessToken(self.token, int(time.time()) + 3600)


class GraphStub:
    """
    Answers Graph REST calls made through workbook._http_client.

    Routes are matched in the order added by method and URL substring
    (URL-decoded). Unmatched calls get a 404 itemNotFound.
    """

    def __init__(self):
        self.routes = []
        self.requests = []

    def add(self, method, fragment, status=200, body=None):
        self.routes.append((method, fragment, status, body))

    def calls(self, method=None):
        return [r for r in self.requests if method is None or r["method"] == method]

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = unquote(str(request.url))
        payload = json.loads(request.content) if request.content else None
        self.requests.append({
            "method": request.method,
            "url": url,
            "json": payload,
            "headers": dict(request.headers),
        })
        for method, fragment, status, body in self.routes:
            if method == request.method and fragment in url:
                if isinstance(body, Exception):
                    raise body
                if body is None:
                    return httpx.Response(status)
                return httpx.Response(status, json=body)
        return httpx.Response(404, json={"error": {"code": "itemNotFound", "message": f"No route for {url}"}})


@pytest.fixture
def credential():
    return FakeCredential()


@pytest.fixture
def graph(monkeypatch):
    stub = GraphStub()
    stub.add("GET", "/shares/u!", body={"id": "item-1", "parentReference": {"driveId": "drive-1"}})
    monkeypatch.setenv("CRM_WORKBOOK_SHARING_URL", SHARING_URL)
    monkeypatch.setattr(
        workbook,
        "_http_client",
        lambda: httpx.AsyncClient(transport=httpx.MockTransport(stub.handler)),
    )
    return stub
