"""Tests for the drive adapter with a mocked Graph client."""

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from edcrm.adapters.ms365 import MS365AdapterError, drive


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def client(monkeypatch):
    client = MagicMock()
    monkeypatch.setattr(drive, "get_graph_client", lambda cred: client)
    return client


def item_builder(client):
    return client.drives.by_drive_id.return_value.items.by_drive_item_id.return_value


class TestResolveSharingUrl:
    def test_ids(self, client, credential):
        shared = client.shares.by_shared_drive_item_id.return_value.drive_item
        shared.get = AsyncMock(return_value=SimpleNamespace(id="i1", parent_reference=SimpleNamespace(drive_id="d1")))

        url = "https://contoso.sharepoint.com/sites/a/logo.png"
        assert run(drive.resolve_sharing_url(credential, url)) == {"drive_id": "d1", "item_id": "i1"}
        client.shares.by_shared_drive_item_id.assert_called_once_with(f"u!{drive.encode_sharing_url(url)}")

    def test_missing_parent(self, client, credential):
        shared = client.shares.by_shared_drive_item_id.return_value.drive_item
        shared.get = AsyncMock(return_value=SimpleNamespace(id="i1", parent_reference=None))
        assert run(drive.resolve_sharing_url(credential, "https://x")) is None

    def test_error(self, client, credential):
        shared = client.shares.by_shared_drive_item_id.return_value.drive_item
        shared.get = AsyncMock(side_effect=RuntimeError("403"))
        assert run(drive.resolve_sharing_url(credential, "https://x")) is None


class TestContent:
    def test_bytes(self, client, credential):
        item_builder(client).content.get = AsyncMock(return_value=b"data")
        assert run(drive.get_drive_item_content(credential, "d1", "i1")) == b"data"
        client.drives.by_drive_id.assert_called_with("d1")

    def test_empty(self, client, credential):
        item_builder(client).content.get = AsyncMock(return_value=None)
        with pytest.raises(MS365AdapterError):
            run(drive.get_drive_item_content(credential, "d1", "i1"))

    def test_error_wrapped(self, client, credential):
        item_builder(client).content.get = AsyncMock(side_effect=RuntimeError("404"))
        with pytest.raises(MS365AdapterError):
            run(drive.get_drive_item_content(credential, "d1", "i1"))


class TestListDriveItems:
    def test_root_listing(self, client, credential):
        client.me.drive.get = AsyncMock(return_value=SimpleNamespace(id="d1"))
        modified = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        item_builder(client).children.get = AsyncMock(return_value=SimpleNamespace(value=[
            SimpleNamespace(
                id="f1", name="Templates", folder=SimpleNamespace(), file=None, size=0,
                parent_reference=SimpleNamespace(drive_id="d1"), last_modified_date_time=modified,
            ),
            SimpleNamespace(
                id="f2", name="Terms.pdf", folder=None, file=SimpleNamespace(mime_type="application/pdf"), size=1024,
                parent_reference=None, last_modified_date_time=None,
            ),
        ]))

        items = run(drive.list_drive_items(credential))

        client.drives.by_drive_id.return_value.items.by_drive_item_id.assert_called_once_with("root")
        assert items[0]["is_folder"] is True
        assert items[0]["last_modified_at"] == modified.isoformat()
        assert items[1] == {
            "id": "f2",
            "name": "Terms.pdf",
            "is_folder": False,
            "mime_type": "application/pdf",
            "size": 1024,
            "drive_id": None,
            "last_modified_at": None,
        }

    def test_folder_listing(self, client, credential):
        client.me.drive.get = AsyncMock(return_value=SimpleNamespace(id="d1"))
        item_builder(client).children.get = AsyncMock(return_value=SimpleNamespace(value=None))
        assert run(drive.list_drive_items(credential, "folder-9")) == []
        client.drives.by_drive_id.return_value.items.by_drive_item_id.assert_called_once_with("folder-9")

    def test_no_drive(self, client, credential):
        client.me.drive.get = AsyncMock(return_value=None)
        with pytest.raises(MS365AdapterError):
            run(drive.list_drive_items(credential))


class TestShareLink:
    def test_view_link(self, client, credential):
        item_builder(client).create_link.post = AsyncMock(
            return_value=SimpleNamespace(link=SimpleNamespace(web_url="https://contoso.sharepoint.com/:b:/s/x"))
        )
        assert run(drive.create_share_link(credential, "d1", "i1")) == "https://contoso.sharepoint.com/:b:/s/x"
        body = item_builder(client).create_link.post.call_args.args[0]
        assert (body.type, body.scope) == ("view", "organization")

    def test_failure(self, client, credential):
        item_builder(client).create_link.post = AsyncMock(side_effect=RuntimeError("denied"))
        assert run(drive.create_share_link(credential, "d1", "i1")) is None
