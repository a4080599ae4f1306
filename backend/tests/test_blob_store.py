"""
Unit tests for the Blob Store Adapter.
In-memory store directly, Graph store over httpx.MockTransport
"""
import pytest
import json
from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import httpx

from services.blob_store import GraphBlobStore, InMemoryBlobStore, extract_blob_id, require_blob_id
from services.errors import ErrorCode, HubError


class TestBlobIds:
    """Blob id extraction from stored references."""

    def test_url_forms(self):
        assert extract_blob_id("https://files.local/file/d/abc123_XYZ/view") == "abc123_XYZ"
        assert extract_blob_id("https://docs.example.com/d/abc123/edit") == "abc123"
        assert extract_blob_id("https://drive.example.com/open?id=abc123") == "abc123"
        assert extract_blob_id("https://graph.microsoft.com/v1.0/drives/x/items/01ABC!23") == "01ABC!23"

    def test_bare_id(self):
        assert extract_blob_id("01ABCDEF") == "01ABCDEF"

    def test_unrecognized(self):
        assert extract_blob_id("") is None
        assert extract_blob_id("not a ref") is None
        with pytest.raises(HubError) as exc:
            require_blob_id("??")
        assert exc.value.code == ErrorCode.INVALID_INPUT


@pytest.mark.asyncio
class TestInMemoryBlobStore:

    async def test_blob_lifecycle(self):
        store = InMemoryBlobStore()
        staging = await store.create_folder(None, "Buffer")
        category = await store.create_folder(None, "Outflow")
        blob = store.add_blob(staging, "scan.pdf", b"%PDF", "application/pdf")

        assert blob.size == 4
        assert blob.web_url == InMemoryBlobStore.url_for(blob.blob_id)
        assert await store.get_content(blob.web_url) == b"%PDF"

        moved = await store.move(blob.web_url, category)
        assert moved.folder_id == category
        renamed = await store.rename(blob.blob_id, "2024-01-05_Acme_INV-9_1.00.pdf")
        assert renamed.name == "2024-01-05_Acme_INV-9_1.00.pdf"

    async def test_move_to_missing_folder(self):
        store = InMemoryBlobStore()
        folder = await store.create_folder(None, "Buffer")
        blob = store.add_blob(folder, "a.pdf", b"x", "application/pdf")
        with pytest.raises(HubError) as exc:
            await store.move(blob.blob_id, "fld_missing")
        assert exc.value.code == ErrorCode.FILE_NOT_FOUND

    async def test_ensure_folder_reuses_existing(self):
        store = InMemoryBlobStore()
        root = await store.create_folder(None, "Tenant-Acme")
        first = await store.ensure_folder(root, "Accruals")
        assert await store.ensure_folder(root, "Accruals") == first

    async def test_trash_folder_takes_contents(self):
        store = InMemoryBlobStore()
        root = await store.create_folder(None, "Tenant-Acme")
        child = await store.create_folder(root, "Bills")
        blob = store.add_blob(child, "a.pdf", b"x", "application/pdf")

        await store.trash(root)

        assert not await store.folder_exists(child)
        assert not await store.blob_exists(blob.blob_id)
        assert await store.find_folder(root, "Bills") is None


GRAPH_ITEM = {
    "id": "01ITEM",
    "name": "scan.pdf",
    "size": 2048,
    "file": {"mimeType": "application/pdf"},
    "parentReference": {"id": "01PARENT"},
    "createdDateTime": "2024-01-05T10:00:00Z",
    "webUrl": "https://contoso.sharepoint.com/scan.pdf",
}


def _graph_store(routes, calls=None):
    calls = calls if calls is not None else []

    def handler(request):
        calls.append((request.method, request.url.path))
        if request.url.host == "login.microsoftonline.com":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
        for (method, path), response in routes.items():
            if request.method == method and request.url.path.endswith(path):
                return response(request) if callable(response) else response
        return httpx.Response(404, json={"error": {"code": "itemNotFound"}})

    return GraphBlobStore("tenant", "client", "secret", "drive1", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
class TestGraphBlobStore:
    """Graph drive items over a mocked transport."""

    async def test_get_blob(self):
        store = _graph_store({("GET", "/items/01ITEM"): httpx.Response(200, json=GRAPH_ITEM)})
        info = await store.get_blob("01ITEM")
        assert info.name == "scan.pdf"
        assert info.content_type == "application/pdf"
        assert info.folder_id == "01PARENT"

    async def test_token_cached(self):
        calls = []
        store = _graph_store({("GET", "/items/01ITEM"): httpx.Response(200, json=GRAPH_ITEM)}, calls)
        await store.get_blob("01ITEM")
        await store.get_blob("01ITEM")
        token_calls = [c for c in calls if c[1].endswith("/oauth2/v2.0/token")]
        assert len(token_calls) == 1

    async def test_missing_item(self):
        store = _graph_store({})
        with pytest.raises(HubError) as exc:
            await store.get_blob("01GONE")
        assert exc.value.code == ErrorCode.FILE_NOT_FOUND
        assert await store.folder_exists("01GONE") is False

    async def test_throttling_and_denial(self):
        store = _graph_store({
            ("GET", "/items/01SLOW"): httpx.Response(429),
            ("GET", "/items/01DENY"): httpx.Response(403),
        })
        with pytest.raises(HubError) as exc:
            await store.get_blob("01SLOW")
        assert exc.value.code == ErrorCode.API_LIMIT_EXCEEDED
        with pytest.raises(HubError) as exc:
            await store.get_blob("01DENY")
        assert exc.value.code == ErrorCode.PERMISSION_DENIED

    async def test_move_patches_parent(self):
        bodies = []

        def patch_item(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={**GRAPH_ITEM, "parentReference": {"id": "01DEST"}})

        store = _graph_store({("PATCH", "/items/01ITEM"): patch_item})
        info = await store.move("01ITEM", "01DEST")
        assert bodies == [{"parentReference": {"id": "01DEST"}}]
        assert info.folder_id == "01DEST"

    async def test_find_folder(self):
        children = {"value": [
            {"id": "01FILE", "name": "Bills", "file": {}},
            {"id": "01DIR", "name": "Bills", "folder": {"childCount": 0}},
        ]}
        store = _graph_store({("GET", "/items/01ROOT/children"): httpx.Response(200, json=children)})
        assert await store.find_folder("01ROOT", "Bills") == "01DIR"
        assert await store.find_folder("01ROOT", "Buffer") is None
