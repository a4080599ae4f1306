"""
Accruals Hub - Blob Store Adapter

Documents and folders of a tenant's blob layout. Every blob has exactly one
parent folder; "removing a blob from the category subtrees" means moving it
back to the tenant's staging (Buffer) folder.

Implementations:
- InMemoryBlobStore: process-local, used by tests and local runs
- GraphBlobStore: Microsoft Graph drive items (OneDrive / SharePoint)
"""

import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

import httpx

from services.errors import ErrorCode, HubError

logger = logging.getLogger(__name__)


# Patterns for pulling a blob id out of a stored reference
BLOB_ID_PATTERNS = [
    re.compile(r"/file/d/([a-zA-Z0-9_-]+)"),
    re.compile(r"/d/([a-zA-Z0-9_-]+)"),
    re.compile(r"[?&]id=([a-zA-Z0-9_-]+)"),
    re.compile(r"/items/([a-zA-Z0-9_!-]+)"),
]
BARE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_!-]{6,}$")


def extract_blob_id(ref: str) -> Optional[str]:
    """Blob id from a URL or a bare id. None when the reference is unrecognizable."""
    ref = (ref or "").strip()
    if not ref:
        return None
    for pattern in BLOB_ID_PATTERNS:
        match = pattern.search(ref)
        if match:
            return match.group(1)
    if BARE_ID_PATTERN.match(ref):
        return ref
    return None


def require_blob_id(ref: str) -> str:
    blob_id = extract_blob_id(ref)
    if not blob_id:
        raise HubError(ErrorCode.INVALID_INPUT, f"Unrecognized blob reference: {ref!r}")
    return blob_id


@dataclass
class BlobInfo:
    """Metadata of a stored document."""
    blob_id: str
    name: str
    size: int
    content_type: str
    folder_id: Optional[str]
    created_at: str = ""
    web_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blob_id": self.blob_id,
            "name": self.name,
            "size": self.size,
            "content_type": self.content_type,
            "folder_id": self.folder_id,
            "created_at": self.created_at,
            "web_url": self.web_url,
        }


# =============================================================================
# ABSTRACT STORE
# =============================================================================

class BlobStore(ABC):
    """Interface for document/folder storage."""

    @abstractmethod
    async def get_blob(self, ref: str) -> BlobInfo:
        """Resolve a reference. Raises FILE_NOT_FOUND when missing or trashed."""
        pass

    @abstractmethod
    async def get_content(self, ref: str) -> bytes:
        pass

    @abstractmethod
    async def move(self, ref: str, folder_id: str) -> BlobInfo:
        pass

    @abstractmethod
    async def rename(self, ref: str, new_name: str) -> BlobInfo:
        pass

    @abstractmethod
    async def create_folder(self, parent_id: Optional[str], name: str) -> str:
        pass

    @abstractmethod
    async def find_folder(self, parent_id: Optional[str], name: str) -> Optional[str]:
        pass

    @abstractmethod
    async def folder_exists(self, folder_id: str) -> bool:
        pass

    @abstractmethod
    async def trash(self, item_id: str) -> None:
        """Trash a blob or folder (folders take their contents with them)."""
        pass

    async def ensure_folder(self, parent_id: Optional[str], name: str) -> str:
        """Existing child folder with this name, or a new one."""
        existing = await self.find_folder(parent_id, name)
        if existing:
            return existing
        return await self.create_folder(parent_id, name)

    async def blob_exists(self, ref: str) -> bool:
        try:
            await self.get_blob(ref)
            return True
        except HubError as e:
            if e.code == ErrorCode.FILE_NOT_FOUND:
                return False
            raise


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryBlobStore(BlobStore):
    """Blob store kept in process memory."""

    def __init__(self):
        self.folders: Dict[str, Dict[str, Any]] = {}
        self.blobs: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def url_for(blob_id: str) -> str:
        return f"https://files.local/file/d/{blob_id}/view"

    def _blob(self, ref: str) -> Dict[str, Any]:
        blob_id = extract_blob_id(ref)
        blob = self.blobs.get(blob_id) if blob_id else None
        if not blob or blob["trashed"]:
            raise HubError(ErrorCode.FILE_NOT_FOUND, f"File not found: {ref}")
        return blob

    def _info(self, blob: Dict[str, Any]) -> BlobInfo:
        return BlobInfo(
            blob_id=blob["id"],
            name=blob["name"],
            size=len(blob["content"]),
            content_type=blob["content_type"],
            folder_id=blob["folder_id"],
            created_at=blob["created_at"],
            web_url=self.url_for(blob["id"]),
        )

    def add_blob(self, folder_id: Optional[str], name: str, content: bytes, content_type: str) -> BlobInfo:
        """Store a document, as the intake producer would."""
        blob_id = uuid.uuid4().hex[:20]
        self.blobs[blob_id] = {
            "id": blob_id,
            "name": name,
            "content": content,
            "content_type": content_type,
            "folder_id": folder_id,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "trashed": False,
        }
        return self._info(self.blobs[blob_id])

    def folder_name(self, folder_id: str) -> Optional[str]:
        folder = self.folders.get(folder_id)
        return folder["name"] if folder else None

    async def get_blob(self, ref: str) -> BlobInfo:
        return self._info(self._blob(ref))

    async def get_content(self, ref: str) -> bytes:
        return self._blob(ref)["content"]

    async def move(self, ref: str, folder_id: str) -> BlobInfo:
        blob = self._blob(ref)
        if folder_id not in self.folders:
            raise HubError(ErrorCode.FILE_NOT_FOUND, f"Folder not found: {folder_id}")
        blob["folder_id"] = folder_id
        return self._info(blob)

    async def rename(self, ref: str, new_name: str) -> BlobInfo:
        blob = self._blob(ref)
        blob["name"] = new_name
        return self._info(blob)

    async def create_folder(self, parent_id: Optional[str], name: str) -> str:
        folder_id = f"fld_{uuid.uuid4().hex[:12]}"
        self.folders[folder_id] = {"id": folder_id, "name": name, "parent": parent_id, "trashed": False}
        return folder_id

    async def find_folder(self, parent_id: Optional[str], name: str) -> Optional[str]:
        for folder in self.folders.values():
            if folder["parent"] == parent_id and folder["name"] == name and not folder["trashed"]:
                return folder["id"]
        return None

    async def folder_exists(self, folder_id: str) -> bool:
        folder = self.folders.get(folder_id)
        return bool(folder and not folder["trashed"])

    def _descendants(self, folder_id: str) -> List[str]:
        found = [folder_id]
        for folder in self.folders.values():
            if folder["parent"] == folder_id:
                found.extend(self._descendants(folder["id"]))
        return found

    async def trash(self, item_id: str) -> None:
        if item_id in self.blobs:
            self.blobs[item_id]["trashed"] = True
            return
        if item_id not in self.folders:
            raise HubError(ErrorCode.FILE_NOT_FOUND, f"Item not found: {item_id}")
        subtree = set(self._descendants(item_id))
        for folder_id in subtree:
            self.folders[folder_id]["trashed"] = True
        for blob in self.blobs.values():
            if blob["folder_id"] in subtree:
                blob["trashed"] = True


# =============================================================================
# MICROSOFT GRAPH STORE
# =============================================================================

GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"


class GraphBlobStore(BlobStore):
    """Blob store on a Microsoft Graph drive."""

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        drive_id: str,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.drive_id = drive_id
        self._transport = transport
        self._token_cache: Dict[str, Any] = {}

    def _client(self, timeout: float = 30.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _get_token(self) -> str:
        """Client-credentials token, cached until a minute before expiry."""
        cached = self._token_cache.get("graph_token")
        if cached and cached.get("expires_at", 0) > datetime.now().timestamp():
            return cached["token"]

        async with self._client() as client:
            resp = await client.post(
                f"https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": "https://graph.microsoft.com/.default"
                }
            )
            if resp.status_code != 200:
                raise HubError(
                    ErrorCode.PERMISSION_DENIED,
                    f"Failed to get Graph token: {resp.status_code}"
                )

            data = resp.json()
            self._token_cache["graph_token"] = {
                "token": data["access_token"],
                "expires_at": datetime.now().timestamp() + data.get("expires_in", 3600) - 60
            }
            return data["access_token"]

    async def _request(self, method: str, path: str, timeout: float = 30.0, **kwargs) -> httpx.Response:
        token = await self._get_token()
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {token}"
        async with self._client(timeout) as client:
            resp = await client.request(method, f"{GRAPH_API_BASE}{path}", headers=headers, **kwargs)

        if resp.status_code == 404:
            raise HubError(ErrorCode.FILE_NOT_FOUND, f"Graph item not found: {path}")
        if resp.status_code in (401, 403):
            raise HubError(ErrorCode.PERMISSION_DENIED, f"Graph access denied: {path}")
        if resp.status_code == 429:
            raise HubError(ErrorCode.API_LIMIT_EXCEEDED, "Graph throttled the request")
        if resp.status_code >= 400:
            raise HubError(ErrorCode.SYSTEM_ERROR, f"Graph error {resp.status_code} on {method} {path}")
        return resp

    def _item_path(self, item_id: str) -> str:
        return f"/drives/{self.drive_id}/items/{item_id}"

    @staticmethod
    def _info(item: Dict[str, Any]) -> BlobInfo:
        return BlobInfo(
            blob_id=item["id"],
            name=item.get("name", ""),
            size=item.get("size", 0),
            content_type=item.get("file", {}).get("mimeType", "application/octet-stream"),
            folder_id=item.get("parentReference", {}).get("id"),
            created_at=item.get("createdDateTime", ""),
            web_url=item.get("webUrl", ""),
        )

    async def get_blob(self, ref: str) -> BlobInfo:
        resp = await self._request("GET", self._item_path(require_blob_id(ref)))
        item = resp.json()
        if "file" not in item:
            raise HubError(ErrorCode.FILE_NOT_FOUND, f"Not a file: {ref}")
        return self._info(item)

    async def get_content(self, ref: str) -> bytes:
        resp = await self._request(
            "GET", f"{self._item_path(require_blob_id(ref))}/content",
            timeout=120.0, follow_redirects=True
        )
        return resp.content

    async def move(self, ref: str, folder_id: str) -> BlobInfo:
        resp = await self._request(
            "PATCH", self._item_path(require_blob_id(ref)),
            json={"parentReference": {"id": folder_id}}
        )
        return self._info(resp.json())

    async def rename(self, ref: str, new_name: str) -> BlobInfo:
        resp = await self._request(
            "PATCH", self._item_path(require_blob_id(ref)),
            json={"name": new_name}
        )
        return self._info(resp.json())

    async def create_folder(self, parent_id: Optional[str], name: str) -> str:
        parent = self._item_path(parent_id) if parent_id else f"/drives/{self.drive_id}/root"
        resp = await self._request(
            "POST", f"{parent}/children",
            json={"name": name, "folder": {}, "@microsoft.graph.conflictBehavior": "fail"}
        )
        return resp.json()["id"]

    async def find_folder(self, parent_id: Optional[str], name: str) -> Optional[str]:
        parent = self._item_path(parent_id) if parent_id else f"/drives/{self.drive_id}/root"
        resp = await self._request("GET", f"{parent}/children", params={"$select": "id,name,folder"})
        for item in resp.json().get("value", []):
            if item.get("name") == name and "folder" in item:
                return item["id"]
        return None

    async def folder_exists(self, folder_id: str) -> bool:
        try:
            resp = await self._request("GET", self._item_path(folder_id))
        except HubError as e:
            if e.code == ErrorCode.FILE_NOT_FOUND:
                return False
            raise
        return "folder" in resp.json()

    async def trash(self, item_id: str) -> None:
        await self._request("DELETE", self._item_path(item_id))
