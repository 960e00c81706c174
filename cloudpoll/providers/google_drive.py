"""
Google Drive Provider Implementation

Page token transport for Google Drive using the Drive API v3: paginated
file listing, the Changes API, parent lookups for path reconstruction
and Google Workspace document export.
"""

import logging
from typing import AsyncIterator, Optional, Any

from cloudpoll.feeds.page_token import ChangesPage, FilesPage, PageTokenTransport
from cloudpoll.providers.base import (
    AccountType,
    ChangeType,
    CloudProviderClient,
    ItemKind,
    ItemNotFoundError,
    MalformedResponseError,
    ParentRef,
    ProviderKind,
    RawChangeItem,
    RecoveredItem,
    TransientProviderError,
    UnsupportedContentError,
    parse_json,
    raise_for_provider_status,
)
from cloudpoll.providers.registry import register_provider

logger = logging.getLogger(__name__)

# Google Drive API constants
GOOGLE_DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
GOOGLE_APPS_PREFIX = "application/vnd.google-apps."

# Export formats for Google Workspace documents
GOOGLE_WORKSPACE_EXPORTS = {
    "application/vnd.google-apps.document": "application/pdf",
    "application/vnd.google-apps.spreadsheet": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.google-apps.drawing": "image/jpeg",
    "application/vnd.google-apps.presentation": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.google-apps.script": "application/vnd.google-apps.script+json",
}

# Fields to request from Drive API for files
FILE_FIELDS = "id,name,mimeType,parents,trashed,headRevisionId,md5Checksum,description,modifiedTime"
LIST_FIELDS = f"nextPageToken,files({FILE_FIELDS})"
CHANGE_FIELDS = f"nextPageToken,newStartPageToken,changes(fileId,removed,file({FILE_FIELDS}))"
PAGE_SIZE = 1000


@register_provider(AccountType.GOOGLE_DRIVE)
class GoogleDriveClient(CloudProviderClient, PageTokenTransport):
    """
    Google Drive transport using Drive API v3.

    Features:
    - Full file listing with pagination
    - Delta polling using the Changes API
    - Parent lookups for path reconstruction
    - Google Workspace document export
    """

    account_type = AccountType.GOOGLE_DRIVE
    provider_kind = ProviderKind.PAGETOKEN

    def __init__(self, account_id: str, options: dict[str, Any], request_timeout: float = 30.0):
        super().__init__(account_id, options, request_timeout)
        self.api_base = options.get("api_base", GOOGLE_DRIVE_API_BASE)
        self._root_id: Optional[str] = options.get("root_folder_id")

    async def _make_request(self, method: str, endpoint: str, **kwargs) -> dict:
        """Make authenticated request to Google Drive API."""
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {self.access_token}"

        response = await self._send(method, f"{self.api_base}/{endpoint}", headers=headers, **kwargs)
        raise_for_provider_status(response)
        return parse_json(response)

    async def _get_root_id(self) -> str:
        """Resolve the id behind the "root" alias once."""
        if self._root_id is None:
            result = await self._make_request("GET", "files/root", params={"fields": "id"})
            self._root_id = result["id"]
        return self._root_id

    # ==================== Page Token Protocol ====================

    async def start_page_token(self) -> str:
        result = await self._make_request("GET", "changes/startPageToken")
        if "startPageToken" not in result:
            raise MalformedResponseError("Drive returned no startPageToken")
        return result["startPageToken"]

    async def list_files(self, page_token: Optional[str] = None) -> FilesPage:
        params = {
            "q": "trashed = false",
            "fields": LIST_FIELDS,
            "pageSize": PAGE_SIZE,
            "spaces": "drive",
        }
        if page_token:
            params["pageToken"] = page_token

        result = await self._make_request("GET", "files", params=params)
        return FilesPage(
            items=[self._parse_file(item) for item in result.get("files", [])],
            next_page_token=result.get("nextPageToken"),
        )

    async def list_changes(self, page_token: str) -> ChangesPage:
        result = await self._make_request("GET", "changes", params={
            "pageToken": page_token,
            "fields": CHANGE_FIELDS,
            "pageSize": PAGE_SIZE,
            "spaces": "drive",
        })

        items = []
        for change in result.get("changes", []):
            if "fileId" not in change:
                raise MalformedResponseError(f"Drive change without fileId: {change}")
            items.append(self._parse_change(change))

        return ChangesPage(
            items=items,
            next_page_token=result.get("nextPageToken"),
            new_start_page_token=result.get("newStartPageToken"),
        )

    def _parse_file(self, item: dict) -> RawChangeItem:
        """Parse Drive API file resource."""
        mime_type = item.get("mimeType", "")
        return RawChangeItem(
            id=item["id"],
            name=item.get("name", ""),
            kind=ItemKind.FOLDER if mime_type == FOLDER_MIME_TYPE else ItemKind.FILE,
            parent_refs=list(item.get("parents") or []),
            revision=item.get("headRevisionId"),
            metadata={
                "mimeType": mime_type,
                "description": item.get("description"),
                "md5Checksum": item.get("md5Checksum"),
            },
        )

    def _parse_change(self, change: dict) -> RawChangeItem:
        """Resolve a change into a removal or an upsert."""
        file_data = change.get("file")

        if change.get("removed") or (file_data or {}).get("trashed"):
            deleted_type = None
            name = ""
            parents: list[str] = []
            if file_data:
                deleted_type = ItemKind.FOLDER if file_data.get("mimeType") == FOLDER_MIME_TYPE else ItemKind.FILE
                name = file_data.get("name", "")
                parents = list(file_data.get("parents") or [])
            return RawChangeItem(
                id=change["fileId"],
                name=name,
                kind=ItemKind.DELETED,
                change_type=ChangeType.DELETE,
                parent_refs=parents,
                deleted_type=deleted_type,
            )

        if file_data is None:
            raise MalformedResponseError(f"Drive change {change['fileId']} has neither file nor removed flag")
        return self._parse_file(file_data)

    # ==================== Metadata Lookups ====================

    async def lookup_parent(self, ref: str) -> Optional[ParentRef]:
        if ref == await self._get_root_id():
            return None

        result = await self._make_request("GET", f"files/{ref}", params={"fields": "id,name,parents"})
        return ParentRef(
            id=result["id"],
            name=result.get("name", ""),
            parent_refs=list(result.get("parents") or []),
        )

    async def recover_deleted(self, item: RawChangeItem) -> Optional[RecoveredItem]:
        """Look the item up again; trashed items keep their metadata."""
        try:
            result = await self._make_request("GET", f"files/{item.id}", params={"fields": "id,name,mimeType,parents"})
        except ItemNotFoundError:
            return None

        return RecoveredItem(
            source_id=result["id"],
            source_type=ItemKind.FOLDER if result.get("mimeType") == FOLDER_MIME_TYPE else ItemKind.FILE,
            name=result.get("name"),
            parent_refs=list(result.get("parents") or []),
        )

    # ==================== Downloads ====================

    async def download(self, source_id: str, revision: Optional[str] = None, **hints) -> AsyncIterator[bytes]:
        """Download or export file content as a stream."""
        mime_type = hints.get("mime_type")
        if not mime_type:
            meta = await self._make_request("GET", f"files/{source_id}", params={"fields": "mimeType"})
            mime_type = meta.get("mimeType", "")

        if mime_type in GOOGLE_WORKSPACE_EXPORTS:
            url = f"{self.api_base}/files/{source_id}/export"
            params = {"mimeType": GOOGLE_WORKSPACE_EXPORTS[mime_type]}
        elif mime_type.startswith(GOOGLE_APPS_PREFIX):
            raise UnsupportedContentError(f"Cannot download google file of type: {mime_type}")
        elif revision:
            url = f"{self.api_base}/files/{source_id}/revisions/{revision}"
            params = {"alt": "media"}
        else:
            url = f"{self.api_base}/files/{source_id}"
            params = {"alt": "media"}

        client = await self._get_client()
        async with client.stream(
            "GET",
            url,
            params=params,
            headers={"Authorization": f"Bearer {self.access_token}"},
        ) as response:
            if response.status_code != 200:
                await response.aread()
                raise_for_provider_status(response)
                raise TransientProviderError(f"Download failed with status {response.status_code}")

            async for chunk in response.aiter_bytes(chunk_size=8192):
                yield chunk
