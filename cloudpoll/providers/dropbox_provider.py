"""
Dropbox Provider Implementation

Cursor transport for Dropbox using the Dropbox API v2.
Supports recursive listing, latest-cursor lookup, long polling on the
notify host, list_folder/continue paging and revision-based recovery of
deleted items.
"""

import json
import logging
import posixpath
from typing import AsyncIterator, Optional, Any

from cloudpoll.feeds.cursor_longpoll import CursorTransport, ListPage, LongpollResult
from cloudpoll.providers.base import (
    AccountType,
    ChangeType,
    CloudProviderClient,
    FatalProviderError,
    ItemKind,
    ItemNotFoundError,
    MalformedResponseError,
    ParentRef,
    ProviderKind,
    RawChangeItem,
    RecoveredItem,
    TransientProviderError,
    parse_json,
    raise_for_provider_status,
)
from cloudpoll.providers.registry import register_provider

logger = logging.getLogger(__name__)

# Dropbox API constants
DROPBOX_API_BASE = "https://api.dropboxapi.com/2"
DROPBOX_CONTENT_BASE = "https://content.dropboxapi.com/2"
DROPBOX_NOTIFY_BASE = "https://notify.dropboxapi.com/2"


def parent_path(path: str) -> str:
    """Get parent path from a Dropbox path ("" for the root)."""
    if not path or path == "/":
        return ""
    parent = posixpath.dirname(path.rstrip("/"))
    return "" if parent == "/" else parent


@register_provider(AccountType.DROPBOX)
class DropboxClient(CloudProviderClient, CursorTransport):
    """
    Dropbox transport using Dropbox API v2.

    Features:
    - Recursive listing with cursor-based pagination
    - Long polling for changes on the notify endpoint
    - Parent id and deleted item lookups
    - Revision-pinned downloads
    """

    account_type = AccountType.DROPBOX
    provider_kind = ProviderKind.CURSOR

    def __init__(self, account_id: str, options: dict[str, Any], request_timeout: float = 30.0):
        super().__init__(account_id, options, request_timeout)
        folder = options.get("poll_folder") or ""
        if folder and not folder.startswith("/"):
            folder = "/" + folder
        self.poll_folder = "" if folder == "/" else folder.rstrip("/")

    async def _make_request(self, endpoint: str, data: Optional[dict] = None, base: str = DROPBOX_API_BASE) -> dict:
        """Make authenticated request to Dropbox API."""
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

        response = await self._send("POST", f"{base}/{endpoint}", json=data or {}, headers=headers)

        if response.status_code == 409:
            # Dropbox uses 409 for endpoint-specific errors
            summary = self._error_summary(response)
            if summary.startswith("reset"):
                raise FatalProviderError(f"Dropbox cursor was reset, poll position must be reset: {summary}")
            raise ItemNotFoundError(f"Dropbox path error: {summary}")

        raise_for_provider_status(response)
        return parse_json(response)

    @staticmethod
    def _error_summary(response) -> str:
        try:
            return str(response.json().get("error_summary", ""))
        except ValueError:
            return response.text[:200]

    def _listing_args(self) -> dict:
        return {
            "path": self.poll_folder,
            "recursive": True,
            "include_deleted": True,
            "include_media_info": False,
            "include_mounted_folders": True,
        }

    # ==================== Cursor Protocol ====================

    async def latest_cursor(self) -> str:
        result = await self._make_request("files/list_folder/get_latest_cursor", self._listing_args())
        if "cursor" not in result:
            raise MalformedResponseError("Dropbox get_latest_cursor returned no cursor")
        return result["cursor"]

    async def list_folder(self) -> ListPage:
        result = await self._make_request("files/list_folder", self._listing_args())
        return self._parse_page(result)

    async def list_folder_continue(self, cursor: str) -> ListPage:
        result = await self._make_request("files/list_folder/continue", {"cursor": cursor})
        return self._parse_page(result)

    async def longpoll(self, cursor: str, timeout: int) -> LongpollResult:
        """Wait for changes on the notify host (no Authorization header)."""
        # The server adds up to 90s of jitter to the requested timeout
        response = await self._send(
            "POST",
            f"{DROPBOX_NOTIFY_BASE}/files/list_folder/longpoll",
            json={"cursor": cursor, "timeout": timeout},
            timeout=timeout + 90 + self.request_timeout,
        )
        if response.status_code == 409:
            raise FatalProviderError(f"Dropbox longpoll rejected cursor: {self._error_summary(response)}")
        raise_for_provider_status(response)

        result = parse_json(response)
        return LongpollResult(changes=bool(result.get("changes")), backoff=result.get("backoff"))

    def _parse_page(self, result: dict) -> ListPage:
        if "cursor" not in result:
            raise MalformedResponseError("Dropbox listing returned no cursor")

        items = [self._parse_entry(entry) for entry in result.get("entries", [])]
        return ListPage(
            items=[item for item in items if item is not None],
            cursor=result["cursor"],
            has_more=bool(result.get("has_more")),
        )

    def _parse_entry(self, entry: dict) -> Optional[RawChangeItem]:
        """Parse a Dropbox metadata entry."""
        tag = entry.get(".tag")
        path = entry.get("path_lower", "")
        name = entry.get("name", posixpath.basename(path))

        if tag == "file":
            return RawChangeItem(
                id=entry.get("id", path),
                name=name,
                kind=ItemKind.FILE,
                path_hint=path,
                parent_refs=[parent_path(path)],
                revision=entry.get("rev"),
                metadata={
                    "content_hash": entry.get("content_hash"),
                    "size": entry.get("size"),
                    "is_downloadable": entry.get("is_downloadable", True),
                },
            )
        if tag == "folder":
            return RawChangeItem(
                id=entry.get("id", path),
                name=name,
                kind=ItemKind.FOLDER,
                path_hint=path,
                parent_refs=[parent_path(path)],
            )
        if tag == "deleted":
            # Deleted entries carry neither id nor type
            return RawChangeItem(
                id=path,
                name=name,
                kind=ItemKind.DELETED,
                change_type=ChangeType.DELETE,
                path_hint=path,
                parent_refs=[parent_path(path)],
            )

        logger.warning(f"Unrecognized Dropbox metadata type {tag!r} at {path}")
        return None

    # ==================== Metadata Lookups ====================

    async def lookup_parent(self, ref: str) -> Optional[ParentRef]:
        if not ref or ref == "/" or ref == self.poll_folder.lower():
            return None

        result = await self._make_request("files/get_metadata", {"path": ref})
        return ParentRef(
            id=result.get("id", ref),
            name=result.get("name", posixpath.basename(ref)),
            parent_refs=[parent_path(ref)],
        )

    async def recover_deleted(self, item: RawChangeItem) -> Optional[RecoveredItem]:
        """Find the id of a deleted file from its revision history."""
        try:
            result = await self._make_request("files/list_revisions", {
                "path": item.path_hint,
                "mode": "path",
                "limit": 1,
            })
        except ItemNotFoundError as e:
            # Folders have no revisions
            logger.debug(f"No revisions for deleted {item.path_hint}: {e}")
            return None

        entries = result.get("entries") or []
        if not entries:
            return None
        return RecoveredItem(source_id=entries[0].get("id"), source_type=ItemKind.FILE)

    # ==================== Downloads ====================

    async def download(self, source_id: str, revision: Optional[str] = None, **hints) -> AsyncIterator[bytes]:
        """Download file content as a stream."""
        if revision:
            path = f"rev:{revision}"
        elif source_id.startswith("/") or source_id.startswith("id:"):
            path = source_id
        else:
            path = f"id:{source_id}"

        client = await self._get_client()
        async with client.stream(
            "POST",
            f"{DROPBOX_CONTENT_BASE}/files/download",
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Dropbox-API-Arg": json.dumps({"path": path}),
            },
        ) as response:
            if response.status_code == 409:
                await response.aread()
                raise ItemNotFoundError(f"File not found: {path}")
            if response.status_code != 200:
                await response.aread()
                raise_for_provider_status(response)
                raise TransientProviderError(f"Download failed with status {response.status_code}")

            async for chunk in response.aiter_bytes(chunk_size=8192):
                yield chunk
