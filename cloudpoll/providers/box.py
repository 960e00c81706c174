"""
Box Provider Implementation

Event stream transport for Box using the Box Content API v2.0:
stream positions from /events, long polling through the realtime
server advertised by OPTIONS /events, and recursive folder listing for
the first sync.
"""

import logging
from typing import AsyncIterator, Optional, Any

import httpx

from cloudpoll.feeds.event_stream import EventChunk, EventStreamTransport
from cloudpoll.providers.base import (
    AccountType,
    ChangeType,
    DELETION_CHANGE_TYPES,
    CloudProviderClient,
    ItemKind,
    ItemNotFoundError,
    MalformedResponseError,
    ParentRef,
    ProviderKind,
    RawChangeItem,
    TransientProviderError,
    parse_json,
    raise_for_provider_status,
)
from cloudpoll.providers.registry import register_provider

logger = logging.getLogger(__name__)

# Box API constants
BOX_API_BASE = "https://api.box.com/2.0"
BOX_ROOT_FOLDER_ID = "0"
BOX_TRASH_FOLDER_ID = "1"
BOX_PAGE_LIMIT = 1000
BOX_EVENT_LIMIT = 500

# Box event names -> canonical change types
BOX_EVENT_TYPES = {
    "ITEM_UPLOAD": ChangeType.UPLOAD,
    "UPLOAD": ChangeType.UPLOAD,
    "ITEM_CREATE": ChangeType.CREATE,
    "EDIT": ChangeType.EDIT,
    "ITEM_MODIFY": ChangeType.EDIT,
    "ITEM_UNDELETE_VIA_TRASH": ChangeType.UNDELETE,
    "UNDELETE": ChangeType.UNDELETE,
    "ITEM_COPY": ChangeType.COPY,
    "COPY": ChangeType.COPY,
    "ITEM_RENAME": ChangeType.RENAME,
    "RENAME": ChangeType.RENAME,
    "ITEM_MOVE": ChangeType.MOVE,
    "MOVE": ChangeType.MOVE,
    "ITEM_TRASH": ChangeType.TRASH,
    "TRASH": ChangeType.TRASH,
    "DELETE": ChangeType.DELETE,
}

ITEM_FIELDS = "id,type,name,parent,path_collection,file_version,sequence_id,etag"


PARENT_FIELDS = "id,name,parent"


def in_trash(source: dict) -> bool:
    """Trashed items report [Trash] as their path collection."""
    entries = (source.get("path_collection") or {}).get("entries") or []
    return bool(entries) and str(entries[0].get("id")) == BOX_TRASH_FOLDER_ID


def box_path(source: dict, root_folder_id: str = BOX_ROOT_FOLDER_ID) -> Optional[str]:
    """
    Path of a Box item relative to the sync root folder.

    Returns None when the root folder is not among the item's ancestors.
    """
    entries = (source.get("path_collection") or {}).get("entries") or []
    ids = [str(entry.get("id")) for entry in entries]
    if root_folder_id not in ids:
        return None

    names = [entry.get("name", "") for entry in entries[ids.index(root_folder_id) + 1:]]
    names.append(source.get("name", ""))
    return "/".join(name for name in names if name)


@register_provider(AccountType.BOX)
class BoxClient(CloudProviderClient, EventStreamTransport):
    """
    Box transport.

    Features:
    - Stream position at "now" for first syncs
    - Event reads with explicit next_stream_position
    - Realtime long polling between reads
    - Recursive listing and file downloads
    """

    account_type = AccountType.BOX
    provider_kind = ProviderKind.STREAM

    def __init__(self, account_id: str, options: dict[str, Any], request_timeout: float = 30.0):
        super().__init__(account_id, options, request_timeout)
        self.root_folder_id = str(options.get("root_folder_id") or BOX_ROOT_FOLDER_ID)
        self.stream_type = options.get("stream_type", "all")
        self.api_base = options.get("api_base", BOX_API_BASE)

    async def _make_request(self, method: str, endpoint: str, **kwargs) -> dict:
        """Make authenticated request to the Box API."""
        url = endpoint if endpoint.startswith("http") else f"{self.api_base}/{endpoint}"
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {self.access_token}"

        response = await self._send(method, url, headers=headers, **kwargs)
        raise_for_provider_status(response)
        return parse_json(response)

    # ==================== Event Stream ====================

    async def current_position(self) -> str:
        result = await self._make_request("GET", "events", params={"stream_position": "now"})
        position = result.get("next_stream_position")
        if position is None:
            raise MalformedResponseError("Box events response has no next_stream_position")
        return str(position)

    async def fetch_events(self, position: str) -> EventChunk:
        result = await self._make_request("GET", "events", params={
            "stream_position": position,
            "stream_type": self.stream_type,
            "limit": BOX_EVENT_LIMIT,
        })

        items = []
        for entry in result.get("entries", []):
            item = self._parse_event(entry)
            if item is not None:
                items.append(item)

        next_position = result.get("next_stream_position")
        return EventChunk(
            items=items,
            next_position=str(next_position) if next_position is not None else None,
        )

    async def wait_for_change(self, position: str, timeout: float) -> bool:
        """Long poll the realtime server advertised by OPTIONS /events."""
        options = await self._make_request("OPTIONS", "events")
        entries = options.get("entries") or []
        if not entries or "url" not in entries[0]:
            raise MalformedResponseError("Box did not advertise a realtime server")

        realtime_url = entries[0]["url"]
        retry_timeout = float(entries[0].get("retry_timeout", timeout))
        wait = min(timeout, retry_timeout)

        client = await self._get_client()
        try:
            response = await client.get(
                realtime_url,
                params={"stream_position": position},
                timeout=wait + self.request_timeout,
            )
        except httpx.TimeoutException:
            return False
        except httpx.TransportError as e:
            raise TransientProviderError(f"Realtime long poll failed: {e}") from e

        raise_for_provider_status(response)
        message = parse_json(response).get("message")
        logger.debug(f"Box realtime server answered {message!r}")
        return message == "new_change"

    def _parse_event(self, entry: dict) -> Optional[RawChangeItem]:
        """Parse a Box event into a raw change item."""
        source = entry.get("source") or {}
        source_type = source.get("type")
        event_type = entry.get("event_type", "")

        if source_type not in ("file", "folder") or "id" not in source:
            logger.debug(f"Skipping Box event {event_type} with non-item source {source_type}")
            return None

        parent = source.get("parent") or {}
        parent_id = str(parent["id"]) if parent.get("id") is not None else None
        revision = (source.get("file_version") or {}).get("id")
        change_type = BOX_EVENT_TYPES.get(event_type, ChangeType.UNKNOWN)

        # Trashed and deleted items no longer report their live path; the
        # normalizer rebuilds it from the original parent instead.
        path_hint = None
        if change_type not in DELETION_CHANGE_TYPES and source.get("path_collection") and not in_trash(source):
            path_hint = box_path(source, self.root_folder_id)
            if path_hint is None:
                logger.debug(
                    f"Skipping Box event {event_type} for {source['id']} outside root folder {self.root_folder_id}"
                )
                return None

        return RawChangeItem(
            id=str(source["id"]),
            name=source.get("name", ""),
            kind=ItemKind.FILE if source_type == "file" else ItemKind.FOLDER,
            change_type=change_type,
            path_hint=path_hint,
            parent_id_hint=parent_id if parent_id and parent_id != self.root_folder_id else "none",
            parent_refs=[parent_id] if parent_id else [],
            revision=revision,
            vendor_event_type=event_type,
            metadata={"event_id": entry.get("event_id"), "etag": source.get("etag")},
        )

    # ==================== Metadata Lookups ====================

    async def lookup_parent(self, ref: str) -> Optional[ParentRef]:
        if ref == self.root_folder_id:
            return None
        if ref == BOX_ROOT_FOLDER_ID:
            raise ItemNotFoundError(f"Box folder {ref} is outside root folder {self.root_folder_id}")

        try:
            result = await self._make_request("GET", f"folders/{ref}", params={"fields": PARENT_FIELDS})
        except ItemNotFoundError:
            # Trashed folders are only visible through the trash endpoint
            result = await self._make_request("GET", f"folders/{ref}/trash", params={"fields": PARENT_FIELDS})

        parent = result.get("parent") or {}
        return ParentRef(
            id=str(result.get("id", ref)),
            name=result.get("name", ""),
            parent_refs=[str(parent["id"])] if parent.get("id") is not None else [],
        )

    # ==================== Full Listing ====================

    async def list_tree(self) -> AsyncIterator[RawChangeItem]:
        async for item in self._walk(self.root_folder_id, ""):
            yield item

    async def _walk(self, folder_id: str, path: str) -> AsyncIterator[RawChangeItem]:
        offset = 0
        subfolders = []

        while True:
            result = await self._make_request("GET", f"folders/{folder_id}/items", params={
                "fields": ITEM_FIELDS,
                "limit": BOX_PAGE_LIMIT,
                "offset": offset,
            })
            entries = result.get("entries", [])

            for entry in entries:
                entry_type = entry.get("type")
                if entry_type not in ("file", "folder"):
                    continue

                item_path = f"{path}/{entry['name']}" if path else entry["name"]
                yield RawChangeItem(
                    id=str(entry["id"]),
                    name=entry["name"],
                    kind=ItemKind.FILE if entry_type == "file" else ItemKind.FOLDER,
                    change_type=ChangeType.CREATE,
                    path_hint=item_path,
                    parent_id_hint=folder_id if folder_id != self.root_folder_id else "none",
                    revision=(entry.get("file_version") or {}).get("id"),
                    metadata={"etag": entry.get("etag")},
                )
                if entry_type == "folder":
                    subfolders.append((str(entry["id"]), item_path))

            offset += len(entries)
            if not entries or offset >= int(result.get("total_count", 0)):
                break

        for subfolder_id, subfolder_path in subfolders:
            async for item in self._walk(subfolder_id, subfolder_path):
                yield item

    # ==================== Downloads ====================

    async def download(self, source_id: str, revision: Optional[str] = None, **hints) -> AsyncIterator[bytes]:
        """Download file content as a stream."""
        params = {"version": revision} if revision else {}
        client = await self._get_client()

        async with client.stream(
            "GET",
            f"{self.api_base}/files/{source_id}/content",
            params=params,
            headers={"Authorization": f"Bearer {self.access_token}"},
            follow_redirects=True,
        ) as response:
            if response.status_code != 200:
                await response.aread()
                raise_for_provider_status(response)
                raise TransientProviderError(f"Box returned {response.status_code} for file {source_id}")

            async for chunk in response.aiter_bytes(chunk_size=8192):
                yield chunk
