"""
Test Configuration.

Fakes for provider transports, metadata lookups, feeds and handlers so
the polling engine can be exercised without any cloud account.
"""

from typing import AsyncIterator, Optional, Union

import httpx
import pytest

from cloudpoll.core.config import PollerSettings
from cloudpoll.core.position_store import InMemoryPositionStore
from cloudpoll.feeds.cursor_longpoll import CursorTransport, ListPage, LongpollResult
from cloudpoll.feeds.event_stream import EventChunk, EventStreamTransport
from cloudpoll.feeds.page_token import ChangesPage, FilesPage, PageTokenTransport
from cloudpoll.handlers.base import ActionHandler
from cloudpoll.providers.base import (
    AccountType,
    ChangeFeed,
    ChangeType,
    FeedPage,
    ItemKind,
    ItemNotFoundError,
    MetadataLookup,
    ParentRef,
    RawChangeItem,
    RecoveredItem,
)
from cloudpoll.sync.normalizer import ChangeNormalizer
from cloudpoll.sync.router import ActionRouter


def make_item(
    id: str,
    name: Optional[str] = None,
    kind: ItemKind = ItemKind.FILE,
    change_type: ChangeType = ChangeType.UPSERT,
    **kwargs,
) -> RawChangeItem:
    """Build a raw change item with sensible defaults."""
    if name is None:
        name = id
    if "path_hint" not in kwargs and "parent_refs" not in kwargs:
        kwargs["path_hint"] = name
    return RawChangeItem(id=id, name=name, kind=kind, change_type=change_type, **kwargs)


# ==================== Lookups ====================

class FakeLookup(MetadataLookup):
    """In-memory parent tree. Refs missing from `parents` raise ItemNotFoundError."""

    def __init__(self, parents: Optional[dict] = None, roots=("root",), recovered: Optional[dict] = None):
        self.parents = parents or {}
        self.roots = set(roots)
        self.recovered = recovered or {}
        self.parent_calls: list[str] = []
        self.recover_calls: list[str] = []

    async def lookup_parent(self, ref: str) -> Optional[ParentRef]:
        self.parent_calls.append(ref)
        if ref in self.roots:
            return None
        if ref not in self.parents:
            raise ItemNotFoundError(f"No parent {ref}")
        return self.parents[ref]

    async def recover_deleted(self, item: RawChangeItem) -> Optional[RecoveredItem]:
        self.recover_calls.append(item.id)
        result = self.recovered.get(item.id)
        if isinstance(result, Exception):
            raise result
        return result


# ==================== Feeds ====================

class ScriptedFeed(ChangeFeed):
    """Feed answering poll() from a script of pages and exceptions."""

    enumerates = True

    def __init__(self, script: list[Union[FeedPage, Exception]], lookup: Optional[MetadataLookup] = None,
                 enumeration: Optional[list[RawChangeItem]] = None, call_timeout: float = 5.0):
        super().__init__(lookup or MetadataLookup(), call_timeout=call_timeout)
        self.script = list(script)
        self.enumeration = enumeration or []
        self.calls: list[tuple[Optional[str], Optional[str]]] = []

    async def poll(self, position, continuation=None) -> FeedPage:
        self.calls.append((position, continuation))
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step

    async def enumerate(self) -> AsyncIterator[RawChangeItem]:
        for item in self.enumeration:
            item.is_first_sync = True
            yield item


# ==================== Transports ====================

class FakeCursorTransport(CursorTransport):
    def __init__(self, listing: list[ListPage], latest: str = "CUR123",
                 changes: Optional[list[ListPage]] = None, longpoll_results: Optional[list[LongpollResult]] = None):
        self.listing = list(listing)
        self.latest = latest
        self.changes = list(changes or [])
        self.longpoll_results = list(longpoll_results or [])
        self.calls: list[tuple] = []

    async def latest_cursor(self) -> str:
        self.calls.append(("latest_cursor",))
        return self.latest

    async def list_folder(self) -> ListPage:
        self.calls.append(("list_folder",))
        return self.listing.pop(0)

    async def list_folder_continue(self, cursor: str) -> ListPage:
        self.calls.append(("continue", cursor))
        if self.listing:
            return self.listing.pop(0)
        return self.changes.pop(0)

    async def longpoll(self, cursor: str, timeout: int) -> LongpollResult:
        self.calls.append(("longpoll", cursor, timeout))
        return self.longpoll_results.pop(0)


class FakeStreamTransport(EventStreamTransport):
    def __init__(self, chunks: Optional[list[EventChunk]] = None, now: str = "900",
                 tree: Optional[list[RawChangeItem]] = None, signals: Optional[list[bool]] = None):
        self.chunks = list(chunks or [])
        self.now = now
        self.tree = tree or []
        self.signals = list(signals or [])
        self.fetched: list[str] = []
        self.waits: list[str] = []

    async def current_position(self) -> str:
        return self.now

    async def fetch_events(self, position: str) -> EventChunk:
        self.fetched.append(position)
        if self.chunks:
            return self.chunks.pop(0)
        return EventChunk(items=[], next_position=position)

    async def wait_for_change(self, position: str, timeout: float) -> bool:
        self.waits.append(position)
        return self.signals.pop(0) if self.signals else False

    async def list_tree(self) -> AsyncIterator[RawChangeItem]:
        for item in self.tree:
            yield item


class FakePageTokenTransport(PageTokenTransport):
    def __init__(self, files: Optional[list[FilesPage]] = None, changes: Optional[dict] = None, start: str = "S1"):
        self.files = list(files or [])
        self.changes = dict(changes or {})
        self.start = start
        self.calls: list[tuple] = []

    async def start_page_token(self) -> str:
        self.calls.append(("start_page_token",))
        return self.start

    async def list_files(self, page_token: Optional[str] = None) -> FilesPage:
        self.calls.append(("list_files", page_token))
        return self.files.pop(0)

    async def list_changes(self, page_token: str) -> ChangesPage:
        self.calls.append(("list_changes", page_token))
        return self.changes[page_token]


# ==================== Handlers ====================

class RecordingHandler(ActionHandler):
    """Records every handled record; fails for ids in fail_on."""

    def __init__(self, name: str = "recording", fail_on=()):
        self.name = name
        self.fail_on = set(fail_on)
        self.handled = []

    async def handle(self, record) -> None:
        self.handled.append(record)
        if record.source_id in self.fail_on:
            raise RuntimeError(f"boom on {record.source_id}")


@pytest.fixture
def settings():
    """Settings with no retry delays."""
    return PollerSettings(
        retry_backoff_seconds=0.0,
        max_fetch_attempts=3,
        box_listen_window_seconds=5.0,
        request_timeout_seconds=5.0,
        max_concurrent_accounts=2,
        poll_interval_seconds=0.01,
    )


@pytest.fixture
def store():
    return InMemoryPositionStore()


@pytest.fixture
def handlers():
    """Recording handlers keyed by role."""
    return {
        "download": RecordingHandler("download"),
        "makedir": RecordingHandler("makedir"),
        "delete": RecordingHandler("delete"),
    }


@pytest.fixture
def router(handlers):
    return ActionRouter(
        download_handlers={account_type: handlers["download"] for account_type in AccountType},
        makedir_handler=handlers["makedir"],
        delete_handler=handlers["delete"],
    )


@pytest.fixture
def normalizer():
    return ChangeNormalizer(MetadataLookup())


def mock_http(client, handler) -> list[httpx.Request]:
    """Route a provider client's HTTP traffic through handler; returns the request log."""
    requests: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client._http_client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    return requests
