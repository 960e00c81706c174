"""
Cursor Long-Poll Feed

Poll shape for providers with a cursor plus long-poll/continue protocol
(Dropbox). The first poll enumerates the tree; later polls block on a
long-poll call and then page through "continue from cursor" results.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from cloudpoll.providers.base import (
    ChangeFeed,
    FeedPage,
    ItemKind,
    MetadataLookup,
    ProviderKind,
    RawChangeItem,
    is_sentinel,
)
from cloudpoll.providers.registry import register_feed

logger = logging.getLogger(__name__)


@dataclass
class ListPage:
    """One page of a folder listing or continuation."""
    items: list[RawChangeItem] = field(default_factory=list)
    cursor: str = ""
    has_more: bool = False


@dataclass
class LongpollResult:
    changes: bool = False
    backoff: Optional[int] = None


class CursorTransport(MetadataLookup, ABC):
    """What a cursor-based provider must offer the feed."""

    @abstractmethod
    async def latest_cursor(self) -> str:
        """Return a cursor positioned at the current state of the sync root."""
        pass

    @abstractmethod
    async def list_folder(self) -> ListPage:
        """Start a recursive listing of the sync root."""
        pass

    @abstractmethod
    async def list_folder_continue(self, cursor: str) -> ListPage:
        """Return the entries recorded after cursor."""
        pass

    @abstractmethod
    async def longpoll(self, cursor: str, timeout: int) -> LongpollResult:
        """Block until changes exist after cursor or timeout elapses."""
        pass


@register_feed(ProviderKind.CURSOR)
class CursorLongPollFeed(ChangeFeed):
    """Cursor long-poll feed."""

    def __init__(
        self,
        transport: CursorTransport,
        longpoll_timeout: int = 60,
        request_timeout: float = 30.0,
    ):
        # The provider adds random jitter on top of the requested timeout
        super().__init__(transport, call_timeout=longpoll_timeout + 90 + request_timeout)
        self.transport = transport
        self.longpoll_timeout = longpoll_timeout
        self.request_timeout = request_timeout

    @classmethod
    def from_settings(cls, transport: CursorTransport, settings) -> "CursorLongPollFeed":
        return cls(
            transport,
            longpoll_timeout=settings.dropbox_longpoll_timeout_seconds,
            request_timeout=settings.request_timeout_seconds,
        )

    async def poll(self, position: Optional[str], continuation: Optional[str] = None) -> FeedPage:
        if is_sentinel(position):
            return await self._initial_listing()

        if continuation is None:
            result = await self.transport.longpoll(position, timeout=self.longpoll_timeout)
            if result.backoff:
                logger.info(f"Provider asked to back off {result.backoff}s before next poll")
                await asyncio.sleep(result.backoff)
            if not result.changes:
                return FeedPage(items=[], new_position=None)

        page = await self.transport.list_folder_continue(continuation or position)
        return FeedPage(
            items=page.items,
            new_position=page.cursor,
            has_more=page.has_more,
            continuation=page.cursor if page.has_more else None,
        )

    async def _initial_listing(self) -> FeedPage:
        """Enumerate the whole tree and position at the latest cursor."""
        # Taken before listing so changes made meanwhile are replayed, not lost
        latest = await self.transport.latest_cursor()

        items: list[RawChangeItem] = []
        page = await self.transport.list_folder()
        while True:
            for item in page.items:
                if item.kind == ItemKind.DELETED:
                    continue
                item.is_first_sync = True
                items.append(item)
            if not page.has_more:
                break
            page = await self.transport.list_folder_continue(page.cursor)

        logger.info(f"Initial listing found {len(items)} items")
        return FeedPage(items=items, new_position=latest, has_more=False)
