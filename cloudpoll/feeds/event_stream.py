"""
Event Stream Feed

Poll shape for providers that expose a monotonically increasing event
stream position (Box). Incremental polls listen for a bounded window and
buffer every event pushed in it; the position only moves when the
provider reports an explicit next position.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from cloudpoll.providers.base import (
    ChangeFeed,
    FeedPage,
    MetadataLookup,
    ProviderKind,
    RawChangeItem,
    is_sentinel,
)
from cloudpoll.providers.registry import register_feed

logger = logging.getLogger(__name__)


@dataclass
class EventChunk:
    """Events returned by one stream read plus the position after them."""
    items: list[RawChangeItem] = field(default_factory=list)
    next_position: Optional[str] = None


class EventStreamTransport(MetadataLookup, ABC):
    """What an event-stream provider must offer the feed."""

    @abstractmethod
    async def current_position(self) -> str:
        """Return the provider's stream position for "now"."""
        pass

    @abstractmethod
    async def fetch_events(self, position: str) -> EventChunk:
        """Read the events recorded after position."""
        pass

    @abstractmethod
    async def wait_for_change(self, position: str, timeout: float) -> bool:
        """Block until the provider signals new events or timeout elapses."""
        pass

    @abstractmethod
    def list_tree(self) -> AsyncIterator[RawChangeItem]:
        """Enumerate every file and folder under the sync root."""
        pass


@register_feed(ProviderKind.STREAM)
class EventStreamFeed(ChangeFeed):
    """
    Event stream feed.

    First poll: fetch the current position, emit nothing and ask the cycle
    to enumerate the tree. Later polls: listen for window_seconds.
    """

    enumerates = True

    def __init__(
        self,
        transport: EventStreamTransport,
        window_seconds: float = 30.0,
        request_timeout: float = 30.0,
    ):
        super().__init__(transport, call_timeout=window_seconds + 2 * request_timeout)
        self.transport = transport
        self.window_seconds = window_seconds

    @classmethod
    def from_settings(cls, transport: EventStreamTransport, settings) -> "EventStreamFeed":
        return cls(
            transport,
            window_seconds=settings.box_listen_window_seconds,
            request_timeout=settings.request_timeout_seconds,
        )

    async def poll(self, position: Optional[str], continuation: Optional[str] = None) -> FeedPage:
        if is_sentinel(position):
            current = await self.transport.current_position()
            logger.info(f"No stream position yet, starting from {current} after full enumeration")
            return FeedPage(items=[], new_position=current, requires_enumeration=True)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.window_seconds
        buffered: list[RawChangeItem] = []
        current = position
        explicit: Optional[str] = None

        while True:
            chunk = await self.transport.fetch_events(current)
            buffered.extend(chunk.items)
            if chunk.next_position is not None:
                current = chunk.next_position
                explicit = chunk.next_position

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            if chunk.items:
                # Drain whatever is already queued before listening again
                continue
            if not await self.transport.wait_for_change(current, timeout=remaining):
                break

        logger.info(f"Listening window closed with {len(buffered)} events, position {current}")
        return FeedPage(items=buffered, new_position=explicit)

    async def enumerate(self) -> AsyncIterator[RawChangeItem]:
        async for item in self.transport.list_tree():
            item.is_first_sync = True
            yield item
