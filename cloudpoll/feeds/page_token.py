"""
Page Token Feed

Poll shape for providers with a change-list API addressed by page tokens
(Google Drive Changes API). nextPageToken pages within one cycle; only an
explicit newStartPageToken ever becomes the committed position.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

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
class FilesPage:
    """One page of a full file listing."""
    items: list[RawChangeItem] = field(default_factory=list)
    next_page_token: Optional[str] = None


@dataclass
class ChangesPage:
    """One page of a change list."""
    items: list[RawChangeItem] = field(default_factory=list)
    next_page_token: Optional[str] = None
    new_start_page_token: Optional[str] = None


class PageTokenTransport(MetadataLookup, ABC):
    """What a page-token provider must offer the feed."""

    @abstractmethod
    async def start_page_token(self) -> str:
        """Return a fresh start page token."""
        pass

    @abstractmethod
    async def list_files(self, page_token: Optional[str] = None) -> FilesPage:
        """Return one page of the full file listing."""
        pass

    @abstractmethod
    async def list_changes(self, page_token: str) -> ChangesPage:
        """Return one page of changes starting at page_token."""
        pass


@register_feed(ProviderKind.PAGETOKEN)
class PageTokenFeed(ChangeFeed):
    """Change-list feed addressed by page tokens."""

    def __init__(self, transport: PageTokenTransport, request_timeout: float = 30.0):
        super().__init__(transport, call_timeout=request_timeout * 4)
        self.transport = transport

    @classmethod
    def from_settings(cls, transport: PageTokenTransport, settings) -> "PageTokenFeed":
        return cls(transport, request_timeout=settings.request_timeout_seconds)

    async def poll(self, position: Optional[str], continuation: Optional[str] = None) -> FeedPage:
        if is_sentinel(position):
            return await self._initial_listing()

        page = await self.transport.list_changes(continuation or position)
        if page.new_start_page_token:
            logger.debug(f"Received new start page token {page.new_start_page_token}")

        return FeedPage(
            items=page.items,
            new_position=page.new_start_page_token,
            has_more=page.next_page_token is not None,
            continuation=page.next_page_token,
        )

    async def _initial_listing(self) -> FeedPage:
        """List every file page by page, then take a fresh start token."""
        items: list[RawChangeItem] = []
        page_token: Optional[str] = None

        while True:
            page = await self.transport.list_files(page_token)
            for item in page.items:
                item.is_first_sync = True
                items.append(item)
            page_token = page.next_page_token
            if not page_token:
                break

        start_token = await self.transport.start_page_token()
        logger.info(f"Initial listing found {len(items)} items, start page token {start_token}")
        return FeedPage(items=items, new_position=start_token, has_more=False)
