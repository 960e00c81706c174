"""
Unit tests for the three change feed shapes.

Feeds are driven through in-memory transports.
"""

import pytest

from cloudpoll.feeds.cursor_longpoll import CursorLongPollFeed, ListPage, LongpollResult
from cloudpoll.feeds.event_stream import EventChunk, EventStreamFeed
from cloudpoll.feeds.page_token import ChangesPage, FilesPage, PageTokenFeed
from cloudpoll.providers.base import ChangeType, ItemKind, ProviderKind, is_sentinel
from cloudpoll.providers.registry import create_feed, get_feed_class

from conftest import FakeCursorTransport, FakePageTokenTransport, FakeStreamTransport, make_item


class TestSentinels:
    """Tests for sentinel position detection."""

    @pytest.mark.parametrize("position", [None, "", "0"])
    def test_sentinels(self, position):
        assert is_sentinel(position)

    @pytest.mark.parametrize("position", ["00", "555", "CUR123", " "])
    def test_real_positions(self, position):
        assert not is_sentinel(position)


class TestEventStreamFeed:
    """Tests for the Box-style event stream feed."""

    @pytest.mark.asyncio
    async def test_first_poll_returns_current_position_only(self):
        transport = FakeStreamTransport(now="900")
        feed = EventStreamFeed(transport, window_seconds=1)

        page = await feed.poll("0")

        assert page.items == []
        assert page.new_position == "900"
        assert page.requires_enumeration is True
        assert transport.fetched == []

    @pytest.mark.asyncio
    async def test_enumeration_marks_first_sync(self):
        tree = [make_item("d1", "docs", ItemKind.FOLDER), make_item("f1", "docs/a.txt")]
        feed = EventStreamFeed(FakeStreamTransport(tree=tree), window_seconds=1)

        items = [item async for item in feed.enumerate()]

        assert [i.id for i in items] == ["d1", "f1"]
        assert all(i.is_first_sync for i in items)

    @pytest.mark.asyncio
    async def test_window_buffers_events_and_takes_last_explicit_position(self):
        transport = FakeStreamTransport(
            chunks=[
                EventChunk(items=[make_item("f1", change_type=ChangeType.TRASH)], next_position="560"),
                EventChunk(items=[], next_position="560"),
                EventChunk(items=[make_item("f2", change_type=ChangeType.UPLOAD)], next_position="570"),
            ],
            signals=[True, False],
        )
        feed = EventStreamFeed(transport, window_seconds=5)

        page = await feed.poll("555")

        assert [i.id for i in page.items] == ["f1", "f2"]
        assert page.new_position == "570"
        assert transport.fetched == ["555", "560", "560", "570"]

    @pytest.mark.asyncio
    async def test_no_explicit_position_leaves_new_position_empty(self):
        transport = FakeStreamTransport(chunks=[EventChunk(items=[], next_position=None)])
        feed = EventStreamFeed(transport, window_seconds=1)

        page = await feed.poll("555")

        assert page.items == []
        assert page.new_position is None

    @pytest.mark.asyncio
    async def test_window_closes_when_deadline_passes(self):
        transport = FakeStreamTransport(
            chunks=[EventChunk(items=[make_item("f1")], next_position="556")] * 3,
            signals=[True] * 10,
        )
        feed = EventStreamFeed(transport, window_seconds=0)

        page = await feed.poll("555")

        assert len(transport.fetched) == 1
        assert page.new_position == "556"

    def test_call_timeout_covers_window(self):
        feed = EventStreamFeed(FakeStreamTransport(), window_seconds=30, request_timeout=10)
        assert feed.call_timeout == 50


class TestCursorLongPollFeed:
    """Tests for the Dropbox-style cursor feed."""

    @pytest.mark.asyncio
    async def test_initial_listing(self):
        transport = FakeCursorTransport(
            listing=[
                ListPage(items=[make_item("a", "a.txt"), make_item("d", "docs", ItemKind.FOLDER)],
                         cursor="L1", has_more=True),
                ListPage(items=[make_item("b", "docs/b.txt"), make_item("x", "gone", ItemKind.DELETED)],
                         cursor="L2", has_more=False),
            ],
            latest="CUR123",
        )
        feed = CursorLongPollFeed(transport, longpoll_timeout=30)

        page = await feed.poll("0")

        assert [i.id for i in page.items] == ["a", "d", "b"]
        assert all(i.is_first_sync for i in page.items)
        assert page.new_position == "CUR123"
        assert page.has_more is False
        assert transport.calls[0] == ("latest_cursor",)
        assert ("continue", "L1") in transport.calls

    @pytest.mark.asyncio
    async def test_longpoll_without_changes_keeps_position(self):
        transport = FakeCursorTransport(listing=[], longpoll_results=[LongpollResult(changes=False)])
        feed = CursorLongPollFeed(transport, longpoll_timeout=30)

        page = await feed.poll("C1")

        assert page.items == []
        assert page.new_position is None
        assert transport.calls == [("longpoll", "C1", 30)]

    @pytest.mark.asyncio
    async def test_changes_page_through_continue(self):
        transport = FakeCursorTransport(
            listing=[],
            longpoll_results=[LongpollResult(changes=True)],
            changes=[
                ListPage(items=[make_item("a", "a.txt")], cursor="C2", has_more=True),
                ListPage(items=[make_item("b", "b.txt")], cursor="C3", has_more=False),
            ],
        )
        feed = CursorLongPollFeed(transport, longpoll_timeout=30)

        first = await feed.poll("C1")
        assert first.new_position == "C2"
        assert first.has_more is True
        assert first.continuation == "C2"

        second = await feed.poll("C1", first.continuation)
        assert second.new_position == "C3"
        assert second.has_more is False
        assert second.continuation is None

        # Only the first call of a cycle long-polls
        assert [c[0] for c in transport.calls] == ["longpoll", "continue", "continue"]

    @pytest.mark.asyncio
    async def test_backoff_is_honoured(self, monkeypatch):
        slept = []

        async def fake_sleep(delay):
            slept.append(delay)

        monkeypatch.setattr("cloudpoll.feeds.cursor_longpoll.asyncio.sleep", fake_sleep)
        transport = FakeCursorTransport(listing=[], longpoll_results=[LongpollResult(changes=False, backoff=7)])
        feed = CursorLongPollFeed(transport)

        await feed.poll("C1")

        assert slept == [7]


class TestPageTokenFeed:
    """Tests for the Drive-style page token feed."""

    @pytest.mark.asyncio
    async def test_initial_listing_then_start_token(self):
        transport = FakePageTokenTransport(
            files=[
                FilesPage(items=[make_item("a", "a.txt")], next_page_token="t2"),
                FilesPage(items=[make_item("b", "b.txt")], next_page_token=None),
            ],
            start="S1",
        )
        feed = PageTokenFeed(transport)

        page = await feed.poll("")

        assert [i.id for i in page.items] == ["a", "b"]
        assert all(i.is_first_sync for i in page.items)
        assert page.new_position == "S1"
        assert transport.calls == [("list_files", None), ("list_files", "t2"), ("start_page_token",)]

    @pytest.mark.asyncio
    async def test_next_page_token_is_never_a_position(self):
        transport = FakePageTokenTransport(changes={
            "S5": ChangesPage(items=[make_item("a", "a.txt")], next_page_token="p2"),
            "p2": ChangesPage(items=[make_item("b", "b.txt")], new_start_page_token="S9"),
        })
        feed = PageTokenFeed(transport)

        first = await feed.poll("S5")
        assert first.new_position is None
        assert first.has_more is True
        assert first.continuation == "p2"

        second = await feed.poll("S5", first.continuation)
        assert second.new_position == "S9"
        assert second.has_more is False


class TestFeedRegistry:
    """Tests for feed lookup by poll shape."""

    def test_every_kind_has_a_feed(self):
        assert get_feed_class(ProviderKind.STREAM) is EventStreamFeed
        assert get_feed_class(ProviderKind.CURSOR) is CursorLongPollFeed
        assert get_feed_class(ProviderKind.PAGETOKEN) is PageTokenFeed

    def test_only_stream_feeds_enumerate(self):
        assert EventStreamFeed.enumerates is True
        assert CursorLongPollFeed.enumerates is False
        assert PageTokenFeed.enumerates is False

    def test_create_feed_uses_settings(self, settings):
        from cloudpoll.providers.dropbox_provider import DropboxClient

        client = DropboxClient("1", {"access_token": "t"})
        feed = create_feed(client, settings)

        assert isinstance(feed, CursorLongPollFeed)
        assert feed.longpoll_timeout == settings.dropbox_longpoll_timeout_seconds
        assert feed.lookup is client
