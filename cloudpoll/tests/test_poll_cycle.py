"""
Tests for the poll cycle state machine.

Covers the end-to-end scenarios of the three feed shapes as well as the
commit and failure rules.
"""

import asyncio

import pytest

from cloudpoll.core.position_store import InMemoryPositionStore, PositionStoreError
from cloudpoll.feeds.cursor_longpoll import CursorLongPollFeed, ListPage, LongpollResult
from cloudpoll.feeds.event_stream import EventChunk, EventStreamFeed
from cloudpoll.feeds.page_token import ChangesPage, PageTokenFeed
from cloudpoll.providers.base import (
    AccountType,
    AuthenticationError,
    ChangeType,
    FeedPage,
    ItemKind,
    MalformedResponseError,
    RateLimitError,
    RawChangeItem,
    TransientProviderError,
)
from cloudpoll.sync.normalizer import Action, ChangeNormalizer
from cloudpoll.sync.poll_cycle import CycleState, PollCycle
from cloudpoll.sync.router import ActionRouter

from conftest import (
    FakeCursorTransport,
    FakePageTokenTransport,
    FakeStreamTransport,
    RecordingHandler,
    ScriptedFeed,
    make_item,
)


def build_cycle(feed, router, store, account_type=AccountType.DROPBOX, sleeps=None, **kwargs):
    async def fake_sleep(delay):
        if sleeps is not None:
            sleeps.append(delay)

    return PollCycle(
        account_id="1",
        account_type=account_type,
        feed=feed,
        normalizer=ChangeNormalizer(feed.lookup),
        router=router,
        store=store,
        retry_backoff_seconds=kwargs.pop("retry_backoff_seconds", 0.5),
        sleep=fake_sleep,
        **kwargs,
    )


def all_records(handlers):
    return handlers["download"].handled + handlers["makedir"].handled + handlers["delete"].handled


class TestScenarios:
    """End-to-end poll cycles per feed shape."""

    @pytest.mark.asyncio
    async def test_cursor_first_sync(self, router, handlers, store):
        transport = FakeCursorTransport(
            listing=[ListPage(
                items=[
                    make_item("id:1", "a.txt", path_hint="/a.txt"),
                    make_item("id:2", "docs", ItemKind.FOLDER, path_hint="/docs"),
                    make_item("id:3", "b.txt", path_hint="/docs/b.txt"),
                ],
                cursor="L1",
                has_more=False,
            )],
            latest="CUR123",
        )
        cycle = build_cycle(CursorLongPollFeed(transport), router, store)

        result = await cycle.run()

        assert result.state == CycleState.IDLE
        assert [r.source_path for r in handlers["download"].handled] == ["a.txt", "docs/b.txt"]
        assert [r.source_path for r in handlers["makedir"].handled] == ["docs"]
        assert all(r.is_initial_sync for r in all_records(handlers))
        assert await store.get("1") == "CUR123"

    @pytest.mark.asyncio
    async def test_stream_trash_event(self, router, handlers):
        store = InMemoryPositionStore({"1": "555"})
        transport = FakeStreamTransport(chunks=[
            EventChunk(items=[make_item("f1", "docs/f1.txt", change_type=ChangeType.TRASH)], next_position="560"),
        ])
        cycle = build_cycle(EventStreamFeed(transport, window_seconds=2), router, store, AccountType.BOX)

        result = await cycle.run()

        assert result.ok
        deletes = handlers["delete"].handled
        assert len(deletes) == 1
        assert deletes[0].source_id == "f1"
        assert deletes[0].action == Action.DELETE
        assert handlers["download"].handled == []
        assert await store.get("1") == "560"

    @pytest.mark.asyncio
    async def test_page_token_pages(self, router, handlers):
        store = InMemoryPositionStore({"1": "S5"})
        transport = FakePageTokenTransport(changes={
            "S5": ChangesPage(items=[make_item("a", "a.txt")], next_page_token="p2"),
            "p2": ChangesPage(items=[make_item("b", "b.txt")], new_start_page_token="S9"),
        })
        cycle = build_cycle(PageTokenFeed(transport), router, store, AccountType.GOOGLE_DRIVE)

        result = await cycle.run()

        assert result.ok
        assert [r.source_id for r in handlers["download"].handled] == ["a", "b"]
        assert await store.get("1") == "S9"
        assert transport.calls == [("list_changes", "S5"), ("list_changes", "p2")]

    @pytest.mark.asyncio
    async def test_stream_first_sync_enumerates(self, router, handlers, store):
        tree = [make_item("d1", "docs", ItemKind.FOLDER), make_item("f1", "docs/a.txt", change_type=ChangeType.CREATE)]
        transport = FakeStreamTransport(now="900", tree=tree)
        cycle = build_cycle(EventStreamFeed(transport), router, store, AccountType.BOX)

        await cycle.run()

        records = all_records(handlers)
        assert len(records) == 2
        assert all(r.is_initial_sync for r in records)
        assert handlers["delete"].handled == []
        assert await store.get("1") == "900"


class TestFirstSync:
    """Properties of a first poll."""

    @pytest.mark.asyncio
    async def test_first_sync_never_deletes(self, router, handlers, store):
        page = FeedPage(
            items=[
                make_item("a", "a.txt", is_first_sync=True),
                make_item("x", "x.txt", ItemKind.DELETED, is_first_sync=True),
                make_item("y", "y.txt", change_type=ChangeType.TRASH, is_first_sync=True),
            ],
            new_position="P1",
        )
        cycle = build_cycle(ScriptedFeed([page]), router, store)

        result = await cycle.run()

        assert handlers["delete"].handled == []
        assert all(r.is_initial_sync for r in all_records(handlers))
        assert result.records == 1


class TestCommitRules:
    """Tests for when positions are committed."""

    @pytest.mark.asyncio
    async def test_handler_failure_still_commits(self, handlers):
        failing = RecordingHandler("download", fail_on={"b"})
        router = ActionRouter({t: failing for t in AccountType}, handlers["makedir"], handlers["delete"])
        store = InMemoryPositionStore({"1": "P0"})
        page = FeedPage(items=[make_item("a"), make_item("b"), make_item("c")], new_position="P1")

        result = await build_cycle(ScriptedFeed([page]), router, store).run()

        assert [r.source_id for r in failing.handled] == ["a", "b", "c"]
        assert result.report.failed == 1
        assert result.committed
        assert await store.get("1") == "P1"

    @pytest.mark.asyncio
    async def test_no_changes_keeps_position(self, router, handlers):
        store = InMemoryPositionStore({"1": "C1"})
        transport = FakeCursorTransport(listing=[], longpoll_results=[LongpollResult(changes=False)])

        result = await build_cycle(CursorLongPollFeed(transport), router, store).run()

        assert result.ok
        assert not result.committed
        assert result.new_position == "C1"
        assert all_records(handlers) == []

    @pytest.mark.asyncio
    async def test_last_explicit_position_wins(self, router, store):
        pages = [
            FeedPage(items=[make_item("a")], new_position="C2", has_more=True, continuation="C2"),
            FeedPage(items=[make_item("b")], new_position=None, has_more=True, continuation="k"),
            FeedPage(items=[make_item("c")], new_position="C4"),
        ]
        feed = ScriptedFeed(pages)

        await build_cycle(feed, router, store).run()

        assert await store.get("1") == "C4"
        assert feed.calls == [("0", None), ("0", "C2"), ("0", "k")]

    @pytest.mark.asyncio
    async def test_commit_failure_fails_cycle(self, router):
        class BrokenStore(InMemoryPositionStore):
            async def commit(self, account_id, position):
                raise PositionStoreError("disk full")

        store = BrokenStore({"1": "P0"})
        cycle = build_cycle(ScriptedFeed([FeedPage(items=[make_item("a")], new_position="P1")]), router, store)

        result = await cycle.run()

        assert result.state == CycleState.FAILED
        assert isinstance(result.error, PositionStoreError)
        assert cycle.transitions[-1] == (CycleState.COMMITTING, CycleState.FAILED)
        assert await store.get("1") == "P0"

    @pytest.mark.asyncio
    async def test_transitions(self, router, store):
        cycle = build_cycle(ScriptedFeed([FeedPage(items=[make_item("a")], new_position="P1")]), router, store)

        await cycle.run()

        assert [to for _, to in cycle.transitions] == [
            CycleState.FETCHING,
            CycleState.NORMALIZING,
            CycleState.DISPATCHING,
            CycleState.COMMITTING,
            CycleState.IDLE,
        ]


class TestFetchFailures:
    """Tests for retries and failures while fetching."""

    @pytest.mark.asyncio
    async def test_transient_error_leaves_position_unchanged(self, router, handlers):
        store = InMemoryPositionStore({"1": "C1"})
        feed = ScriptedFeed([TransientProviderError("reset by peer")] * 3)
        sleeps = []

        result = await build_cycle(feed, router, store, sleeps=sleeps).run()

        assert result.state == CycleState.FAILED
        assert isinstance(result.error, TransientProviderError)
        assert store.positions == {"1": "C1"}
        assert all_records(handlers) == []
        assert feed.calls == [("C1", None)] * 3
        assert sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_retry_reuses_same_inputs(self, router, store):
        feed = ScriptedFeed([
            FeedPage(items=[make_item("a")], has_more=True, continuation="p2"),
            TransientProviderError("timeout"),
            FeedPage(items=[make_item("b")], new_position="S9"),
        ])

        result = await build_cycle(feed, router, store).run()

        assert result.ok
        assert feed.calls == [("0", None), ("0", "p2"), ("0", "p2")]
        assert await store.get("1") == "S9"

    @pytest.mark.asyncio
    async def test_rate_limit_retry_after(self, router, store):
        feed = ScriptedFeed([RateLimitError("slow down", retry_after=12), FeedPage(new_position="P1")])
        sleeps = []

        await build_cycle(feed, router, store, sleeps=sleeps).run()

        assert sleeps == [12.0]

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self, router):
        store = InMemoryPositionStore({"1": "C1"})
        feed = ScriptedFeed([AuthenticationError("expired"), FeedPage(new_position="C2")])
        cycle = build_cycle(feed, router, store)

        result = await cycle.run()

        assert result.state == CycleState.FAILED
        assert isinstance(result.error, AuthenticationError)
        assert len(feed.calls) == 1
        assert cycle.transitions[-1] == (CycleState.FETCHING, CycleState.FAILED)
        assert await store.get("1") == "C1"

    @pytest.mark.asyncio
    async def test_call_timeout_is_transient(self, router):
        class SlowFeed(ScriptedFeed):
            async def poll(self, position, continuation=None):
                self.calls.append((position, continuation))
                await asyncio.sleep(10)

        store = InMemoryPositionStore({"1": "C1"})
        feed = SlowFeed([], call_timeout=0.01)

        result = await build_cycle(feed, router, store, max_fetch_attempts=2).run()

        assert result.state == CycleState.FAILED
        assert isinstance(result.error, TransientProviderError)
        assert len(feed.calls) == 2
        assert await store.get("1") == "C1"

    @pytest.mark.asyncio
    async def test_enumeration_request_from_non_enumerating_feed_fails(self, router):
        class ListingFeed(ScriptedFeed):
            enumerates = False

        store = InMemoryPositionStore()
        feed = ListingFeed([FeedPage(new_position="P1", requires_enumeration=True)])
        cycle = build_cycle(feed, router, store)

        result = await cycle.run()

        assert result.state == CycleState.FAILED
        assert isinstance(result.error, MalformedResponseError)
        assert await store.get("1") == "0"

    @pytest.mark.asyncio
    async def test_more_pages_without_continuation_is_fatal(self, router, store):
        feed = ScriptedFeed([FeedPage(items=[make_item("a")], has_more=True)])

        result = await build_cycle(feed, router, store).run()

        assert result.state == CycleState.FAILED

    @pytest.mark.asyncio
    async def test_normalization_error_drops_single_record(self, router, handlers, store):
        page = FeedPage(
            items=[make_item("a"), make_item("bad", "c.txt", parent_refs=["missing"]), make_item("b")],
            new_position="P1",
        )
        feed = ScriptedFeed([page])

        class MissingLookup:
            async def lookup_parent(self, ref):
                from cloudpoll.providers.base import ItemNotFoundError
                raise ItemNotFoundError(ref)

            async def recover_deleted(self, item):
                return None

        cycle = build_cycle(feed, router, store)
        cycle.normalizer = ChangeNormalizer(MissingLookup())

        result = await cycle.run()

        assert [r.source_id for r in handlers["download"].handled] == ["a", "b"]
        assert result.normalization_errors == 1
        assert await store.get("1") == "P1"

    @pytest.mark.asyncio
    async def test_unlocatable_deletion_is_counted_separately(self, router, handlers, store):
        purged = RawChangeItem(id="purged", name="", kind=ItemKind.DELETED, change_type=ChangeType.DELETE)
        feed = ScriptedFeed([FeedPage(items=[purged, make_item("a")], new_position="S9")])
        cycle = build_cycle(feed, router, store, AccountType.GOOGLE_DRIVE)

        result = await cycle.run()

        assert result.ok
        assert result.unresolved_deletions == 1
        assert result.normalization_errors == 0
        assert handlers["delete"].handled == []
        assert [r.source_id for r in handlers["download"].handled] == ["a"]
        assert await store.get("1") == "S9"


class TestCancellation:
    """Cancellation must behave like "no changes observed"."""

    @pytest.mark.asyncio
    async def test_cancelled_long_poll_commits_nothing(self, router):
        started = asyncio.Event()

        class BlockingFeed(ScriptedFeed):
            async def poll(self, position, continuation=None):
                started.set()
                await asyncio.Event().wait()

        store = InMemoryPositionStore({"1": "C1"})
        cycle = build_cycle(BlockingFeed([], call_timeout=60), router, store)
        task = asyncio.create_task(cycle.run())
        await started.wait()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert store.positions == {"1": "C1"}
        assert cycle.state == CycleState.IDLE
