"""
Poll Cycle

One poll of one account, driven as an explicit state machine:

    IDLE -> FETCHING -> NORMALIZING -> DISPATCHING -> COMMITTING -> IDLE

FAILED is reached when fetching fails fatally or runs out of retries,
when a provider lookup fails while normalizing, or when the position
cannot be committed. A failed cycle never moves the position, so the
next cycle replays the whole batch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from cloudpoll.core.position_store import PositionStore, PositionStoreError
from cloudpoll.providers.base import (
    AccountType,
    ChangeFeed,
    CloudSourceError,
    FeedPage,
    MalformedResponseError,
    RateLimitError,
    RawChangeItem,
    TransientProviderError,
)
from cloudpoll.sync.normalizer import (
    ActionRecord,
    ChangeNormalizer,
    CycleContext,
    NormalizationError,
    UnresolvedDeletionError,
)
from cloudpoll.sync.router import ActionRouter, DispatchReport

logger = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    DISPATCHING = "dispatching"
    COMMITTING = "committing"
    FAILED = "failed"


@dataclass
class CycleResult:
    """Summary of one poll cycle."""
    account_id: str
    state: CycleState
    old_position: str
    new_position: str
    items: int = 0
    records: int = 0
    normalization_errors: int = 0
    unresolved_deletions: int = 0
    report: Optional[DispatchReport] = None
    committed: bool = False
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.state != CycleState.FAILED


@dataclass
class FetchResult:
    items: list[RawChangeItem] = field(default_factory=list)
    position: Optional[str] = None


class PollCycle:
    """Runs a single poll cycle for one account."""

    def __init__(
        self,
        account_id: str,
        account_type: AccountType,
        feed: ChangeFeed,
        normalizer: ChangeNormalizer,
        router: ActionRouter,
        store: PositionStore,
        max_fetch_attempts: int = 3,
        retry_backoff_seconds: float = 2.0,
        cycle_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.account_id = account_id
        self.account_type = account_type
        self.feed = feed
        self.normalizer = normalizer
        self.router = router
        self.store = store
        self.max_fetch_attempts = max_fetch_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.cycle_timeout = cycle_timeout
        self._sleep = sleep

        self.state = CycleState.IDLE
        self.transitions: list[tuple[CycleState, CycleState]] = []

    def _transition(self, state: CycleState) -> None:
        logger.debug(f"Account {self.account_id}: {self.state.value} -> {state.value}")
        self.transitions.append((self.state, state))
        self.state = state

    def _fail(self, result: CycleResult, error: Exception) -> CycleResult:
        logger.error(
            f"Poll cycle for account {self.account_id} failed while {self.state.value}, "
            f"position stays {result.old_position}: {type(error).__name__}: {error}"
        )
        self._transition(CycleState.FAILED)
        result.state = CycleState.FAILED
        result.error = error
        return result

    async def run(self) -> CycleResult:
        """Run the cycle to IDLE or FAILED."""
        old_position = await self.store.get(self.account_id)
        result = CycleResult(
            account_id=self.account_id,
            state=self.state,
            old_position=old_position,
            new_position=old_position,
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.cycle_timeout if self.cycle_timeout else None

        try:
            # ==================== Fetch ====================
            self._transition(CycleState.FETCHING)
            try:
                fetched = await self._fetch(old_position)
            except (CloudSourceError, asyncio.TimeoutError) as e:
                return self._fail(result, e)
            result.items = len(fetched.items)

            # ==================== Normalize ====================
            self._transition(CycleState.NORMALIZING)
            context = CycleContext(
                account_id=self.account_id,
                account_type=self.account_type,
                position=old_position,
                deadline=deadline,
            )
            try:
                records = await self._normalize(fetched.items, context, result)
            except CloudSourceError as e:
                return self._fail(result, e)
            result.records = len(records)

            # ==================== Dispatch ====================
            self._transition(CycleState.DISPATCHING)
            result.report = await self.router.dispatch_batch(records)

            # ==================== Commit ====================
            self._transition(CycleState.COMMITTING)
            new_position = fetched.position
            if new_position is not None and new_position != old_position:
                try:
                    await self.store.commit(self.account_id, new_position)
                except (PositionStoreError, OSError) as e:
                    return self._fail(result, e)
                result.new_position = new_position
                result.committed = True
            else:
                logger.debug(f"Account {self.account_id}: position unchanged at {old_position}")

        except asyncio.CancelledError:
            logger.info(f"Poll cycle for account {self.account_id} cancelled, position stays {old_position}")
            self._transition(CycleState.IDLE)
            raise

        self._transition(CycleState.IDLE)
        result.state = CycleState.IDLE

        report = result.report
        logger.info(
            f"Account {self.account_id}: {result.items} changes, {result.records} records, "
            f"{report.delivered} delivered, {report.failed} failed, {report.dropped} dropped, "
            f"position {result.old_position} -> {result.new_position}"
        )
        return result

    # ==================== Fetching ====================

    async def _fetch(self, position: str) -> FetchResult:
        """Poll the feed until has_more is False."""
        fetched = FetchResult()
        continuation: Optional[str] = None

        while True:
            page = await self._poll_page(position, continuation)
            fetched.items.extend(page.items)
            if page.new_position is not None:
                fetched.position = page.new_position

            if page.requires_enumeration:
                if not self.feed.enumerates:
                    raise MalformedResponseError(f"{type(self.feed).__name__} asked for enumeration it cannot provide")
                fetched.items.extend(await self._with_retries(self._enumerate, "enumeration"))

            if not page.has_more:
                return fetched
            if page.continuation is None:
                raise MalformedResponseError("Feed reported more pages without a continuation")
            continuation = page.continuation

    async def _poll_page(self, position: str, continuation: Optional[str]) -> FeedPage:
        async def attempt():
            return await asyncio.wait_for(
                self.feed.poll(position, continuation),
                timeout=self.feed.call_timeout,
            )

        return await self._with_retries(attempt, f"poll at {continuation or position}")

    async def _enumerate(self) -> list[RawChangeItem]:
        return [item async for item in self.feed.enumerate()]

    async def _with_retries(self, operation, what: str):
        """Retry transient failures with exponential backoff, reusing the same inputs."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except (TransientProviderError, asyncio.TimeoutError) as e:
                if attempt >= self.max_fetch_attempts:
                    if isinstance(e, TransientProviderError):
                        raise
                    raise TransientProviderError(f"{what} timed out after {attempt} attempts") from e

                delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
                if isinstance(e, RateLimitError) and e.retry_after:
                    delay = max(delay, float(e.retry_after))
                logger.warning(
                    f"Account {self.account_id}: {what} failed ({type(e).__name__}: {e}), "
                    f"attempt {attempt}/{self.max_fetch_attempts}, retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

    # ==================== Normalizing ====================

    async def _normalize(
        self,
        items: list[RawChangeItem],
        context: CycleContext,
        result: CycleResult,
    ) -> list[ActionRecord]:
        records = []
        for item in items:
            try:
                record = await self.normalizer.normalize(item, context)
            except UnresolvedDeletionError as e:
                result.unresolved_deletions += 1
                logger.warning(f"Account {self.account_id}, source {e.source_id or item.id}: {e}")
                continue
            except NormalizationError as e:
                result.normalization_errors += 1
                logger.error(
                    f"Dropping item in account {self.account_id}, source {e.source_id or item.id}: "
                    f"{type(e).__name__}: {e}"
                )
                continue
            if record is not None:
                records.append(record)
        return records
