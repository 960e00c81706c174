"""
Poll Scheduler

Runs poll cycles for every account of a project:
- Cycles of one account are strictly serialized (one lock per account)
- Cycles of distinct accounts run in parallel, bounded by a semaphore
- One account failing never stops the others
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from cloudpoll.core.config import PollerSettings
from cloudpoll.core.position_store import PositionStore
from cloudpoll.providers.base import AccountType, ChangeFeed
from cloudpoll.sync.normalizer import ChangeNormalizer
from cloudpoll.sync.poll_cycle import CycleResult, CycleState, PollCycle
from cloudpoll.sync.router import ActionRouter

logger = logging.getLogger(__name__)


@dataclass
class PolledAccount:
    """Everything needed to poll one account."""
    account_id: str
    account_type: AccountType
    feed: ChangeFeed
    normalizer: ChangeNormalizer


class PollScheduler:
    """Schedules poll cycles across accounts."""

    def __init__(
        self,
        accounts: list[PolledAccount],
        router: ActionRouter,
        store: PositionStore,
        settings: PollerSettings,
        on_result: Optional[Callable[[CycleResult], None]] = None,
    ):
        self.accounts = accounts
        self.router = router
        self.store = store
        self.settings = settings
        self.on_result = on_result

        self._locks: dict[str, asyncio.Lock] = {}
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_accounts)
        self._stopping = asyncio.Event()
        self._round: Optional[asyncio.Task] = None

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        if account_id not in self._locks:
            self._locks[account_id] = asyncio.Lock()
        return self._locks[account_id]

    def _build_cycle(self, account: PolledAccount) -> PollCycle:
        return PollCycle(
            account_id=account.account_id,
            account_type=account.account_type,
            feed=account.feed,
            normalizer=account.normalizer,
            router=self.router,
            store=self.store,
            max_fetch_attempts=self.settings.max_fetch_attempts,
            retry_backoff_seconds=self.settings.retry_backoff_seconds,
        )

    async def poll_account(self, account: PolledAccount) -> CycleResult:
        """Run one cycle for an account once its previous cycle finished."""
        async with self._lock_for(account.account_id):
            async with self._semaphore:
                cycle = self._build_cycle(account)
                try:
                    result = await cycle.run()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    position = await self.store.get(account.account_id)
                    logger.error(
                        f"Unexpected error polling account {account.account_id}: {type(e).__name__}: {e}"
                    )
                    result = CycleResult(
                        account_id=account.account_id,
                        state=CycleState.FAILED,
                        old_position=position,
                        new_position=position,
                        error=e,
                    )

        if self.on_result:
            self.on_result(result)
        return result

    async def run_once(self) -> list[CycleResult]:
        """Poll every account once, in parallel."""
        if not self.accounts:
            logger.warning("No accounts to poll")
            return []

        results = await asyncio.gather(*(self.poll_account(account) for account in self.accounts))
        failed = [r.account_id for r in results if not r.ok]
        logger.info(
            f"Polling round finished: {len(results) - len(failed)} accounts ok"
            + (f", failed: {', '.join(failed)}" if failed else "")
        )
        return list(results)

    async def run_forever(self, interval: Optional[float] = None) -> None:
        """Poll in rounds until stop() is called."""
        interval = self.settings.poll_interval_seconds if interval is None else interval
        self._stopping.clear()

        while not self._stopping.is_set():
            self._round = asyncio.ensure_future(self.run_once())
            try:
                await self._round
            except asyncio.CancelledError:
                if not self._stopping.is_set():
                    raise
                logger.info("Polling round cancelled for shutdown")
                break
            finally:
                self._round = None

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Stop polling, cancelling in-flight long polls (they commit nothing)."""
        self._stopping.set()
        if self._round is not None and not self._round.done():
            self._round.cancel()
