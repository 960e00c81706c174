"""
Action Router

Explicit decision table from (action, source_type, account_type) to
exactly one handler. Handler failures are isolated per record.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from cloudpoll.handlers.base import ActionHandler, NoopHandler
from cloudpoll.providers.base import AccountType, ItemKind
from cloudpoll.sync.normalizer import Action, ActionRecord

logger = logging.getLogger(__name__)


class DispatchOutcome(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    DROPPED = "dropped"


class HandlerError(Exception):
    """A handler failed to apply one record."""

    def __init__(self, record: ActionRecord, cause: Exception):
        super().__init__(
            f"{record.action.value} of {record.source_id} in account {record.account_id} failed: "
            f"{type(cause).__name__}: {cause}"
        )
        self.record = record
        self.cause = cause


@dataclass
class DispatchReport:
    """Outcome of every record of a batch, in dispatch order."""
    outcomes: list[tuple[ActionRecord, DispatchOutcome]] = field(default_factory=list)
    errors: list[HandlerError] = field(default_factory=list)

    def count(self, outcome: DispatchOutcome) -> int:
        return sum(1 for _, o in self.outcomes if o == outcome)

    @property
    def delivered(self) -> int:
        return self.count(DispatchOutcome.DELIVERED)

    @property
    def failed(self) -> int:
        return self.count(DispatchOutcome.FAILED)

    @property
    def dropped(self) -> int:
        return self.count(DispatchOutcome.DROPPED)


class ActionRouter:
    """
    Routes records to handlers.

    Decision table:
        (download, file)        -> download_handlers[account_type]
        (make_directory, folder) -> makedir_handler
        (delete, file|folder)   -> delete_handler
        anything else           -> default_handler (no-op)
    """

    def __init__(
        self,
        download_handlers: dict[AccountType, ActionHandler],
        makedir_handler: ActionHandler,
        delete_handler: ActionHandler,
        default_handler: Optional[ActionHandler] = None,
    ):
        self.download_handlers = download_handlers
        self.makedir_handler = makedir_handler
        self.delete_handler = delete_handler
        self.default_handler = default_handler or NoopHandler()

    def route(self, record: ActionRecord) -> ActionHandler:
        """Select the handler for a record."""
        key = (record.action, record.source_type)

        if key == (Action.DOWNLOAD, ItemKind.FILE):
            return self.download_handlers.get(record.account_type, self.default_handler)
        if key == (Action.MAKE_DIRECTORY, ItemKind.FOLDER):
            return self.makedir_handler
        if record.action == Action.DELETE and record.source_type in (ItemKind.FILE, ItemKind.FOLDER):
            return self.delete_handler
        return self.default_handler

    async def dispatch(self, record: ActionRecord) -> DispatchOutcome:
        """Hand one record to its handler; failures never propagate."""
        outcome, _ = await self._deliver(record)
        return outcome

    async def _deliver(self, record: ActionRecord) -> tuple[DispatchOutcome, Optional[HandlerError]]:
        handler = self.route(record)

        try:
            await handler.handle(record)
        except Exception as e:
            error = HandlerError(record, e)
            logger.error(
                f"Handler {handler.name} failed for account {record.account_id}, "
                f"source {record.source_id}, action {record.action.value}: {type(e).__name__}: {e}"
            )
            return DispatchOutcome.FAILED, error

        if handler is self.default_handler:
            return DispatchOutcome.DROPPED, None
        return DispatchOutcome.DELIVERED, None

    async def dispatch_batch(self, records: list[ActionRecord]) -> DispatchReport:
        """Dispatch records one by one in the given order."""
        report = DispatchReport()
        for record in records:
            outcome, error = await self._deliver(record)
            report.outcomes.append((record, outcome))
            if error is not None:
                report.errors.append(error)
        return report
