"""
Action Handler Interface

Handlers perform the local side effect of one ActionRecord. They signal
failure by raising; the router isolates failures per record.
"""

import logging
from abc import ABC, abstractmethod

from cloudpoll.sync.normalizer import ActionRecord

logger = logging.getLogger(__name__)


class ActionHandler(ABC):
    """Abstract base class for action handlers."""

    name: str = "handler"

    @abstractmethod
    async def handle(self, record: ActionRecord) -> None:
        """Apply one record. Raises on failure."""
        pass


class NoopHandler(ActionHandler):
    """Fallback for records no other handler accepts. Never raises."""

    name = "noop"

    async def handle(self, record: ActionRecord) -> None:
        logger.warning(
            f"No handler for {record.action.value} of {record.source_type.value} {record.source_id} "
            f"({record.account_type.value} account {record.account_id}), dropping"
        )
