"""
Change Normalizer

Turns provider-specific RawChangeItems into canonical ActionRecords:
- Rebuilds root-relative paths from path hints or parent walks
- Derives a single parent id (first parent wins)
- Classifies changes into download / make_directory / delete
- Recovers the type of deleted items when the provider omits it
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Any

from cloudpoll.providers.base import (
    AccountType,
    CloudSourceError,
    CONTENT_CHANGE_TYPES,
    DELETION_CHANGE_TYPES,
    ItemKind,
    ItemNotFoundError,
    MetadataLookup,
    ParentRef,
    RawChangeItem,
    RecoveredItem,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

ROOT_PARENT_ID = "none"
DEFAULT_MAX_PATH_DEPTH = 64


class Action(str, Enum):
    """What a handler has to do with a record."""
    DOWNLOAD = "download"
    MAKE_DIRECTORY = "make_directory"
    DELETE = "delete"


@dataclass(frozen=True)
class ActionRecord:
    """Canonical unit of work handed to the router."""
    account_id: str
    account_type: AccountType
    source_id: str
    source_name: str
    source_path: str
    parent_id: str
    source_type: ItemKind
    action: Action
    details: dict[str, Any] = field(default_factory=dict)
    is_initial_sync: bool = False

    def __post_init__(self):
        if self.source_type not in (ItemKind.FILE, ItemKind.FOLDER):
            raise ValueError(f"source_type must be file or folder, got {self.source_type}")
        if not self.source_path:
            raise ValueError(f"Record for {self.source_id} has no source_path")
        if self.action == Action.DOWNLOAD and self.source_type != ItemKind.FILE:
            raise ValueError("download records must point at a file")
        if self.action == Action.MAKE_DIRECTORY and self.source_type != ItemKind.FOLDER:
            raise ValueError("make_directory records must point at a folder")


@dataclass(frozen=True)
class CycleContext:
    """
    Immutable per-cycle context.

    The ancestry cache is the only mutable part and lives exactly as long
    as one poll cycle.
    """
    account_id: str
    account_type: AccountType
    position: Optional[str]
    deadline: Optional[float] = None
    ancestry: dict[str, Optional[ParentRef]] = field(default_factory=dict, compare=False, repr=False)

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (event loop clock), or None."""
        if self.deadline is None:
            return None
        return max(self.deadline - asyncio.get_running_loop().time(), 0.0)


class NormalizationError(Exception):
    """A single item could not be turned into a record."""

    def __init__(self, message: str, source_id: Optional[str] = None):
        super().__init__(message)
        self.source_id = source_id


class UnresolvedDeletionError(NormalizationError):
    """
    A deletion the provider reports by id only, with nothing left to recover.

    Permanently deleted Drive files are the common case: the change carries
    no file resource and the file can no longer be fetched, so its local
    copy cannot be located.
    """
    pass


def clean_path(path: str) -> str:
    """Forward slashes, no leading/trailing slash, no empty segments."""
    return "/".join(segment for segment in path.replace("\\", "/").split("/") if segment)


class ChangeNormalizer:
    """Normalizes raw changes of one account."""

    def __init__(self, lookup: MetadataLookup, max_path_depth: int = DEFAULT_MAX_PATH_DEPTH):
        self.lookup = lookup
        self.max_path_depth = max_path_depth

    async def normalize(self, item: RawChangeItem, context: CycleContext) -> Optional[ActionRecord]:
        """
        Produce the record for one raw item.

        Returns:
            The record, or None when the item is intentionally dropped

        Raises:
            NormalizationError: If no path can be reconstructed
            CloudSourceError: Provider failures during lookups
        """
        action = self._classify(item)
        if action is None:
            logger.info(
                f"Dropping change of unrecognized type {item.vendor_event_type or item.change_type.value} "
                f"for {item.id} in account {context.account_id}"
            )
            return None

        if action == Action.DELETE and item.is_first_sync:
            logger.info(f"Dropping deletion of {item.id} during first sync of account {context.account_id}")
            return None

        source_id = item.id
        name = item.name
        path_hint = item.path_hint
        parent_refs = list(item.parent_refs)
        source_type = item.kind if item.kind != ItemKind.DELETED else item.deleted_type

        if action == Action.DELETE and source_type is None:
            recovered = await self._recover(item, context)
            if recovered is not None:
                source_type = recovered.source_type
                source_id = recovered.source_id or source_id
                name = name or recovered.name or ""
                path_hint = path_hint or recovered.path
                parent_refs = parent_refs or list(recovered.parent_refs)
            if not (name or path_hint):
                raise UnresolvedDeletionError(
                    f"Deleted item {item.id} has no recoverable name or path, local copy stays", source_id
                )
            if source_type is None:
                logger.info(f"Type of deleted item {item.id} unknown, assuming file")
                source_type = ItemKind.FILE

        source_path = await self._resolve_path(item.id, name, path_hint, parent_refs, context)
        parent_id = await self._resolve_parent_id(item.parent_id_hint, parent_refs, context)

        details: dict[str, Any] = {
            "revision": item.revision,
            "event_type": item.vendor_event_type or item.change_type.value,
            "metadata": dict(item.metadata),
        }
        if action == Action.DELETE:
            details["deletion"] = "remove_children"

        return ActionRecord(
            account_id=context.account_id,
            account_type=context.account_type,
            source_id=source_id,
            source_name=name or source_path.rsplit("/", 1)[-1],
            source_path=source_path,
            parent_id=parent_id,
            source_type=source_type,
            action=action,
            details=details,
            is_initial_sync=item.is_first_sync,
        )

    @staticmethod
    def _classify(item: RawChangeItem) -> Optional[Action]:
        if item.kind == ItemKind.DELETED or item.change_type in DELETION_CHANGE_TYPES:
            return Action.DELETE
        if item.change_type in CONTENT_CHANGE_TYPES:
            # Moves and renames re-materialize at the new path; the old copy stays
            return Action.DOWNLOAD if item.kind == ItemKind.FILE else Action.MAKE_DIRECTORY
        return None

    # ==================== Lookups ====================

    async def _call(self, coro, context: CycleContext):
        """Run a lookup under the cycle deadline."""
        timeout = context.remaining()
        if timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransientProviderError(f"Lookup for account {context.account_id} ran past the cycle deadline") from e

    async def _lookup_parent(self, ref: str, context: CycleContext) -> Optional[ParentRef]:
        if ref not in context.ancestry:
            context.ancestry[ref] = await self._call(self.lookup.lookup_parent(ref), context)
        return context.ancestry[ref]

    async def _recover(self, item: RawChangeItem, context: CycleContext) -> Optional[RecoveredItem]:
        try:
            return await self._call(self.lookup.recover_deleted(item), context)
        except CloudSourceError as e:
            logger.warning(
                f"Could not recover deleted item {item.id} in account {context.account_id}: "
                f"{type(e).__name__}: {e}"
            )
            return None

    # ==================== Paths ====================

    async def _resolve_path(
        self,
        source_id: str,
        name: str,
        path_hint: Optional[str],
        parent_refs: list[str],
        context: CycleContext,
    ) -> str:
        if path_hint:
            path = clean_path(path_hint)
            if not path:
                raise NormalizationError(f"Path hint {path_hint!r} of {source_id} is empty", source_id)
            return path

        if not name:
            raise NormalizationError(f"Item {source_id} has neither path nor name", source_id)

        segments = [name]
        seen: set[str] = set()
        ref = parent_refs[0] if parent_refs else None

        while ref:
            if ref in seen:
                raise NormalizationError(f"Parent cycle at {ref} while walking {source_id}", source_id)
            if len(segments) > self.max_path_depth:
                raise NormalizationError(
                    f"Path of {source_id} deeper than {self.max_path_depth} levels", source_id
                )
            seen.add(ref)

            try:
                parent = await self._lookup_parent(ref, context)
            except ItemNotFoundError as e:
                raise NormalizationError(f"Ancestor {ref} of {source_id} not found: {e}", source_id) from e
            if parent is None:
                break

            segments.append(parent.name)
            ref = parent.parent_refs[0] if parent.parent_refs else None

        path = clean_path("/".join(reversed(segments)))
        if not path:
            raise NormalizationError(f"Reconstructed path of {source_id} is empty", source_id)
        return path

    async def _resolve_parent_id(
        self,
        parent_id_hint: Optional[str],
        parent_refs: list[str],
        context: CycleContext,
    ) -> str:
        if parent_id_hint:
            return parent_id_hint
        if not parent_refs:
            return ROOT_PARENT_ID

        try:
            parent = await self._lookup_parent(parent_refs[0], context)
        except ItemNotFoundError:
            return ROOT_PARENT_ID
        return parent.id if parent is not None else ROOT_PARENT_ID
