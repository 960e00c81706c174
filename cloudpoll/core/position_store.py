"""
Poll Position Store

Durable map of account id -> last committed poll position. A position is
the opaque provider value (stream position, cursor, start page token)
that later polls resume from. "0" means the account was never polled.
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

INITIAL_POSITION = "0"


class PositionStoreError(Exception):
    """A position could not be read or persisted."""
    pass


class PositionStore(ABC):
    """Abstract position store. One writer per account at a time."""

    @abstractmethod
    async def get(self, account_id: str) -> str:
        """Return the committed position, or "0" when none was committed."""
        pass

    @abstractmethod
    async def commit(self, account_id: str, position: str) -> None:
        """Durably replace the position of an account."""
        pass

    @abstractmethod
    async def reset(self, account_id: str) -> None:
        """Forget the position of an account (back to "0")."""
        pass

    @abstractmethod
    async def all(self) -> dict[str, str]:
        """Return a snapshot of every committed position."""
        pass


class InMemoryPositionStore(PositionStore):
    """Dict-backed store for tests and dry runs."""

    def __init__(self, positions: Optional[dict[str, str]] = None):
        self.positions: dict[str, str] = dict(positions or {})

    async def get(self, account_id: str) -> str:
        return self.positions.get(account_id, INITIAL_POSITION)

    async def commit(self, account_id: str, position: str) -> None:
        self.positions[account_id] = position

    async def reset(self, account_id: str) -> None:
        self.positions[account_id] = INITIAL_POSITION

    async def all(self) -> dict[str, str]:
        return dict(self.positions)


class JsonFilePositionStore(PositionStore):
    """
    Positions kept in a single JSON document.

    Every commit rewrites the document through a temp file in the same
    directory followed by fsync and os.replace, so a crash leaves either
    the old or the new document on disk, never a torn one.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._positions: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._load()

    def _load(self):
        """Load positions from disk."""
        if not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self._positions = {str(k): str(v) for k, v in data.get("positions", {}).items()}
            logger.debug(f"Loaded {len(self._positions)} positions from {self.path}")
        except (OSError, ValueError, AttributeError) as e:
            logger.error(f"Failed to load positions from {self.path}, starting empty: {e}")
            self._positions = {}

    def _write(self, positions: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "positions": positions,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except OSError:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    async def _save(self, positions: dict[str, str]) -> None:
        try:
            self._write(positions)
        except OSError as e:
            raise PositionStoreError(f"Failed to write positions to {self.path}: {e}") from e
        self._positions = positions

    async def get(self, account_id: str) -> str:
        return self._positions.get(account_id, INITIAL_POSITION)

    async def commit(self, account_id: str, position: str) -> None:
        async with self._lock:
            updated = dict(self._positions)
            updated[account_id] = position
            await self._save(updated)
        logger.debug(f"Committed position {position} for account {account_id}")

    async def reset(self, account_id: str) -> None:
        async with self._lock:
            updated = dict(self._positions)
            updated[account_id] = INITIAL_POSITION
            await self._save(updated)

    async def all(self) -> dict[str, str]:
        return dict(self._positions)
