"""
Search Index Notifications

Handlers report successful local mutations here so a downstream search
index can follow the sync folder.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx

from cloudpoll.sync.normalizer import ActionRecord

logger = logging.getLogger(__name__)


class IndexNotifier(ABC):
    """Receives updates after local mutations."""

    @abstractmethod
    async def updated(self, record: ActionRecord, path: Path) -> None:
        pass

    @abstractmethod
    async def deleted(self, record: ActionRecord) -> None:
        pass

    async def close(self) -> None:
        pass


class NullIndexNotifier(IndexNotifier):
    """Used when no index is configured."""

    async def updated(self, record: ActionRecord, path: Path) -> None:
        pass

    async def deleted(self, record: ActionRecord) -> None:
        pass


class IndexUpdateError(Exception):
    """The index rejected an update."""
    pass


class SolrIndexNotifier(IndexNotifier):
    """Posts documents and deletions to a Solr core."""

    def __init__(self, solr_url: str, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.update_url = f"{solr_url.rstrip('/')}/update"
        self.timeout = timeout
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    @staticmethod
    def document_id(record: ActionRecord) -> str:
        return f"{record.account_type.value}-{record.account_id}-{record.source_id}"

    async def _post(self, payload) -> None:
        client = await self._get_client()
        try:
            response = await client.post(self.update_url, params={"commit": "true"}, json=payload)
        except httpx.HTTPError as e:
            raise IndexUpdateError(f"Solr update failed: {e}") from e
        if response.status_code >= 400:
            raise IndexUpdateError(f"Solr returned {response.status_code}: {response.text[:200]}")

    async def updated(self, record: ActionRecord, path: Path) -> None:
        await self._post([{
            "id": self.document_id(record),
            "name": record.source_name,
            "path": record.source_path,
            "parent_id": record.parent_id,
            "account_type": record.account_type.value,
            "account_id": record.account_id,
            "type": record.source_type.value,
        }])
        logger.debug(f"Indexed {record.source_path} for account {record.account_id}")

    async def deleted(self, record: ActionRecord) -> None:
        await self._post({"delete": {"id": self.document_id(record)}})
        logger.debug(f"Removed {record.source_path} of account {record.account_id} from index")

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
