"""
Base Provider Interface and Data Classes

This module defines the abstract interface that every change feed and
provider transport implements, along with the raw change structures the
feeds emit and the provider error taxonomy.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional, Any
import logging

import httpx

logger = logging.getLogger(__name__)

# Positions that mean "this account was never polled"
SENTINEL_POSITIONS = (None, "", "0")


def is_sentinel(position: Optional[str]) -> bool:
    """Return True if the position marks an account that was never polled."""
    return position in SENTINEL_POSITIONS


class AccountType(str, Enum):
    """Supported cloud account types."""
    BOX = "box"
    DROPBOX = "dropbox"
    GOOGLE_DRIVE = "googledrive"


class ProviderKind(str, Enum):
    """Change feed shapes. Every account type speaks exactly one."""
    STREAM = "stream"
    CURSOR = "cursor"
    PAGETOKEN = "pagetoken"


class ItemKind(str, Enum):
    """What a raw change item points at."""
    FILE = "file"
    FOLDER = "folder"
    DELETED = "deleted"


class ChangeType(str, Enum):
    """Canonical change types shared by every feed."""
    UPLOAD = "upload"
    CREATE = "create"
    EDIT = "edit"
    UNDELETE = "undelete"
    COPY = "copy"
    RENAME = "rename"
    MOVE = "move"
    UPSERT = "upsert"  # listing/change-list entries that carry no event type
    TRASH = "trash"
    DELETE = "delete"
    UNKNOWN = "unknown"


CONTENT_CHANGE_TYPES = frozenset({
    ChangeType.UPLOAD,
    ChangeType.CREATE,
    ChangeType.EDIT,
    ChangeType.UNDELETE,
    ChangeType.COPY,
    ChangeType.RENAME,
    ChangeType.MOVE,
    ChangeType.UPSERT,
})

DELETION_CHANGE_TYPES = frozenset({ChangeType.TRASH, ChangeType.DELETE})


@dataclass
class RawChangeItem:
    """A single change as reported by a provider, before normalization."""
    id: str
    name: str
    kind: ItemKind
    change_type: ChangeType = ChangeType.UPSERT

    # Location hints; providers fill whichever they can
    path_hint: Optional[str] = None
    parent_id_hint: Optional[str] = None
    parent_refs: list[str] = field(default_factory=list)

    revision: Optional[str] = None
    is_first_sync: bool = False

    # Type of a deleted item when the provider still reports it
    deleted_type: Optional[ItemKind] = None

    # Original vendor event name (kept for logging dropped events)
    vendor_event_type: Optional[str] = None

    # Provider-specific metadata
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Normalize path separators
        if self.path_hint:
            self.path_hint = self.path_hint.replace("\\", "/")


@dataclass
class FeedPage:
    """One answer from ChangeFeed.poll()."""
    items: list[RawChangeItem] = field(default_factory=list)

    # Explicit position reported by the provider in this page. None means
    # the page carried no committable position.
    new_position: Optional[str] = None

    # Pagination within the same poll cycle
    has_more: bool = False
    continuation: Optional[str] = None

    # Stream feeds answer a first poll with a position only; the caller
    # must drain ChangeFeed.enumerate() instead. Only feeds with
    # enumerates = True may set it.
    requires_enumeration: bool = False


@dataclass
class ParentRef:
    """One hop of an ancestor walk."""
    id: str
    name: str
    parent_refs: list[str] = field(default_factory=list)


@dataclass
class RecoveredItem:
    """Best-effort metadata recovered for a deleted item."""
    source_id: Optional[str] = None
    source_type: Optional[ItemKind] = None
    path: Optional[str] = None
    name: Optional[str] = None
    parent_refs: list[str] = field(default_factory=list)


class MetadataLookup:
    """
    Side lookups the normalizer may need to fill provider gaps.

    The defaults report nothing: providers that supply full paths and
    typed deletions never need to override them.
    """

    async def lookup_parent(self, ref: str) -> Optional[ParentRef]:
        """
        Resolve one parent reference.

        Returns:
            The parent, or None when the reference is the sync root

        Raises:
            ItemNotFoundError: If the reference cannot be resolved
        """
        return None

    async def recover_deleted(self, item: RawChangeItem) -> Optional[RecoveredItem]:
        """Recover id/type/path of a deleted item (e.g. from revision history)."""
        return None


class ChangeFeed(ABC):
    """
    Abstract base class for change feeds.

    A feed turns "what changed since position X" into FeedPages. The poll
    cycle calls poll() until has_more is False and only then commits the
    last explicit position it saw.
    """

    kind: ProviderKind

    # True for feeds that implement enumerate()
    enumerates: bool = False

    def __init__(self, lookup: MetadataLookup, call_timeout: float):
        self.lookup = lookup
        self.call_timeout = call_timeout

    @abstractmethod
    async def poll(self, position: Optional[str], continuation: Optional[str] = None) -> FeedPage:
        """
        Fetch the next page of changes.

        Args:
            position: Last committed position (sentinel on first poll)
            continuation: Opaque value from the previous page of this cycle

        Returns:
            FeedPage with items and the next explicit position if any
        """
        pass

    def enumerate(self) -> AsyncIterator[RawChangeItem]:
        """
        Enumerate the whole tree (first sync of stream feeds).

        Feeds that can ask for enumeration override this and set
        enumerates = True; the poll cycle never calls it otherwise.
        """
        raise NotImplementedError(f"{type(self).__name__} does not enumerate separately")


class CloudProviderClient(MetadataLookup):
    """
    Base class for provider transports.

    Subclasses wrap one vendor HTTP API. They implement the transport
    contract of their feed shape, the metadata lookups, and download().
    """

    account_type: AccountType
    provider_kind: ProviderKind

    def __init__(self, account_id: str, options: dict[str, Any], request_timeout: float = 30.0):
        self.account_id = account_id
        self.options = options
        self.request_timeout = request_timeout
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def access_token(self) -> str:
        token = self.options.get("access_token")
        if not token:
            raise AuthenticationError(f"No access token configured for account {self.account_id}")
        return token

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.request_timeout)
        return self._http_client

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, mapping transport failures to provider errors."""
        client = await self._get_client()
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Request to {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Network error calling {url}: {e}") from e

    @abstractmethod
    def download(self, source_id: str, revision: Optional[str] = None, **hints) -> AsyncIterator[bytes]:
        """
        Download file content as a stream.

        Args:
            source_id: Provider item identifier
            revision: Revision to fetch, when the provider supports it

        Yields:
            File content chunks
        """
        pass

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def parse_json(response: httpx.Response) -> dict:
    """Decode a JSON body or raise MalformedResponseError."""
    try:
        data = response.json()
    except ValueError as e:
        raise MalformedResponseError(f"Invalid JSON from {response.request.url}: {e}") from e
    if not isinstance(data, dict):
        raise MalformedResponseError(f"Unexpected payload from {response.request.url}: {type(data).__name__}")
    return data


def raise_for_provider_status(response: httpx.Response) -> None:
    """Map an HTTP error status to the provider error taxonomy."""
    status = response.status_code
    if status < 400:
        return

    body = response.text[:500]
    lowered = body.lower()

    if status == 401:
        raise AuthenticationError("Access token expired or invalid")
    if status == 403:
        if "quota" in lowered or "ratelimit" in lowered or "rate_limit" in lowered:
            raise QuotaExceededError(f"Quota exceeded: {body}")
        raise PermissionDeniedError(f"Access denied to resource: {body}")
    if status == 404:
        raise ItemNotFoundError("Resource not found")
    if status == 409 and "not_found" in lowered:
        # Dropbox uses 409 for path errors
        raise ItemNotFoundError(f"Path not found: {body}")
    if status == 429:
        retry_after = response.headers.get("Retry-After")
        raise RateLimitError(
            "Rate limit exceeded",
            retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    if status == 507:
        raise QuotaExceededError("Insufficient storage")
    if status >= 500:
        raise TransientProviderError(f"Provider error {status}: {body}")
    raise FatalProviderError(f"API error {status}: {body}")


# ==================== Custom Exceptions ====================

class CloudSourceError(Exception):
    """Base exception for cloud source operations."""
    pass


class TransientProviderError(CloudSourceError):
    """Network failure or timeout. Safe to retry with the same position."""
    pass


class RateLimitError(TransientProviderError):
    """Rate limit exceeded."""
    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class FatalProviderError(CloudSourceError):
    """Provider refused the request. Aborts the cycle without advancing."""
    pass


class AuthenticationError(FatalProviderError):
    """Authentication failed or credentials expired."""
    pass


class PermissionDeniedError(FatalProviderError):
    """Access denied to resource."""
    pass


class QuotaExceededError(FatalProviderError):
    """Storage or API quota exceeded."""
    pass


class MalformedResponseError(FatalProviderError):
    """Provider answered with something we cannot parse."""
    pass


class ItemNotFoundError(CloudSourceError):
    """Requested item not found."""
    pass


class UnsupportedContentError(CloudSourceError):
    """Item exists but has no downloadable content (e.g. Google Forms)."""
    pass
