"""
Provider Factory and Registry

Central registry for provider transports and change feed shapes.
Handles instantiation of the transport for an account and of the feed
that matches its poll shape.
"""

import logging
from typing import Any, Optional, Type

from cloudpoll.providers.base import (
    AccountType,
    ChangeFeed,
    CloudProviderClient,
    ProviderKind,
)

logger = logging.getLogger(__name__)

# Maps account types to transport classes
_provider_registry: dict[AccountType, Type[CloudProviderClient]] = {}

# Maps poll shapes to feed classes
_feed_registry: dict[ProviderKind, Type[ChangeFeed]] = {}


def register_provider(account_type: AccountType):
    """
    Decorator to register a provider transport.

    Usage:
        @register_provider(AccountType.DROPBOX)
        class DropboxClient(CloudProviderClient, CursorTransport):
            ...
    """
    def decorator(cls: Type[CloudProviderClient]):
        _provider_registry[account_type] = cls
        logger.debug(f"Registered provider: {account_type.value} -> {cls.__name__}")
        return cls
    return decorator


def register_feed(kind: ProviderKind):
    """Decorator to register the feed implementation of a poll shape."""
    def decorator(cls: Type[ChangeFeed]):
        cls.kind = kind
        _feed_registry[kind] = cls
        logger.debug(f"Registered feed: {kind.value} -> {cls.__name__}")
        return cls
    return decorator


def get_provider_class(account_type: AccountType) -> Optional[Type[CloudProviderClient]]:
    """Get the transport class for a given account type."""
    _load_providers()
    return _provider_registry.get(account_type)


def get_feed_class(kind: ProviderKind) -> Optional[Type[ChangeFeed]]:
    """Get the feed class for a given poll shape."""
    _load_providers()
    return _feed_registry.get(kind)


def create_client(
    account_type: AccountType,
    account_id: str,
    options: dict[str, Any],
    request_timeout: float = 30.0,
) -> CloudProviderClient:
    """
    Create a provider transport.

    Args:
        account_type: The type of account
        account_id: Account identifier within the project
        options: Account configuration (tokens, root folder, ...)
        request_timeout: Timeout for ordinary API calls

    Raises:
        ValueError: If the account type is not registered
    """
    cls = get_provider_class(account_type)
    if not cls:
        raise ValueError(f"No provider registered for type: {account_type}")
    return cls(account_id, options, request_timeout=request_timeout)


def create_feed(client: CloudProviderClient, settings) -> ChangeFeed:
    """
    Create the change feed matching a transport's poll shape.

    Raises:
        ValueError: If no feed is registered for the shape
    """
    cls = get_feed_class(client.provider_kind)
    if not cls:
        raise ValueError(f"No feed registered for kind: {client.provider_kind}")
    return cls.from_settings(client, settings)


def list_registered_providers() -> list[AccountType]:
    """List all registered account types."""
    _load_providers()
    return list(_provider_registry.keys())


_loaded = False


def _load_providers():
    """Import feed and provider modules so their decorators run."""
    global _loaded
    if _loaded:
        return
    _loaded = True

    from cloudpoll.feeds import event_stream, cursor_longpoll, page_token  # noqa: F401
    from cloudpoll.providers import box, dropbox_provider, google_drive  # noqa: F401

    logger.debug(
        f"Loaded providers {[t.value for t in _provider_registry]} "
        f"and feeds {[k.value for k in _feed_registry]}"
    )
