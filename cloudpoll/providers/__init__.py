"""
Cloud Storage Providers Package

Transports for the supported cloud storage services. Each one speaks
exactly one change feed shape.

Supported Providers:
- Box (event stream)
- Dropbox (cursor + long poll)
- Google Drive (change list + page tokens)
"""

from cloudpoll.providers.base import (
    AccountType,
    ChangeFeed,
    ChangeType,
    CloudProviderClient,
    FeedPage,
    ItemKind,
    ProviderKind,
    RawChangeItem,
)

__all__ = [
    "AccountType",
    "ChangeFeed",
    "ChangeType",
    "CloudProviderClient",
    "FeedPage",
    "ItemKind",
    "ProviderKind",
    "RawChangeItem",
]
