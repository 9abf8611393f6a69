"""fedicache - local content cache for Mastodon-compatible clients.

This package merges paginated timeline data into a per-identity SQLite store
with gap tracking, and exposes deduplicated, filtered, change-reactive views
of it.

Example:
    >>> from fedicache import ContentDatabase, Timeline
    >>> import asyncio
    >>>
    >>> async def main():
    ...     content = await ContentDatabase.open("6f1c...")
    ...     await content.insert_page(Timeline.home(), statuses)
    ...     async with content.observe_timeline(Timeline.home()) as observation:
    ...         print(await observation.next())
    ...     await content.close()
    >>>
    >>> asyncio.run(main())
"""

from fedicache.api import AsyncMastodonClient
from fedicache.bloom import BloomFilter
from fedicache.config import settings
from fedicache.content import ContentDatabase
from fedicache.errors import (
    BloomFilterError,
    DecodingError,
    FediCacheError,
    MalformedBitDataError,
    StoreError,
    UnsupportedHashFunctionError,
)
from fedicache.filters import FilterAction, FilterResult
from fedicache.instances import InstanceURLService
from fedicache.models import (
    Account,
    Context,
    Filter,
    FilterContext,
    LoadMore,
    LoadMoreDirection,
    MarkerTimeline,
    MastodonList,
    Status,
    Timeline,
)
from fedicache.observation import Observation
from fedicache.pipeline import SyncPipeline

__version__ = "0.1.0"

__all__ = [
    # Main components
    "ContentDatabase",
    "SyncPipeline",
    "AsyncMastodonClient",
    "InstanceURLService",
    "BloomFilter",
    "Observation",
    # Configuration
    "settings",
    # Errors
    "FediCacheError",
    "StoreError",
    "DecodingError",
    "BloomFilterError",
    "UnsupportedHashFunctionError",
    "MalformedBitDataError",
    # Models
    "Account",
    "Status",
    "Context",
    "Filter",
    "FilterContext",
    "FilterAction",
    "FilterResult",
    "LoadMore",
    "LoadMoreDirection",
    "MarkerTimeline",
    "MastodonList",
    "Timeline",
]
