"""Protocol interfaces for the store's collaborators.

The store never talks to the network or to secret storage directly. It is
handed objects satisfying these protocols, which keeps tests free of real
servers and keychains.

Example:
    >>> from fedicache.interfaces import ITimelineSource
    >>> class StubSource:
    ...     async def fetch_timeline(self, timeline, max_id=None, min_id=None, limit=None):
    ...         return []
    ...     ...
    >>> isinstance(StubSource(), ITimelineSource)  # structural check

References:
    - Python PEP 544: Protocols - https://peps.python.org/pep-0544/
"""

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from fedicache.models import Context, Filter, MastodonList, Status, Timeline
from fedicache.types import BloomFilterPayload


@runtime_checkable
class ITimelineSource(Protocol):
    """Remote source of timeline pages and reference data.

    Implementations handle authentication, retries and rate limiting, and
    return validated payload models.
    """

    async def fetch_timeline(
        self,
        timeline: Timeline,
        max_id: str | None = None,
        min_id: str | None = None,
        limit: int | None = None,
    ) -> list[Status]:
        """Fetch one page of ``timeline``.

        Args:
            timeline: Timeline to page through
            max_id: Return statuses older than this id
            min_id: Return statuses immediately newer than this id
            limit: Page size

        Returns:
            Statuses, newest first

        Raises:
            TransientAPIError: For retryable failures that exhausted retries
            DecodingError: If the payload is malformed
        """
        ...

    async def fetch_context(self, status_id: str) -> Context:
        """Fetch the ancestors and descendants of a status."""
        ...

    async def fetch_filters(self) -> list[Filter]:
        """Fetch the user's content filters."""
        ...

    async def fetch_lists(self) -> list[MastodonList]:
        """Fetch the user's lists."""
        ...

    async def fetch_instance_filter(self) -> BloomFilterPayload:
        """Fetch the Bloom-encoded instance denylist as raw JSON."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...


@runtime_checkable
class IKeyring(Protocol):
    """Secret storage for at-rest store encryption.

    The store never sees key bytes. It asks for a callable that prepares each
    new DB-API connection (for example by issuing ``PRAGMA key`` on a
    SQLCipher build) and applies it before any other statement.
    """

    def connection_preparer(self, identity_id: str) -> Callable[[Any], None] | None:
        """Return the connection hook for ``identity_id`` (None for plaintext)."""
        ...


class PlaintextKeyring:
    """Keyring for unencrypted stores."""

    def connection_preparer(self, identity_id: str) -> Callable[[Any], None] | None:
        return None


__all__ = ["ITimelineSource", "IKeyring", "PlaintextKeyring"]
