"""Utility functions for fedicache.

This module provides common helper functions for datetime handling,
and identifier ordering.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from dateutil import parser as dateutil_parser  # type: ignore[import-untyped]


def parse_datetime(value: str | datetime | None) -> datetime | None:
    """Parse ISO8601 timestamp string into timezone-aware UTC datetime.

    Args:
        value: ISO8601 timestamp string, datetime object, or None

    Returns:
        Parsed timezone-aware datetime in UTC, or None if input is None

    Raises:
        ValueError: If timestamp format is invalid

    Example:
        >>> dt = parse_datetime("2024-01-15T10:30:00Z")
        >>> dt.tzinfo
        datetime.timezone.utc
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    dt = dateutil_parser.isoparse(value)

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)

    return dt.astimezone(UTC)


def utc_now() -> datetime:
    """Get current UTC timestamp as timezone-aware datetime."""
    return datetime.now(UTC)


def format_iso(dt: datetime | None) -> str | None:
    """Format datetime as ISO8601 string with 'Z' suffix.

    Example:
        >>> from datetime import UTC
        >>> format_iso(datetime(2024, 1, 15, 10, 30, tzinfo=UTC))
        '2024-01-15T10:30:00Z'
    """
    if dt is None:
        return None
    return dt.isoformat().replace("+00:00", "Z")


def naive_utc(dt: datetime | None) -> datetime | None:
    """Convert to a naive UTC datetime for storage in SQLite DATETIME columns."""
    if dt is None:
        return None
    aware = parse_datetime(dt)
    return aware.replace(tzinfo=None) if aware else None


# =============================================================================
# Identifier Ordering
# =============================================================================


def id_sort_key(id_value: str) -> tuple[int, str]:
    """Sort key for opaque, monotonically increasing identifiers.

    Servers hand out ids that grow over time but are transported as strings,
    so plain string comparison would put "99" after "100". Comparing by length
    first and then lexicographically yields numeric order for decimal ids and
    stays a total order for any other token format.

    Example:
        >>> sorted(["100", "99", "101"], key=id_sort_key)
        ['99', '100', '101']
    """
    return (len(id_value), id_value)


def id_gt(left: str, right: str) -> bool:
    """Return True if ``left`` is a newer id than ``right``."""
    return id_sort_key(left) > id_sort_key(right)


def id_lt(left: str, right: str) -> bool:
    """Return True if ``left`` is an older id than ``right``."""
    return id_sort_key(left) < id_sort_key(right)


def max_id(ids: Iterable[str]) -> str | None:
    """Newest id of ``ids`` or None when empty."""
    return max(ids, key=id_sort_key, default=None)


def min_id(ids: Iterable[str]) -> str | None:
    """Oldest id of ``ids`` or None when empty."""
    return min(ids, key=id_sort_key, default=None)
