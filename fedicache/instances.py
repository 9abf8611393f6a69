"""Instance URL validation against the Bloom-encoded denylist.

User-entered instance addresses are normalized to ``https://`` URLs and
rejected when the host, or any parent domain of it, is in the denylist
filter. A bundled default filter is used until an updated one has been
fetched; fetched filters are kept on disk and survive restarts.

Example:
    >>> service = InstanceURLService()
    >>> service.url("mastodon.social")
    'https://mastodon.social'
    >>> await service.update_filter()
"""

import json
from importlib import resources
from pathlib import Path

import httpx

from fedicache.bloom import BloomFilter
from fedicache.config import settings
from fedicache.errors import BloomFilterError, TransientAPIError
from fedicache.interfaces import ITimelineSource
from fedicache.logging import logger

HTTPS_PREFIX = "https://"
SHORTEST_POSSIBLE_URL_LENGTH = 4

_DEFAULT_FILTER: BloomFilter | None = None


def default_filter() -> BloomFilter:
    """The denylist filter shipped with the package."""
    global _DEFAULT_FILTER
    if _DEFAULT_FILTER is None:
        text = resources.files("fedicache").joinpath("default_instance_filter.json").read_text("utf-8")
        _DEFAULT_FILTER = BloomFilter.from_json(text)
    return _DEFAULT_FILTER


def domain_suffixes(host: str) -> list[str]:
    """Right-anchored domain suffixes of ``host``, shortest first.

    Example:
        >>> domain_suffixes("a.b.example")
        ['example', 'b.example', 'a.b.example']
    """
    labels = host.split(".")
    return [".".join(labels[i:]) for i in range(len(labels) - 1, -1, -1)]


class InstanceURLService:
    """Validates instance addresses and keeps the denylist filter current.

    Args:
        source: Network collaborator used to fetch the updated filter
        filter_path: Where a fetched filter is persisted (None keeps it in memory)
    """

    def __init__(self, source: ITimelineSource | None = None, filter_path: Path | None = None):
        self.source = source
        self.filter_path = filter_path
        self._updated: BloomFilter | None = self._load_persisted()

    def _load_persisted(self) -> BloomFilter | None:
        if self.filter_path is None or not self.filter_path.exists():
            return None
        try:
            return BloomFilter.from_json(self.filter_path.read_text("utf-8"))
        except (BloomFilterError, OSError) as exc:
            logger.warning(f"⚠️ Ignoring unreadable stored instance filter: {exc}")
            return None

    @property
    def filter(self) -> BloomFilter:
        """The updated filter when one was fetched, otherwise the bundled one."""
        return self._updated or default_filter()

    def is_filtered(self, url: str) -> bool:
        """True when the URL has no host or any domain suffix of it is denied."""
        try:
            host = httpx.URL(url).host
        except httpx.InvalidURL:
            return True
        if not host:
            return True
        bloom = self.filter
        return any(suffix in bloom for suffix in domain_suffixes(host.lower()))

    def url(self, text: str) -> str | None:
        """Normalize user input into an instance URL.

        Returns:
            The ``https://`` URL, or None when the text is too short, does not
            parse, or names a denied host
        """
        text = text.strip()
        if len(text) < SHORTEST_POSSIBLE_URL_LENGTH:
            return None

        candidate = text if text.startswith(HTTPS_PREFIX) else HTTPS_PREFIX + text
        try:
            parsed = httpx.URL(candidate)
        except httpx.InvalidURL:
            return None
        if not parsed.host or self.is_filtered(candidate):
            return None
        return candidate.rstrip("/")

    async def update_filter(self) -> BloomFilter:
        """Fetch the latest denylist.

        Network and HTTP failures keep the current filter. A payload that was
        fetched but cannot be decoded raises.

        Raises:
            BloomFilterError: If the fetched payload is not a valid filter
        """
        try:
            payload = await self._fetch()
        except (TransientAPIError, RuntimeError, httpx.HTTPError) as exc:
            logger.warning(f"⚠️ Instance filter update failed, keeping current filter: {exc}")
            return self.filter

        updated = BloomFilter.from_dict(payload)
        self._updated = updated
        if self.filter_path is not None:
            self.filter_path.parent.mkdir(parents=True, exist_ok=True)
            self.filter_path.write_text(updated.to_json(), "utf-8")
        logger.info(f"✅ Instance filter updated ({updated.bit_count} bits)")
        return updated

    async def _fetch(self) -> object:
        if self.source is not None:
            return await self.source.fetch_instance_filter()

        async with httpx.AsyncClient(timeout=settings.request_timeout, follow_redirects=True) as client:
            resp = await client.get(settings.instance_filter_url)
            resp.raise_for_status()
            try:
                return resp.json()
            except json.JSONDecodeError as exc:
                raise BloomFilterError(f"Instance filter payload is not JSON: {exc}") from exc


__all__ = [
    "HTTPS_PREFIX",
    "SHORTEST_POSSIBLE_URL_LENGTH",
    "InstanceURLService",
    "default_filter",
    "domain_suffixes",
]
