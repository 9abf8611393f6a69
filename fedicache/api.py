"""REST client for Mastodon-compatible instances.

This module provides an async HTTP client with:
- Connection pooling and HTTP/2 multiplexing
- Retry logic with exponential backoff on transient failures
- Rate limit awareness (``X-RateLimit-*`` headers) with adaptive delays
- Payload validation into Pydantic models at the boundary

Example:
    >>> from fedicache.api import AsyncMastodonClient
    >>> from fedicache.models import Timeline
    >>>
    >>> async with AsyncMastodonClient("https://mastodon.social", token) as client:
    ...     statuses = await client.fetch_timeline(Timeline.home(), limit=40)
    ...     print(f"Fetched {len(statuses)} statuses")
"""

import asyncio
import logging
from typing import Any

import httpx
from pydantic import BaseModel, TypeAdapter, ValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)
from tenacity.wait import wait_base

from fedicache.config import settings
from fedicache.errors import DecodingError, TransientAPIError
from fedicache.logging import logger
from fedicache.models import Context, Filter, MastodonList, Status, Timeline, TimelineKind
from fedicache.types import BloomFilterPayload

_STATUSES = TypeAdapter(list[Status])
_FILTERS = TypeAdapter(list[Filter])
_LISTS = TypeAdapter(list[MastodonList])


def timeline_endpoint(timeline: Timeline) -> tuple[str, dict[str, Any]]:
    """API path and fixed query parameters for ``timeline``.

    Example:
        >>> timeline_endpoint(Timeline.local())
        ('/api/v1/timelines/public', {'local': 'true'})
    """
    match timeline.kind:
        case TimelineKind.HOME:
            return "/api/v1/timelines/home", {}
        case TimelineKind.LOCAL:
            return "/api/v1/timelines/public", {"local": "true"}
        case TimelineKind.FEDERATED:
            return "/api/v1/timelines/public", {}
        case TimelineKind.LIST:
            return f"/api/v1/timelines/list/{timeline.list_id}", {}
        case TimelineKind.TAG:
            return f"/api/v1/timelines/tag/{timeline.tag}", {}
        case TimelineKind.PROFILE:
            return f"/api/v1/accounts/{timeline.account_id}/statuses", {}
        case TimelineKind.FAVORITES:
            return "/api/v1/favourites", {}
        case TimelineKind.BOOKMARKS:
            return "/api/v1/bookmarks", {}
    raise ValueError(f"Unsupported timeline kind: {timeline.kind}")


# =============================================================================
# Async Mastodon Client
# =============================================================================


class AsyncMastodonClient:
    """Async HTTP/2 client for the Mastodon REST API.

    Features:
    - HTTP/2 multiplexing for concurrent requests
    - Connection pooling to reuse TCP connections
    - Retry logic with exponential backoff
    - Rate limiting awareness with adaptive delays
    - Structured error handling

    Args:
        instance_url: Base URL of the instance (defaults to settings.instance_url)
        token: OAuth bearer token (defaults to settings.access_token)
        max_concurrency: Maximum concurrent requests
        timeout: Custom httpx timeout configuration
        retry_attempts: Attempts per request before giving up
        retry_wait: Tenacity wait strategy between attempts
        transport: Custom httpx transport (used by tests)

    Example:
        >>> async with AsyncMastodonClient() as client:
        ...     context = await client.fetch_context("109")
    """

    def __init__(
        self,
        instance_url: str | None = None,
        token: str | None = None,
        max_concurrency: int | None = None,
        timeout: httpx.Timeout | None = None,
        retry_attempts: int = 8,
        retry_wait: wait_base | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        base_url = instance_url or settings.instance_url
        if not base_url:
            raise ValueError("An instance URL is required (FEDICACHE_INSTANCE_URL)")
        self.base_url = base_url.rstrip("/")
        self._token = token or settings.access_token
        self._sem = asyncio.Semaphore(max_concurrency or settings.max_concurrency)
        self._retry_attempts = retry_attempts
        self._retry_wait = retry_wait or (
            wait_exponential(multiplier=2, min=1, max=60) + wait_random(0, 1)
        )
        self._transport = transport

        # Rate limit tracking
        self._rate_limit_limit: str | None = None
        self._rate_limit_remaining: str | None = None
        self._rate_limit_reset: str | None = None

        self._limits = httpx.Limits(
            max_connections=20,
            max_keepalive_connections=10,
            keepalive_expiry=30.0,
        )
        self._timeout = timeout or httpx.Timeout(
            timeout=settings.request_timeout,
            connect=10.0,
        )

        self._client: httpx.AsyncClient | None = None
        self._public_client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Lazy initialization of the authenticated client."""
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                limits=self._limits,
                timeout=self._timeout,
                http2=self._transport is None,
                follow_redirects=True,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def _ensure_public_client(self) -> httpx.AsyncClient:
        """Client without credentials, for third-party resources."""
        if self._public_client is None:
            self._public_client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._public_client

    async def __aenter__(self) -> "AsyncMastodonClient":
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close all connections and cleanup resources."""
        for client in (self._client, self._public_client):
            if client is not None:
                await client.aclose()
        self._client = None
        self._public_client = None

    @property
    def rate_limit_remaining(self) -> int | None:
        """Remaining requests in the current window, or None if unknown."""
        if self._rate_limit_remaining:
            try:
                return int(self._rate_limit_remaining)
            except (ValueError, TypeError):
                return None
        return None

    def get_rate_limit_status(self) -> dict[str, Any]:
        return {
            "limit": self._rate_limit_limit,
            "remaining": self._rate_limit_remaining,
            "reset": self._rate_limit_reset,
        }

    # =========================================================================
    # Transport
    # =========================================================================

    async def _do_http_get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        authenticated: bool = True,
    ) -> Any:
        """Perform one GET and decode its JSON body.

        Raises:
            TransientAPIError: For retryable failures (network, 429, 5xx, bad JSON)
            RuntimeError: For permanent HTTP failures
        """
        client = await (self._ensure_client() if authenticated else self._ensure_public_client())
        query = {k: v for k, v in (params or {}).items() if v is not None}

        try:
            resp = await client.get(url, params=query)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            raise TransientAPIError(f"Network/timeout error: {exc}") from exc

        if authenticated:
            self._rate_limit_limit = resp.headers.get("X-RateLimit-Limit")
            self._rate_limit_remaining = resp.headers.get("X-RateLimit-Remaining")
            self._rate_limit_reset = resp.headers.get("X-RateLimit-Reset")

            remaining = self.rate_limit_remaining
            if remaining is not None and remaining < 10:
                logger.warning(
                    f"⚠️ Rate limit low: {remaining}/{self._rate_limit_limit or '?'} remaining "
                    f"(resets at {self._rate_limit_reset or 'unknown'})"
                )

        if resp.status_code == 429 or 500 <= resp.status_code < 600:
            reset_info = f" (resets at {self._rate_limit_reset})" if resp.status_code == 429 else ""
            raise TransientAPIError(f"HTTP {resp.status_code}{reset_info}")

        if resp.status_code != 200:
            logger.error(f"Non-retryable HTTP {resp.status_code}: {resp.text[:200]}")
            raise RuntimeError(f"HTTP {resp.status_code}")

        try:
            return resp.json()
        except ValueError as exc:
            raise TransientAPIError(f"Invalid JSON: {exc}") from exc

    async def _get_with_retry(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        authenticated: bool = True,
    ) -> Any:
        """GET with semaphore and retry logic."""
        # Logging bridge for tenacity
        logging_logger = logging.getLogger(__name__)

        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._retry_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type(TransientAPIError),
            before_sleep=before_sleep_log(logging_logger, logging.WARNING),
        )

        async for attempt in retrying:
            with attempt:
                async with self._sem:
                    remaining = self.rate_limit_remaining
                    if remaining is not None and remaining < 5:
                        await asyncio.sleep(5.0)
                    return await self._do_http_get(url, params, authenticated)

        raise AssertionError("unreachable")  # pragma: no cover

    @staticmethod
    def _decode(adapter: TypeAdapter[Any] | type[BaseModel], payload: Any) -> Any:
        try:
            if isinstance(adapter, TypeAdapter):
                return adapter.validate_python(payload)
            return adapter.model_validate(payload)
        except ValidationError as exc:
            raise DecodingError(f"Malformed API payload: {exc}") from exc

    # =========================================================================
    # Endpoints
    # =========================================================================

    async def fetch_timeline(
        self,
        timeline: Timeline,
        max_id: str | None = None,
        min_id: str | None = None,
        limit: int | None = None,
    ) -> list[Status]:
        """Fetch one page of ``timeline``, newest first.

        Args:
            timeline: Timeline to page through
            max_id: Only statuses older than this id
            min_id: Only statuses immediately newer than this id
            limit: Page size (defaults to settings.page_size)

        Example:
            >>> page = await client.fetch_timeline(Timeline.for_tag("python"), limit=20)
        """
        path, params = timeline_endpoint(timeline)
        params = {**params, "max_id": max_id, "min_id": min_id, "limit": limit or settings.page_size}
        payload = await self._get_with_retry(path, params)
        statuses = self._decode(_STATUSES, payload)
        logger.debug(f"Fetched {len(statuses)} statuses from {timeline.id}")
        return statuses

    async def fetch_context(self, status_id: str) -> Context:
        payload = await self._get_with_retry(f"/api/v1/statuses/{status_id}/context")
        return self._decode(Context, payload)

    async def fetch_filters(self) -> list[Filter]:
        payload = await self._get_with_retry("/api/v1/filters")
        return self._decode(_FILTERS, payload)

    async def fetch_lists(self) -> list[MastodonList]:
        payload = await self._get_with_retry("/api/v1/lists")
        return self._decode(_LISTS, payload)

    async def fetch_instance_filter(self) -> BloomFilterPayload:
        """Fetch the instance denylist; sent without credentials."""
        payload = await self._get_with_retry(settings.instance_filter_url, authenticated=False)
        if not isinstance(payload, dict):
            raise DecodingError("Instance filter payload must be a JSON object")
        return payload  # type: ignore[return-value]


__all__ = ["AsyncMastodonClient", "timeline_endpoint"]
