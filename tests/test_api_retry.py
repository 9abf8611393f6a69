"""Tests for the REST client: retries, rate limits and decoding.

This module specifically tests:
- Exponential backoff retry logic with tenacity
- Rate limit header tracking
- Transient vs permanent error handling
- Payload validation at the boundary
"""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest
from tenacity import wait_none

from fedicache.api import AsyncMastodonClient, timeline_endpoint
from fedicache.errors import DecodingError, TransientAPIError
from fedicache.models import MastodonList, Timeline


def make_client(handler, retry_attempts: int = 3) -> AsyncMastodonClient:
    return AsyncMastodonClient(
        instance_url="https://mastodon.example",
        token="test_token",
        retry_attempts=retry_attempts,
        retry_wait=wait_none(),
        transport=httpx.MockTransport(handler),
    )


# =============================================================================
# Retry Logic Tests
# =============================================================================


@pytest.mark.asyncio
async def test_retry_on_network_timeout():
    """Test retry logic triggers on network timeout."""
    client = make_client(lambda request: httpx.Response(200, json=[]))

    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.headers = {}
    mock_response.json.return_value = [{"id": "1", "title": "Friends"}]

    call_count = 0

    async def mock_get(*args, **kwargs):
        nonlocal call_count
        call_count += 1
        if call_count < 3:
            raise httpx.TimeoutException("Connection timeout")
        return mock_response

    mock_client = MagicMock()
    mock_client.get = mock_get

    with patch.object(client, "_ensure_client", return_value=mock_client):
        result = await client.fetch_lists()

    assert result == [MastodonList(id="1", title="Friends")]
    assert call_count == 3


@pytest.mark.asyncio
async def test_retry_on_server_error_then_success(status_factory):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json=[status_factory("2"), status_factory("1")])

    client = make_client(handler)
    statuses = await client.fetch_timeline(Timeline.home(), limit=2)
    await client.close()

    assert [s.id for s in statuses] == ["2", "1"]
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_retry_on_http_429_rate_limit():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls < 3:
            return httpx.Response(429, headers={"X-RateLimit-Reset": "2024-01-15T10:05:00Z"})
        return httpx.Response(200, json=[])

    client = make_client(handler)

    assert await client.fetch_filters() == []
    assert calls == 3
    await client.close()


@pytest.mark.asyncio
async def test_retry_gives_up_after_max_attempts():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(500)

    client = make_client(handler, retry_attempts=4)

    with pytest.raises(TransientAPIError, match="HTTP 500"):
        await client.fetch_lists()
    assert calls == 4
    await client.close()


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(404, text="not found")

    client = make_client(handler)

    with pytest.raises(RuntimeError, match="HTTP 404"):
        await client.fetch_context("1")
    assert calls == 1
    await client.close()


@pytest.mark.asyncio
async def test_invalid_json_is_transient():
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, content=b"<html>")

    client = make_client(handler, retry_attempts=2)

    with pytest.raises(TransientAPIError):
        await client.fetch_lists()
    assert calls == 2
    await client.close()


# =============================================================================
# Requests and Decoding
# =============================================================================


@pytest.mark.asyncio
async def test_timeline_request_parameters():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    client = make_client(handler)
    await client.fetch_timeline(Timeline.local(), max_id="100", limit=20)
    await client.close()

    request = seen[0]
    assert request.url.path == "/api/v1/timelines/public"
    assert request.url.params["local"] == "true"
    assert request.url.params["max_id"] == "100"
    assert request.url.params["limit"] == "20"
    assert "min_id" not in request.url.params
    assert request.headers["Authorization"] == "Bearer test_token"


@pytest.mark.asyncio
async def test_malformed_payload_raises_decoding_error():
    client = make_client(lambda request: httpx.Response(200, json=[{"id": "1"}]))

    with pytest.raises(DecodingError):
        await client.fetch_timeline(Timeline.home())
    await client.close()


@pytest.mark.asyncio
async def test_rate_limit_headers_are_tracked():
    headers = {"X-RateLimit-Limit": "300", "X-RateLimit-Remaining": "42", "X-RateLimit-Reset": "soon"}
    client = make_client(lambda request: httpx.Response(200, json=[], headers=headers))

    await client.fetch_lists()
    await client.close()

    assert client.rate_limit_remaining == 42
    assert client.get_rate_limit_status() == {"limit": "300", "remaining": "42", "reset": "soon"}


@pytest.mark.asyncio
async def test_instance_filter_is_fetched_without_credentials():
    seen: list[httpx.Request] = []
    payload = {"hashes": ["djb232"], "data": "AA=="}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=json.dumps(payload).encode())

    client = make_client(handler)
    result = await client.fetch_instance_filter()
    await client.close()

    assert result == payload
    assert "Authorization" not in seen[0].headers
    assert seen[0].url.host == "filter.metabolist.com"


def test_missing_instance_url(monkeypatch):
    from fedicache.api import settings

    monkeypatch.setattr(settings, "instance_url", None)

    with pytest.raises(ValueError):
        AsyncMastodonClient()


@pytest.mark.parametrize(
    ("timeline", "path"),
    [
        (Timeline.home(), "/api/v1/timelines/home"),
        (Timeline.federated(), "/api/v1/timelines/public"),
        (Timeline.for_list(MastodonList(id="42", title="x")), "/api/v1/timelines/list/42"),
        (Timeline.for_tag("python"), "/api/v1/timelines/tag/python"),
        (Timeline.profile("7"), "/api/v1/accounts/7/statuses"),
    ],
)
def test_timeline_endpoint(timeline, path):
    assert timeline_endpoint(timeline)[0] == path
