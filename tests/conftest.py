"""Pytest configuration and shared fixtures for fedicache tests."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import pytest
from loguru import logger

from fedicache.config import Environment, Settings
from fedicache.models import Filter, FilterContext
from fedicache.types import AccountData, FilterData, StatusData

# =============================================================================
# Test Configuration
# =============================================================================


@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure loguru for tests to avoid I/O errors."""
    logger.remove()
    logger.add(
        sys.stderr,
        level="ERROR",
        format="{time} {level} {message}",
        catch=True,
        enqueue=True,
    )
    yield
    logger.remove()


@pytest.fixture(scope="function", autouse=True)
def reset_loguru():
    """Reset loguru handlers before each test to prevent I/O errors."""
    logger.remove()
    logger.add(
        sys.stderr,
        level="ERROR",
        format="{time} {level} {message}",
        catch=True,
        enqueue=True,
    )
    yield
    logger.remove()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Testing profile: in-memory stores, data dir under tmp_path."""
    return Settings(
        environment=Environment.TESTING,
        data_dir=tmp_path,
        instance_url="https://mastodon.example",
        access_token="test_token_12345678",
    )


@pytest.fixture
def bounded_settings(test_settings: Settings) -> Settings:
    return test_settings.model_copy(update={"use_home_timeline_last_read_id": True, "retention_count": 40})


@pytest.fixture
def unbounded_settings(test_settings: Settings) -> Settings:
    return test_settings.model_copy(update={"use_home_timeline_last_read_id": False})


@pytest.fixture
def temp_store_path(test_settings: Settings) -> Path:
    """Store file location for the identity used in file-backed tests."""
    return test_settings.store_path("identity-1")


# =============================================================================
# Payload Factories
# =============================================================================


def make_account(account_id: str = "1", moved: AccountData | None = None) -> AccountData:
    account: AccountData = {
        "id": account_id,
        "username": f"user{account_id}",
        "acct": f"user{account_id}@mastodon.example",
        "display_name": f"User {account_id}",
    }
    if moved is not None:
        account["moved"] = moved
    return account


def make_status(
    status_id: str,
    account: AccountData | None = None,
    reblog: StatusData | None = None,
    in_reply_to_id: str | None = None,
    content: str = "",
    spoiler_text: str = "",
    sensitive: bool = False,
    poll: dict[str, Any] | None = None,
) -> StatusData:
    status: StatusData = {
        "id": status_id,
        "created_at": "2024-01-15T10:00:00Z",
        "account": account or make_account(),
        "content": content or f"<p>status {status_id}</p>",
        "spoiler_text": spoiler_text,
        "sensitive": sensitive,
        "in_reply_to_id": in_reply_to_id,
        "reblog": reblog,
    }
    if poll is not None:
        status["poll"] = poll
    return status


def make_page(ids: range | list[int]) -> list[StatusData]:
    """Statuses for ``ids``, newest first like a server page."""
    return [make_status(str(i)) for i in sorted(ids, reverse=True)]


def make_filter(
    filter_id: str,
    phrase: str,
    irreversible: bool = False,
    whole_word: bool = True,
    context: list[FilterContext] | None = None,
    expires_at: datetime | None = None,
) -> Filter:
    return Filter(
        id=filter_id,
        phrase=phrase,
        context=context or [FilterContext.HOME, FilterContext.THREAD, FilterContext.NOTIFICATIONS],
        irreversible=irreversible,
        whole_word=whole_word,
        expires_at=expires_at,
    )


@pytest.fixture
def account_factory() -> Callable[..., AccountData]:
    return make_account


@pytest.fixture
def status_factory() -> Callable[..., StatusData]:
    return make_status


@pytest.fixture
def page_factory() -> Callable[..., list[StatusData]]:
    return make_page


@pytest.fixture
def filter_factory() -> Callable[..., Filter]:
    return make_filter


@pytest.fixture
def in_one_hour() -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=1)


@pytest.fixture
def mock_context_payload() -> dict[str, Any]:
    """Context API response around status 200."""
    return {
        "ancestors": [make_status("150"), make_status("180", in_reply_to_id="150")],
        "descendants": [make_status("210", in_reply_to_id="200")],
    }


@pytest.fixture
def mock_filter_payload() -> list[FilterData]:
    """Filters API response."""
    return [
        {
            "id": "1",
            "phrase": "spoilers",
            "context": ["home", "public", "unknown_future_context"],
            "expires_at": None,
            "irreversible": False,
            "whole_word": True,
        },
        {
            "id": "2",
            "phrase": "crypto",
            "context": ["home"],
            "expires_at": "2099-01-01T00:00:00.000Z",
            "irreversible": True,
            "whole_word": False,
        },
    ]


# =============================================================================
# Mock Remote Source
# =============================================================================


@pytest.fixture
def mock_source(mocker):
    """ITimelineSource with every fetch mocked (empty results by default)."""
    source = mocker.MagicMock()
    source.fetch_timeline = mocker.AsyncMock(return_value=[])
    source.fetch_context = mocker.AsyncMock()
    source.fetch_filters = mocker.AsyncMock(return_value=[])
    source.fetch_lists = mocker.AsyncMock(return_value=[])
    source.fetch_instance_filter = mocker.AsyncMock()
    source.close = mocker.AsyncMock()
    return source
