"""Unit tests for CLI commands."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import typer
from typer.testing import CliRunner

from fedicache.cli import app, parse_timeline
from fedicache.content import ContentDatabase
from fedicache.models import MarkerTimeline, Timeline, TimelineKind

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep the commands from reconfiguring loguru inside the runner."""
    with patch("fedicache.cli.setup_logging"):
        yield


@pytest.fixture
def cli_settings(test_settings, monkeypatch):
    """File-backed settings installed as the CLI's global settings."""
    settings = test_settings.model_copy(update={"in_memory": False})
    monkeypatch.setattr("fedicache.cli.settings", settings)
    return settings


def seed_store(settings, identity_id, statuses) -> None:
    async def _seed():
        async with await ContentDatabase.open(identity_id, settings=settings) as content:
            await content.insert_page(Timeline.home(), statuses)
            await content.set_last_read_id(MarkerTimeline.HOME, statuses[0]["id"])

    asyncio.run(_seed())


class TestParseTimeline:
    """Tests for timeline arguments."""

    @pytest.mark.parametrize(
        ("text", "timeline_id"),
        [
            ("home", "home"),
            ("local", "local"),
            ("federated", "federated"),
            ("tag:python", "tag-python"),
            ("list:42", "list-42"),
            ("profile:7", "profile-7"),
        ],
    )
    def test_known_forms(self, text, timeline_id):
        assert parse_timeline(text).id == timeline_id

    def test_favorites(self):
        assert parse_timeline("favorites").kind == TimelineKind.FAVORITES

    @pytest.mark.parametrize("text", ["nope", "tag:", "list"])
    def test_unknown_forms(self, text):
        with pytest.raises(typer.BadParameter):
            parse_timeline(text)


class TestCLICommands:
    """Tests for CLI commands."""

    def test_cli_app_exists(self):
        assert isinstance(app, typer.Typer)

    def test_status_command(self, cli_settings, page_factory):
        seed_store(cli_settings, "alice", page_factory(range(1, 6)))

        result = runner.invoke(app, ["status", "alice"])

        assert result.exit_code == 0
        assert "Store Statistics" in result.stdout
        assert "Statuses" in result.stdout
        assert "test_tok" in result.stdout

    def test_status_failure(self, cli_settings):
        with patch("fedicache.cli.ContentDatabase.open", AsyncMock(side_effect=RuntimeError("boom"))):
            result = runner.invoke(app, ["status", "alice"])

        assert result.exit_code == 1
        assert "Status failed: boom" in result.stdout

    def test_prune_command(self, cli_settings, page_factory):
        seed_store(cli_settings, "alice", page_factory(range(1, 6)))

        result = runner.invoke(app, ["prune", "alice", "--unbounded"])

        assert result.exit_code == 0
        assert "Removed" in result.stdout

        async def _count():
            async with await ContentDatabase.open("alice", settings=cli_settings, prune=False) as content:
                return content.statistics()["statuses"]

        assert asyncio.run(_count()) == 0

    def test_delete_identity_with_yes(self, cli_settings, page_factory):
        seed_store(cli_settings, "alice", page_factory([1]))
        assert cli_settings.store_path("alice").exists()

        result = runner.invoke(app, ["delete-identity", "alice", "--yes"])

        assert result.exit_code == 0
        assert not cli_settings.store_path("alice").exists()

    def test_delete_identity_declined(self, cli_settings, page_factory):
        seed_store(cli_settings, "alice", page_factory([1]))

        result = runner.invoke(app, ["delete-identity", "alice"], input="n\n")

        assert result.exit_code == 1
        assert cli_settings.store_path("alice").exists()


class TestCheckInstance:
    """Tests for the check-instance command."""

    def test_allowed_address(self):
        service = MagicMock()
        service.url.return_value = "https://mastodon.example"

        with patch("fedicache.cli.instance_service", return_value=service):
            result = runner.invoke(app, ["check-instance", "mastodon.example"])

        assert result.exit_code == 0
        assert "https://mastodon.example" in result.stdout
        service.update_filter.assert_not_called()

    def test_rejected_address(self):
        service = MagicMock()
        service.url.return_value = None

        with patch("fedicache.cli.instance_service", return_value=service):
            result = runner.invoke(app, ["check-instance", "bad.example"])

        assert result.exit_code == 1
        assert "not an allowed instance address" in result.stdout

    def test_update_failure(self):
        service = MagicMock()
        service.update_filter = AsyncMock(side_effect=ValueError("bad payload"))

        with patch("fedicache.cli.instance_service", return_value=service):
            result = runner.invoke(app, ["check-instance", "mastodon.example", "--update"])

        assert result.exit_code == 1
        assert "Filter update failed" in result.stdout


class TestSyncCommand:
    """Tests for the sync command."""

    def test_sync_with_backfill(self, cli_settings):
        with (
            patch("fedicache.cli.AsyncMastodonClient") as MockClient,
            patch("fedicache.cli.SyncPipeline") as MockPipeline,
        ):
            MockClient.return_value.close = AsyncMock()
            pipeline = MockPipeline.return_value
            pipeline.refresh_filters = AsyncMock(return_value=2)
            pipeline.refresh_timeline = AsyncMock(return_value={"statuses": 40, "gaps": 1})
            pipeline.backfill = AsyncMock(return_value={"statuses": 80, "pages": 2})
            pipeline.close = AsyncMock()

            result = runner.invoke(app, ["sync", "alice", "--timeline", "tag:python", "--pages", "3"])

        assert result.exit_code == 0
        assert "Merged 120 statuses from 3 page(s) (1 new gap(s))" in result.stdout
        pipeline.refresh_filters.assert_awaited_once()
        pipeline.refresh_timeline.assert_awaited_once_with(Timeline.for_tag("python"))
        assert pipeline.backfill.await_args.kwargs["max_pages"] == 2
        MockClient.return_value.close.assert_awaited_once()

    def test_sync_without_filters(self, cli_settings):
        with (
            patch("fedicache.cli.AsyncMastodonClient") as MockClient,
            patch("fedicache.cli.SyncPipeline") as MockPipeline,
        ):
            MockClient.return_value.close = AsyncMock()
            pipeline = MockPipeline.return_value
            pipeline.refresh_filters = AsyncMock()
            pipeline.refresh_timeline = AsyncMock(return_value={"statuses": 5, "gaps": 0})
            pipeline.backfill = AsyncMock()
            pipeline.close = AsyncMock()

            result = runner.invoke(app, ["sync", "alice", "--no-filters"])

        assert result.exit_code == 0
        pipeline.refresh_filters.assert_not_awaited()
        pipeline.backfill.assert_not_awaited()

    def test_sync_failure(self, cli_settings):
        with (
            patch("fedicache.cli.AsyncMastodonClient") as MockClient,
            patch("fedicache.cli.SyncPipeline") as MockPipeline,
        ):
            MockClient.return_value.close = AsyncMock()
            pipeline = MockPipeline.return_value
            pipeline.refresh_filters = AsyncMock(side_effect=RuntimeError("HTTP 401"))

            result = runner.invoke(app, ["sync", "alice"])

        assert result.exit_code == 1
        assert "Sync failed: HTTP 401" in result.stdout

    def test_invalid_timeline(self, cli_settings):
        result = runner.invoke(app, ["sync", "alice", "--timeline", "bogus"])

        assert result.exit_code != 0
