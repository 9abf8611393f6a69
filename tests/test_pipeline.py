"""Tests for the sync pipeline."""

import asyncio

import pytest

from fedicache.content import ContentDatabase
from fedicache.models import Context, Filter, LoadMore, LoadMoreDirection, MastodonList, Status, Timeline
from fedicache.pipeline import SyncPipeline

HOME = Timeline.home()


@pytest.fixture
def statuses(page_factory):
    """Build validated Status pages, newest first."""

    def _statuses(ids) -> list[Status]:
        return [Status.model_validate(payload) for payload in page_factory(ids)]

    return _statuses


class TestRefreshTimeline:
    """Tests for refreshing the newest page."""

    @pytest.mark.asyncio
    async def test_first_refresh(self, test_settings, mock_source, statuses):
        mock_source.fetch_timeline.return_value = statuses(range(1, 11))

        async with await ContentDatabase.open("sync", settings=test_settings) as content:
            pipeline = SyncPipeline(mock_source, content, page_size=10)
            result = await pipeline.refresh_timeline(HOME)

            assert result == {"statuses": 10, "gaps": 0}
            assert pipeline.get_statistics()["timeline_entries"] == 10

        mock_source.fetch_timeline.assert_awaited_once_with(HOME, limit=10)

    @pytest.mark.asyncio
    async def test_disconnected_refresh_reports_gap(self, test_settings, mock_source, statuses):
        async with await ContentDatabase.open("sync", settings=test_settings) as content:
            pipeline = SyncPipeline(mock_source, content, page_size=10)
            mock_source.fetch_timeline.return_value = statuses(range(1, 11))
            await pipeline.refresh_timeline(HOME)

            mock_source.fetch_timeline.return_value = statuses(range(50, 60))
            result = await pipeline.refresh_timeline(HOME)

            assert result == {"statuses": 10, "gaps": 1}

    @pytest.mark.asyncio
    async def test_default_page_size_from_settings(self, test_settings, mock_source):
        async with await ContentDatabase.open("sync", settings=test_settings) as content:
            pipeline = SyncPipeline(mock_source, content)

            assert pipeline.page_size == 40


class TestFillGap:
    """Tests for paging inside a gap."""

    @pytest.mark.asyncio
    async def test_down_pages_from_newer_boundary(self, test_settings, mock_source, statuses):
        gap = LoadMore(timeline_id="home", after_status_id="100", before_status_id="50")

        async with await ContentDatabase.open("sync", settings=test_settings) as content:
            await content.insert_page(HOME, statuses([50]))
            await content.insert_page(HOME, statuses([100]))

            mock_source.fetch_timeline.return_value = statuses(range(70, 100))
            pipeline = SyncPipeline(mock_source, content, page_size=30)
            result = await pipeline.fill_gap(gap, LoadMoreDirection.DOWN)

            assert result == {"statuses": 30, "gaps": 1}
            assert content.statistics()["gaps"] == 1

        mock_source.fetch_timeline.assert_awaited_once_with(HOME, max_id="100", limit=30)

    @pytest.mark.asyncio
    async def test_up_pages_from_older_boundary(self, test_settings, mock_source, statuses):
        gap = LoadMore(timeline_id="home", after_status_id="100", before_status_id="50")

        async with await ContentDatabase.open("sync", settings=test_settings) as content:
            await content.insert_page(HOME, statuses([50]))
            await content.insert_page(HOME, statuses([100]))

            mock_source.fetch_timeline.return_value = statuses(range(51, 101))
            pipeline = SyncPipeline(mock_source, content, page_size=50)
            result = await pipeline.fill_gap(gap, LoadMoreDirection.UP)

            assert result == {"statuses": 50, "gaps": 0}
            assert content.statistics()["gaps"] == 0

        mock_source.fetch_timeline.assert_awaited_once_with(HOME, min_id="50", limit=50)

    @pytest.mark.asyncio
    async def test_unknown_timeline(self, test_settings, mock_source):
        gap = LoadMore(timeline_id="list-404", after_status_id="2", before_status_id="1")

        async with await ContentDatabase.open("sync", settings=test_settings) as content:
            pipeline = SyncPipeline(mock_source, content)

            with pytest.raises(LookupError, match="list-404"):
                await pipeline.fill_gap(gap, LoadMoreDirection.DOWN)

        mock_source.fetch_timeline.assert_not_awaited()


class TestBackfill:
    """Tests for paging through older history."""

    @pytest.mark.asyncio
    async def test_stops_at_end_of_history(self, test_settings, mock_source, statuses):
        mock_source.fetch_timeline.side_effect = [statuses(range(11, 21)), statuses(range(1, 11)), []]

        async with await ContentDatabase.open("sync", settings=test_settings) as content:
            pipeline = SyncPipeline(mock_source, content, page_size=10)
            result = await pipeline.backfill(HOME)

            assert result == {"statuses": 20, "pages": 2}
            assert content.statistics()["gaps"] == 0

        cursors = [call.kwargs["max_id"] for call in mock_source.fetch_timeline.await_args_list]
        assert cursors == [None, "11", "1"]

    @pytest.mark.asyncio
    async def test_respects_max_pages(self, test_settings, mock_source, statuses):
        mock_source.fetch_timeline.side_effect = [statuses(range(91, 101)), statuses(range(81, 91))]

        async with await ContentDatabase.open("sync", settings=test_settings) as content:
            pipeline = SyncPipeline(mock_source, content, page_size=10)
            result = await pipeline.backfill(HOME, max_id="101", max_pages=2)

        assert result == {"statuses": 20, "pages": 2}
        assert mock_source.fetch_timeline.await_count == 2
        assert mock_source.fetch_timeline.await_args_list[0].kwargs["max_id"] == "101"


class TestReferenceData:
    """Tests for threads, filters and lists."""

    @pytest.mark.asyncio
    async def test_refresh_context(self, test_settings, mock_source, mock_context_payload, status_factory):
        mock_source.fetch_context.return_value = Context.model_validate(mock_context_payload)

        async with await ContentDatabase.open("sync", settings=test_settings) as content:
            await content.insert_status(status_factory("200"))
            pipeline = SyncPipeline(mock_source, content)

            result = await pipeline.refresh_context("200")

        assert result == {"ancestors": 2, "descendants": 1}
        mock_source.fetch_context.assert_awaited_once_with("200")

    @pytest.mark.asyncio
    async def test_refresh_filters(self, test_settings, mock_source, mock_filter_payload):
        mock_source.fetch_filters.return_value = [Filter.model_validate(p) for p in mock_filter_payload]

        async with await ContentDatabase.open("sync", settings=test_settings) as content:
            pipeline = SyncPipeline(mock_source, content)

            assert await pipeline.refresh_filters() == 2
            assert content.statistics()["filters"] == 2

    @pytest.mark.asyncio
    async def test_refresh_lists(self, test_settings, mock_source):
        mock_source.fetch_lists.return_value = [
            MastodonList(id="1", title="Friends"),
            MastodonList(id="2", title="Work"),
        ]

        async with await ContentDatabase.open("sync", settings=test_settings) as content:
            pipeline = SyncPipeline(mock_source, content)

            assert await pipeline.refresh_lists() == 2
            assert await content.timeline("list-2") == Timeline.for_list(MastodonList(id="2", title="Work"))


class TestFilterSweeper:
    """Tests for the background purge of expired filters."""

    @pytest.mark.asyncio
    async def test_start_and_close(self, test_settings, mock_source):
        settings = test_settings.model_copy(update={"filter_sweep_interval_seconds": 0.05})

        async with await ContentDatabase.open("sync", settings=settings) as content:
            pipeline = SyncPipeline(mock_source, content)
            pipeline.start_filter_sweeper()
            pipeline.start_filter_sweeper()

            assert pipeline.sweeper.running
            await asyncio.sleep(0.1)

            await pipeline.close()
            assert not pipeline.sweeper.running
