"""Tests for timeline merging and gap markers."""

import asyncio

import pytest
from sqlmodel import select

from fedicache.content import ContentDatabase
from fedicache.errors import DecodingError
from fedicache.models import (
    AccountRecord,
    LoadMore,
    LoadMoreDirection,
    LoadMoreRecord,
    MastodonList,
    StatusRecord,
    Timeline,
)

HOME = Timeline.home()


def gap_bounds(content: ContentDatabase, timeline: Timeline = HOME) -> list[tuple[str, str]]:
    """Stored (after, before) pairs of ``timeline``."""

    def work(session):
        records = session.exec(select(LoadMoreRecord).where(LoadMoreRecord.timeline_id == timeline.id)).all()
        return sorted((r.after_status_id, r.before_status_id) for r in records)

    return content.db.read(work)


def status_ids(groups) -> list[str]:
    return [item.status.id for group in groups for item in group if item.kind == "status"]


async def seed_gap(content: ContentDatabase, page_factory) -> LoadMore:
    """Leave a (100, 50) marker in the home timeline."""
    await content.insert_page(HOME, page_factory([50]))
    created = await content.insert_page(HOME, page_factory([100]))
    assert created == [LoadMore(timeline_id="home", after_status_id="100", before_status_id="50")]
    return created[0]


# =============================================================================
# Gap Inference
# =============================================================================


class TestGapInference:
    """Tests for markers created by disconnected pages."""

    @pytest.mark.asyncio
    async def test_disconnected_newer_page_creates_gap(self, test_settings, page_factory):
        async with await ContentDatabase.open("gaps", settings=test_settings) as content:
            assert await content.insert_page(HOME, page_factory(range(50, 61))) == []

            created = await content.insert_page(HOME, page_factory(range(90, 101)))

            assert created == [LoadMore(timeline_id="home", after_status_id="90", before_status_id="60")]
            assert gap_bounds(content) == [("90", "60")]

    @pytest.mark.asyncio
    async def test_overlapping_page_creates_no_gap(self, test_settings, page_factory):
        async with await ContentDatabase.open("gaps", settings=test_settings) as content:
            await content.insert_page(HOME, page_factory(range(50, 61)))
            created = await content.insert_page(HOME, page_factory(range(60, 71)))

            assert created == []
            assert gap_bounds(content) == []

    @pytest.mark.asyncio
    async def test_first_page_creates_no_gap(self, test_settings, page_factory):
        async with await ContentDatabase.open("gaps", settings=test_settings) as content:
            assert await content.insert_page(HOME, page_factory(range(1, 41))) == []

    @pytest.mark.asyncio
    async def test_ids_compare_by_length_first(self, test_settings, page_factory):
        """'100' is newer than '99' even though it sorts before it as text."""
        async with await ContentDatabase.open("gaps", settings=test_settings) as content:
            await content.insert_page(HOME, page_factory([98, 99]))
            await content.insert_page(HOME, page_factory([100, 101]))

            assert gap_bounds(content) == [("100", "99")]

    @pytest.mark.asyncio
    async def test_gaps_are_per_timeline(self, test_settings, page_factory):
        local = Timeline.local()
        async with await ContentDatabase.open("gaps", settings=test_settings) as content:
            await content.insert_page(HOME, page_factory([10]))
            await content.insert_page(local, page_factory([20]))
            await content.insert_page(local, page_factory([30]))

            assert gap_bounds(content, HOME) == []
            assert gap_bounds(content, local) == [("30", "20")]


# =============================================================================
# Gap Filling
# =============================================================================


class TestGapFilling:
    """Tests for narrowing and removing markers with explicit gap context."""

    @pytest.mark.asyncio
    async def test_partial_fill_down(self, test_settings, page_factory):
        async with await ContentDatabase.open("fill", settings=test_settings) as content:
            gap = await seed_gap(content, page_factory)

            created = await content.insert_page(HOME, page_factory(range(60, 71)), gap, LoadMoreDirection.DOWN)

            assert created == [LoadMore(timeline_id="home", after_status_id="60", before_status_id="50")]
            assert gap_bounds(content) == [("60", "50")]

    @pytest.mark.asyncio
    async def test_fill_down_reaching_older_boundary_removes_gap(self, test_settings, page_factory):
        async with await ContentDatabase.open("fill", settings=test_settings) as content:
            gap = await seed_gap(content, page_factory)

            await content.insert_page(HOME, page_factory(range(50, 100)), gap, LoadMoreDirection.DOWN)

            assert gap_bounds(content) == []

    @pytest.mark.asyncio
    async def test_fill_down_stopping_above_boundary_keeps_narrow_gap(self, test_settings, page_factory):
        """Ids are opaque: 51 and 50 are not assumed to be adjacent."""
        async with await ContentDatabase.open("fill", settings=test_settings) as content:
            gap = await seed_gap(content, page_factory)

            await content.insert_page(HOME, page_factory(range(51, 100)), gap, LoadMoreDirection.DOWN)

            assert gap_bounds(content) == [("51", "50")]

    @pytest.mark.asyncio
    async def test_partial_fill_up(self, test_settings, page_factory):
        async with await ContentDatabase.open("fill", settings=test_settings) as content:
            gap = await seed_gap(content, page_factory)

            created = await content.insert_page(HOME, page_factory(range(51, 61)), gap, LoadMoreDirection.UP)

            assert created == [LoadMore(timeline_id="home", after_status_id="100", before_status_id="60")]
            assert gap_bounds(content) == [("100", "60")]

    @pytest.mark.asyncio
    async def test_fill_up_reaching_newer_boundary_removes_gap(self, test_settings, page_factory):
        async with await ContentDatabase.open("fill", settings=test_settings) as content:
            gap = await seed_gap(content, page_factory)

            await content.insert_page(HOME, page_factory(range(51, 101)), gap, LoadMoreDirection.UP)

            assert gap_bounds(content) == []

    @pytest.mark.asyncio
    async def test_empty_page_resolves_gap(self, test_settings, page_factory):
        async with await ContentDatabase.open("fill", settings=test_settings) as content:
            gap = await seed_gap(content, page_factory)

            created = await content.insert_page(HOME, [], gap, LoadMoreDirection.DOWN)

            assert created == []
            assert gap_bounds(content) == []


# =============================================================================
# Upserts
# =============================================================================


class TestPageUpserts:
    """Tests for entity upserts performed by a merge."""

    @pytest.mark.asyncio
    async def test_empty_page_only_records_timeline(self, test_settings):
        tag = Timeline.for_tag("#Python")
        async with await ContentDatabase.open("upserts", settings=test_settings) as content:
            await content.insert_page(tag, [])

            stats = content.statistics()
            assert stats["timelines"] == 1
            assert stats["statuses"] == 0
            assert await content.timeline("tag-python") == tag

    @pytest.mark.asyncio
    async def test_list_title_is_recorded(self, test_settings, page_factory):
        timeline = Timeline.for_list(MastodonList(id="42", title="Friends"))
        async with await ContentDatabase.open("upserts", settings=test_settings) as content:
            await content.insert_page(timeline, page_factory([1]))

            stored = await content.timeline("list-42")
            assert stored is not None
            assert stored.list_title == "Friends"

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_page_join_once(self, test_settings, status_factory):
        async with await ContentDatabase.open("upserts", settings=test_settings) as content:
            await content.insert_page(HOME, [status_factory("7"), status_factory("7")])

            assert content.statistics()["timeline_entries"] == 1

    @pytest.mark.asyncio
    async def test_reblog_target_and_moved_account_are_stored(
        self, test_settings, status_factory, account_factory
    ):
        moved_to = account_factory("3")
        target = status_factory("5", account=account_factory("2", moved=moved_to))
        boost = status_factory("9", account=account_factory("1"), reblog=target)

        async with await ContentDatabase.open("upserts", settings=test_settings) as content:
            await content.insert_page(HOME, [boost])

            def work(session):
                return (
                    sorted(session.exec(select(StatusRecord.id)).all()),
                    sorted(session.exec(select(AccountRecord.id)).all()),
                    session.get(AccountRecord, "2").moved_id,
                )

            statuses, accounts, moved_id = content.db.read(work)
            assert statuses == ["5", "9"]
            assert accounts == ["1", "2", "3"]
            assert moved_id == "3"
            # Only the boost itself belongs to the timeline
            assert content.statistics()["timeline_entries"] == 1

    @pytest.mark.asyncio
    async def test_upsert_overwrites_mutable_fields(self, test_settings, status_factory):
        async with await ContentDatabase.open("upserts", settings=test_settings) as content:
            await content.insert_status(status_factory("1", content="<p>before</p>"))
            await content.insert_status(status_factory("1", content="<p>after</p>"))

            record = content.db.read(lambda s: s.get(StatusRecord, "1"))
            assert record.content == "<p>after</p>"
            assert content.statistics()["statuses"] == 1

    @pytest.mark.asyncio
    async def test_malformed_page_writes_nothing(self, test_settings, status_factory):
        bad = {"id": "2", "content": "missing account and created_at"}
        async with await ContentDatabase.open("upserts", settings=test_settings) as content:
            with pytest.raises(DecodingError):
                await content.insert_page(HOME, [status_factory("1"), bad])

            assert content.statistics()["statuses"] == 0
            assert content.statistics()["timelines"] == 0

    @pytest.mark.asyncio
    async def test_update_poll(self, test_settings, status_factory):
        poll = {"id": "p1", "options": [{"title": "yes", "votes_count": 1}], "votes_count": 1}
        async with await ContentDatabase.open("upserts", settings=test_settings) as content:
            await content.insert_page(HOME, [status_factory("1", poll=poll)])

            updated = {**poll, "votes_count": 5, "expired": True}
            assert await content.update_poll("1", updated) is True
            assert await content.update_poll("unknown", updated) is False

            async with content.observe_timeline(HOME) as observation:
                groups = await observation.next(timeout=1)

            status = groups[0][0].status
            assert status.poll is not None
            assert status.poll.votes_count == 5
            assert status.poll.expired is True


# =============================================================================
# Emissions
# =============================================================================


class TestMergeEmissions:
    """Tests for observation behaviour around merges."""

    @pytest.mark.asyncio
    async def test_idempotent_upsert_does_not_emit(self, test_settings, page_factory):
        page = page_factory(range(1, 6))
        async with await ContentDatabase.open("emit", settings=test_settings) as content:
            async with content.observe_timeline(HOME) as observation:
                assert await observation.next(timeout=1) == []

                await content.insert_page(HOME, page)
                groups = await observation.next(timeout=1)
                assert status_ids(groups) == ["5", "4", "3", "2", "1"]

                await content.insert_page(HOME, page)
                await content.registry.drain()

                with pytest.raises(asyncio.TimeoutError):
                    await observation.next(timeout=0.1)

    @pytest.mark.asyncio
    async def test_new_status_emits_once(self, test_settings, page_factory):
        async with await ContentDatabase.open("emit", settings=test_settings) as content:
            await content.insert_page(HOME, page_factory([1]))
            async with content.observe_timeline(HOME) as observation:
                assert status_ids(await observation.next(timeout=1)) == ["1"]

                await content.insert_page(HOME, page_factory([2]))

                assert status_ids(await observation.next(timeout=1)) == ["2", "1"]
