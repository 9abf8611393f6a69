"""Sync orchestration between a remote source and a content store.

This module drives ingestion:
1. Fetch: pages, contexts, filters and lists from an ``ITimelineSource``
2. Validate: payloads arrive as Pydantic models (or raise DecodingError)
3. Merge: hand each page to ``ContentDatabase`` with its gap context

Features:
- Newest-page refresh with automatic gap detection
- Gap filling from either side of a LoadMore marker
- Backfill of older history with progress tracking
- Periodic purge of expired filters
"""

from typing import Any, Optional

from tqdm.asyncio import tqdm  # type: ignore[import-untyped]

from fedicache.content import ContentDatabase
from fedicache.filters import FilterSweeper
from fedicache.interfaces import ITimelineSource
from fedicache.logging import logger, set_log_context
from fedicache.models import LoadMore, LoadMoreDirection, Timeline
from fedicache.utils import min_id


class SyncPipeline:
    """Moves remote timeline data into one identity's store.

    Example:
        >>> pipeline = SyncPipeline(source=client, content=content)
        >>> await pipeline.refresh_timeline(Timeline.home())
        >>> await pipeline.fill_gap(gap, LoadMoreDirection.DOWN)
    """

    def __init__(
        self,
        source: ITimelineSource,
        content: ContentDatabase,
        page_size: Optional[int] = None,
    ):
        """Initialize sync pipeline.

        Args:
            source: Remote source of pages
            content: Store to merge into
            page_size: Statuses per request (defaults to the store settings)
        """
        self.source = source
        self.content = content
        self.page_size = page_size or content.settings.page_size
        self.sweeper = FilterSweeper(
            content.purge_expired_filters,
            interval=content.settings.filter_sweep_interval_seconds,
        )

    async def close(self) -> None:
        """Stop background work (the store and source stay open)."""
        await self.sweeper.stop()

    # =========================================================================
    # Timelines
    # =========================================================================

    async def refresh_timeline(self, timeline: Timeline) -> dict[str, Any]:
        """Fetch the newest page of ``timeline`` and merge it.

        A page that does not reach back to the stored statuses leaves a gap
        marker behind.

        Returns:
            Statistics with ``statuses`` and ``gaps`` counts
        """
        set_log_context(operation="refresh_timeline")
        statuses = await self.source.fetch_timeline(timeline, limit=self.page_size)
        created = await self.content.insert_page(timeline, statuses)
        logger.info(f"🔄 {timeline.id}: merged {len(statuses)} statuses, {len(created)} new gap(s)")
        return {"statuses": len(statuses), "gaps": len(created)}

    async def fill_gap(self, load_more: LoadMore, direction: LoadMoreDirection) -> dict[str, Any]:
        """Fetch one page inside a gap and merge it with the gap context.

        ``DOWN`` pages older statuses from the gap's newer boundary; ``UP``
        pages newer statuses from its older boundary.
        """
        set_log_context(operation="fill_gap")
        timeline = await self._timeline_for(load_more.timeline_id)

        if direction == LoadMoreDirection.DOWN:
            statuses = await self.source.fetch_timeline(
                timeline, max_id=load_more.after_status_id, limit=self.page_size
            )
        else:
            statuses = await self.source.fetch_timeline(
                timeline, min_id=load_more.before_status_id, limit=self.page_size
            )

        created = await self.content.insert_page(timeline, statuses, load_more, direction)
        logger.info(
            f"🧩 {timeline.id}: filled gap ({load_more.after_status_id}, "
            f"{load_more.before_status_id}) {direction.value} with {len(statuses)} statuses"
        )
        return {"statuses": len(statuses), "gaps": len(created)}

    async def backfill(
        self,
        timeline: Timeline,
        max_id: str | None = None,
        max_pages: Optional[int] = None,
        show_progress: bool = False,
    ) -> dict[str, int]:
        """Page backwards through older history.

        Args:
            timeline: Timeline to page through
            max_id: Start below this id (None starts at the newest page)
            max_pages: Maximum pages to fetch (None for unlimited)
            show_progress: Display a progress bar

        Returns:
            Statistics with ``statuses`` and ``pages`` counts
        """
        stats = {"statuses": 0, "pages": 0}
        cursor = max_id

        with tqdm(desc=f"Backfilling {timeline.id}", unit=" pages", disable=not show_progress) as pbar:
            while max_pages is None or stats["pages"] < max_pages:
                statuses = await self.source.fetch_timeline(timeline, max_id=cursor, limit=self.page_size)
                if not statuses:
                    logger.info(f"✅ {timeline.id}: reached the end of history")
                    break

                await self.content.insert_page(timeline, statuses)
                stats["statuses"] += len(statuses)
                stats["pages"] += 1
                pbar.update(1)

                cursor = min_id(status.id for status in statuses)

        return stats

    async def _timeline_for(self, timeline_id: str) -> Timeline:
        timeline = await self.content.timeline(timeline_id)
        if timeline is None:
            raise LookupError(f"Unknown timeline: {timeline_id}")
        return timeline

    # =========================================================================
    # Threads and Reference Data
    # =========================================================================

    async def refresh_context(self, status_id: str) -> dict[str, int]:
        """Fetch and store the thread around ``status_id``."""
        context = await self.source.fetch_context(status_id)
        await self.content.insert_context(status_id, context)
        return {"ancestors": len(context.ancestors), "descendants": len(context.descendants)}

    async def refresh_filters(self) -> int:
        rules = await self.source.fetch_filters()
        await self.content.set_filters(rules)
        logger.info(f"🔄 Stored {len(rules)} filter(s)")
        return len(rules)

    async def refresh_lists(self) -> int:
        lists = await self.source.fetch_lists()
        await self.content.set_lists(lists)
        logger.info(f"🔄 Stored {len(lists)} list(s)")
        return len(lists)

    def start_filter_sweeper(self) -> None:
        """Start purging expired filters in the background."""
        self.sweeper.start()

    def get_statistics(self) -> dict[str, int]:
        """Row counts of the store."""
        return self.content.statistics()


__all__ = ["SyncPipeline"]
