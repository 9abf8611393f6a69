"""Change-reactive query subscriptions.

An ``Observation`` wraps an async query and the set of tables it reads. The
``ObservationRegistry`` is told which tables each committed write touched and
re-runs every registered observation that reads one of them. Values are only
delivered when they differ from the previous delivery.

Example:
    >>> async with content.observe_timeline(Timeline.home()) as timeline:
    ...     async for groups in timeline:
    ...         render(groups)
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from typing import Any, Generic, TypeVar

from fedicache.logging import logger
from fedicache.utils import utc_now

T = TypeVar("T")

_UNSET: Any = object()
_CLOSED: Any = object()


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


class Observation(Generic[T]):
    """Async iterator of query results, deduplicated by equality.

    Args:
        registry: Registry that re-runs this observation after writes
        evaluate: Coroutine function producing the current value
        tables: Names of the tables ``evaluate`` reads
        name: Label used in log lines
        refresh_at: Optional function giving the instant (aware UTC) after
            which a value goes stale even without writes, e.g. the next
            filter expiry
    """

    def __init__(
        self,
        registry: "ObservationRegistry",
        evaluate: Callable[[], Awaitable[T]],
        tables: Iterable[str],
        name: str = "observation",
        refresh_at: Callable[[T], datetime | None] | None = None,
    ):
        self.registry = registry
        self.tables = frozenset(tables)
        self.name = name
        self._evaluate = evaluate
        self._refresh_at = refresh_at
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._last: Any = _UNSET
        self._lock = asyncio.Lock()
        self._timer: asyncio.TimerHandle | None = None
        self.closed = False

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    async def refresh(self) -> None:
        """Re-run the query and enqueue the value if it changed."""
        async with self._lock:
            if self.closed:
                return
            try:
                value = await self._evaluate()
            except Exception as exc:
                if self.closed:
                    return
                logger.error(f"❌ {self.name} query failed: {exc}")
                self._queue.put_nowait(_Failure(exc))
                self.close()
                return

            if self.closed:
                return

            self._schedule_timer(value)

            if self._last is not _UNSET and value == self._last:
                return
            self._last = value
            self._queue.put_nowait(value)

    def _schedule_timer(self, value: T) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._refresh_at is None:
            return

        instant = self._refresh_at(value)
        if instant is None:
            return

        # Small margin so the re-run lands after the instant has passed
        delay = max((instant - utc_now()).total_seconds(), 0.0) + 0.005
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self.registry.schedule, self)

    # -------------------------------------------------------------------------
    # Iteration
    # -------------------------------------------------------------------------

    def __aiter__(self) -> "Observation[T]":
        return self

    async def __anext__(self) -> T:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            raise item.error
        return item

    async def next(self, timeout: float | None = None) -> T:
        """Wait for the next distinct value (optionally with a timeout)."""
        return await asyncio.wait_for(self.__anext__(), timeout)

    def close(self) -> None:
        """Stop re-evaluating; pending values are still delivered, then iteration ends."""
        if self.closed:
            return
        self.closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.registry.unregister(self)
        self._queue.put_nowait(_CLOSED)

    async def __aenter__(self) -> "Observation[T]":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()


class ObservationRegistry:
    """Tracks live observations and re-runs them after committed writes."""

    def __init__(self) -> None:
        self._observations: set[Observation[Any]] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._observations)

    def register(self, observation: Observation[T]) -> Observation[T]:
        """Register ``observation`` and schedule its first evaluation."""
        self._observations.add(observation)
        self.schedule(observation)
        return observation

    def unregister(self, observation: Observation[Any]) -> None:
        self._observations.discard(observation)

    def schedule(self, observation: Observation[Any]) -> None:
        if observation.closed:
            return
        task = asyncio.get_running_loop().create_task(observation.refresh())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def notify(self, tables: Iterable[str]) -> int:
        """Schedule every observation reading one of ``tables``.

        Returns:
            Number of observations scheduled
        """
        changed = set(tables)
        if not changed:
            return 0

        affected = [obs for obs in list(self._observations) if obs.tables & changed]
        for observation in affected:
            self.schedule(observation)

        if affected:
            logger.debug(f"Re-evaluating {len(affected)} observation(s) for {sorted(changed)}")
        return len(affected)

    async def drain(self) -> None:
        """Wait until every scheduled evaluation has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close_all(self) -> None:
        for observation in list(self._observations):
            observation.close()


__all__ = ["Observation", "ObservationRegistry"]
