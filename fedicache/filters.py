"""Content filter engine.

Filters are applied when statuses are projected, never by deleting data, so
removing a rule or letting it expire changes what is visible without a
refetch.

Rule priority:
    Irreversible rules (hide) are evaluated before reversible ones (warn);
    within each group rules are ordered by id. The first matching rule
    decides the outcome.
"""

import asyncio
import html
import re
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import datetime
from enum import StrEnum
from functools import lru_cache

from pydantic import BaseModel, ConfigDict
from sqlalchemy import or_
from sqlmodel import Session, select

from fedicache.logging import logger
from fedicache.models import Filter, FilterContext, FilterRecord, Status
from fedicache.utils import id_sort_key, naive_utc, parse_datetime, utc_now

_TAG_RE = re.compile(r"<[^>]+>")
_BREAK_RE = re.compile(r"<br\s*/?>|</p>", re.IGNORECASE)


class FilterAction(StrEnum):
    """Outcome of evaluating filters against one item."""

    HIDDEN = "hidden"
    WARN = "warn"
    VISIBLE = "visible"


class FilterResult(BaseModel):
    """Filter outcome with the rule that produced it (None when visible)."""

    model_config = ConfigDict(frozen=True)

    action: FilterAction
    matched_rule: Filter | None = None


VISIBLE = FilterResult(action=FilterAction.VISIBLE)


# =============================================================================
# Matching
# =============================================================================


def plain_text(content: str) -> str:
    """Strip HTML markup from status content."""
    return html.unescape(_TAG_RE.sub("", _BREAK_RE.sub("\n", content)))


@lru_cache(maxsize=512)
def _pattern(phrase: str, whole_word: bool) -> re.Pattern[str]:
    escaped = re.escape(phrase)
    if whole_word:
        if re.match(r"\w", phrase):
            escaped = r"\b" + escaped
        if re.search(r"\w$", phrase):
            escaped = escaped + r"\b"
    return re.compile(escaped, re.IGNORECASE)


def rule_matches(rule: Filter, text: str) -> bool:
    """Check one rule's phrase against ``text`` (case-insensitive)."""
    if not rule.phrase:
        return False
    return _pattern(rule.phrase, rule.whole_word).search(text) is not None


def searchable_text(status: Status) -> str:
    """Text a filter phrase is matched against: warning, body and poll options."""
    parts = [status.spoiler_text, plain_text(status.content)]
    if status.poll is not None:
        parts.extend(option.title for option in status.poll.options)
    parts.extend(a.description for a in status.media_attachments if a.description)
    return "\n".join(part for part in parts if part)


def prioritized(rules: Iterable[Filter]) -> list[Filter]:
    """Order rules for evaluation: hide before warn, then by id."""
    return sorted(rules, key=lambda rule: (not rule.irreversible, id_sort_key(rule.id)))


def apply(
    rules: Sequence[Filter],
    status: Status,
    context: FilterContext | None,
    now: datetime | None = None,
) -> FilterResult:
    """Evaluate ``rules`` against the displayed content of ``status``.

    Args:
        rules: Candidate rules (expired rules are ignored)
        status: Status to check; boosts are checked by their target
        context: Context the status is shown in; None disables filtering
        now: Evaluation instant (defaults to the current time)

    Returns:
        HIDDEN or WARN with the first matching rule, otherwise VISIBLE

    Example:
        >>> result = apply(rules, status, FilterContext.HOME)
        >>> result.action
        <FilterAction.WARN: 'warn'>
    """
    if context is None or not rules:
        return VISIBLE

    now = now or utc_now()
    displayed = status.reblog or status
    text = searchable_text(displayed)

    for rule in prioritized(rules):
        if context not in rule.context or not is_active(rule, now):
            continue
        if rule_matches(rule, text):
            action = FilterAction.HIDDEN if rule.irreversible else FilterAction.WARN
            return FilterResult(action=action, matched_rule=rule)

    return VISIBLE


# =============================================================================
# Expiry
# =============================================================================


def is_active(rule: Filter, now: datetime | None = None) -> bool:
    """A rule is active when it never expires or expires strictly after ``now``."""
    if rule.expires_at is None:
        return True
    return parse_datetime(rule.expires_at) > (now or utc_now())  # type: ignore[operator]


def next_expiry(rules: Iterable[Filter]) -> datetime | None:
    """Earliest expiry instant among ``rules`` (None if none expire)."""
    instants = [parse_datetime(rule.expires_at) for rule in rules if rule.expires_at is not None]
    return min(instants, default=None)  # type: ignore[type-var]


def query_active_filters(session: Session, now: datetime | None = None) -> list[Filter]:
    """Load active rules, ordered by evaluation priority."""
    cutoff = naive_utc(now or utc_now())
    stmt = select(FilterRecord).where(
        or_(FilterRecord.expires_at.is_(None), FilterRecord.expires_at > cutoff)  # type: ignore[union-attr]
    )
    return prioritized(record.to_pydantic() for record in session.exec(stmt).all())


def query_expired_filters(session: Session, now: datetime | None = None) -> list[Filter]:
    """Load rules that have expired but are still stored."""
    cutoff = naive_utc(now or utc_now())
    stmt = select(FilterRecord).where(
        FilterRecord.expires_at.is_not(None),  # type: ignore[union-attr]
        FilterRecord.expires_at <= cutoff,  # type: ignore[operator]
    )
    return prioritized(record.to_pydantic() for record in session.exec(stmt).all())


def rules_for_context(rules: Iterable[Filter], context: FilterContext | None) -> list[Filter]:
    if context is None:
        return []
    return [rule for rule in rules if context in rule.context]


# =============================================================================
# Background Sweep
# =============================================================================


class FilterSweeper:
    """Periodically purges expired rules from storage.

    Args:
        purge: Coroutine function deleting expired rules, returning the count
        interval: Seconds between sweeps

    Example:
        >>> sweeper = FilterSweeper(content.purge_expired_filters, interval=60)
        >>> sweeper.start()
        >>> ...
        >>> await sweeper.stop()
    """

    def __init__(self, purge: Callable[[], Awaitable[int]], interval: float = 60.0):
        self.purge = purge
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> int:
        """Run one purge pass."""
        purged = await self.purge()
        if purged:
            logger.info(f"🧹 Purged {purged} expired filter(s)")
        return purged

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception as exc:
                # A failed pass is retried on the next tick
                logger.warning(f"⚠️ Filter sweep failed: {exc}")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


__all__ = [
    "FilterAction",
    "FilterResult",
    "FilterSweeper",
    "VISIBLE",
    "apply",
    "is_active",
    "next_expiry",
    "plain_text",
    "prioritized",
    "query_active_filters",
    "query_expired_filters",
    "rule_matches",
    "rules_for_context",
    "searchable_text",
]
