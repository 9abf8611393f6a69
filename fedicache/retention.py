"""Retention policy applied when a store is opened.

Bounded mode keeps the home timeline around the reading position:

    newest ... [anchor] ... anchor + (count - 1) | deleted ...

where the anchor is the home last-read id (or the newest status when none is
recorded). Everything newer than the anchor is kept, then ``count`` statuses
starting at the anchor. Boost targets of kept statuses survive, as do the
accounts of surviving statuses and the accounts those moved to.

Unbounded mode clears every timeline, status and account.

Notifications, conversations and account lists are always cleared; they are
refetched on demand.
"""

from dataclasses import dataclass

from sqlmodel import Session, col, select

from fedicache.logging import logger
from fedicache.models import (
    AccountListJoin,
    AccountList,
    AccountPinnedStatusJoin,
    AccountRecord,
    ConversationAccountJoin,
    ConversationRecord,
    LastReadIdRecord,
    LoadMoreRecord,
    MarkerTimeline,
    NotificationRecord,
    StatusAncestorJoin,
    StatusDescendantJoin,
    StatusRecord,
    StatusShowAttachmentsToggle,
    StatusShowContentToggle,
    Timeline,
    TimelineRecord,
    TimelineStatusJoin,
)
from fedicache.repository import RepositoryFactory, id_order

DEFAULT_RETENTION_COUNT = 40


@dataclass
class PruneReport:
    """Rows removed by one retention pass."""

    statuses: int = 0
    accounts: int = 0
    timelines: int = 0
    notifications: int = 0


def _status_dependents(session: Session, kept_ids: list[str] | None) -> None:
    """Remove rows pointing at statuses outside ``kept_ids`` (all when None)."""
    repos = RepositoryFactory(session)
    for model in (
        TimelineStatusJoin,
        StatusAncestorJoin,
        StatusDescendantJoin,
        AccountPinnedStatusJoin,
    ):
        status_id = col(model.status_id)
        conditions = [] if kept_ids is None else [status_id.not_in(kept_ids)]
        repos.for_entity(model).delete_where(*conditions)

    for toggle in (StatusShowContentToggle, StatusShowAttachmentsToggle):
        status_id = col(toggle.status_id)
        conditions = [] if kept_ids is None else [status_id.not_in(kept_ids)]
        repos.for_entity(toggle).delete_where(*conditions)


def prune(
    session: Session,
    bounded: bool,
    retention_count: int = DEFAULT_RETENTION_COUNT,
) -> PruneReport:
    """Apply the retention policy inside the caller's transaction.

    Args:
        session: Session of the enclosing write transaction
        bounded: Keep the home timeline window instead of clearing everything
        retention_count: Statuses kept starting at the anchor

    Returns:
        Counts of removed rows
    """
    repos = RepositoryFactory(session)
    report = PruneReport()

    report.notifications = repos.for_entity(NotificationRecord).delete_where()
    repos.for_entity(ConversationAccountJoin).delete_where()
    repos.for_entity(ConversationRecord).delete_where()

    home_id = Timeline.home().id

    if bounded:
        report.timelines = repos.for_entity(TimelineRecord).delete_where(
            col(TimelineRecord.id) != home_id
        )
        repos.for_entity(TimelineStatusJoin).delete_where(col(TimelineStatusJoin.timeline_id) != home_id)
        repos.for_entity(LoadMoreRecord).delete_where(col(LoadMoreRecord.timeline_id) != home_id)

        status_ids = list(session.exec(
            select(TimelineStatusJoin.status_id)
            .where(TimelineStatusJoin.timeline_id == home_id)
            .order_by(*id_order(TimelineStatusJoin.status_id))
        ).all())

        last_read = session.get(LastReadIdRecord, MarkerTimeline.HOME.value)
        anchor = last_read.id if last_read is not None else (status_ids[0] if status_ids else None)
        if anchor is not None and anchor in status_ids:
            status_ids = status_ids[: status_ids.index(anchor) + retention_count]

        reblog_ids = session.exec(
            select(StatusRecord.reblog_id).where(
                col(StatusRecord.id).in_(status_ids),
                col(StatusRecord.reblog_id).is_not(None),
            )
        ).all()
        kept = list({*status_ids, *reblog_ids})

        report.statuses = repos.for_entity(StatusRecord).delete_where(col(StatusRecord.id).not_in(kept))
        _status_dependents(session, kept)

        account_ids = set(session.exec(select(StatusRecord.account_id)).all())
        moved_ids = session.exec(
            select(AccountRecord.moved_id).where(
                col(AccountRecord.id).in_(account_ids),
                col(AccountRecord.moved_id).is_not(None),
            )
        ).all()
        kept_accounts = list(account_ids | set(moved_ids))
        report.accounts = repos.for_entity(AccountRecord).delete_where(
            col(AccountRecord.id).not_in(kept_accounts)
        )
    else:
        report.timelines = repos.for_entity(TimelineRecord).delete_where()
        repos.for_entity(LoadMoreRecord).delete_where()
        report.statuses = repos.for_entity(StatusRecord).delete_where()
        _status_dependents(session, None)
        report.accounts = repos.for_entity(AccountRecord).delete_where()

    repos.for_entity(AccountListJoin).delete_where()
    repos.for_entity(AccountList).delete_where()

    logger.info(
        f"🧹 Retention ({'bounded' if bounded else 'unbounded'}): removed "
        f"{report.statuses} statuses, {report.accounts} accounts, "
        f"{report.timelines} timelines, {report.notifications} notifications"
    )
    return report


__all__ = ["DEFAULT_RETENTION_COUNT", "PruneReport", "prune"]
