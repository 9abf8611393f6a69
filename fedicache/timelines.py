"""Timeline and thread merge engine.

Every function here takes the session of an open write transaction (see
``DatabaseManager.write``) and never commits, so one call of
``ContentDatabase.insert_page`` lands atomically or not at all.

Gap markers:
    A ``LoadMoreRecord(after, before)`` marks statuses known to be missing
    between ``after`` (the newer boundary) and ``before`` (the older one).
    Markers are created when a freshly fetched page does not reach back to
    what the timeline already held, and narrowed or removed when a fetch made
    from that marker fills part or all of it.

Example:
    >>> db.write(lambda session: merge_page(session, Timeline.home(), statuses))
    >>> db.write(lambda session: merge_page(
    ...     session, Timeline.home(), older, load_more=gap, direction=LoadMoreDirection.DOWN
    ... ))
"""

from collections.abc import Sequence

from sqlmodel import Session, select

from fedicache.logging import logger
from fedicache.models import (
    Account,
    AccountPinnedStatusJoin,
    AccountRecord,
    Conversation,
    ConversationAccountJoin,
    ConversationRecord,
    LoadMore,
    LoadMoreDirection,
    LoadMoreRecord,
    Notification,
    NotificationRecord,
    Poll,
    Status,
    StatusAncestorJoin,
    StatusDescendantJoin,
    StatusRecord,
    Timeline,
    TimelineRecord,
    TimelineStatusJoin,
)
from fedicache.repository import RepositoryFactory, id_order
from fedicache.utils import id_gt, id_lt, max_id, min_id

# =============================================================================
# Entity Upserts
# =============================================================================


def upsert_account(session: Session, account: Account) -> None:
    """Upsert an account and, first, the account it moved to."""
    if account.moved is not None:
        upsert_account(session, account.moved)
    RepositoryFactory(session).for_entity(AccountRecord).upsert(AccountRecord.from_pydantic(account))


def upsert_status(session: Session, status: Status) -> None:
    """Upsert a status with its author, reblog target and the target's author."""
    upsert_account(session, status.account)
    if status.reblog is not None:
        upsert_status(session, status.reblog)
    RepositoryFactory(session).for_entity(StatusRecord).upsert(StatusRecord.from_pydantic(status))


def _unique(statuses: Sequence[Status]) -> list[Status]:
    seen: dict[str, Status] = {}
    for status in statuses:
        seen.setdefault(status.id, status)
    return list(seen.values())


# =============================================================================
# Timeline Merge
# =============================================================================


def newest_status_id(session: Session, timeline_id: str) -> str | None:
    """Largest status id currently joined to ``timeline_id``."""
    stmt = (
        select(TimelineStatusJoin.status_id)
        .where(TimelineStatusJoin.timeline_id == timeline_id)
        .order_by(*id_order(TimelineStatusJoin.status_id))
        .limit(1)
    )
    return session.exec(stmt).first()


def merge_page(
    session: Session,
    timeline: Timeline,
    statuses: Sequence[Status],
    load_more: LoadMore | None = None,
    direction: LoadMoreDirection | None = None,
) -> list[LoadMore]:
    """Merge one fetched page into ``timeline``.

    Steps:
        1. Upsert the timeline record and every status of the page
        2. Join each status to the timeline unless already joined
        3. Infer a gap when the page is entirely newer than what was held
        4. With ``load_more``/``direction``: drop that marker and re-create a
           narrower one if the page did not reach across the whole gap

    Args:
        session: Session of the enclosing write transaction
        timeline: Timeline the page belongs to
        statuses: Page content, in any order
        load_more: Gap marker the page was fetched for, if any
        direction: Side of ``load_more`` the page was fetched from

    Returns:
        Markers created by this merge
    """
    repos = RepositoryFactory(session)
    joins = repos.for_entity(TimelineStatusJoin)
    markers = repos.for_entity(LoadMoreRecord)

    page = _unique(statuses)
    max_present = newest_status_id(session, timeline.id)

    repos.for_entity(TimelineRecord).upsert(TimelineRecord.from_timeline(timeline))

    for status in page:
        upsert_status(session, status)
        joins.insert_if_absent(
            TimelineStatusJoin(timeline_id=timeline.id, status_id=status.id),
            (timeline.id, status.id),
        )

    ids = [status.id for status in page]
    min_inserted = min_id(ids)
    max_inserted = max_id(ids)
    created: list[LoadMore] = []

    if min_inserted is not None and max_present is not None and id_gt(min_inserted, max_present):
        created.append(LoadMore(
            timeline_id=timeline.id,
            after_status_id=min_inserted,
            before_status_id=max_present,
        ))

    if load_more is not None and direction is not None:
        markers.delete_where(
            LoadMoreRecord.timeline_id == load_more.timeline_id,
            LoadMoreRecord.after_status_id == load_more.after_status_id,
            LoadMoreRecord.before_status_id == load_more.before_status_id,
        )

        if direction == LoadMoreDirection.UP:
            if max_inserted is not None and id_lt(max_inserted, load_more.after_status_id):
                created.append(LoadMore(
                    timeline_id=load_more.timeline_id,
                    after_status_id=load_more.after_status_id,
                    before_status_id=max_inserted,
                ))
        elif min_inserted is not None and id_gt(min_inserted, load_more.before_status_id):
            created.append(LoadMore(
                timeline_id=load_more.timeline_id,
                after_status_id=min_inserted,
                before_status_id=load_more.before_status_id,
            ))

    for marker in created:
        markers.upsert(LoadMoreRecord(
            timeline_id=marker.timeline_id,
            after_status_id=marker.after_status_id,
            before_status_id=marker.before_status_id,
        ))

    logger.debug(
        f"Merged {len(page)} statuses into {timeline.id} "
        f"({len(created)} gap marker(s) created)"
    )
    return created


# =============================================================================
# Thread Merge
# =============================================================================


def merge_context(
    session: Session,
    parent_id: str,
    ancestors: Sequence[Status],
    descendants: Sequence[Status],
) -> None:
    """Replace the thread relations of ``parent_id``.

    The fetched context is authoritative: relation rows whose status is not
    in the new ``ancestors``/``descendants`` are removed. Statuses themselves
    stay in the store. ``parent_id`` need not be stored.
    """
    repos = RepositoryFactory(session)

    for relation, page in ((StatusAncestorJoin, ancestors), (StatusDescendantJoin, descendants)):
        rows = repos.for_entity(relation)
        kept: list[str] = []
        for index, status in enumerate(page):
            upsert_status(session, status)
            rows.upsert(relation(parent_id=parent_id, status_id=status.id, index=index))
            kept.append(status.id)

        rows.delete_where(
            relation.parent_id == parent_id,
            relation.status_id.not_in(kept),  # type: ignore[attr-defined]
        )


def merge_pinned_statuses(session: Session, account_id: str, statuses: Sequence[Status]) -> None:
    """Replace the pinned statuses of a profile."""
    rows = RepositoryFactory(session).for_entity(AccountPinnedStatusJoin)
    kept: list[str] = []
    for index, status in enumerate(statuses):
        upsert_status(session, status)
        rows.upsert(AccountPinnedStatusJoin(account_id=account_id, status_id=status.id, index=index))
        kept.append(status.id)

    rows.delete_where(
        AccountPinnedStatusJoin.account_id == account_id,
        AccountPinnedStatusJoin.status_id.not_in(kept),  # type: ignore[attr-defined]
    )


def update_poll(session: Session, status_id: str, poll: Poll) -> bool:
    """Store a refreshed poll on an existing status.

    Returns:
        False when the status is not stored
    """
    record = session.get(StatusRecord, status_id)
    if record is None:
        return False
    record.poll_json = poll.model_dump_json()
    session.add(record)
    return True


# =============================================================================
# Notifications and Conversations
# =============================================================================


def merge_notifications(session: Session, notifications: Sequence[Notification]) -> None:
    repo = RepositoryFactory(session).for_entity(NotificationRecord)
    for notification in notifications:
        upsert_account(session, notification.account)
        if notification.status is not None:
            upsert_status(session, notification.status)
        repo.upsert(NotificationRecord.from_pydantic(notification))


def merge_conversations(session: Session, conversations: Sequence[Conversation]) -> None:
    repos = RepositoryFactory(session)
    records = repos.for_entity(ConversationRecord)
    participants = repos.for_entity(ConversationAccountJoin)

    for conversation in conversations:
        if conversation.last_status is not None:
            upsert_status(session, conversation.last_status)
        records.upsert(ConversationRecord(
            id=conversation.id,
            unread=conversation.unread,
            last_status_id=conversation.last_status.id if conversation.last_status else None,
        ))

        participants.delete_where(ConversationAccountJoin.conversation_id == conversation.id)
        for account in conversation.accounts:
            upsert_account(session, account)
            participants.upsert(ConversationAccountJoin(
                conversation_id=conversation.id,
                account_id=account.id,
            ))


__all__ = [
    "upsert_account",
    "upsert_status",
    "newest_status_id",
    "merge_page",
    "merge_context",
    "merge_pinned_statuses",
    "update_poll",
    "merge_notifications",
    "merge_conversations",
]
