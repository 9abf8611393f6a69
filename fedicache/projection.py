"""Read-side projection of the store into display items.

Loaders in this module run inside a read session and rebuild Pydantic
payload models from stored records; builders are pure functions that turn
those models into grouped display items.

Display items form a tagged union discriminated by ``kind``. Consumers should
dispatch on ``item.kind``:

    >>> for group in groups:
    ...     for item in group:
    ...         match item.kind:
    ...             case "status": render_status(item)
    ...             case "load_more": render_gap(item.load_more)
"""

import json
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session, col, select

from fedicache import filters
from fedicache.models import (
    Account,
    AccountListJoin,
    AccountPinnedStatusJoin,
    AccountRecord,
    Attachment,
    Conversation,
    ConversationAccountJoin,
    ConversationRecord,
    Filter,
    FilterContext,
    LoadMore,
    LoadMoreRecord,
    MastodonList,
    Notification,
    NotificationRecord,
    Poll,
    Status,
    StatusAncestorJoin,
    StatusDescendantJoin,
    StatusRecord,
    StatusShowAttachmentsToggle,
    StatusShowContentToggle,
    Timeline,
    TimelineKind,
    TimelineRecord,
    TimelineStatusJoin,
)
from fedicache.repository import id_order
from fedicache.utils import id_gt, id_sort_key, utc_now

# =============================================================================
# Display Items
# =============================================================================


class StatusItem(BaseModel):
    """A status ready for display.

    Attributes:
        status: The status as stored (a boost carries its target in ``reblog``)
        show_content: Whether the body is shown (content warnings hide it by default)
        show_attachments: Whether media is shown (sensitive media is hidden by default)
        pinned: Shown in a profile's pinned section
        filter_warning: Reversible rule that matched, shown as a warning
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["status"] = "status"
    status: Status
    show_content: bool = True
    show_attachments: bool = True
    pinned: bool = False
    filter_warning: Filter | None = None

    @property
    def displayed(self) -> Status:
        """Status whose content is shown: the boost target or the status itself."""
        return self.status.reblog or self.status


class LoadMoreItem(BaseModel):
    """Placeholder for a gap the consumer can ask to fill."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["load_more"] = "load_more"
    load_more: LoadMore


class NotificationItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["notification"] = "notification"
    notification: Notification
    filter_warning: Filter | None = None


class AccountItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["account"] = "account"
    account: Account


class ConversationItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["conversation"] = "conversation"
    conversation: Conversation


DisplayItem = Annotated[
    StatusItem | LoadMoreItem | NotificationItem | AccountItem | ConversationItem,
    Field(discriminator="kind"),
]


@dataclass
class Toggles:
    """Status ids whose content/attachment visibility was toggled."""

    content: set[str] = field(default_factory=set)
    attachments: set[str] = field(default_factory=set)


# =============================================================================
# Record Loading
# =============================================================================


def _account_records(session: Session, ids: Iterable[str]) -> dict[str, AccountRecord]:
    """Load accounts and, transitively, the accounts they moved to."""
    records: dict[str, AccountRecord] = {}
    pending = set(ids)
    while pending:
        rows = session.exec(select(AccountRecord).where(col(AccountRecord.id).in_(pending))).all()
        for row in rows:
            records[row.id] = row
        pending = {row.moved_id for row in rows if row.moved_id and row.moved_id not in records}
    return records


def _account(record: AccountRecord, records: dict[str, AccountRecord], seen: frozenset[str] = frozenset()) -> Account:
    moved = None
    if record.moved_id and record.moved_id in records and record.moved_id not in seen:
        moved = _account(records[record.moved_id], records, seen | {record.id})
    return Account(
        id=record.id,
        username=record.username,
        acct=record.acct,
        display_name=record.display_name,
        url=record.url,
        avatar=record.avatar,
        moved=moved,
    )


def load_accounts(session: Session, ids: Sequence[str]) -> dict[str, Account]:
    records = _account_records(session, ids)
    return {account_id: _account(records[account_id], records) for account_id in ids if account_id in records}


def _status(
    record: StatusRecord,
    accounts: dict[str, Account],
    reblogs: dict[str, Status],
) -> Status | None:
    account = accounts.get(record.account_id)
    if account is None:
        return None

    reblog = None
    if record.reblog_id is not None:
        reblog = reblogs.get(record.reblog_id)
        if reblog is None:
            return None

    return Status(
        id=record.id,
        created_at=record.created_at,
        account=account,
        content=record.content,
        spoiler_text=record.spoiler_text,
        sensitive=record.sensitive,
        visibility=record.visibility,
        url=record.url,
        in_reply_to_id=record.in_reply_to_id,
        reblog=reblog,
        media_attachments=[Attachment.model_validate(a) for a in json.loads(record.media_json)],
        poll=Poll.model_validate_json(record.poll_json) if record.poll_json else None,
        replies_count=record.replies_count,
        reblogs_count=record.reblogs_count,
        favourites_count=record.favourites_count,
    )


def assemble_statuses(session: Session, records: Sequence[StatusRecord]) -> list[Status]:
    """Rebuild ``Status`` models (author, boost target) in ``records`` order.

    Records whose author or boost target is missing are skipped.
    """
    reblog_ids = {r.reblog_id for r in records if r.reblog_id}
    reblog_records = (
        session.exec(select(StatusRecord).where(col(StatusRecord.id).in_(reblog_ids))).all()
        if reblog_ids
        else []
    )

    account_ids = {r.account_id for r in records} | {r.account_id for r in reblog_records}
    account_models = load_accounts(session, sorted(account_ids))

    reblogs: dict[str, Status] = {}
    for record in reblog_records:
        status = _status(record, account_models, {})
        if status is not None:
            reblogs[record.id] = status

    statuses = []
    for record in records:
        status = _status(record, account_models, reblogs)
        if status is not None:
            statuses.append(status)
    return statuses


def load_statuses(session: Session, ids: Sequence[str]) -> list[Status]:
    """Load statuses by id, keeping the order of ``ids``."""
    if not ids:
        return []
    rows = session.exec(select(StatusRecord).where(col(StatusRecord.id).in_(ids))).all()
    by_id = {row.id: row for row in rows}
    return assemble_statuses(session, [by_id[i] for i in ids if i in by_id])


def load_toggles(session: Session, statuses: Iterable[Status]) -> Toggles:
    ids = {(s.reblog or s).id for s in statuses}
    if not ids:
        return Toggles()
    content = session.exec(
        select(StatusShowContentToggle.status_id).where(col(StatusShowContentToggle.status_id).in_(ids))
    ).all()
    attachments = session.exec(
        select(StatusShowAttachmentsToggle.status_id).where(col(StatusShowAttachmentsToggle.status_id).in_(ids))
    ).all()
    return Toggles(content=set(content), attachments=set(attachments))


# =============================================================================
# Builders
# =============================================================================


def status_item(
    status: Status,
    toggles: Toggles,
    rules: Sequence[Filter],
    context: FilterContext | None,
    now: datetime,
    pinned: bool = False,
) -> StatusItem | None:
    """Build the display item for ``status`` (None when a filter hides it)."""
    result = filters.apply(rules, status, context, now)
    if result.action == filters.FilterAction.HIDDEN:
        return None

    displayed = status.reblog or status
    return StatusItem(
        status=status,
        show_content=not displayed.spoiler_text or displayed.id in toggles.content,
        show_attachments=not displayed.sensitive or displayed.id in toggles.attachments,
        pinned=pinned,
        filter_warning=result.matched_rule if result.action == filters.FilterAction.WARN else None,
    )


def _continues_thread(previous: StatusItem, current: StatusItem) -> bool:
    newer, older = previous.displayed, current.displayed
    return newer.in_reply_to_id == older.id or older.in_reply_to_id == newer.id


def group_items(items: Sequence[StatusItem | LoadMoreItem]) -> list[list[DisplayItem]]:
    """Group adjacent statuses that belong to one reply run.

    Gap placeholders always stand alone.
    """
    groups: list[list[DisplayItem]] = []
    for item in items:
        if item.kind == "status" and groups:
            last = groups[-1][-1]
            if last.kind == "status" and _continues_thread(last, item):  # type: ignore[arg-type]
                groups[-1].append(item)
                continue
        groups.append([item])
    return groups


def build_timeline_groups(
    statuses: Sequence[Status],
    markers: Sequence[LoadMore],
    toggles: Toggles,
    rules: Sequence[Filter],
    context: FilterContext | None,
    now: datetime | None = None,
    pinned: Sequence[Status] = (),
) -> list[list[DisplayItem]]:
    """Turn newest-first ``statuses`` and gap ``markers`` into display groups.

    - A status whose displayed content (boost target or itself) already
      appeared earlier is dropped, folding an original into a preceding boost
    - A marker is placed right after the statuses at or above its newer boundary
    - Hidden statuses are removed, warned statuses carry the matching rule
    - Pinned statuses, when given, form a leading group of their own
    """
    now = now or utc_now()
    pending = sorted(markers, key=lambda m: id_sort_key(m.after_status_id), reverse=True)
    items: list[StatusItem | LoadMoreItem] = []
    seen: set[str] = set()

    for status in statuses:
        while pending and id_gt(pending[0].after_status_id, status.id):
            items.append(LoadMoreItem(load_more=pending.pop(0)))

        displayed_id = (status.reblog or status).id
        if displayed_id in seen:
            continue
        seen.add(displayed_id)

        item = status_item(status, toggles, rules, context, now)
        if item is not None:
            items.append(item)

    items.extend(LoadMoreItem(load_more=marker) for marker in pending)

    groups = group_items(items)

    pinned_items = [
        item
        for item in (status_item(s, toggles, rules, context, now, pinned=True) for s in pinned)
        if item is not None
    ]
    if pinned_items:
        groups.insert(0, list(pinned_items))
    return groups


def build_context_sections(
    ancestors: Sequence[Status],
    parent: Status | None,
    descendants: Sequence[Status],
    toggles: Toggles,
    rules: Sequence[Filter],
    now: datetime | None = None,
) -> list[list[DisplayItem]]:
    """Three sections: ancestors, the parent, descendants.

    Thread filters apply to ancestors and descendants; the parent the user
    opened is always shown.
    """
    now = now or utc_now()
    context = FilterContext.THREAD

    def section(statuses: Sequence[Status]) -> list[DisplayItem]:
        built = (status_item(s, toggles, rules, context, now) for s in statuses)
        return [item for item in built if item is not None]

    parent_section: list[DisplayItem] = []
    if parent is not None:
        parent_item = status_item(parent, toggles, [], None, now)
        if parent_item is not None:
            parent_section.append(parent_item)

    return [section(ancestors), parent_section, section(descendants)]


# =============================================================================
# Queries
# =============================================================================


TIMELINE_TABLES = frozenset({
    "statusrecord",
    "accountrecord",
    "timelinerecord",
    "timelinestatusjoin",
    "loadmorerecord",
    "accountpinnedstatusjoin",
    "statusshowcontenttoggle",
    "statusshowattachmentstoggle",
    "filterrecord",
})

CONTEXT_TABLES = frozenset({
    "statusrecord",
    "accountrecord",
    "statusancestorjoin",
    "statusdescendantjoin",
    "statusshowcontenttoggle",
    "statusshowattachmentstoggle",
    "filterrecord",
})


def timeline_groups(
    session: Session,
    timeline: Timeline,
    now: datetime | None = None,
) -> tuple[list[list[DisplayItem]], datetime | None]:
    """Project ``timeline``.

    Returns:
        The display groups and the next instant a filter affecting them expires
    """
    now = now or utc_now()
    records = session.exec(
        select(StatusRecord)
        .join(TimelineStatusJoin, col(TimelineStatusJoin.status_id) == col(StatusRecord.id))
        .where(TimelineStatusJoin.timeline_id == timeline.id)
        .order_by(*id_order(StatusRecord.id))
    ).all()
    statuses = assemble_statuses(session, records)

    markers = [
        record.to_pydantic()
        for record in session.exec(
            select(LoadMoreRecord).where(LoadMoreRecord.timeline_id == timeline.id)
        ).all()
    ]

    pinned: list[Status] = []
    if timeline.kind == TimelineKind.PROFILE and timeline.account_id:
        pinned_ids = session.exec(
            select(AccountPinnedStatusJoin.status_id)
            .where(AccountPinnedStatusJoin.account_id == timeline.account_id)
            .order_by(col(AccountPinnedStatusJoin.index))
        ).all()
        pinned = load_statuses(session, list(pinned_ids))

    rules = filters.rules_for_context(filters.query_active_filters(session, now), timeline.filter_context)
    toggles = load_toggles(session, [*statuses, *pinned])

    groups = build_timeline_groups(statuses, markers, toggles, rules, timeline.filter_context, now, pinned)
    return groups, filters.next_expiry(rules)


def context_sections(
    session: Session,
    parent_id: str,
    now: datetime | None = None,
) -> tuple[list[list[DisplayItem]], datetime | None]:
    """Project the thread around ``parent_id``."""
    now = now or utc_now()

    def related(relation: type[StatusAncestorJoin] | type[StatusDescendantJoin]) -> list[Status]:
        ids = session.exec(
            select(relation.status_id)
            .where(relation.parent_id == parent_id)
            .order_by(col(relation.index))
        ).all()
        return load_statuses(session, list(ids))

    ancestors = related(StatusAncestorJoin)
    descendants = related(StatusDescendantJoin)
    parent_list = load_statuses(session, [parent_id])
    parent = parent_list[0] if parent_list else None

    rules = filters.rules_for_context(filters.query_active_filters(session, now), FilterContext.THREAD)
    toggles = load_toggles(session, [*ancestors, *descendants, *parent_list])

    sections = build_context_sections(ancestors, parent, descendants, toggles, rules, now)
    return sections, filters.next_expiry(rules)


def list_timelines(session: Session) -> list[MastodonList]:
    """Stored lists, ordered by title."""
    records = session.exec(
        select(TimelineRecord)
        .where(TimelineRecord.kind == TimelineKind.LIST.value)
        .order_by(col(TimelineRecord.list_title))
    ).all()
    return [MastodonList(id=r.list_id, title=r.list_title or "") for r in records if r.list_id]


def account_item(session: Session, account_id: str) -> AccountItem | None:
    accounts = load_accounts(session, [account_id])
    account = accounts.get(account_id)
    return AccountItem(account=account) if account else None


def account_list_items(session: Session, account_list_id: str) -> list[AccountItem]:
    ids = session.exec(
        select(AccountListJoin.account_id)
        .where(AccountListJoin.account_list_id == account_list_id)
        .order_by(col(AccountListJoin.index))
    ).all()
    accounts = load_accounts(session, list(ids))
    return [AccountItem(account=accounts[i]) for i in ids if i in accounts]


def notification_items(
    session: Session,
    now: datetime | None = None,
) -> tuple[list[DisplayItem], datetime | None]:
    """Notifications newest first, filtered in the notifications context."""
    now = now or utc_now()
    records = session.exec(select(NotificationRecord).order_by(*id_order(NotificationRecord.id))).all()

    accounts = load_accounts(session, sorted({r.account_id for r in records}))
    statuses = {
        s.id: s for s in load_statuses(session, [r.status_id for r in records if r.status_id])
    }
    rules = filters.rules_for_context(
        filters.query_active_filters(session, now), FilterContext.NOTIFICATIONS
    )

    items: list[DisplayItem] = []
    for record in records:
        account = accounts.get(record.account_id)
        if account is None:
            continue
        status = statuses.get(record.status_id) if record.status_id else None

        warning = None
        if status is not None:
            result = filters.apply(rules, status, FilterContext.NOTIFICATIONS, now)
            if result.action == filters.FilterAction.HIDDEN:
                continue
            if result.action == filters.FilterAction.WARN:
                warning = result.matched_rule

        items.append(NotificationItem(
            notification=Notification(
                id=record.id,
                type=record.type,
                created_at=record.created_at,
                account=account,
                status=status,
            ),
            filter_warning=warning,
        ))
    return items, filters.next_expiry(rules)


def conversation_items(session: Session) -> list[DisplayItem]:
    """Conversations ordered by their last status, newest first."""
    records = session.exec(select(ConversationRecord)).all()
    last_statuses = {
        s.id: s
        for s in load_statuses(session, [r.last_status_id for r in records if r.last_status_id])
    }

    participant_rows = session.exec(select(ConversationAccountJoin)).all()
    accounts = load_accounts(session, sorted({row.account_id for row in participant_rows}))
    participants: dict[str, list[Account]] = {}
    for row in sorted(participant_rows, key=lambda r: id_sort_key(r.account_id)):
        if row.account_id in accounts:
            participants.setdefault(row.conversation_id, []).append(accounts[row.account_id])

    def recency(record: ConversationRecord) -> tuple[int, str]:
        return id_sort_key(record.last_status_id or "")

    items: list[DisplayItem] = []
    for record in sorted(records, key=recency, reverse=True):
        items.append(ConversationItem(conversation=Conversation(
            id=record.id,
            unread=record.unread,
            accounts=participants.get(record.id, []),
            last_status=last_statuses.get(record.last_status_id) if record.last_status_id else None,
        )))
    return items


__all__ = [
    "AccountItem",
    "ConversationItem",
    "DisplayItem",
    "LoadMoreItem",
    "NotificationItem",
    "StatusItem",
    "Toggles",
    "CONTEXT_TABLES",
    "TIMELINE_TABLES",
    "account_item",
    "account_list_items",
    "assemble_statuses",
    "build_context_sections",
    "build_timeline_groups",
    "context_sections",
    "conversation_items",
    "group_items",
    "list_timelines",
    "load_accounts",
    "load_statuses",
    "load_toggles",
    "notification_items",
    "status_item",
    "timeline_groups",
]
