"""Per-identity content store handle.

``ContentDatabase`` is the object every caller goes through: it owns one
identity's SQLite store and exposes

- async mutations, serialized through a single writer and each applied as
  one transaction,
- reactive observations that re-run after relevant commits and only emit
  changed values,
- small synchronous lookups (last-read cursor, statistics).

Example:
    >>> content = await ContentDatabase.open(identity_id)
    >>> await content.insert_page(Timeline.home(), statuses)
    >>> async with content.observe_timeline(Timeline.home()) as observation:
    ...     groups = await observation.next()
    >>> await content.close()
"""

import asyncio
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import func
from sqlmodel import Session, SQLModel, col, select

from fedicache import filters, projection, retention, timelines
from fedicache.config import Settings, settings as default_settings
from fedicache.database import DatabaseManager
from fedicache.errors import DecodingError
from fedicache.interfaces import IKeyring, PlaintextKeyring
from fedicache.logging import logger, set_log_context
from fedicache.models import (
    Account,
    AccountList,
    AccountListJoin,
    AccountRecord,
    Context,
    Conversation,
    Filter,
    FilterContext,
    FilterRecord,
    LastReadIdRecord,
    LoadMore,
    LoadMoreDirection,
    LoadMoreRecord,
    MarkerTimeline,
    MastodonList,
    Notification,
    NotificationRecord,
    Poll,
    Status,
    StatusRecord,
    StatusShowAttachmentsToggle,
    StatusShowContentToggle,
    Timeline,
    TimelineKind,
    TimelineRecord,
    TimelineStatusJoin,
)
from fedicache.observation import Observation, ObservationRegistry
from fedicache.repository import RepositoryFactory
from fedicache.utils import utc_now

M = TypeVar("M", bound=BaseModel)
R = TypeVar("R")


def decode(model: type[M], payload: Any) -> M:
    """Validate one payload into ``model``.

    Raises:
        DecodingError: If the payload does not match the model
    """
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise DecodingError(f"Malformed {model.__name__} payload: {exc}") from exc


def decode_all(model: type[M], payloads: Iterable[Any]) -> list[M]:
    return [decode(model, payload) for payload in payloads]


class ContentDatabase:
    """Content store of one identity.

    Args:
        identity_id: Opaque identity id; names the store file
        settings: Settings to use (defaults to the global settings)
        keyring: Source of the at-rest encryption hook
        in_memory: Override ``settings.in_memory``

    Use ``ContentDatabase.open`` to get an initialized, pruned handle.
    """

    def __init__(
        self,
        identity_id: str,
        settings: Settings | None = None,
        keyring: IKeyring | None = None,
        in_memory: bool | None = None,
    ):
        self.identity_id = identity_id
        self.settings = settings or default_settings
        self.in_memory = self.settings.in_memory if in_memory is None else in_memory
        keyring = keyring or PlaintextKeyring()

        self.db = DatabaseManager(
            database_path=None if self.in_memory else self.settings.store_path(identity_id),
            in_memory=self.in_memory,
            connection_preparer=keyring.connection_preparer(identity_id),
        )
        self.registry = ObservationRegistry()
        self._write_lock = asyncio.Lock()
        self._writes: set[asyncio.Task[Any]] = set()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @classmethod
    async def open(
        cls,
        identity_id: str,
        settings: Settings | None = None,
        keyring: IKeyring | None = None,
        in_memory: bool | None = None,
        prune: bool = True,
    ) -> "ContentDatabase":
        """Open (creating if needed) the store and apply the retention policy.

        Raises:
            StoreError: If the store cannot be opened or pruned
        """
        content = cls(identity_id, settings=settings, keyring=keyring, in_memory=in_memory)
        set_log_context(identity_id=identity_id, operation="open")
        await asyncio.to_thread(content.db.initialize)
        if prune:
            await content.prune()
        return content

    async def prune(self) -> retention.PruneReport:
        """Apply the retention policy now."""
        bounded = self.settings.use_home_timeline_last_read_id
        count = self.settings.retention_count
        return await self._write(lambda s: retention.prune(s, bounded, count), "prune")

    async def close(self) -> None:
        """Stop all observations, wait for pending writes, release the engine."""
        self.registry.close_all()
        if self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)
        await self.registry.drain()
        self.db.close()

    async def __aenter__(self) -> "ContentDatabase":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @staticmethod
    def delete(identity_id: str, settings: Settings | None = None) -> None:
        """Delete the store file of ``identity_id``."""
        path = (settings or default_settings).store_path(identity_id)
        DatabaseManager.delete_files(path)
        logger.info(f"🗑️ Deleted store {path}")

    # =========================================================================
    # Transactions
    # =========================================================================

    async def _locked_write(self, work: Callable[[Session], R], operation: str) -> R:
        set_log_context(identity_id=self.identity_id, operation=operation)
        async with self._write_lock:
            result, tables = await asyncio.to_thread(self.db.write, work, operation)
        self.registry.notify(tables)
        return result

    async def _write(self, work: Callable[[Session], R], operation: str) -> R:
        # Shielded: a cancelled caller never interrupts a started transaction
        task = asyncio.ensure_future(self._locked_write(work, operation))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)
        return await asyncio.shield(task)

    async def _read(self, work: Callable[[Session], R], operation: str = "read") -> R:
        return await asyncio.to_thread(self.db.read, work, operation)

    def _observe(
        self,
        name: str,
        tables: Iterable[str],
        work: Callable[[Session], Any],
        expiring: bool = False,
    ) -> Observation[Any]:
        """Register an observation running ``work`` in a read session.

        With ``expiring``, ``work`` returns ``(value, next_expiry)`` and the
        observation is re-run at ``next_expiry`` even without writes.
        """
        next_expiry: list[datetime | None] = [None]

        async def evaluate() -> Any:
            result = await self._read(work, name)
            if not expiring:
                return result
            value, next_expiry[0] = result
            return value

        refresh_at = (lambda _value: next_expiry[0]) if expiring else None
        observation: Observation[Any] = Observation(self.registry, evaluate, tables, name, refresh_at)
        return self.registry.register(observation)

    # =========================================================================
    # Timeline Mutations
    # =========================================================================

    async def insert_status(self, status: Status | dict[str, Any]) -> None:
        """Upsert one status (and its author and boost target)."""
        decoded = decode(Status, status)
        await self._write(lambda s: timelines.upsert_status(s, decoded), "insert_status")

    async def insert_page(
        self,
        timeline: Timeline,
        statuses: Sequence[Status | dict[str, Any]],
        load_more: LoadMore | None = None,
        direction: LoadMoreDirection | None = None,
    ) -> list[LoadMore]:
        """Merge a fetched page into ``timeline``.

        Args:
            timeline: Target timeline
            statuses: Page content (models or raw payloads)
            load_more: Gap the page was fetched for
            direction: Side of ``load_more`` the page was fetched from

        Returns:
            Gap markers created by the merge

        Raises:
            DecodingError: If any payload is malformed (nothing is written)
            StoreError: If the transaction failed (nothing is written)
        """
        page = decode_all(Status, statuses)
        return await self._write(
            lambda s: timelines.merge_page(s, timeline, page, load_more, direction),
            "insert_page",
        )

    async def insert_context(self, parent_id: str, context: Context | dict[str, Any]) -> None:
        """Replace the thread around ``parent_id`` with a fetched context."""
        decoded = decode(Context, context)
        await self._write(
            lambda s: timelines.merge_context(s, parent_id, decoded.ancestors, decoded.descendants),
            "insert_context",
        )

    async def insert_pinned_statuses(
        self,
        account_id: str,
        statuses: Sequence[Status | dict[str, Any]],
    ) -> None:
        page = decode_all(Status, statuses)
        await self._write(
            lambda s: timelines.merge_pinned_statuses(s, account_id, page),
            "insert_pinned_statuses",
        )

    async def update_poll(self, status_id: str, poll: Poll | dict[str, Any]) -> bool:
        decoded = decode(Poll, poll)
        return await self._write(lambda s: timelines.update_poll(s, status_id, decoded), "update_poll")

    async def set_last_read_id(self, marker_timeline: MarkerTimeline, status_id: str) -> None:
        record = LastReadIdRecord(marker_timeline=marker_timeline.value, id=status_id)
        await self._write(
            lambda s: RepositoryFactory(s).for_entity(LastReadIdRecord).upsert(record),
            "set_last_read_id",
        )

    async def insert_notifications(self, notifications: Sequence[Notification | dict[str, Any]]) -> None:
        decoded = decode_all(Notification, notifications)
        await self._write(lambda s: timelines.merge_notifications(s, decoded), "insert_notifications")

    async def insert_conversations(self, conversations: Sequence[Conversation | dict[str, Any]]) -> None:
        decoded = decode_all(Conversation, conversations)
        await self._write(lambda s: timelines.merge_conversations(s, decoded), "insert_conversations")

    # =========================================================================
    # Toggle Mutations
    # =========================================================================

    @staticmethod
    def _toggle(session: Session, model: type[SQLModel], status_id: str) -> bool:
        repo = RepositoryFactory(session).for_entity(model)
        if repo.exists(status_id):
            repo.delete_where(col(model.status_id) == status_id)  # type: ignore[attr-defined]
            return False
        repo.upsert(model(status_id=status_id))
        return True

    async def toggle_show_content(self, status_id: str) -> bool:
        """Flip the content-warning default of a status.

        Returns:
            True if the status is now toggled
        """
        return await self._write(
            lambda s: self._toggle(s, StatusShowContentToggle, status_id), "toggle_show_content"
        )

    async def toggle_show_attachments(self, status_id: str) -> bool:
        """Flip the sensitive-media default of a status."""
        return await self._write(
            lambda s: self._toggle(s, StatusShowAttachmentsToggle, status_id), "toggle_show_attachments"
        )

    async def expand(self, status_ids: Iterable[str]) -> None:
        """Mark statuses as showing both content and attachments."""
        ids = list(status_ids)

        def work(session: Session) -> None:
            repos = RepositoryFactory(session)
            for status_id in ids:
                repos.for_entity(StatusShowContentToggle).upsert(StatusShowContentToggle(status_id=status_id))
                repos.for_entity(StatusShowAttachmentsToggle).upsert(
                    StatusShowAttachmentsToggle(status_id=status_id)
                )

        await self._write(work, "expand")

    async def collapse(self, status_ids: Iterable[str]) -> None:
        """Restore the defaults for statuses."""
        ids = list(status_ids)

        def work(session: Session) -> None:
            repos = RepositoryFactory(session)
            repos.for_entity(StatusShowContentToggle).delete_where(col(StatusShowContentToggle.status_id).in_(ids))
            repos.for_entity(StatusShowAttachmentsToggle).delete_where(
                col(StatusShowAttachmentsToggle.status_id).in_(ids)
            )

        await self._write(work, "collapse")

    # =========================================================================
    # Lists
    # =========================================================================

    @staticmethod
    def _delete_timelines(session: Session, *conditions: Any) -> None:
        repos = RepositoryFactory(session)
        ids = repos.for_entity(TimelineRecord).scalars(TimelineRecord.id, *conditions)
        if not ids:
            return
        repos.for_entity(TimelineStatusJoin).delete_where(col(TimelineStatusJoin.timeline_id).in_(ids))
        repos.for_entity(LoadMoreRecord).delete_where(col(LoadMoreRecord.timeline_id).in_(ids))
        repos.for_entity(TimelineRecord).delete_where(col(TimelineRecord.id).in_(ids))

    async def set_lists(self, lists: Sequence[MastodonList | dict[str, Any]]) -> None:
        """Replace the stored lists with ``lists``."""
        decoded = decode_all(MastodonList, lists)

        def work(session: Session) -> None:
            records = RepositoryFactory(session).for_entity(TimelineRecord)
            for mastodon_list in decoded:
                records.upsert(TimelineRecord.from_timeline(Timeline.for_list(mastodon_list)))
            self._delete_timelines(
                session,
                TimelineRecord.kind == TimelineKind.LIST.value,
                col(TimelineRecord.list_id).not_in([m.id for m in decoded]),
            )

        await self._write(work, "set_lists")

    async def create_list(self, mastodon_list: MastodonList | dict[str, Any]) -> None:
        decoded = decode(MastodonList, mastodon_list)
        record = TimelineRecord.from_timeline(Timeline.for_list(decoded))
        await self._write(
            lambda s: RepositoryFactory(s).for_entity(TimelineRecord).upsert(record), "create_list"
        )

    async def delete_list(self, list_id: str) -> None:
        await self._write(
            lambda s: self._delete_timelines(
                s,
                TimelineRecord.kind == TimelineKind.LIST.value,
                TimelineRecord.list_id == list_id,
            ),
            "delete_list",
        )

    async def append_accounts_to_list(
        self,
        accounts: Sequence[Account | dict[str, Any]],
        account_list_id: str | None = None,
    ) -> str:
        """Append accounts to an ordered account list, creating it when needed.

        Returns:
            The account list id
        """
        decoded = decode_all(Account, accounts)

        def work(session: Session) -> str:
            repos = RepositoryFactory(session)
            account_list = repos.for_entity(AccountList).get(account_list_id) if account_list_id else None
            if account_list is None:
                account_list = AccountList(id=account_list_id) if account_list_id else AccountList()
                session.add(account_list)

            joins = repos.for_entity(AccountListJoin)
            start = session.exec(
                select(func.max(AccountListJoin.index)).where(
                    AccountListJoin.account_list_id == account_list.id
                )
            ).one()
            index = -1 if start is None else start

            for account in decoded:
                timelines.upsert_account(session, account)
                if joins.exists((account_list.id, account.id)):
                    continue
                index += 1
                joins.upsert(AccountListJoin(account_list_id=account_list.id, account_id=account.id, index=index))
            return account_list.id

        return await self._write(work, "append_accounts_to_list")

    # =========================================================================
    # Filters
    # =========================================================================

    async def set_filters(self, rules: Sequence[Filter | dict[str, Any]]) -> None:
        """Replace all stored filters with ``rules``."""
        decoded = decode_all(Filter, rules)

        def work(session: Session) -> None:
            repo = RepositoryFactory(session).for_entity(FilterRecord)
            repo.delete_where(col(FilterRecord.id).not_in([rule.id for rule in decoded]))
            repo.upsert_all(FilterRecord.from_pydantic(rule) for rule in decoded)

        await self._write(work, "set_filters")

    async def create_filter(self, rule: Filter | dict[str, Any]) -> None:
        record = FilterRecord.from_pydantic(decode(Filter, rule))
        await self._write(lambda s: RepositoryFactory(s).for_entity(FilterRecord).upsert(record), "create_filter")

    async def delete_filter(self, filter_id: str) -> None:
        await self._write(
            lambda s: RepositoryFactory(s).for_entity(FilterRecord).delete_where(FilterRecord.id == filter_id),
            "delete_filter",
        )

    async def purge_expired_filters(self) -> int:
        """Delete filters whose expiry has passed.

        Returns:
            Number of deleted filters
        """
        def work(session: Session) -> int:
            expired = [rule.id for rule in filters.query_expired_filters(session)]
            if not expired:
                return 0
            return RepositoryFactory(session).for_entity(FilterRecord).delete_where(
                col(FilterRecord.id).in_(expired)
            )

        return await self._write(work, "purge_expired_filters")

    # =========================================================================
    # Observations
    # =========================================================================

    def observe_timeline(self, timeline: Timeline) -> Observation[list[list[projection.DisplayItem]]]:
        """Grouped display items of ``timeline``, newest first."""
        return self._observe(
            f"timeline:{timeline.id}",
            projection.TIMELINE_TABLES,
            lambda s: projection.timeline_groups(s, timeline),
            expiring=True,
        )

    def observe_context(self, parent_id: str) -> Observation[list[list[projection.DisplayItem]]]:
        """Thread sections (ancestors, parent, descendants) of ``parent_id``."""
        return self._observe(
            f"context:{parent_id}",
            projection.CONTEXT_TABLES,
            lambda s: projection.context_sections(s, parent_id),
            expiring=True,
        )

    def observe_active_filters(self, context: FilterContext | None = None) -> Observation[list[Filter]]:
        """Rules that have not expired, re-evaluated when the next one expires.

        Args:
            context: Only return rules applying in this context
        """

        def work(session: Session) -> tuple[list[Filter], datetime | None]:
            rules = filters.query_active_filters(session, utc_now())
            if context is not None:
                rules = filters.rules_for_context(rules, context)
            return rules, filters.next_expiry(rules)

        return self._observe("active_filters", {"filterrecord"}, work, expiring=True)

    def observe_expired_filters(self) -> Observation[list[Filter]]:
        """Rules that have expired but are still stored."""

        def work(session: Session) -> tuple[list[Filter], datetime | None]:
            now = utc_now()
            expired = filters.query_expired_filters(session, now)
            upcoming = filters.next_expiry(filters.query_active_filters(session, now))
            return expired, upcoming

        return self._observe("expired_filters", {"filterrecord"}, work, expiring=True)

    def observe_lists(self) -> Observation[list[MastodonList]]:
        return self._observe("lists", {"timelinerecord"}, projection.list_timelines)

    def observe_account(self, account_id: str) -> Observation[projection.AccountItem | None]:
        return self._observe(
            f"account:{account_id}",
            {"accountrecord"},
            lambda s: projection.account_item(s, account_id),
        )

    def observe_account_list(self, account_list_id: str) -> Observation[list[projection.AccountItem]]:
        return self._observe(
            f"account_list:{account_list_id}",
            {"accountrecord", "accountlistjoin"},
            lambda s: projection.account_list_items(s, account_list_id),
        )

    def observe_notifications(self) -> Observation[list[projection.DisplayItem]]:
        return self._observe(
            "notifications",
            {"notificationrecord", "statusrecord", "accountrecord", "filterrecord"},
            projection.notification_items,
            expiring=True,
        )

    def observe_conversations(self) -> Observation[list[projection.DisplayItem]]:
        return self._observe(
            "conversations",
            {"conversationrecord", "conversationaccountjoin", "statusrecord", "accountrecord"},
            projection.conversation_items,
        )

    # =========================================================================
    # Lookups
    # =========================================================================

    async def timeline(self, timeline_id: str) -> Timeline | None:
        """Stored timeline with ``timeline_id``, if any."""

        def work(session: Session) -> Timeline | None:
            record = session.get(TimelineRecord, timeline_id)
            return Timeline.from_record(record) if record is not None else None

        return await self._read(work, "timeline")

    def last_read_id(self, marker_timeline: MarkerTimeline) -> str | None:
        """Reading position for ``marker_timeline``, if recorded."""

        def work(session: Session) -> str | None:
            record = session.get(LastReadIdRecord, marker_timeline.value)
            return record.id if record is not None else None

        return self.db.read(work, "last_read_id")

    def statistics(self) -> dict[str, int]:
        """Row counts of the main tables."""

        def work(session: Session) -> dict[str, int]:
            repos = RepositoryFactory(session)
            return {
                "statuses": repos.for_entity(StatusRecord).count(),
                "accounts": repos.for_entity(AccountRecord).count(),
                "timelines": repos.for_entity(TimelineRecord).count(),
                "timeline_entries": repos.for_entity(TimelineStatusJoin).count(),
                "gaps": repos.for_entity(LoadMoreRecord).count(),
                "filters": repos.for_entity(FilterRecord).count(),
                "notifications": repos.for_entity(NotificationRecord).count(),
            }

        return self.db.read(work, "statistics")


__all__ = ["ContentDatabase", "decode", "decode_all"]
