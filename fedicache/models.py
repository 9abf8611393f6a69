"""Data models for fedicache.

This module defines both Pydantic validation models (for API payloads)
and SQLModel ORM models (for the per-identity content store).

Models are organized into four sections:
1. Domain enums
2. Pydantic models for Mastodon API payloads
3. SQLModel tables for entities
4. SQLModel join and state tables
"""

import json
import uuid
from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator
from sqlmodel import Field, SQLModel

from fedicache.utils import format_iso, naive_utc, parse_datetime

# =============================================================================
# Section 1: Domain Enums
# =============================================================================


class FilterContext(StrEnum):
    """Where a content filter applies."""

    HOME = "home"
    NOTIFICATIONS = "notifications"
    PUBLIC = "public"
    THREAD = "thread"
    ACCOUNT = "account"


class MarkerTimeline(StrEnum):
    """Timeline kinds that carry a last-read cursor."""

    HOME = "home"
    NOTIFICATIONS = "notifications"


class LoadMoreDirection(StrEnum):
    """Which side of a gap a fetch fills from.

    ``UP`` climbs from the older boundary (``min_id`` paging, newer statuses
    just above it); ``DOWN`` descends from the newer boundary (``max_id``
    paging, older statuses just below it).
    """

    UP = "up"
    DOWN = "down"


class TimelineKind(StrEnum):
    """Kinds of timeline channels."""

    HOME = "home"
    LOCAL = "local"
    FEDERATED = "federated"
    LIST = "list"
    TAG = "tag"
    PROFILE = "profile"
    FAVORITES = "favorites"
    BOOKMARKS = "bookmarks"


# =============================================================================
# Section 2: Pydantic Models for API Payloads
# =============================================================================


class Account(BaseModel):
    """Mastodon account.

    Attributes:
        id: Account ID
        username: Local username
        acct: ``user`` for local accounts, ``user@domain`` for remote ones
        display_name: Display name
        url: Profile URL
        avatar: Avatar URL
        moved: Account this one migrated to, if any
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    username: str
    acct: str
    display_name: str = ""
    url: Optional[str] = None
    avatar: Optional[str] = None
    moved: Optional["Account"] = None


class PollOption(BaseModel):
    """One poll choice."""

    model_config = ConfigDict(extra="ignore")

    title: str
    votes_count: Optional[int] = None


class Poll(BaseModel):
    """Poll attached to a status."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    expires_at: Optional[datetime] = None
    expired: bool = False
    multiple: bool = False
    votes_count: int = 0
    voted: Optional[bool] = None
    own_votes: Optional[list[int]] = None
    options: list[PollOption] = []

    @field_validator("expires_at", mode="before")
    @classmethod
    def _coerce_expires_at(cls, v: Optional[str]) -> Optional[datetime]:
        return parse_datetime(v)


class Attachment(BaseModel):
    """Media attachment (image, video, audio, gifv)."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    type: str
    url: Optional[str] = None
    preview_url: Optional[str] = None
    description: Optional[str] = None


class Status(BaseModel):
    """Mastodon status (post).

    Attributes:
        id: Status ID; ids grow monotonically and define recency
        created_at: Creation timestamp (UTC)
        account: Author
        content: HTML body
        spoiler_text: Content warning text
        sensitive: Whether media is marked sensitive
        visibility: public, unlisted, private or direct
        url: Public URL
        in_reply_to_id: ID of the status this replies to
        reblog: The boosted status when this status is a boost
        media_attachments: Attached media
        poll: Attached poll
        pinned: Whether the author pinned it to their profile
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    created_at: datetime
    account: Account
    content: str = ""
    spoiler_text: str = ""
    sensitive: bool = False
    visibility: str = "public"
    url: Optional[str] = None
    in_reply_to_id: Optional[str] = None
    reblog: Optional["Status"] = None
    media_attachments: list[Attachment] = []
    poll: Optional[Poll] = None
    replies_count: int = 0
    reblogs_count: int = 0
    favourites_count: int = 0
    pinned: Optional[bool] = None

    @field_validator("created_at", mode="before")
    @classmethod
    def _coerce_created_at(cls, v: Optional[str]) -> Optional[datetime]:
        return parse_datetime(v)


class Context(BaseModel):
    """Thread context of one status."""

    model_config = ConfigDict(extra="ignore")

    ancestors: list[Status] = []
    descendants: list[Status] = []


class Notification(BaseModel):
    """Mastodon notification."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    type: str
    created_at: datetime
    account: Account
    status: Optional[Status] = None

    @field_validator("created_at", mode="before")
    @classmethod
    def _coerce_created_at(cls, v: Optional[str]) -> Optional[datetime]:
        return parse_datetime(v)


class Conversation(BaseModel):
    """Direct-message conversation."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    unread: bool = False
    accounts: list[Account] = []
    last_status: Optional[Status] = None


class MastodonList(BaseModel):
    """User-defined list of followed accounts."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    title: str


class Filter(BaseModel):
    """Content filter rule (v1 API shape).

    Attributes:
        id: Filter ID
        phrase: Keyword or phrase to match
        context: Contexts the filter applies in
        expires_at: Expiry instant, None for never
        irreversible: Hide matches entirely instead of showing a warning
        whole_word: Match only at word boundaries
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str
    phrase: str
    context: list[FilterContext]
    expires_at: Optional[datetime] = None
    irreversible: bool = False
    whole_word: bool = True

    @field_validator("expires_at", mode="before")
    @classmethod
    def _coerce_expires_at(cls, v: Optional[str]) -> Optional[datetime]:
        return parse_datetime(v)

    @field_validator("context", mode="before")
    @classmethod
    def _drop_unknown_contexts(cls, v):
        """Ignore contexts added by newer servers."""
        if isinstance(v, list):
            known = {c.value for c in FilterContext}
            return [c for c in v if c in known]
        return v


class Timeline(BaseModel):
    """A named, ordered channel of statuses.

    The ``id`` property is the composite key the store uses for membership
    rows, e.g. ``home``, ``list-42`` or ``tag-python``.
    """

    model_config = ConfigDict(frozen=True)

    kind: TimelineKind
    list_id: Optional[str] = None
    list_title: Optional[str] = None
    tag: Optional[str] = None
    account_id: Optional[str] = None

    @property
    def id(self) -> str:
        if self.kind == TimelineKind.LIST:
            return f"list-{self.list_id}"
        if self.kind == TimelineKind.TAG:
            return f"tag-{self.tag}"
        if self.kind == TimelineKind.PROFILE:
            return f"profile-{self.account_id}"
        return self.kind.value

    @property
    def filter_context(self) -> Optional[FilterContext]:
        """Filter context applied when projecting this timeline."""
        if self.kind in (TimelineKind.HOME, TimelineKind.LIST):
            return FilterContext.HOME
        if self.kind in (TimelineKind.LOCAL, TimelineKind.FEDERATED, TimelineKind.TAG):
            return FilterContext.PUBLIC
        if self.kind == TimelineKind.PROFILE:
            return FilterContext.ACCOUNT
        return None

    @classmethod
    def home(cls) -> "Timeline":
        return cls(kind=TimelineKind.HOME)

    @classmethod
    def local(cls) -> "Timeline":
        return cls(kind=TimelineKind.LOCAL)

    @classmethod
    def federated(cls) -> "Timeline":
        return cls(kind=TimelineKind.FEDERATED)

    @classmethod
    def for_list(cls, mastodon_list: MastodonList) -> "Timeline":
        return cls(kind=TimelineKind.LIST, list_id=mastodon_list.id, list_title=mastodon_list.title)

    @classmethod
    def for_tag(cls, tag: str) -> "Timeline":
        return cls(kind=TimelineKind.TAG, tag=tag.lstrip("#").lower())

    @classmethod
    def profile(cls, account_id: str) -> "Timeline":
        return cls(kind=TimelineKind.PROFILE, account_id=account_id)

    @classmethod
    def from_record(cls, record: "TimelineRecord") -> "Timeline":
        return cls(
            kind=TimelineKind(record.kind),
            list_id=record.list_id,
            list_title=record.list_title,
            tag=record.tag,
            account_id=record.account_id,
        )


class LoadMore(BaseModel):
    """A known-missing id range within one timeline.

    Attributes:
        timeline_id: Timeline the gap belongs to
        after_status_id: Newer-side boundary (the gap is displayed after it)
        before_status_id: Older-side boundary (the gap is displayed before it)
    """

    model_config = ConfigDict(frozen=True)

    timeline_id: str
    after_status_id: str
    before_status_id: str


# =============================================================================
# Section 3: SQLModel Tables for Entities
# =============================================================================


class AccountRecord(SQLModel, table=True):
    """Persisted account.

    Attributes:
        id: Account ID (primary key)
        moved_id: FK to the AccountRecord this account migrated to
    """

    id: str = Field(primary_key=True)
    username: str
    acct: str = Field(index=True)
    display_name: str = ""
    url: Optional[str] = None
    avatar: Optional[str] = None
    moved_id: Optional[str] = Field(default=None, foreign_key="accountrecord.id")

    @classmethod
    def from_pydantic(cls, account: Account) -> "AccountRecord":
        """Create AccountRecord from Pydantic Account model."""
        return cls(
            id=account.id,
            username=account.username,
            acct=account.acct,
            display_name=account.display_name,
            url=account.url,
            avatar=account.avatar,
            moved_id=account.moved.id if account.moved else None,
        )


class StatusRecord(SQLModel, table=True):
    """Persisted status.

    Attributes:
        id: Status ID (primary key)
        account_id: FK to author's AccountRecord.id (indexed)
        created_at: ISO8601 UTC creation timestamp
        reblog_id: FK to the boosted StatusRecord.id
        in_reply_to_id: ID of the parent status (may not be stored)
        media_json: JSON list of attachments
        poll_json: JSON poll object
    """

    id: str = Field(primary_key=True)
    account_id: str = Field(foreign_key="accountrecord.id", index=True)
    created_at: Optional[str] = None
    content: str = ""
    spoiler_text: str = ""
    sensitive: bool = False
    visibility: str = "public"
    url: Optional[str] = None
    in_reply_to_id: Optional[str] = Field(default=None, index=True)
    reblog_id: Optional[str] = Field(default=None, foreign_key="statusrecord.id", index=True)
    media_json: str = "[]"
    poll_json: Optional[str] = None
    replies_count: int = 0
    reblogs_count: int = 0
    favourites_count: int = 0

    @classmethod
    def from_pydantic(cls, status: Status) -> "StatusRecord":
        """Create StatusRecord from Pydantic Status model."""
        return cls(
            id=status.id,
            account_id=status.account.id,
            created_at=format_iso(status.created_at),
            content=status.content,
            spoiler_text=status.spoiler_text,
            sensitive=status.sensitive,
            visibility=status.visibility,
            url=status.url,
            in_reply_to_id=status.in_reply_to_id,
            reblog_id=status.reblog.id if status.reblog else None,
            media_json=json.dumps([a.model_dump() for a in status.media_attachments]),
            poll_json=status.poll.model_dump_json() if status.poll else None,
            replies_count=status.replies_count,
            reblogs_count=status.reblogs_count,
            favourites_count=status.favourites_count,
        )


class TimelineRecord(SQLModel, table=True):
    """Persisted timeline channel.

    Attributes:
        id: Composite timeline key (primary key)
        kind: TimelineKind value
        list_id: List ID for list timelines (indexed)
        list_title: Last fetched list title
    """

    id: str = Field(primary_key=True)
    kind: str
    list_id: Optional[str] = Field(default=None, index=True)
    list_title: Optional[str] = None
    tag: Optional[str] = None
    account_id: Optional[str] = None

    @classmethod
    def from_timeline(cls, timeline: Timeline) -> "TimelineRecord":
        return cls(
            id=timeline.id,
            kind=timeline.kind.value,
            list_id=timeline.list_id,
            list_title=timeline.list_title,
            tag=timeline.tag,
            account_id=timeline.account_id,
        )


class FilterRecord(SQLModel, table=True):
    """Persisted content filter rule.

    Attributes:
        id: Filter ID (primary key)
        context_json: JSON list of FilterContext values
        expires_at: Naive UTC expiry instant (indexed), None for never
    """

    id: str = Field(primary_key=True)
    phrase: str
    context_json: str = "[]"
    expires_at: Optional[datetime] = Field(default=None, index=True)
    irreversible: bool = False
    whole_word: bool = True

    @classmethod
    def from_pydantic(cls, rule: Filter) -> "FilterRecord":
        return cls(
            id=rule.id,
            phrase=rule.phrase,
            context_json=json.dumps([c.value for c in rule.context]),
            expires_at=naive_utc(rule.expires_at),
            irreversible=rule.irreversible,
            whole_word=rule.whole_word,
        )

    def to_pydantic(self) -> Filter:
        return Filter(
            id=self.id,
            phrase=self.phrase,
            context=json.loads(self.context_json),
            expires_at=self.expires_at,
            irreversible=self.irreversible,
            whole_word=self.whole_word,
        )


class NotificationRecord(SQLModel, table=True):
    """Persisted notification."""

    id: str = Field(primary_key=True)
    type: str
    created_at: Optional[str] = None
    account_id: str = Field(foreign_key="accountrecord.id")
    status_id: Optional[str] = Field(default=None, foreign_key="statusrecord.id")

    @classmethod
    def from_pydantic(cls, notification: Notification) -> "NotificationRecord":
        return cls(
            id=notification.id,
            type=notification.type,
            created_at=format_iso(notification.created_at),
            account_id=notification.account.id,
            status_id=notification.status.id if notification.status else None,
        )


class ConversationRecord(SQLModel, table=True):
    """Persisted direct-message conversation."""

    id: str = Field(primary_key=True)
    unread: bool = False
    last_status_id: Optional[str] = Field(default=None, foreign_key="statusrecord.id")


class AccountList(SQLModel, table=True):
    """Ordered collection of accounts shown together (e.g. boosters, followers).

    Attributes:
        id: Random identifier (primary key)
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)


# =============================================================================
# Section 4: Join and State Tables
# =============================================================================


class TimelineStatusJoin(SQLModel, table=True):
    """Timeline membership; position is implied by status id order."""

    timeline_id: str = Field(primary_key=True, foreign_key="timelinerecord.id")
    status_id: str = Field(primary_key=True, foreign_key="statusrecord.id", index=True)


class LoadMoreRecord(SQLModel, table=True):
    """Gap marker between two known statuses of one timeline."""

    timeline_id: str = Field(primary_key=True, foreign_key="timelinerecord.id")
    after_status_id: str = Field(primary_key=True)
    before_status_id: str = Field(primary_key=True)

    def to_pydantic(self) -> LoadMore:
        return LoadMore(
            timeline_id=self.timeline_id,
            after_status_id=self.after_status_id,
            before_status_id=self.before_status_id,
        )


class StatusAncestorJoin(SQLModel, table=True):
    """Ordered ancestor of a thread parent."""

    parent_id: str = Field(primary_key=True)
    status_id: str = Field(primary_key=True, foreign_key="statusrecord.id")
    index: int


class StatusDescendantJoin(SQLModel, table=True):
    """Ordered descendant of a thread parent."""

    parent_id: str = Field(primary_key=True)
    status_id: str = Field(primary_key=True, foreign_key="statusrecord.id")
    index: int


class AccountPinnedStatusJoin(SQLModel, table=True):
    """Ordered pinned status of an account profile."""

    account_id: str = Field(primary_key=True)
    status_id: str = Field(primary_key=True, foreign_key="statusrecord.id")
    index: int


class StatusShowContentToggle(SQLModel, table=True):
    """Presence means the content warning default was toggled for this status."""

    status_id: str = Field(primary_key=True)


class StatusShowAttachmentsToggle(SQLModel, table=True):
    """Presence means the sensitive-media default was toggled for this status."""

    status_id: str = Field(primary_key=True)


class LastReadIdRecord(SQLModel, table=True):
    """Reading position per marker timeline."""

    marker_timeline: str = Field(primary_key=True)
    id: str


class AccountListJoin(SQLModel, table=True):
    """Account membership of an AccountList; ``index`` keeps insertion order."""

    account_list_id: str = Field(primary_key=True, foreign_key="accountlist.id")
    account_id: str = Field(primary_key=True, foreign_key="accountrecord.id")
    index: int


class ConversationAccountJoin(SQLModel, table=True):
    """Participants of a conversation."""

    conversation_id: str = Field(primary_key=True, foreign_key="conversationrecord.id")
    account_id: str = Field(primary_key=True, foreign_key="accountrecord.id")
