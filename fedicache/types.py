"""Type definitions for fedicache.

TypedDict definitions for the raw JSON payloads exchanged with the network
layer, before they are validated into Pydantic models.

Reference:
    - PEP 589 TypedDict: https://peps.python.org/pep-0589/
    - Mastodon entities: https://docs.joinmastodon.org/entities/
"""

from typing import NotRequired, Required, TypedDict


class AccountData(TypedDict, total=False):
    """Account payload from the Mastodon API."""

    id: Required[str]
    username: Required[str]
    acct: Required[str]
    display_name: NotRequired[str]
    url: NotRequired[str | None]
    avatar: NotRequired[str | None]
    moved: NotRequired["AccountData | None"]


class StatusData(TypedDict, total=False):
    """Status payload from the Mastodon API."""

    id: Required[str]
    created_at: Required[str]
    account: Required[AccountData]
    content: NotRequired[str]
    spoiler_text: NotRequired[str]
    sensitive: NotRequired[bool]
    visibility: NotRequired[str]
    url: NotRequired[str | None]
    in_reply_to_id: NotRequired[str | None]
    reblog: NotRequired["StatusData | None"]
    media_attachments: NotRequired[list[dict]]
    poll: NotRequired[dict | None]
    pinned: NotRequired[bool]


class FilterData(TypedDict, total=False):
    """Content filter (v1) payload from the Mastodon API."""

    id: Required[str]
    phrase: Required[str]
    context: Required[list[str]]
    expires_at: NotRequired[str | None]
    irreversible: NotRequired[bool]
    whole_word: NotRequired[bool]


class BloomFilterPayload(TypedDict, total=False):
    """Serialized Bloom filter as served by the instance denylist endpoint.

    Attributes:
        hashes: Ordered hash function names, one bit index per name
        data: Base64-encoded bit array
        bitCount: Optional declared number of meaningful bits
    """

    hashes: Required[list[str]]
    data: Required[str]
    bitCount: NotRequired[int]


__all__ = ["AccountData", "StatusData", "FilterData", "BloomFilterPayload"]
