"""Exception hierarchy for fedicache.

Storage failures, payload decoding failures and Bloom filter decoding failures
are kept apart so callers can tell a broken disk from a broken server payload.
"""


class FediCacheError(Exception):
    """Base class for all fedicache errors."""


class StoreError(FediCacheError):
    """A storage operation failed and its transaction was rolled back.

    Wraps the underlying SQLAlchemy or OS error (available as ``__cause__``).
    """


class DecodingError(FediCacheError):
    """A remote payload could not be decoded; nothing was written."""


class BloomFilterError(DecodingError):
    """A serialized Bloom filter could not be decoded."""


class UnsupportedHashFunctionError(BloomFilterError):
    """The filter names a hash function this implementation does not know."""

    def __init__(self, name: str):
        super().__init__(f"Unsupported hash function: {name!r}")
        self.name = name


class MalformedBitDataError(BloomFilterError):
    """The filter's bit data is not valid for its declared size."""


class TransientAPIError(FediCacheError):
    """Retryable network/HTTP layer failures.

    Raised for errors that should trigger retry logic:
    - Network timeouts
    - Connection errors
    - HTTP 429 (rate limit)
    - HTTP 5xx (server errors)
    """


__all__ = [
    "FediCacheError",
    "StoreError",
    "DecodingError",
    "BloomFilterError",
    "UnsupportedHashFunctionError",
    "MalformedBitDataError",
    "TransientAPIError",
]
