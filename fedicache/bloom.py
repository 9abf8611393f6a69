"""Deterministic, serializable Bloom filter.

The instance denylist is shipped as a pre-built Bloom filter so clients can
test membership without downloading the full list. The serialized form is::

    {"hashes": ["djb232", "fnv1a32", ...], "data": "<base64 bit array>"}

Every hash is a pure 32-bit function of the value's UTF-8 bytes, so the same
filter answers the same way on every platform and in every process. Bit ``i``
lives in byte ``i // 8`` under mask ``1 << (i % 8)`` (least-significant bit
first).

Example:
    >>> bloom = BloomFilter.build(["spam.example"], hashes=["djb232", "fnv1a32"], bit_count=256)
    >>> "spam.example" in BloomFilter.from_json(bloom.to_json())
    True
"""

import base64
import binascii
import json
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from fedicache.errors import (
    BloomFilterError,
    MalformedBitDataError,
    UnsupportedHashFunctionError,
)
from fedicache.types import BloomFilterPayload

_MASK_32 = 0xFFFFFFFF

_FNV_OFFSET_32 = 0x811C9DC5
_FNV_PRIME_32 = 0x01000193


# =============================================================================
# Hash Functions
# =============================================================================


def djb2_32(data: bytes) -> int:
    """Bernstein hash, ``h * 33 + c``."""
    h = 5381
    for byte in data:
        h = ((h << 5) + h + byte) & _MASK_32
    return h


def djb2a_32(data: bytes) -> int:
    """Bernstein hash, xor variant ``h * 33 ^ c``."""
    h = 5381
    for byte in data:
        h = (((h << 5) + h) & _MASK_32) ^ byte
    return h


def fnv1_32(data: bytes) -> int:
    """FNV-1, multiply then xor."""
    h = _FNV_OFFSET_32
    for byte in data:
        h = (h * _FNV_PRIME_32) & _MASK_32
        h ^= byte
    return h


def fnv1a_32(data: bytes) -> int:
    """FNV-1a, xor then multiply."""
    h = _FNV_OFFSET_32
    for byte in data:
        h ^= byte
        h = (h * _FNV_PRIME_32) & _MASK_32
    return h


def sdbm_32(data: bytes) -> int:
    """sdbm hash, ``c + (h << 6) + (h << 16) - h``."""
    h = 0
    for byte in data:
        h = (byte + (h << 6) + (h << 16) - h) & _MASK_32
    return h


HASH_FUNCTIONS: dict[str, Callable[[bytes], int]] = {
    "djb232": djb2_32,
    "djb2a32": djb2a_32,
    "fnv132": fnv1_32,
    "fnv1a32": fnv1a_32,
    "sdbm32": sdbm_32,
}


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


# =============================================================================
# Bloom Filter
# =============================================================================


class BloomFilter:
    """Read-only Bloom filter over a fixed bit array.

    Args:
        hashes: Ordered hash function names (keys of ``HASH_FUNCTIONS``)
        data: Raw bit array bytes
        bit_count: Number of meaningful bits (defaults to ``len(data) * 8``)

    Raises:
        UnsupportedHashFunctionError: If a hash name is unknown
        MalformedBitDataError: If the bit array is empty or too short
    """

    def __init__(
        self,
        hashes: Sequence[str],
        data: bytes,
        bit_count: int | None = None,
    ) -> None:
        for name in hashes:
            if name not in HASH_FUNCTIONS:
                raise UnsupportedHashFunctionError(name)
        if not hashes:
            raise BloomFilterError("Bloom filter declares no hash functions")
        if not data:
            raise MalformedBitDataError("Bloom filter bit array is empty")

        capacity = len(data) * 8
        if bit_count is None:
            bit_count = capacity
        elif not capacity - 8 < bit_count <= capacity:
            raise MalformedBitDataError(
                f"Declared bit count {bit_count} does not match {len(data)} data bytes"
            )

        self.hashes: tuple[str, ...] = tuple(hashes)
        self.bit_count = bit_count
        self._bits = bytes(data)
        self._functions = [HASH_FUNCTIONS[name] for name in self.hashes]

    def _indices(self, value: str | bytes) -> list[int]:
        payload = _as_bytes(value)
        return [fn(payload) % self.bit_count for fn in self._functions]

    def _is_set(self, index: int) -> bool:
        return bool(self._bits[index // 8] & (1 << (index % 8)))

    def contains(self, value: str | bytes) -> bool:
        """Return True if ``value`` may be in the set (False means definitely not)."""
        return all(self._is_set(index) for index in self._indices(value))

    def __contains__(self, value: object) -> bool:
        if not isinstance(value, (str, bytes)):
            return False
        return self.contains(value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BloomFilter):
            return NotImplemented
        return (
            self.hashes == other.hashes
            and self.bit_count == other.bit_count
            and self._bits == other._bits
        )

    def __repr__(self) -> str:
        return f"BloomFilter(hashes={list(self.hashes)!r}, bit_count={self.bit_count})"

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def build(
        cls,
        values: Iterable[str | bytes],
        hashes: Sequence[str],
        bit_count: int,
    ) -> "BloomFilter":
        """Build a filter holding ``values``.

        Clients receive filters pre-built; this is the producing side, used to
        prepare payloads and fixtures.
        """
        if bit_count <= 0:
            raise MalformedBitDataError("bit_count must be positive")
        for name in hashes:
            if name not in HASH_FUNCTIONS:
                raise UnsupportedHashFunctionError(name)

        bits = bytearray((bit_count + 7) // 8)
        functions = [HASH_FUNCTIONS[name] for name in hashes]
        for value in values:
            payload = _as_bytes(value)
            for fn in functions:
                index = fn(payload) % bit_count
                bits[index // 8] |= 1 << (index % 8)

        return cls(hashes, bytes(bits), bit_count)

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, payload: Any) -> "BloomFilter":
        """Decode the ``{hashes, data}`` form.

        Raises:
            UnsupportedHashFunctionError: Unknown hash name
            MalformedBitDataError: Data is not valid base64 or does not fit
            BloomFilterError: Payload is structurally wrong
        """
        if not isinstance(payload, dict):
            raise BloomFilterError("Bloom filter payload must be an object")

        hashes = payload.get("hashes")
        data = payload.get("data")
        if not isinstance(hashes, list) or not all(isinstance(h, str) for h in hashes):
            raise BloomFilterError("Bloom filter 'hashes' must be a list of names")
        if not isinstance(data, str):
            raise MalformedBitDataError("Bloom filter 'data' must be a base64 string")

        try:
            bits = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedBitDataError(f"Bloom filter data is not valid base64: {exc}") from exc

        bit_count = payload.get("bitCount")
        if bit_count is not None and not isinstance(bit_count, int):
            raise MalformedBitDataError("Bloom filter 'bitCount' must be an integer")

        return cls(hashes, bits, bit_count)

    @classmethod
    def from_json(cls, text: str | bytes) -> "BloomFilter":
        """Decode a JSON document in the ``{hashes, data}`` form."""
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise BloomFilterError(f"Bloom filter payload is not JSON: {exc}") from exc
        return cls.from_dict(payload)

    def to_dict(self) -> BloomFilterPayload:
        """Encode to the ``{hashes, data}`` form.

        ``bitCount`` is only written when it differs from the byte capacity.
        """
        payload: BloomFilterPayload = {
            "hashes": list(self.hashes),
            "data": base64.b64encode(self._bits).decode("ascii"),
        }
        if self.bit_count != len(self._bits) * 8:
            payload["bitCount"] = self.bit_count
        return payload

    def to_json(self) -> str:
        """Encode to a JSON document."""
        return json.dumps(self.to_dict())


__all__ = [
    "BloomFilter",
    "HASH_FUNCTIONS",
    "djb2_32",
    "djb2a_32",
    "fnv1_32",
    "fnv1a_32",
    "sdbm_32",
]
