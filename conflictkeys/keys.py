"""Keys, key ranges and the workload keyspace.

Keys are plain ``bytes`` compared lexicographically. All keys produced by
the workload share a prefix so they never collide with store metadata.

Key types:
- KeyRange: Half-open interval [begin, end) over keys
- Keyspace: Order-preserving index-to-key encoding over a bounded keyspace
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterable, List

# Width in hex digits of a 64-bit pattern
_HEX_DIGITS = 16


def key_after(key: bytes) -> bytes:
    """Smallest key strictly greater than ``key``."""
    return key + b"\x00"


# ---------------------------------------------------------------------------
# KeyRange
# ---------------------------------------------------------------------------

@dataclass(frozen=True, order=True)
class KeyRange:
    """Half-open key interval [begin, end)."""
    begin: bytes
    end: bytes

    def __post_init__(self):
        if self.begin > self.end:
            raise ValueError(
                f"KeyRange begin must be <= end, got {self.begin!r} > {self.end!r}"
            )

    @property
    def is_empty(self) -> bool:
        return self.begin == self.end

    def contains(self, other: KeyRange) -> bool:
        """Whether ``other`` lies entirely inside this range."""
        return self.begin <= other.begin and other.end <= self.end

    def contains_key(self, key: bytes) -> bool:
        return self.begin <= key < self.end

    def intersects(self, other: KeyRange) -> bool:
        """Whether the two ranges share at least one key."""
        if self.is_empty or other.is_empty:
            return False
        return self.begin < other.end and other.begin < self.end

    def __str__(self) -> str:
        return f"[{_printable(self.begin)}, {_printable(self.end)})"


def _printable(key: bytes) -> str:
    return key.decode("latin-1").encode("unicode_escape").decode("ascii")


def coalesce(ranges: Iterable[KeyRange]) -> List[KeyRange]:
    """Sorted union of ``ranges``; overlapping and adjacent ranges merge.

    Empty ranges are dropped.
    """
    merged: List[KeyRange] = []
    for kr in sorted(r for r in ranges if not r.is_empty):
        if merged and kr.begin <= merged[-1].end:
            last = merged[-1]
            if kr.end > last.end:
                merged[-1] = KeyRange(last.begin, kr.end)
        else:
            merged.append(kr)
    return merged


# ---------------------------------------------------------------------------
# Keyspace
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Keyspace:
    """Bounded workload keyspace of ``node_count + 1`` addressable keys.

    ``key_for_index(n)`` maps n/node_count, a double in [0, 1], to the hex
    form of its IEEE-754 bit pattern. For non-negative doubles the bit
    pattern orders like the value, and the hex is zero-padded to a fixed
    width, so byte order of keys follows n.
    """
    prefix: bytes = b"ReportConflictingKeysWorkload"
    key_bytes: int = 64
    node_count: int = 100

    def __post_init__(self):
        if self.node_count < 1:
            raise ValueError(f"node_count must be >= 1, got {self.node_count}")
        if self.prefix.startswith(b"\xff"):
            raise ValueError("prefix must not start with \\xff (system keyspace)")
        if len(self.prefix) + _HEX_DIGITS > self.key_bytes:
            raise ValueError(
                f"key_bytes ({self.key_bytes}) must be at least "
                f"len(prefix) + {_HEX_DIGITS} ({len(self.prefix) + _HEX_DIGITS})"
            )

    @property
    def padding(self) -> int:
        return max(_HEX_DIGITS, self.key_bytes - len(self.prefix))

    def key_for_index(self, n: int) -> bytes:
        if not 0 <= n <= self.node_count:
            raise IndexError(f"index {n} outside [0, {self.node_count}]")
        p = n / self.node_count
        (bits,) = struct.unpack(">Q", struct.pack(">d", p))
        return self.prefix + format(bits, f"0{self.padding}x").encode("ascii")

    @property
    def bounds(self) -> KeyRange:
        """Range covering every key the workload can generate.

        The end is inclusive of key_for_index(node_count), hence key_after.
        """
        return KeyRange(
            self.key_for_index(0),
            key_after(self.key_for_index(self.node_count)),
        )

    def range_for_indices(self, start: int, end: int) -> KeyRange:
        return KeyRange(self.key_for_index(start), self.key_for_index(end))
