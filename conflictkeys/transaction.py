"""Client transaction over a Database.

A Transaction collects read and write conflict ranges, commits them
against a read version, and on conflict exposes the ranges the store
reported through the special keyspace
``\\xff\\xff/transaction/conflicting_keys/``.

In read-your-writes mode (the default) overlapping conflict ranges are
coalesced on the client before they reach the resolver. With
READ_YOUR_WRITES_DISABLE they are sent exactly as declared.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Generator, List, Optional, Set, Tuple

import numpy as np

from conflictkeys.keys import KeyRange, coalesce
from conflictkeys.store import (
    ClientInvalidOperationError,
    NotCommittedError,
    StoreError,
    TransactionOption,
)

if TYPE_CHECKING:
    from conflictkeys.store import Database

logger = logging.getLogger(__name__)

CONFLICTING_KEYS_PREFIX = b"\xff\xff/transaction/conflicting_keys/"
CONFLICTING_KEYS_TRUE = b"1"
CONFLICTING_KEYS_FALSE = b"0"

# Retry backoff (ms)
BACKOFF_BASE_MS = 10.0
BACKOFF_MULTIPLIER = 2.0
BACKOFF_MAX_MS = 1000.0
BACKOFF_JITTER = 0.1


class Transaction:
    """Conflict-range transaction bound to one Database."""

    def __init__(self, database: Database, rng: Optional[np.random.RandomState] = None):
        self._db = database
        self._rng = rng if rng is not None else np.random.RandomState()
        self._backoff_ms = BACKOFF_BASE_MS
        self._reset_state()

    def _reset_state(self) -> None:
        self._options: Set[TransactionOption] = set()
        self._read_version: Optional[int] = None
        self._read_ranges: List[KeyRange] = []
        self._write_ranges: List[KeyRange] = []
        # Special-key map: sorted (key, value) boundaries
        self._conflicting_keys: List[Tuple[bytes, bytes]] = []
        self._committed_version: Optional[int] = None

    # ------------------------------------------------------------------
    # Options and state
    # ------------------------------------------------------------------

    def set_option(self, option: TransactionOption) -> None:
        self._options.add(option)

    def has_option(self, option: TransactionOption) -> bool:
        return option in self._options

    @property
    def read_your_writes(self) -> bool:
        return TransactionOption.READ_YOUR_WRITES_DISABLE not in self._options

    @property
    def read_conflict_ranges(self) -> List[KeyRange]:
        return list(self._read_ranges)

    @property
    def write_conflict_ranges(self) -> List[KeyRange]:
        return list(self._write_ranges)

    @property
    def committed_version(self) -> Optional[int]:
        return self._committed_version

    # ------------------------------------------------------------------
    # Read version
    # ------------------------------------------------------------------

    def get_read_version(self) -> Generator[float, None, int]:
        if self._read_version is None:
            self._read_version = yield from self._db.get_read_version()
        return self._read_version

    def set_read_version(self, version: int) -> None:
        if self._read_version is not None:
            raise ClientInvalidOperationError("read version already set")
        self._read_version = version

    # ------------------------------------------------------------------
    # Conflict ranges
    # ------------------------------------------------------------------

    def add_read_conflict_range(self, kr: KeyRange) -> None:
        if not kr.is_empty:
            self._read_ranges.append(kr)

    def add_write_conflict_range(self, kr: KeyRange) -> None:
        if not kr.is_empty:
            self._write_ranges.append(kr)

    def _ranges_to_send(self, ranges: List[KeyRange]) -> List[KeyRange]:
        if self.read_your_writes:
            return coalesce(ranges)
        return list(ranges)

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit(self) -> Generator[float, None, int]:
        """Commit the declared conflict ranges; returns the commit version."""
        read_version = yield from self.get_read_version()
        report = TransactionOption.REPORT_CONFLICTING_KEYS in self._options
        try:
            version = yield from self._db.commit(
                read_version,
                self._ranges_to_send(self._read_ranges),
                self._ranges_to_send(self._write_ranges),
                report_conflicting_keys=report,
            )
        except NotCommittedError as e:
            if report:
                self._set_conflicting_keys(e.conflicting_ranges)
            raise
        self._committed_version = version
        return version

    def _set_conflicting_keys(self, ranges: List[KeyRange]) -> None:
        kvs = [(CONFLICTING_KEYS_PREFIX, CONFLICTING_KEYS_FALSE)]
        for kr in coalesce(ranges):
            kvs.append((CONFLICTING_KEYS_PREFIX + kr.begin, CONFLICTING_KEYS_TRUE))
            kvs.append((CONFLICTING_KEYS_PREFIX + kr.end, CONFLICTING_KEYS_FALSE))
        self._conflicting_keys = kvs

    def get_range(
        self,
        begin: bytes,
        end: bytes,
        limit: int = 0,
    ) -> List[Tuple[bytes, bytes]]:
        """Read [begin, end) of the conflicting-keys special keyspace.

        Served locally; only keys under CONFLICTING_KEYS_PREFIX exist.
        A limit of 0 means unlimited.
        """
        if not begin.startswith(CONFLICTING_KEYS_PREFIX):
            raise ClientInvalidOperationError(
                "get_range is only supported on the conflicting keys keyspace"
            )
        result = [(k, v) for k, v in self._conflicting_keys if begin <= k < end]
        if limit > 0:
            result = result[:limit]
        return result

    # ------------------------------------------------------------------
    # Error handling
    # ------------------------------------------------------------------

    def on_error(self, error: Exception) -> Generator[float, None, None]:
        """Back off and reset on retryable errors; re-raise anything else."""
        if not isinstance(error, StoreError) or not error.retryable:
            raise error

        backoff = self._backoff_ms
        if BACKOFF_JITTER > 0:
            backoff *= 1.0 + self._rng.uniform(-BACKOFF_JITTER, BACKOFF_JITTER)
        self._backoff_ms = min(self._backoff_ms * BACKOFF_MULTIPLIER, BACKOFF_MAX_MS)
        logger.debug(f"Retrying after {error.__class__.__name__} "
                     f"(code {error.code}), backoff {backoff:.1f}ms")

        yield max(0.0, backoff)
        self.reset()

    def reset(self) -> None:
        """Clear all per-attempt state. Backoff persists across resets."""
        self._reset_state()

    def clear_backoff(self) -> None:
        self._backoff_ms = BACKOFF_BASE_MS
