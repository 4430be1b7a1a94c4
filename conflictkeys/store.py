"""In-memory transactional key-value store.

Models only what the conflicting-keys workload observes of a real
store: read version assignment, optimistic conflict resolution of
declared read/write conflict ranges, commit, and reporting of the read
ranges that caused a conflict. No values are stored.

All operations are generators that yield latencies (floats, ms) and
return their result, so the simulation runner decides how time passes.

Key types:
- TransactionOption: Options accepted by Transaction.set_option()
- StoreError and subclasses: Error taxonomy with store error codes
- ReportingFault: Deliberate reporting defects for exercising the checker
- StoreConfig: Immutable store configuration
- Resolver: Write history and conflict detection
- Database: Version authority and commit entry point
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generator, List, Optional, Sequence, Tuple

import numpy as np

from conflictkeys.keys import KeyRange, key_after
from conflictkeys.latency import FixedLatency, LatencyDistribution

logger = logging.getLogger(__name__)


class TransactionOption(Enum):
    REPORT_CONFLICTING_KEYS = "report_conflicting_keys"
    READ_YOUR_WRITES_DISABLE = "read_your_writes_disable"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class StoreError(Exception):
    """Base class for errors surfaced by the store."""
    code = 4000
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)


class NotCommittedError(StoreError):
    """Transaction not committed due to conflict with another transaction.

    conflicting_ranges is populated only when the transaction asked for
    conflicting keys to be reported.
    """
    code = 1020
    retryable = True

    def __init__(self, conflicting_ranges: Sequence[KeyRange] = ()):
        super().__init__("Transaction not committed due to conflict")
        self.conflicting_ranges = list(conflicting_ranges)


class TransactionTooOldError(StoreError):
    code = 1007
    retryable = True


class CommitUnknownResultError(StoreError):
    code = 1021
    retryable = True


class ProxyMemoryLimitExceededError(StoreError):
    code = 1042
    retryable = True


class ClientInvalidOperationError(StoreError):
    code = 2000


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ReportingFault(Enum):
    """Reporting defects the store can be told to exhibit.

    - NONE: correct behavior
    - FABRICATE: report single-key ranges that contain no declared read range
    - MISATTRIBUTE: report the declared read ranges that did not conflict
    - SUPPRESS: commit transactions that should have conflicted
    """
    NONE = "none"
    FABRICATE = "fabricate"
    MISATTRIBUTE = "misattribute"
    SUPPRESS = "suppress"


@dataclass(frozen=True)
class StoreConfig:
    grv_latency: LatencyDistribution = FixedLatency(0.5)
    commit_latency: LatencyDistribution = FixedLatency(1.0)
    # 5 seconds of history at 1M versions/s
    mvcc_window_versions: int = 5_000_000
    versions_per_ms: int = 1000
    transient_error_probability: float = 0.0
    reporting_fault: ReportingFault = ReportingFault.NONE


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class Resolver:
    """Conflict detection against the history of committed writes.

    A transaction with read version v conflicts if any of its read
    ranges intersects a write range committed at a version > v.
    """

    def __init__(self, mvcc_window_versions: int):
        self._window = mvcc_window_versions
        self._history: List[Tuple[int, Tuple[KeyRange, ...]]] = []
        self._oldest_version = 0

    @property
    def oldest_version(self) -> int:
        """Oldest read version that can still be resolved."""
        return self._oldest_version

    @property
    def history_size(self) -> int:
        return len(self._history)

    def is_too_old(self, read_version: int) -> bool:
        return read_version < self._oldest_version

    def conflicting_reads(
        self,
        read_version: int,
        read_ranges: Sequence[KeyRange],
    ) -> List[KeyRange]:
        """Read ranges overwritten after read_version, in declaration order."""
        newer = [ranges for version, ranges in self._history if version > read_version]
        return [
            rr for rr in read_ranges
            if any(rr.intersects(wr) for ranges in newer for wr in ranges)
        ]

    def record_writes(self, commit_version: int, write_ranges: Sequence[KeyRange]) -> None:
        if write_ranges:
            self._history.append((commit_version, tuple(write_ranges)))
        self._prune(commit_version)

    def _prune(self, now_version: int) -> None:
        horizon = now_version - self._window
        if horizon <= self._oldest_version:
            return
        self._oldest_version = horizon
        self._history = [(v, r) for v, r in self._history if v > horizon]


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

class Database:
    """Single-resolver store.

    Versions advance by at least one per commit and track the clock at
    versions_per_ms when a clock is attached. Without a clock, versions
    are plain commit counters.
    """

    def __init__(
        self,
        config: Optional[StoreConfig] = None,
        rng: Optional[np.random.RandomState] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._config = config or StoreConfig()
        if not 0.0 <= self._config.transient_error_probability <= 1.0:
            raise ValueError(
                f"transient_error_probability must be in [0, 1], "
                f"got {self._config.transient_error_probability}"
            )
        self._rng = rng if rng is not None else np.random.RandomState()
        self._clock = clock
        self._committed_version = 0
        self._resolver = Resolver(self._config.mvcc_window_versions)

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def resolver(self) -> Resolver:
        return self._resolver

    @property
    def committed_version(self) -> int:
        return self._committed_version

    def attach_clock(self, clock: Callable[[], float]) -> None:
        self._clock = clock

    def create_transaction(self, rng: Optional[np.random.RandomState] = None):
        from conflictkeys.transaction import Transaction
        return Transaction(self, rng=rng)

    def _inject_transient(self, error_cls: type) -> None:
        p = self._config.transient_error_probability
        if p > 0 and self._rng.random_sample() < p:
            logger.debug(f"Injecting {error_cls.__name__}")
            raise error_cls()

    def _next_version(self) -> int:
        version = self._committed_version + 1
        if self._clock is not None:
            version = max(version, int(self._clock() * self._config.versions_per_ms))
        return version

    def get_read_version(self) -> Generator[float, None, int]:
        yield self._config.grv_latency.sample(self._rng)
        self._inject_transient(ProxyMemoryLimitExceededError)
        return self._committed_version

    def commit(
        self,
        read_version: int,
        read_ranges: Sequence[KeyRange],
        write_ranges: Sequence[KeyRange],
        report_conflicting_keys: bool = False,
    ) -> Generator[float, None, int]:
        """Resolve and apply a transaction's conflict ranges.

        Returns the commit version. Raises NotCommittedError on conflict,
        TransactionTooOldError when read_version has left the MVCC window,
        and CommitUnknownResultError when a transient fault is injected
        (the transaction is then not applied).
        """
        yield self._config.commit_latency.sample(self._rng)
        self._inject_transient(CommitUnknownResultError)

        if self._resolver.is_too_old(read_version):
            raise TransactionTooOldError(
                f"read version {read_version} < oldest {self._resolver.oldest_version}"
            )

        fault = self._config.reporting_fault
        conflicts = self._resolver.conflicting_reads(read_version, read_ranges)
        if conflicts and fault is not ReportingFault.SUPPRESS:
            reported: List[KeyRange] = []
            if report_conflicting_keys:
                reported = self._report(conflicts, read_ranges, fault)
            raise NotCommittedError(reported)

        version = self._next_version()
        self._resolver.record_writes(version, write_ranges)
        self._committed_version = version
        return version

    @staticmethod
    def _report(
        conflicts: List[KeyRange],
        read_ranges: Sequence[KeyRange],
        fault: ReportingFault,
    ) -> List[KeyRange]:
        if fault is ReportingFault.FABRICATE:
            return [KeyRange(kr.begin, key_after(kr.begin)) for kr in conflicts]
        if fault is ReportingFault.MISATTRIBUTE:
            innocent = [kr for kr in read_ranges if kr not in conflicts]
            if innocent:
                return innocent
        return conflicts
