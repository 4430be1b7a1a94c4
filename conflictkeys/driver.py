"""Two-transaction conflict protocol.

Each iteration:
1. tx1 obtains read version v; tx2 is pinned to v
2. Both get random conflict ranges (tx1 writes and tx2 reads are recorded)
3. tx1 commits, then tx2 attempts to commit
4. The outcome and the recorded ranges go to the InvariantChecker
5. Both transactions are reset

Pinning tx2 to tx1's read version makes tx2 observe the same snapshot
tx1 started from, so whether tx2 conflicts depends only on the ranges.
tx2's write ranges exercise the API and are never verified.

Any store error other than tx2's conflict restarts the iteration after
both transactions' on_error() backoff.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Generator, List, Optional, Tuple

import numpy as np

from conflictkeys.checker import InvariantChecker, Violation, special_key_range
from conflictkeys.counters import RunCounters
from conflictkeys.keys import KeyRange
from conflictkeys.ranges import ConflictRangeGenerator
from conflictkeys.store import (
    Database,
    NotCommittedError,
    StoreError,
    TransactionOption,
)

logger = logging.getLogger(__name__)

RAW_MODE_PROBABILITY = 0.5


class Outcome(Enum):
    COMMITTED = "committed"
    CONFLICT_DETECTED = "conflict"
    OTHER_ERROR = "other_error"


@dataclass(frozen=True)
class IterationResult:
    """Immutable record of one protocol iteration."""
    iteration: int
    outcome: Outcome
    read_version: Optional[int]
    tx1_raw: bool                        # tx1 ran with read-your-writes disabled
    tx2_raw: bool
    write_ranges: Tuple[KeyRange, ...]   # tx1 write conflict ranges
    read_ranges: Tuple[KeyRange, ...]    # tx2 read conflict ranges
    reported_ranges: Tuple[KeyRange, ...] = ()
    violations: Tuple[Violation, ...] = ()
    error_code: Optional[int] = None     # store error code on OTHER_ERROR


class ConflictingClient:
    """Owns one transaction pair and drives the protocol on it."""

    def __init__(
        self,
        database: Database,
        read_generator: ConflictRangeGenerator,
        write_generator: ConflictRangeGenerator,
        counters: RunCounters,
        checker: InvariantChecker,
        rng: np.random.RandomState,
    ):
        self._read_generator = read_generator
        self._write_generator = write_generator
        self._counters = counters
        self._checker = checker
        self._rng = rng
        self._iteration = 0

        self.tx1 = database.create_transaction(rng=rng)
        self.tx2 = database.create_transaction(rng=rng)

        # Recorded conflict ranges for the current iteration
        self._write_ranges: List[KeyRange] = []
        self._read_ranges: List[KeyRange] = []

    @property
    def iterations(self) -> int:
        return self._iteration

    def run_iteration(self) -> Generator[float, None, IterationResult]:
        """Run one iteration; yields latencies, returns its result."""
        self._iteration += 1
        tx1_raw = bool(self._rng.random_sample() < RAW_MODE_PROBABILITY)
        tx2_raw = bool(self._rng.random_sample() < RAW_MODE_PROBABILITY)

        try:
            result = yield from self._run_protocol(tx1_raw, tx2_raw)
            self.tx1.clear_backoff()
            self.tx2.clear_backoff()
        except StoreError as e:
            self._counters.increment("retries")
            logger.debug(f"Iteration {self._iteration}: {e.__class__.__name__}, retrying")
            yield from self.tx1.on_error(e)
            yield from self.tx2.on_error(e)
            result = IterationResult(
                iteration=self._iteration,
                outcome=Outcome.OTHER_ERROR,
                read_version=None,
                tx1_raw=tx1_raw,
                tx2_raw=tx2_raw,
                write_ranges=tuple(self._write_ranges),
                read_ranges=tuple(self._read_ranges),
                error_code=e.code,
            )
        finally:
            self._write_ranges.clear()
            self._read_ranges.clear()
            self.tx1.reset()
            self.tx2.reset()
        return result

    def _populate(self, tx1_raw: bool, tx2_raw: bool) -> None:
        self.tx2.set_option(TransactionOption.REPORT_CONFLICTING_KEYS)
        if tx1_raw:
            self.tx1.set_option(TransactionOption.READ_YOUR_WRITES_DISABLE)
        if tx2_raw:
            self.tx2.set_option(TransactionOption.READ_YOUR_WRITES_DISABLE)

        for kr in self._read_generator.generate(self._rng):
            self.tx1.add_read_conflict_range(kr)
        for kr in self._write_generator.generate(self._rng):
            self.tx1.add_write_conflict_range(kr)
            self._write_ranges.append(kr)

        for kr in self._read_generator.generate(self._rng):
            self.tx2.add_read_conflict_range(kr)
            self._read_ranges.append(kr)
        for kr in self._write_generator.generate(self._rng):
            self.tx2.add_write_conflict_range(kr)

    def _run_protocol(
        self,
        tx1_raw: bool,
        tx2_raw: bool,
    ) -> Generator[float, None, IterationResult]:
        read_version = yield from self.tx1.get_read_version()
        self.tx2.set_read_version(read_version)
        self._populate(tx1_raw, tx2_raw)

        self._counters.increment("commits")
        yield from self.tx1.commit()
        self._counters.increment("transactions")

        found_conflict = False
        self._counters.increment("commits")
        try:
            yield from self.tx2.commit()
            self._counters.increment("transactions")
        except NotCommittedError:
            found_conflict = True
            self._counters.increment("conflicts")

        reported: List[KeyRange] = []
        if found_conflict:
            begin, end = special_key_range()
            kvs = self.tx2.get_range(begin, end, limit=len(self._read_ranges) * 2)
            reported, violations = self._checker.verify_conflict(
                kvs, self._read_ranges, self._write_ranges,
            )
        else:
            violations = self._checker.verify_commit(self._read_ranges, self._write_ranges)

        return IterationResult(
            iteration=self._iteration,
            outcome=Outcome.CONFLICT_DETECTED if found_conflict else Outcome.COMMITTED,
            read_version=read_version,
            tx1_raw=tx1_raw,
            tx2_raw=tx2_raw,
            write_ranges=tuple(self._write_ranges),
            read_ranges=tuple(self._read_ranges),
            reported_ranges=tuple(reported),
            violations=tuple(violations),
        )
