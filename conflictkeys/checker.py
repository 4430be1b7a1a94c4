"""Verification of the store's conflicting-keys reports.

After tx2 conflicts, every reported range must be:
- sound: contain at least one read conflict range tx2 declared. The
  resolver may merge overlapping read ranges, so a reported range is
  either an original read range or a union of several.
- relevant: intersect at least one write conflict range tx1 committed.

After tx2 commits, no read range of tx2 may intersect a write range of
tx1, otherwise the store missed a conflict.

Violations are counted and logged; they never raise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from conflictkeys.counters import RunCounters
from conflictkeys.keys import KeyRange, key_after
from conflictkeys.transaction import (
    CONFLICTING_KEYS_FALSE,
    CONFLICTING_KEYS_PREFIX,
    CONFLICTING_KEYS_TRUE,
)

logger = logging.getLogger(__name__)


class MalformedReportError(Exception):
    """The special-key encoding of a conflict report is invalid."""
    pass


class ViolationKind(Enum):
    MALFORMED_REPORT = "malformed_report"
    UNSOUND_REPORT = "unsound_report"
    IRRELEVANT_REPORT = "irrelevant_report"
    MISSED_CONFLICT = "missed_conflict"


_REASONS = {
    ViolationKind.MALFORMED_REPORT: "Conflicting keys report is empty or malformed",
    ViolationKind.UNSOUND_REPORT:
        "Returned conflicting keys are not original or merged readConflictRanges",
    ViolationKind.IRRELEVANT_REPORT:
        "Returned keyrange is not conflicting with any writeConflictRange",
    ViolationKind.MISSED_CONFLICT: "No conflicts returned but it should",
}


@dataclass(frozen=True)
class Violation:
    """One breach of the reporting contract."""
    kind: ViolationKind
    reported_range: Optional[KeyRange] = None
    read_range: Optional[KeyRange] = None
    write_range: Optional[KeyRange] = None
    detail: str = ""

    @property
    def reason(self) -> str:
        return _REASONS[self.kind]

    def describe(self) -> str:
        parts = [f"Reason={self.reason}"]
        if self.reported_range is not None:
            parts.append(f"ReportedRange={self.reported_range}")
        if self.read_range is not None:
            parts.append(f"ReadConflictRange={self.read_range}")
        if self.write_range is not None:
            parts.append(f"WriteConflictRange={self.write_range}")
        if self.detail:
            parts.append(f"Detail={self.detail}")
        return " ".join(parts)


# ---------------------------------------------------------------------------
# Special-key decoding
# ---------------------------------------------------------------------------

def special_key_range() -> Tuple[bytes, bytes]:
    """Bounds of the reported ranges in the special keyspace.

    The bare prefix always holds a false boundary and is skipped.
    """
    return key_after(CONFLICTING_KEYS_PREFIX), CONFLICTING_KEYS_PREFIX + b"\xff\xff"


def decode_conflicting_keys(kvs: Sequence[Tuple[bytes, bytes]]) -> List[KeyRange]:
    """Decode alternating begin(true)/end(false) boundaries into ranges."""
    if not kvs:
        raise MalformedReportError("no conflicting keys reported")
    if len(kvs) % 2 != 0:
        raise MalformedReportError(f"odd number of boundaries ({len(kvs)})")

    ranges = []
    for i in range(0, len(kvs), 2):
        (begin_key, begin_tag), (end_key, end_tag) = kvs[i], kvs[i + 1]
        if begin_tag != CONFLICTING_KEYS_TRUE or end_tag != CONFLICTING_KEYS_FALSE:
            raise MalformedReportError(
                f"boundary tags at {i} are {begin_tag!r}/{end_tag!r}"
            )
        for key in (begin_key, end_key):
            if not key.startswith(CONFLICTING_KEYS_PREFIX):
                raise MalformedReportError(f"key {key!r} outside conflicting keys prefix")
        begin = begin_key[len(CONFLICTING_KEYS_PREFIX):]
        end = end_key[len(CONFLICTING_KEYS_PREFIX):]
        if not begin < end:
            raise MalformedReportError(f"empty or inverted range at {i}")
        ranges.append(KeyRange(begin, end))
    return ranges


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

def check_conflict_report(
    reported: Sequence[KeyRange],
    read_ranges: Sequence[KeyRange],
    write_ranges: Sequence[KeyRange],
) -> List[Violation]:
    """Soundness and relevance of each reported range.

    Relevance is only checked for ranges that are sound.
    """
    violations = []
    for kr in reported:
        if not any(kr.contains(rr) for rr in read_ranges):
            violations.append(Violation(ViolationKind.UNSOUND_REPORT, reported_range=kr))
        elif not any(kr.intersects(wr) for wr in write_ranges):
            violations.append(Violation(ViolationKind.IRRELEVANT_REPORT, reported_range=kr))
    return violations


def check_no_conflict(
    read_ranges: Sequence[KeyRange],
    write_ranges: Sequence[KeyRange],
) -> List[Violation]:
    """At most one violation, naming the first intersecting pair."""
    for rr in read_ranges:
        for wr in write_ranges:
            if wr.intersects(rr):
                return [Violation(ViolationKind.MISSED_CONFLICT, read_range=rr, write_range=wr)]
    return []


MAX_RECORDED_FAILURES = 1000


class InvariantChecker:
    """Applies the checks and records failures against shared counters.

    Every violation is counted and logged. Only the first max_failures
    are kept in failures.
    """

    def __init__(self, counters: RunCounters, max_failures: int = MAX_RECORDED_FAILURES):
        self._counters = counters
        self._max_failures = max_failures
        self.failures: List[Violation] = []

    def _record(self, violations: List[Violation]) -> List[Violation]:
        for violation in violations:
            self._counters.increment("invalid_reports")
            if len(self.failures) < self._max_failures:
                self.failures.append(violation)
            logger.error(f"TestFailure: {violation.describe()}")
        return violations

    def verify_conflict(
        self,
        kvs: Sequence[Tuple[bytes, bytes]],
        read_ranges: Sequence[KeyRange],
        write_ranges: Sequence[KeyRange],
    ) -> Tuple[List[KeyRange], List[Violation]]:
        """Check a conflict report read from the special keyspace.

        Returns the decoded ranges (empty if malformed) and violations.
        """
        try:
            reported = decode_conflicting_keys(kvs)
        except MalformedReportError as e:
            return [], self._record([Violation(ViolationKind.MALFORMED_REPORT, detail=str(e))])
        return reported, self._record(check_conflict_report(reported, read_ranges, write_ranges))

    def verify_commit(
        self,
        read_ranges: Sequence[KeyRange],
        write_ranges: Sequence[KeyRange],
    ) -> List[Violation]:
        return self._record(check_no_conflict(read_ranges, write_ranges))
