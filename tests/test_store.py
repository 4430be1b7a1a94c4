"""Tests for the in-memory store.

Tests:
- Database: read versions, commit versions, conflict detection
- Conflict reporting: only when requested, exactly the conflicting reads
- MVCC window: TransactionTooOldError outside the window
- Transient error injection
- Reporting faults: FABRICATE, MISATTRIBUTE, SUPPRESS
- Resolver history pruning
- Latency profiles
"""

import numpy as np
import pytest

from conflictkeys.keys import KeyRange, key_after
from conflictkeys.latency import (
    FixedLatency,
    LognormalLatency,
    available_profiles,
    load_profile,
)
from conflictkeys.store import (
    CommitUnknownResultError,
    Database,
    NotCommittedError,
    ProxyMemoryLimitExceededError,
    ReportingFault,
    Resolver,
    StoreConfig,
    StoreError,
    TransactionTooOldError,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def kr(begin, end):
    return KeyRange(begin.encode(), end.encode())


def drive(gen):
    """Run a latency-yielding generator to completion, return its value."""
    try:
        next(gen)
        while True:
            gen.send(None)
    except StopIteration as e:
        return e.value


def make_db(**kwargs):
    return Database(StoreConfig(**kwargs), rng=np.random.RandomState(42))


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

class TestDatabaseVersions:
    def test_initial_read_version(self):
        assert drive(make_db().get_read_version()) == 0

    def test_commit_advances_version(self):
        db = make_db()
        v1 = drive(db.commit(0, [], [kr("a", "b")]))
        v2 = drive(db.commit(v1, [], [kr("a", "b")]))
        assert v2 > v1 > 0
        assert drive(db.get_read_version()) == v2

    def test_clock_drives_versions(self):
        now = [0.0]
        db = Database(StoreConfig(versions_per_ms=1000), clock=lambda: now[0])
        now[0] = 2.5
        assert drive(db.commit(0, [], [kr("a", "b")])) == 2500

    def test_versions_strictly_increase_with_stalled_clock(self):
        db = Database(StoreConfig(), clock=lambda: 1.0)
        v1 = drive(db.commit(0, [], [kr("a", "b")]))
        v2 = drive(db.commit(v1, [], [kr("a", "b")]))
        assert v2 == v1 + 1

    def test_grv_yields_latency(self):
        db = Database(StoreConfig(grv_latency=FixedLatency(3.0)))
        assert next(db.get_read_version()) == 3.0


class TestConflictDetection:
    def test_overlapping_write_conflicts(self):
        db = make_db()
        drive(db.commit(0, [], [kr("010", "030")]))
        with pytest.raises(NotCommittedError):
            drive(db.commit(0, [kr("020", "040")], []))

    def test_disjoint_write_commits(self):
        db = make_db()
        drive(db.commit(0, [], [kr("010", "020")]))
        assert drive(db.commit(0, [kr("030", "040")], [])) > 0

    def test_adjacent_ranges_do_not_conflict(self):
        db = make_db()
        drive(db.commit(0, [], [kr("010", "020")]))
        drive(db.commit(0, [kr("020", "030")], []))

    def test_newer_read_version_sees_write(self):
        db = make_db()
        v = drive(db.commit(0, [], [kr("010", "030")]))
        drive(db.commit(v, [kr("020", "040")], []))

    def test_conflict_is_retryable(self):
        db = make_db()
        drive(db.commit(0, [], [kr("a", "c")]))
        with pytest.raises(NotCommittedError) as excinfo:
            drive(db.commit(0, [kr("b", "d")], []))
        assert excinfo.value.retryable
        assert excinfo.value.code == 1020

    def test_failed_commit_does_not_apply_writes(self):
        db = make_db()
        drive(db.commit(0, [], [kr("a", "c")]))
        version = db.committed_version
        with pytest.raises(NotCommittedError):
            drive(db.commit(0, [kr("b", "d")], [kr("x", "y")]))
        assert db.committed_version == version
        drive(db.commit(0, [kr("x", "z")], []))


class TestConflictReporting:
    def test_no_report_unless_requested(self):
        db = make_db()
        drive(db.commit(0, [], [kr("a", "c")]))
        with pytest.raises(NotCommittedError) as excinfo:
            drive(db.commit(0, [kr("b", "d")], []))
        assert excinfo.value.conflicting_ranges == []

    def test_reports_only_conflicting_reads(self):
        db = make_db()
        drive(db.commit(0, [], [kr("a", "c")]))
        with pytest.raises(NotCommittedError) as excinfo:
            drive(db.commit(0, [kr("b", "d"), kr("x", "y")], [],
                            report_conflicting_keys=True))
        assert excinfo.value.conflicting_ranges == [kr("b", "d")]

    def test_reports_every_conflicting_read(self):
        db = make_db()
        drive(db.commit(0, [], [kr("a", "z")]))
        reads = [kr("b", "c"), kr("m", "n")]
        with pytest.raises(NotCommittedError) as excinfo:
            drive(db.commit(0, reads, [], report_conflicting_keys=True))
        assert excinfo.value.conflicting_ranges == reads


# ---------------------------------------------------------------------------
# MVCC window and transient errors
# ---------------------------------------------------------------------------

class TestErrors:
    def test_transaction_too_old(self):
        now = [0.0]
        db = Database(
            StoreConfig(mvcc_window_versions=10, versions_per_ms=1000),
            clock=lambda: now[0],
        )
        now[0] = 1.0
        drive(db.commit(0, [], [kr("a", "b")]))
        assert db.resolver.oldest_version == 990
        with pytest.raises(TransactionTooOldError) as excinfo:
            drive(db.commit(0, [kr("x", "y")], []))
        assert excinfo.value.retryable

    def test_transient_commit_error(self):
        db = make_db(transient_error_probability=1.0)
        with pytest.raises(CommitUnknownResultError):
            drive(db.commit(0, [], [kr("a", "b")]))
        assert db.committed_version == 0
        assert db.resolver.history_size == 0

    def test_transient_grv_error(self):
        db = make_db(transient_error_probability=1.0)
        with pytest.raises(ProxyMemoryLimitExceededError) as excinfo:
            drive(db.get_read_version())
        assert isinstance(excinfo.value, StoreError)
        assert excinfo.value.retryable

    def test_invalid_probability(self):
        with pytest.raises(ValueError):
            make_db(transient_error_probability=1.5)


# ---------------------------------------------------------------------------
# Reporting faults
# ---------------------------------------------------------------------------

class TestReportingFaults:
    def _conflict(self, db, reads):
        drive(db.commit(0, [], [kr("a", "c")]))
        with pytest.raises(NotCommittedError) as excinfo:
            drive(db.commit(0, reads, [], report_conflicting_keys=True))
        return excinfo.value.conflicting_ranges

    def test_fabricate(self):
        db = make_db(reporting_fault=ReportingFault.FABRICATE)
        reported = self._conflict(db, [kr("b", "d")])
        assert reported == [KeyRange(b"b", key_after(b"b"))]

    def test_misattribute(self):
        db = make_db(reporting_fault=ReportingFault.MISATTRIBUTE)
        reported = self._conflict(db, [kr("b", "d"), kr("x", "y")])
        assert reported == [kr("x", "y")]

    def test_misattribute_without_innocent_reads(self):
        db = make_db(reporting_fault=ReportingFault.MISATTRIBUTE)
        assert self._conflict(db, [kr("b", "d")]) == [kr("b", "d")]

    def test_suppress_commits_conflicting_transaction(self):
        db = make_db(reporting_fault=ReportingFault.SUPPRESS)
        drive(db.commit(0, [], [kr("a", "c")]))
        assert drive(db.commit(0, [kr("b", "d")], [])) > 0


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class TestResolver:
    def test_read_only_commit_adds_no_history(self):
        resolver = Resolver(mvcc_window_versions=100)
        resolver.record_writes(1, [])
        assert resolver.history_size == 0

    def test_prunes_outside_window(self):
        resolver = Resolver(mvcc_window_versions=100)
        resolver.record_writes(10, [kr("a", "b")])
        resolver.record_writes(200, [kr("c", "d")])
        assert resolver.history_size == 1
        assert resolver.oldest_version == 100
        assert resolver.is_too_old(50)
        assert not resolver.is_too_old(150)

    def test_only_newer_writes_conflict(self):
        resolver = Resolver(mvcc_window_versions=1000)
        resolver.record_writes(5, [kr("a", "c")])
        assert resolver.conflicting_reads(4, [kr("b", "d")]) == [kr("b", "d")]
        assert resolver.conflicting_reads(5, [kr("b", "d")]) == []


# ---------------------------------------------------------------------------
# Latency
# ---------------------------------------------------------------------------

class TestLatency:
    def test_fixed(self):
        assert FixedLatency(2.0).sample(np.random.RandomState(0)) == 2.0

    def test_lognormal_floor(self):
        dist = LognormalLatency.from_median(median_ms=1.0, sigma=2.0, min_latency_ms=0.5)
        rng = np.random.RandomState(0)
        assert all(dist.sample(rng) >= 0.5 for _ in range(1000))

    def test_lognormal_median(self):
        dist = LognormalLatency.from_median(median_ms=10.0, sigma=0.3, min_latency_ms=0.0)
        rng = np.random.RandomState(1)
        samples = [dist.sample(rng) for _ in range(5000)]
        assert np.median(samples) == pytest.approx(10.0, rel=0.05)

    def test_profiles_available(self):
        assert {"instant", "local", "wan"} <= set(available_profiles())

    def test_instant_profile(self):
        profile = load_profile("instant")
        assert profile.grv_latency == FixedLatency(0.5)
        assert profile.commit_latency == FixedLatency(1.0)

    def test_lognormal_profile(self):
        profile = load_profile("wan")
        assert isinstance(profile.commit_latency, LognormalLatency)

    def test_unknown_profile(self):
        with pytest.raises(ValueError):
            load_profile("nonexistent")
