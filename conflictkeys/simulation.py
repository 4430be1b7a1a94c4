"""Workload runner.

Runs one ConflictingClient per actor as a SimPy process for the test
duration and collects counters and per-iteration records.

Key types:
- WorkloadConfig: Workload parameters (frozen)
- Statistics: Counters, failures and per-iteration records
- Simulation: Main runner that bridges generators with SimPy

The runner is the only place SimPy is used. The driver, transactions
and store yield bare floats representing latencies in milliseconds.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Generator, List, Optional

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
import simpy

from conflictkeys.checker import InvariantChecker, Violation
from conflictkeys.counters import RunCounters
from conflictkeys.driver import ConflictingClient, IterationResult
from conflictkeys.keys import Keyspace
from conflictkeys.ranges import ConflictRangeGenerator
from conflictkeys.store import Database

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# WorkloadConfig
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WorkloadConfig:
    """Workload parameters.

    Range counts are the mean number of conflict ranges per transaction
    and must be >= 1.
    """
    keyspace: Keyspace = Keyspace()
    test_duration_ms: float = 10_000.0
    actors_per_client: int = 1
    read_conflict_range_count: float = 1.0
    write_conflict_range_count: float = 1.0
    seed: Optional[int] = None

    def __post_init__(self):
        if self.actors_per_client < 1:
            raise ValueError(f"actors_per_client must be >= 1, got {self.actors_per_client}")
        if self.read_conflict_range_count < 1 or self.write_conflict_range_count < 1:
            raise ValueError("conflict range counts per transaction must be >= 1")


def actor_keyspace(keyspace: Keyspace, actor_id: int, n_actors: int) -> Keyspace:
    """Keyspace private to one actor.

    Actors share a Database, so each gets its own sub-prefix; otherwise
    another actor's commit could be the cause of tx2's conflict.
    """
    if n_actors == 1:
        return keyspace
    suffix = b"/%d/" % actor_id
    return dataclasses.replace(
        keyspace,
        prefix=keyspace.prefix + suffix,
        key_bytes=keyspace.key_bytes + len(suffix),
    )


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

_ARROW_SCHEMA = pa.schema([
    ("actor", pa.int32()),
    ("iteration", pa.int64()),
    ("t_start", pa.float64()),
    ("t_end", pa.float64()),
    ("outcome", pa.string()),
    ("read_version", pa.int64()),
    ("tx1_raw", pa.bool_()),
    ("tx2_raw", pa.bool_()),
    ("write_ranges", pa.int32()),
    ("read_ranges", pa.int32()),
    ("reported_ranges", pa.int32()),
    ("violations", pa.int32()),
    ("error_code", pa.int32()),
])


def _result_to_row(actor: int, t_start: float, t_end: float, r: IterationResult) -> dict:
    return {
        "actor": actor,
        "iteration": r.iteration,
        "t_start": t_start,
        "t_end": t_end,
        "outcome": r.outcome.value,
        "read_version": r.read_version if r.read_version is not None else -1,
        "tx1_raw": r.tx1_raw,
        "tx2_raw": r.tx2_raw,
        "write_ranges": len(r.write_ranges),
        "read_ranges": len(r.read_ranges),
        "reported_ranges": len(r.reported_ranges),
        "violations": len(r.violations),
        "error_code": r.error_code if r.error_code is not None else 0,
    }


def _rows_to_arrow_table(rows: list[dict]) -> pa.Table:
    arrays = {}
    for field in _ARROW_SCHEMA:
        arrays[field.name] = pa.array(
            [row[field.name] for row in rows],
            type=field.type,
        )
    return pa.table(arrays, schema=_ARROW_SCHEMA)


class Statistics:
    """Run counters plus per-iteration records.

    When output_path is provided, records are written incrementally to
    parquet in row groups of buffer_size. Otherwise they are kept in
    memory.
    """

    def __init__(
        self,
        counters: RunCounters,
        checker: InvariantChecker,
        duration_ms: float,
        output_path: str | None = None,
        buffer_size: int = 1000,
    ):
        self.counters = counters
        self._checker = checker
        self.duration_ms = duration_ms
        self._output_path = output_path
        self._buffer_size = buffer_size
        self._buffer: list[dict] = []
        self._writer: pq.ParquetWriter | None = None
        self._n_rows = 0

        self.rows: list[dict] = []

    @property
    def failures(self) -> List[Violation]:
        return list(self._checker.failures)

    @property
    def iterations(self) -> int:
        return self._n_rows

    def record_iteration(
        self,
        actor: int,
        t_start: float,
        t_end: float,
        result: IterationResult,
    ) -> None:
        row = _result_to_row(actor, t_start, t_end, result)
        self._n_rows += 1
        if self._output_path:
            self._buffer.append(row)
            if len(self._buffer) >= self._buffer_size:
                self._flush()
        else:
            self.rows.append(row)

    def _flush(self) -> None:
        if not self._buffer:
            return
        table = _rows_to_arrow_table(self._buffer)
        if self._writer is None:
            self._writer = pq.ParquetWriter(
                self._output_path, _ARROW_SCHEMA, compression="snappy",
            )
        self._writer.write_table(table)
        self._buffer.clear()

    def close(self) -> None:
        """Flush remaining buffer and close the parquet writer."""
        self._flush()
        if self._writer:
            self._writer.close()
            self._writer = None

    def check(self) -> bool:
        """Pass/fail verdict of the run."""
        return self.counters.invalid_reports == 0

    def metrics(self) -> Dict[str, float]:
        duration_s = self.duration_ms / 1000.0
        values = self.counters.as_dict()

        def rate(n: int) -> float:
            return n / duration_s if duration_s > 0 else 0.0

        return {
            "Measured Duration": duration_s,
            "Transactions": values["transactions"],
            "Transactions/sec": rate(values["transactions"]),
            "Commits": values["commits"],
            "Commits/sec": rate(values["commits"]),
            "Conflicts": values["conflicts"],
            "Conflicts/sec": rate(values["conflicts"]),
            "Retries": values["retries"],
            "Retries/sec": rate(values["retries"]),
            "InvalidReports": values["invalid_reports"],
        }

    def to_dataframe(self) -> pd.DataFrame:
        if self._output_path:
            self.close()
            if self._n_rows == 0:
                return pd.DataFrame()
            return pd.read_parquet(self._output_path)

        if not self.rows:
            return pd.DataFrame()
        return _rows_to_arrow_table(self.rows).to_pandas()

    def export_parquet(self, path: str) -> None:
        """Export to parquet file.

        If already streaming to output_path, this closes the writer.
        """
        if self._output_path:
            self.close()
            return
        pq.write_table(_rows_to_arrow_table(self.rows), path, compression="snappy")


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------

class Simulation:
    """Main workload runner.

    Usage:
        sim = Simulation(WorkloadConfig(seed=1), Database())
        stats = sim.run()
        assert stats.check()
    """

    def __init__(
        self,
        config: WorkloadConfig,
        database: Database,
        output_path: str | None = None,
    ):
        self._config = config
        self._database = database
        self._counters = RunCounters()
        self._checker = InvariantChecker(self._counters)
        self._stats = Statistics(
            self._counters,
            self._checker,
            duration_ms=config.test_duration_ms,
            output_path=output_path,
        )

    @property
    def counters(self) -> RunCounters:
        return self._counters

    def _make_client(self, actor_id: int) -> ConflictingClient:
        n = self._config.actors_per_client
        keyspace = actor_keyspace(self._config.keyspace, actor_id, n)
        seed = self._config.seed
        rng = np.random.RandomState(seed + actor_id) if seed is not None else np.random.RandomState()
        return ConflictingClient(
            self._database,
            ConflictRangeGenerator(keyspace, self._config.read_conflict_range_count),
            ConflictRangeGenerator(keyspace, self._config.write_conflict_range_count),
            self._counters,
            self._checker,
            rng,
        )

    def run(self, on_progress: Optional[Callable[[float], None]] = None) -> Statistics:
        """Run for the test duration and return collected statistics.

        on_progress, if given, receives the simulated milliseconds elapsed
        since its previous call.
        """
        duration = self._config.test_duration_ms
        if duration <= 0:
            return self._stats

        env = simpy.Environment()
        self._database.attach_clock(lambda: env.now)
        actors = [
            env.process(self._run_actor(env, actor_id, self._make_client(actor_id)))
            for actor_id in range(self._config.actors_per_client)
        ]
        done = env.all_of(actors)

        if on_progress is None:
            env.run(until=done)
        else:
            last = 0.0
            step = max(duration / 100, 1.0)
            while not done.triggered and env.peek() < duration:
                env.run(until=min(env.peek() + step, duration))
                on_progress(env.now - last)
                last = env.now
            env.run(until=done)
            on_progress(max(duration - last, 0.0))

        self._stats.close()
        logger.info(
            f"Run complete: {self._stats.iterations} iterations, "
            f"{self._counters.invalid_reports} invalid reports"
        )
        return self._stats

    def _run_actor(
        self,
        env: simpy.Environment,
        actor_id: int,
        client: ConflictingClient,
    ) -> Generator:
        """Repeat iterations until the duration elapses."""
        while env.now < self._config.test_duration_ms:
            t_start = env.now
            result = yield from self._drive_generator(env, client.run_iteration())
            self._stats.record_iteration(actor_id, t_start, env.now, result)

    @staticmethod
    def _drive_generator(
        env: simpy.Environment,
        gen: Generator[float, None, IterationResult],
    ) -> Generator:
        """Bridge a latency-yielding generator with SimPy timeouts.

        Each yielded float becomes a SimPy timeout; the generator's
        return value is returned.
        """
        try:
            latency = next(gen)
        except StopIteration as e:
            return e.value

        while True:
            yield env.timeout(latency)
            try:
                latency = gen.send(None)
            except StopIteration as e:
                return e.value
