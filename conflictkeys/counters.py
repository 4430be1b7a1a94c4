"""Run-wide counters shared by every actor of a run."""

from __future__ import annotations

import threading
from typing import Dict

COUNTER_NAMES = ("transactions", "commits", "conflicts", "retries", "invalid_reports")


class RunCounters:
    """Increment-only counters.

    - transactions: transactions that committed
    - commits: commit attempts
    - conflicts: commits rejected with a conflict
    - retries: iterations restarted after a transient error
    - invalid_reports: conflict-reporting violations found by the checker

    One instance is created per run and passed to every actor. Increments
    take a lock so actors may also run on separate threads.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._values: Dict[str, int] = dict.fromkeys(COUNTER_NAMES, 0)

    def increment(self, name: str, amount: int = 1) -> None:
        if name not in self._values:
            raise KeyError(f"Unknown counter: {name!r}")
        if amount < 0:
            raise ValueError("counters only increase")
        with self._lock:
            self._values[name] += amount

    @property
    def transactions(self) -> int:
        return self._values["transactions"]

    @property
    def commits(self) -> int:
        return self._values["commits"]

    @property
    def conflicts(self) -> int:
        return self._values["conflicts"]

    @property
    def retries(self) -> int:
        return self._values["retries"]

    @property
    def invalid_reports(self) -> int:
        return self._values["invalid_reports"]

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)
