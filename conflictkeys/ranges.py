"""Random conflict range generation.

The number of ranges attached to a transaction follows a geometric
distribution with at least one draw: after each range another is added
with probability p = (mean - 1) / mean, so the expected count is ``mean``.
"""

from __future__ import annotations

from typing import List

import numpy as np

from conflictkeys.keys import KeyRange, Keyspace


class ConflictRangeGenerator:
    """Draws non-empty random key ranges over a Keyspace.

    The random source is passed to generate() so that each actor owns
    its own seeded RandomState.
    """

    def __init__(self, keyspace: Keyspace, mean_count: float = 1.0):
        if mean_count < 1:
            raise ValueError(f"mean_count must be >= 1, got {mean_count}")
        self._keyspace = keyspace
        self._continue_probability = (mean_count - 1.0) / mean_count

    @property
    def keyspace(self) -> Keyspace:
        return self._keyspace

    @property
    def continue_probability(self) -> float:
        return self._continue_probability

    def random_range(self, rng: np.random.RandomState) -> KeyRange:
        """One range [key(start), key(end)) with start < end."""
        node_count = self._keyspace.node_count
        start = int(rng.randint(0, node_count))
        end = int(rng.randint(start + 1, node_count + 1))
        return self._keyspace.range_for_indices(start, end)

    def generate(self, rng: np.random.RandomState) -> List[KeyRange]:
        ranges = [self.random_range(rng)]
        while rng.random_sample() < self._continue_probability:
            ranges.append(self.random_range(rng))
        return ranges
