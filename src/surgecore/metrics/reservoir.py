"""
Bounded latency reservoirs and percentile estimation.

Each reservoir keeps at most `capacity` values chosen by Algorithm R, so every
observed value has the same chance of being retained. While a reservoir has
seen no more values than it can hold, percentiles are exact; afterwards they
are estimates over a uniform sample of the stream.

Percentiles use the nearest-rank definition: the smallest retained value whose
cumulative weight reaches q% of the total weight. Merging reservoirs of
different fill levels weights each value by `seen / retained` of its reservoir.
"""

from __future__ import annotations

import random
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np


class LatencyReservoir:
    """Uniform sample of a latency stream with a fixed memory bound."""

    def __init__(self, capacity: int, rng: Optional[random.Random] = None) -> None:
        if capacity <= 0:
            raise ValueError("Reservoir capacity must be positive")
        self.capacity = capacity
        self.seen = 0
        self._values: List[float] = []
        self._rng = rng or random.Random()

    def add(self, value: float) -> None:
        self.seen += 1
        if len(self._values) < self.capacity:
            self._values.append(value)
            return
        slot = self._rng.randrange(self.seen)
        if slot < self.capacity:
            self._values[slot] = value

    @property
    def values(self) -> List[float]:
        return list(self._values)

    @property
    def exact(self) -> bool:
        return self.seen <= self.capacity

    def __len__(self) -> int:
        return len(self._values)

    def percentile(self, q: float) -> float:
        return weighted_percentiles([(self._values, 1.0)], [q])[q]


def weighted_percentiles(groups: Iterable[Tuple[Sequence[float], float]], qs: Sequence[float]) -> Dict[float, float]:
    """Nearest-rank percentiles over several value groups, each with a per-value weight.

    Returns 0.0 for every requested percentile when no values are present.
    """
    values: List[np.ndarray] = []
    weights: List[np.ndarray] = []
    for group_values, weight in groups:
        if len(group_values) == 0:
            continue
        arr = np.asarray(group_values, dtype=float)
        values.append(arr)
        weights.append(np.full(arr.shape, float(weight)))

    if not values:
        return {q: 0.0 for q in qs}

    all_values = np.concatenate(values)
    all_weights = np.concatenate(weights)
    order = np.argsort(all_values, kind="stable")
    sorted_values = all_values[order]
    cumulative = np.cumsum(all_weights[order])
    total = cumulative[-1]

    result: Dict[float, float] = {}
    for q in qs:
        if not 0 < q <= 100:
            raise ValueError(f"Percentile must be in (0, 100], got {q}")
        # Relative tolerance keeps q=100 on the last element despite float drift
        target = total * q / 100.0 * (1 - 1e-12)
        index = int(np.searchsorted(cumulative, target, side="left"))
        result[q] = float(sorted_values[min(index, len(sorted_values) - 1)])
    return result
