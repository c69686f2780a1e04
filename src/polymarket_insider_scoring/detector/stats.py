"""Statistical primitives shared by the detectors.

Provides percentile helpers, z-scores, Welford's online mean/variance
and a bounded reservoir of recent values for percentile estimation.
"""

from __future__ import annotations

import bisect
import math
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import numpy as np


def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """Return the pct-th percentile using linear interpolation.

    Args:
        sorted_values: Values in ascending order.
        pct: Percentile in the range 0-100.

    Returns:
        Interpolated percentile, or 0.0 for an empty sequence.
    """
    if not sorted_values:
        return 0.0
    return float(np.percentile(np.asarray(sorted_values, dtype=float), pct))


def percentile_rank(sorted_values: Sequence[float], value: float) -> float:
    """Return the percentage of values strictly below ``value``.

    An empty sequence ranks every value at the median (50.0).
    """
    if not sorted_values:
        return 50.0
    below = bisect.bisect_left(sorted_values, value)
    return below / len(sorted_values) * 100.0


def z_score(value: float, mean: float, std_dev: float) -> float:
    """Return ``(value - mean) / std_dev``, or 0.0 when std_dev is zero."""
    if std_dev <= 0 or not math.isfinite(std_dev):
        return 0.0
    return (value - mean) / std_dev


def describe(values: Iterable[float]) -> tuple[float, float]:
    """Return (mean, population std dev) of the values; (0, 0) if empty."""
    arr = np.fromiter(values, dtype=float)
    if arr.size == 0:
        return 0.0, 0.0
    return float(arr.mean()), float(arr.std())


@dataclass
class RunningStats:
    """Welford's online algorithm for mean and variance.

    Numerically stable for unbounded streams; each update is O(1).

    Attributes:
        count: Number of observations.
        mean: Running mean.
        m2: Sum of squared deviations from the mean.
        minimum: Smallest observation (0.0 before the first update).
        maximum: Largest observation (0.0 before the first update).
        total: Sum of all observations.
    """

    count: int = 0
    mean: float = 0.0
    m2: float = 0.0
    minimum: float = 0.0
    maximum: float = 0.0
    total: float = 0.0

    def update(self, value: float) -> None:
        """Fold one observation into the running statistics."""
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)
        self.total += value
        if self.count == 1:
            self.minimum = value
            self.maximum = value
        else:
            self.minimum = min(self.minimum, value)
            self.maximum = max(self.maximum, value)

    @property
    def variance(self) -> float:
        """Population variance."""
        if self.count < 2:
            return 0.0
        return self.m2 / self.count

    @property
    def std_dev(self) -> float:
        """Population standard deviation."""
        return math.sqrt(self.variance)

    def copy(self) -> RunningStats:
        """Return an independent copy."""
        return RunningStats(
            count=self.count,
            mean=self.mean,
            m2=self.m2,
            minimum=self.minimum,
            maximum=self.maximum,
            total=self.total,
        )


class Reservoir:
    """Bounded store of recent values for percentile estimation.

    In the default mode only the most recent ``capacity`` values are
    kept, so percentiles describe recent activity. With ``exact=True``
    every value is kept in sorted order and percentiles are exact, at
    the cost of memory proportional to history length.
    """

    def __init__(self, capacity: int, *, exact: bool = False) -> None:
        self.capacity = capacity
        self.exact = exact
        self._recent: deque[float] = deque(maxlen=None if exact else capacity)
        self._sorted: list[float] = []

    def __len__(self) -> int:
        return len(self._sorted) if self.exact else len(self._recent)

    def add(self, value: float) -> None:
        """Add a value, evicting the oldest when full."""
        if self.exact:
            bisect.insort(self._sorted, value)
        else:
            self._recent.append(value)

    def sorted_values(self) -> list[float]:
        """Return the retained values in ascending order."""
        if self.exact:
            return list(self._sorted)
        return sorted(self._recent)

    def percentiles(self, *pcts: float) -> dict[float, float]:
        """Return a mapping of percentile to value for the retained sample."""
        values = self.sorted_values()
        if not values:
            return {p: 0.0 for p in pcts}
        computed = np.percentile(np.asarray(values, dtype=float), list(pcts))
        return {p: float(v) for p, v in zip(pcts, computed, strict=True)}

    def copy(self) -> Reservoir:
        """Return an independent copy."""
        clone = Reservoir(self.capacity, exact=self.exact)
        clone._recent = deque(self._recent, maxlen=self._recent.maxlen)
        clone._sorted = list(self._sorted)
        return clone
