from __future__ import annotations

import math
from collections.abc import Sequence


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def sample_std(values: Sequence[float]) -> float:
    n = len(values)
    if n <= 1:
        return 0.0
    m = mean(values)
    return math.sqrt(sum((v - m) ** 2 for v in values) / (n - 1))


def population_std(values: Sequence[float]) -> float:
    n = len(values)
    if n == 0:
        return 0.0
    m = mean(values)
    return math.sqrt(sum((v - m) ** 2 for v in values) / n)


def floor_percentile(sorted_values: Sequence[float], q: float) -> float:
    """Nearest-rank-below percentile: ``sorted[min(n-1, floor(q*(n-1)))]``."""
    if not sorted_values:
        return 0.0
    n = len(sorted_values)
    idx = min(n - 1, max(0, math.floor(q * (n - 1))))
    return float(sorted_values[idx])
