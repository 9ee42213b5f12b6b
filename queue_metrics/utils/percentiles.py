"""
Percentile and spread helpers.
"""
import math
from typing import Dict, Iterable, Sequence


def percentile(values: Iterable[float], p: float) -> float:
    """
    Percentile with linear interpolation between the closest ranks.

    index = (p / 100) * (n - 1); an empty input yields 0.0.
    """
    ordered = sorted(values)
    if not ordered:
        return 0.0

    index = (p / 100.0) * (len(ordered) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return float(ordered[lower])

    weight = index - lower
    return ordered[lower] * (1 - weight) + ordered[upper] * weight


def percentiles(values: Iterable[float], ps: Sequence[float]) -> Dict[str, float]:
    """Several percentiles at once, keyed ``p50``, ``p95`` ..."""
    ordered = sorted(values)
    return {f"p{int(p)}": percentile(ordered, p) for p in ps}


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return sum(values) / len(values)


def stddev(values: Sequence[float]) -> float:
    """Population standard deviation; fewer than two samples give 0.0."""
    if len(values) < 2:
        return 0.0
    avg = mean(values)
    variance = sum((value - avg) ** 2 for value in values) / len(values)
    return math.sqrt(variance)
