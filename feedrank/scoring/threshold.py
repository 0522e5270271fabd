"""View-count statistics and the virality cutoff derived from them.

Everything here is pure: a list of view counts goes in, a ThresholdStats
comes out. Empty samples degrade to all-zero statistics.
"""

from __future__ import annotations

import math
import statistics
from typing import Sequence

from feedrank.scoring.models import Percentiles, ThresholdMethod, ThresholdStats

DEFAULT_MULTIPLIER = 1.5
MIN_MULTIPLIER = 0.5
MAX_MULTIPLIER = 3.0

_PERCENTILES = (25, 50, 75, 90, 95, 99)


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Linear interpolation at index p/100 * (n - 1) of an ascending sample."""
    if not sorted_values:
        return 0.0
    if len(sorted_values) == 1:
        return float(sorted_values[0])

    index = (p / 100) * (len(sorted_values) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return float(sorted_values[lower])

    weight = index - lower
    return sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight


def clamp_multiplier(multiplier: float | None) -> float:
    """None means "use the default"; an explicit value (even 0) is clamped, never replaced."""
    if multiplier is None:
        return DEFAULT_MULTIPLIER
    return max(MIN_MULTIPLIER, min(MAX_MULTIPLIER, float(multiplier)))


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def compute_stats(
    views: Sequence[int | float],
    method: ThresholdMethod = "statistical",
    multiplier: float | None = None,
) -> ThresholdStats:
    """Distribution statistics plus the threshold for `method`."""
    if not views:
        return ThresholdStats(
            method=method,
            multiplier=clamp_multiplier(multiplier) if method == "statistical" else None,
        )

    ordered = sorted(views)
    mean = statistics.fmean(ordered)
    std_dev = statistics.pstdev(ordered, mu=mean)
    pct = {f"p{p}": percentile(ordered, p) for p in _PERCENTILES}

    if method == "statistical":
        used = clamp_multiplier(multiplier)
        threshold = round_half_up(mean + used * std_dev)
    else:
        used = None
        threshold = round_half_up(mean)

    return ThresholdStats(
        count=len(ordered),
        mean=mean,
        median=pct["p50"],
        min=ordered[0],
        max=ordered[-1],
        std_dev=std_dev,
        percentiles=Percentiles(**pct),
        threshold=threshold,
        method=method,
        multiplier=used,
    )


def compute_threshold(
    views: Sequence[int | float],
    method: ThresholdMethod = "statistical",
    multiplier: float | None = None,
) -> int:
    return compute_stats(views, method, multiplier).threshold
