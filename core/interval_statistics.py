"""
interval_statistics.py
-----------------------
Gap statistics over an ordered sequence of transaction dates.

Intervals are whole-day differences between consecutive dates. The raw
statistics are returned as-is (no smoothing, no outlier removal) so that the
confidence scorer can penalize irregularity instead of having it hidden.
"""

import math
from datetime import date
from typing import List, Sequence

import numpy as np

from core.models import IntervalStats


def compute_interval_statistics(dates: Sequence[date]) -> IntervalStats:
    """
    Compute mean, standard deviation and coefficient of variation of the gaps
    between consecutive dates.

    Args:
        dates: Ascending sequence of at least two dates.

    Returns:
        IntervalStats. coefficient_of_variation is +inf when every date is the
        same day (mean interval of zero).

    Raises:
        ValueError: fewer than two dates, a null date, or dates out of order.
    """
    if dates is None or len(dates) < 2:
        raise ValueError(
            f"Interval statistics need at least 2 dates, got {0 if dates is None else len(dates)}"
        )
    if any(d is None for d in dates):
        raise ValueError("Interval statistics received a null date")

    ordinals = np.array([d.toordinal() for d in dates], dtype=np.int64)
    intervals = np.diff(ordinals)

    if np.any(intervals < 0):
        raise ValueError("Dates must be sorted in ascending order")

    mean = float(np.mean(intervals))
    std = float(np.std(intervals))   # Population std, matches the per-cycle view
    cv = std / mean if mean > 0 else math.inf

    return IntervalStats(
        mean_interval_days=mean,
        stddev_days=std,
        coefficient_of_variation=cv,
        intervals=[int(i) for i in intervals],
        median_interval_days=float(np.median(intervals)),
    )


def segment_by_gap(dates: Sequence[date], gap_multiplier: float) -> List[List[int]]:
    """
    Split an ascending date sequence wherever a gap exceeds gap_multiplier
    times the median gap, e.g. a subscription paused for eight months and
    then resumed.

    Returns:
        Runs of positions into dates, oldest first. A sequence with fewer
        than two dates, or a zero median gap, comes back as a single run.
    """
    if len(dates) < 2:
        return [list(range(len(dates)))]

    gaps = np.diff(np.array([d.toordinal() for d in dates], dtype=np.int64))
    median = float(np.median(gaps))
    if median <= 0:
        return [list(range(len(dates)))]

    threshold = gap_multiplier * median
    segments, current = [], [0]
    for i, gap in enumerate(gaps, start=1):
        if gap > threshold:
            segments.append(current)
            current = []
        current.append(i)
    segments.append(current)
    return segments
