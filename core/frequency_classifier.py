"""
frequency_classifier.py
------------------------
Maps a mean interval to a canonical frequency bucket and handles the
calendar side of cadence: day anchors and anchored next-date math.

Billing dates drift with weekends and month lengths, so each bucket accepts
a window around its target (max of 15% and 3 days by default, see
config.yaml). Month-based cadences are projected by calendar month, clamped
to the month's length, rather than by adding a fixed number of days: a bill
anchored to the 31st lands on Feb 29 in a leap year, not on March 2.
"""

import math
from collections import Counter
from datetime import date, timedelta
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from config.detection_config import FrequencyConfig, RegularityConfig
from core.models import DayAnchors, FrequencyClassification, IntervalStats


# Calendar months per cycle for month-anchored cadences
MONTH_BASED = {"monthly": 1, "bimonthly": 2, "quarterly": 3, "yearly": 12}

# Days per cycle for weekday-anchored cadences
WEEK_BASED = {"weekly": 7, "biweekly": 14}

# Bases (and largest multiple) tried when detect_interval_multiples is on,
# e.g. 21 days -> weekly x3, 120 days -> monthly x4. Monthly goes first.
_MULTIPLE_BASES = (("monthly", 12), ("weekly", 4))


# -----------------------------------------------------------------------------
# CLASSIFICATION
# -----------------------------------------------------------------------------

def classify_frequency(mean_interval_days: float, config: FrequencyConfig) -> FrequencyClassification:
    """
    Classify a mean interval into a frequency bucket.

    When more than one bucket window contains the mean, the bucket with the
    smallest relative deviation wins. Outside every window the result is
    "custom" with interval = rounded mean.

    Raises:
        ValueError: if the mean is not a positive finite number.
    """
    if mean_interval_days is None or not math.isfinite(mean_interval_days) or mean_interval_days <= 0:
        raise ValueError(
            f"mean_interval_days must be a positive finite number, got {mean_interval_days!r}"
        )

    best = None
    for bucket in config.buckets:
        deviation = abs(mean_interval_days - bucket.target_days)
        if deviation <= config.window_for(bucket):
            key = (deviation / bucket.target_days, bucket.target_days)
            if best is None or key < best[0]:
                best = (key, bucket)

    if best is not None:
        bucket = best[1]
        return FrequencyClassification(bucket.name, 1, float(bucket.target_days))

    if config.detect_interval_multiples:
        multiple = _classify_multiple(mean_interval_days, config)
        if multiple is not None:
            return multiple

    rounded = max(1, int(round(mean_interval_days)))
    return FrequencyClassification("custom", rounded, float(rounded))


def expected_interval_days(frequency: str, interval: int, config: FrequencyConfig) -> float:
    """Nominal length in days of one cycle of a (frequency, interval) pair."""
    if frequency == "custom":
        return float(interval)
    return float(config.bucket(frequency).target_days) * interval


def _classify_multiple(mean_interval_days: float, config: FrequencyConfig) -> Optional[FrequencyClassification]:
    for name, max_multiple in _MULTIPLE_BASES:
        try:
            bucket = config.bucket(name)
        except KeyError:
            continue
        k = int(round(mean_interval_days / bucket.target_days))
        if k < 2 or k > max_multiple:
            continue
        if abs(mean_interval_days - k * bucket.target_days) <= config.window_for(bucket):
            return FrequencyClassification(name, k, float(bucket.target_days * k))
    return None


# -----------------------------------------------------------------------------
# REGULARITY GATES
# -----------------------------------------------------------------------------

def cadence_fit_ratio(intervals: Sequence[int], cycle_days: float, config: RegularityConfig) -> float:
    """
    Share of gaps within max(fit_relative_tolerance * cycle, fit_min_days)
    of the cycle length. A mean can land in a bucket while most individual
    gaps are nowhere near it; this catches that.
    """
    gaps = np.asarray(intervals, dtype=float)
    if gaps.size == 0:
        return 0.0
    window = max(config.fit_relative_tolerance * cycle_days, config.fit_min_days)
    in_window = np.sum(np.abs(gaps - cycle_days) <= window)
    return float(in_window / len(gaps))


def regularity_failure(
    classification: FrequencyClassification,
    stats: IntervalStats,
    config: RegularityConfig,
) -> Optional[str]:
    """
    Check a classified cadence against the regularity gates.

    Returns:
        None when the cadence holds up, otherwise a short reason.
    """
    occurrences = len(stats.intervals) + 1

    fit_ratio = cadence_fit_ratio(stats.intervals, classification.expected_interval_days, config)
    if fit_ratio < config.min_fit_ratio:
        return f"only {fit_ratio:.0%} of gaps fit a {classification.expected_interval_days:g}-day cycle"

    weekly = classification.frequency == "weekly" and classification.interval == 1
    if weekly and occurrences < config.weekly_min_occurrences:
        return f"weekly cadence needs {config.weekly_min_occurrences} occurrences, got {occurrences}"

    if classification.frequency == "custom":
        if occurrences < config.custom_min_occurrences:
            return f"custom cadence needs {config.custom_min_occurrences} occurrences, got {occurrences}"
        if stats.coefficient_of_variation > config.custom_max_cv:
            return f"interval CV {stats.coefficient_of_variation:.2f} above {config.custom_max_cv}"
        if max(stats.intervals) > config.custom_max_gap_ratio * min(stats.intervals):
            return (
                f"largest gap {max(stats.intervals)}d exceeds "
                f"{config.custom_max_gap_ratio:g}x the smallest {min(stats.intervals)}d"
            )

    return None


# -----------------------------------------------------------------------------
# DAY ANCHORS
# -----------------------------------------------------------------------------

def dominant_value(values: Iterable[int]) -> Optional[int]:
    """Most frequent value; ties go to the smallest value."""
    counts = Counter(values)
    if not counts:
        return None
    top = max(counts.values())
    return min(v for v, c in counts.items() if c == top)


def compute_anchors(dates: Sequence[date], frequency: str) -> DayAnchors:
    """
    Derive display/reminder anchors from the dominant occurrence pattern.

    Month-based cadences get day_of_month and week_of_month; week-based
    cadences get day_of_week (Monday = 0). Daily and custom get none.
    """
    if not dates:
        return DayAnchors()

    if frequency in MONTH_BASED:
        return DayAnchors(
            day_of_month=dominant_value(d.day for d in dates),
            week_of_month=dominant_value((d.day - 1) // 7 + 1 for d in dates),
        )
    if frequency in WEEK_BASED:
        return DayAnchors(day_of_week=dominant_value(d.weekday() for d in dates))
    return DayAnchors()


# -----------------------------------------------------------------------------
# NEXT EXPECTED DATE
# -----------------------------------------------------------------------------

def next_expected_date(
    last_occurrence: date,
    classification: FrequencyClassification,
    anchors: DayAnchors | None = None,
) -> date:
    """
    Project the next occurrence after last_occurrence.

    Month-based: the anchored day (clamped to each month's length) in the
    month nearest last + N months. The months on either side are candidates
    too, so a charge that slipped across a month boundary (anchor 1st, paid
    Mar 29) projects to May 1 rather than Apr 1.

    Week-based: add whole weeks, then snap to the anchored weekday (at most
    3 days either way). Daily/custom: add days.
    """
    anchors = anchors or DayAnchors()
    frequency = classification.frequency
    interval = classification.interval

    if frequency in MONTH_BASED:
        months = MONTH_BASED[frequency] * interval
        target = (pd.Timestamp(last_occurrence) + pd.DateOffset(months=months)).date()
        anchor_day = anchors.day_of_month or last_occurrence.day
        month_start = pd.Timestamp(last_occurrence).replace(day=1)

        candidates = []
        for offset in (months - 1, months, months + 1):
            m = month_start + pd.DateOffset(months=offset)
            candidate = date(m.year, m.month, min(anchor_day, m.days_in_month))
            if candidate > last_occurrence:
                candidates.append(candidate)
        # Nearest to last + N months; ties go to the earlier date
        return min(candidates, key=lambda d: (abs((d - target).days), d))

    if frequency in WEEK_BASED:
        nxt = last_occurrence + timedelta(days=WEEK_BASED[frequency] * interval)
        if anchors.day_of_week is not None:
            delta = (anchors.day_of_week - nxt.weekday() + 3) % 7 - 3
            nxt += timedelta(days=delta)
        return nxt

    if frequency == "daily":
        return last_occurrence + timedelta(days=interval)

    return last_occurrence + timedelta(days=int(round(classification.expected_interval_days)))
