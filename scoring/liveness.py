"""
liveness.py
------------
Active / inactive decision for a recurring pattern.

Two states only. A pattern stays active while the time since its last
occurrence is within expected_interval_days * recency_multiplier (1.5 by
default: one late or missed cycle is tolerated). It is re-evaluated on every
recompute, so a new matching transaction reactivates it with no extra step.
"""

from datetime import date

from core.models import to_date


def days_since(last_occurrence_date: date, as_of: date) -> int:
    """Whole days from the last occurrence to as_of (negative if in the future)."""
    return (to_date(as_of, "as_of") - to_date(last_occurrence_date, "last_occurrence_date")).days


def evaluate_liveness(
    last_occurrence_date: date,
    expected_interval_days: float,
    as_of: date,
    recency_multiplier: float = 1.5,
) -> bool:
    """
    Returns True if the pattern is still active as of the given date.

    Raises:
        ValueError: null dates or a non-positive interval or multiplier.
    """
    if expected_interval_days is None or expected_interval_days <= 0:
        raise ValueError(
            f"expected_interval_days must be positive, got {expected_interval_days!r}"
        )
    if recency_multiplier <= 0:
        raise ValueError(f"recency_multiplier must be positive, got {recency_multiplier!r}")

    return days_since(last_occurrence_date, as_of) <= expected_interval_days * recency_multiplier
