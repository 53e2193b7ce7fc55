"""
reminders.py
-------------
Selects the recurring patterns whose reminder falls due on a given day.

Delivery (email, push, in-app) belongs to the caller. This module only
decides which patterns qualify: active, reminders enabled, a next expected
date inside the look-ahead horizon, and either exactly reminder_days_before
days away or due today.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, List

from core.models import RecurringPattern, to_date


@dataclass
class ReminderDue:
    pattern: RecurringPattern
    due_date: date
    days_until_due: int

    @property
    def is_due_today(self) -> bool:
        return self.days_until_due == 0


def find_due_reminders(
    patterns: Iterable[RecurringPattern],
    as_of: date,
    horizon_days: int = 7,
) -> List[ReminderDue]:
    """
    Returns reminders due on as_of, ordered by due date then merchant name.

    Raises:
        ValueError: negative horizon.
    """
    if horizon_days < 0:
        raise ValueError(f"horizon_days must be non-negative, got {horizon_days}")

    as_of = to_date(as_of, "as_of")
    horizon_end = as_of + timedelta(days=horizon_days)
    due: List[ReminderDue] = []

    for pattern in patterns:
        if not pattern.is_active or not pattern.reminder_enabled:
            continue
        if pattern.next_expected_date is None:
            continue
        if not as_of <= pattern.next_expected_date <= horizon_end:
            continue

        days_until = (pattern.next_expected_date - as_of).days
        if days_until in (pattern.reminder_days_before, 0):
            due.append(ReminderDue(pattern, pattern.next_expected_date, days_until))

    due.sort(key=lambda r: (r.due_date, r.pattern.merchant_name, r.pattern.expected_amount))
    return due
