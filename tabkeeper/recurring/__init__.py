"""Recurring obligations package."""

from tabkeeper.recurring.occurrences import OccurrenceTracker
from tabkeeper.recurring.rules import RecurringScheduler
from tabkeeper.recurring.schedule import (
    advance,
    describe_recurrence,
    first_due_date,
    normalize_recurrence_day,
    weekday_index,
)

__all__ = [
    "OccurrenceTracker",
    "RecurringScheduler",
    "advance",
    "describe_recurrence",
    "first_due_date",
    "normalize_recurrence_day",
    "weekday_index",
]
