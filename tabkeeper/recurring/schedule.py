"""
Recurrence date arithmetic.

Pure functions, no storage. Weekdays use a Sunday-based index
(0=Sunday .. 6=Saturday); Python's date.weekday() is Monday-based and is
converted at the edges.

Month arithmetic goes through dateutil's relativedelta, which clamps a day
past the end of a month to that month's last day (Jan 31 + 1 month is
Feb 28/29). Monthly rules keep their configured day as an anchor, so a
rule on the 31st returns to the 31st in months that have one.
"""

from datetime import date, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

from tabkeeper.errors import InvalidRecurrenceError
from tabkeeper.models.recurring import RecurrenceKind


WEEKDAY_NAMES = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)


def weekday_index(day: date) -> int:
    """Sunday-based weekday index of a date."""
    return (day.weekday() + 1) % 7


def parse_kind(kind: "RecurrenceKind | str") -> RecurrenceKind:
    try:
        return RecurrenceKind(kind)
    except ValueError as e:
        raise InvalidRecurrenceError(
            f"Unknown recurrence {kind!r}. Use daily, weekly, monthly or yearly."
        ) from e


def normalize_recurrence_day(
    kind: RecurrenceKind,
    recurrence_day: Optional[int],
    default_weekly_day: int = 1,
    default_monthly_day: int = 1,
) -> Optional[int]:
    """
    Validate the day for a cadence and fill in the default.

    Daily and yearly rules carry no day; a given one is dropped.
    """
    if kind == RecurrenceKind.WEEKLY:
        day = default_weekly_day if recurrence_day is None else recurrence_day
        if not 0 <= day <= 6:
            raise InvalidRecurrenceError(
                f"Weekday must be between 0 (Sunday) and 6 (Saturday), got {day}."
            )
        return day
    if kind == RecurrenceKind.MONTHLY:
        day = default_monthly_day if recurrence_day is None else recurrence_day
        if not 1 <= day <= 31:
            raise InvalidRecurrenceError(f"Day of month must be between 1 and 31, got {day}.")
        return day
    return None


def first_due_date(
    kind: RecurrenceKind,
    recurrence_day: Optional[int],
    today: date,
) -> date:
    """
    First due date of a new rule. Always strictly after `today`.

    - daily: tomorrow
    - weekly: next occurrence of the weekday; a rule created on its own
      weekday starts a week out
    - monthly: this month's day if still ahead, else next month's
    - yearly: one year from today
    """
    if kind == RecurrenceKind.DAILY:
        return today + timedelta(days=1)

    if kind == RecurrenceKind.WEEKLY:
        days_ahead = (recurrence_day - weekday_index(today)) % 7 or 7
        return today + timedelta(days=days_ahead)

    if kind == RecurrenceKind.MONTHLY:
        candidate = today + relativedelta(day=recurrence_day)
        if candidate <= today:
            candidate = today + relativedelta(months=1, day=recurrence_day)
        return candidate

    return today + relativedelta(years=1)


def advance(
    kind: RecurrenceKind,
    from_date: date,
    recurrence_day: Optional[int] = None,
) -> date:
    """
    The due date one period after `from_date`.

    Advancing is anchored on the previous due date, not on today, so paying
    late does not shift the schedule.
    """
    if kind == RecurrenceKind.DAILY:
        return from_date + timedelta(days=1)
    if kind == RecurrenceKind.WEEKLY:
        return from_date + timedelta(days=7)
    if kind == RecurrenceKind.MONTHLY:
        anchor = recurrence_day or from_date.day
        return from_date + relativedelta(months=1, day=anchor)
    return from_date + relativedelta(years=1)


def describe_recurrence(kind: RecurrenceKind, recurrence_day: Optional[int]) -> str:
    """Human-readable cadence ("every Monday", "monthly on day 15")."""
    if kind == RecurrenceKind.WEEKLY and recurrence_day is not None:
        return f"every {WEEKDAY_NAMES[recurrence_day]}"
    if kind == RecurrenceKind.MONTHLY and recurrence_day is not None:
        return f"monthly on day {recurrence_day}"
    return kind.value
