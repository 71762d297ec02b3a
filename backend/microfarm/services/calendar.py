"""Calendar arithmetic for recurring cadences.

Pure functions: no database, no clock.  Monthly steps clamp to the last
day of the target month: Jan 31 steps to Feb 29 (or 28), and the clamped
day carries forward from there.
"""

import calendar
from datetime import date, timedelta
from typing import Iterator

from microfarm.middleware.exceptions import ConfigurationError
from microfarm.models.order import Frequency

DEFAULT_BIWEEKLY_INTERVAL = 2


def add_months(anchor: date, months: int) -> date:
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor.day, last_day))


def next_occurrence(
    anchor: date,
    frequency: Frequency | str | None,
    interval: int | None = None,
) -> date:
    """Return the next date strictly after ``anchor`` for the cadence.

    ``interval`` only applies to biweekly templates (weeks between
    occurrences, default 2).
    """
    if frequency is None:
        raise ConfigurationError("Recurring template has no frequency")
    try:
        frequency = Frequency(frequency)
    except ValueError:
        raise ConfigurationError(f"Unknown recurring frequency: {frequency}") from None

    if frequency == Frequency.WEEKLY:
        return anchor + timedelta(weeks=1)
    if frequency == Frequency.BIWEEKLY:
        weeks = interval if interval and interval > 0 else DEFAULT_BIWEEKLY_INTERVAL
        return anchor + timedelta(weeks=weeks)
    return add_months(anchor, 1)


def occurrences(
    start: date,
    end: date,
    frequency: Frequency | str | None,
    interval: int | None = None,
) -> Iterator[date]:
    """Yield ``start`` and every following occurrence up to ``end`` inclusive."""
    cursor = start
    while cursor <= end:
        yield cursor
        cursor = next_occurrence(cursor, frequency, interval)
