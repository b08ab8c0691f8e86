"""Next-occurrence arithmetic for schedule frequencies."""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta

from .errors import InvalidFrequency
from .model import Frequency

#: Recurring schedules whose next occurrence lands beyond this many years are
#: treated as exhausted by the lifecycle writer.
SENTINEL_HORIZON_YEARS = 50

_FIXED_STEPS = {
    Frequency.DAILY: timedelta(days=1),
    Frequency.WEEKLY: timedelta(days=7),
}


def parse_frequency(value: Frequency | str) -> Frequency:
    if isinstance(value, Frequency):
        return value
    try:
        return Frequency(str(value).strip().lower())
    except ValueError as exc:
        raise InvalidFrequency(value) from exc


def add_months(base: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month.

    ``Jan 31 + 1 month`` is ``Feb 28`` (or ``Feb 29`` in leap years). The clamp
    applies to the single step only: the result carries its own day forward.
    """

    month_index = base.month - 1 + months
    year = base.year + month_index // 12
    month = month_index % 12 + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return base.replace(year=year, month=month, day=day)


def next_occurrence(base: datetime, frequency: Frequency | str) -> datetime | None:
    """Return the next due timestamp after ``base``, or ``None`` for one-shot schedules."""

    freq = parse_frequency(frequency)
    if freq is Frequency.ONCE:
        return None
    step = _FIXED_STEPS.get(freq)
    if step is not None:
        return base + step
    if freq is Frequency.MONTHLY:
        return add_months(base, 1)
    return add_months(base, 12)


def beyond_horizon(candidate: datetime, now: datetime) -> bool:
    """True when ``candidate`` is far enough out to mean "no more occurrences"."""

    return candidate.year > now.year + SENTINEL_HORIZON_YEARS
