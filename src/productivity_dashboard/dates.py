"""Calendar helpers that turn a reference date into reporting windows.

Everything here is pure: callers pass the reference date explicitly so the
same inputs always produce the same window.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Iterator, List, Optional, Tuple

from .models import DateRange


def as_date(value: date) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def shift_months(reference: date, months: int) -> date:
    """Return the first day of the month ``months`` away from ``reference``."""

    index = reference.year * 12 + (reference.month - 1) + months
    year, month = divmod(index, 12)
    return date(year, month + 1, 1)


def month_end(first_day: date) -> date:
    return first_day.replace(day=calendar.monthrange(first_day.year, first_day.month)[1])


def range_for_trailing_days(reference: date, days: int) -> DateRange:
    """
    Window covering the ``days`` days before ``reference`` plus ``reference``.

    The resulting range spans ``days + 1`` calendar days.
    """

    if days < 0:
        raise ValueError("days must be >= 0")
    end = as_date(reference)
    return DateRange(start=end - timedelta(days=days), end=end)


def range_for_calendar_month(
    months_ago: int,
    reference: date,
    season_floor: Optional[date] = None,
) -> DateRange:
    """
    First to last day of the month ``months_ago`` months before ``reference``.

    ``season_floor`` is the earliest date any window may start. When the
    target month is the one right after the floor's month, the floor's partial
    month is merged in and the window starts at the floor. A month lying
    entirely before the floor collapses to the floor day.
    """

    if months_ago < 0:
        raise ValueError("months_ago must be >= 0")

    first_day = shift_months(as_date(reference), -months_ago)
    start, end = first_day, month_end(first_day)

    if season_floor is not None:
        floor = as_date(season_floor)
        if start < floor or first_day == shift_months(floor, 1):
            start = floor
        if end < start:
            end = start

    return DateRange(start=start, end=end)


def months_since_season_start(reference: date, season_floor: Optional[date]) -> int:
    """Number of months a month picker should offer (always at least one)."""

    if season_floor is None:
        return 1
    reference = as_date(reference)
    floor = as_date(season_floor)
    elapsed = (reference.year - floor.year) * 12 + (reference.month - floor.month) + 1
    return max(1, elapsed)


def month_options(reference: date, season_floor: Optional[date]) -> List[Tuple[int, str]]:
    """``(months_ago, "MMM/YY")`` pairs, newest month first."""

    options: List[Tuple[int, str]] = []
    for months_ago in range(months_since_season_start(reference, season_floor)):
        first_day = shift_months(as_date(reference), -months_ago)
        options.append((months_ago, first_day.strftime("%b/%y").upper()))
    return options


def iter_days(date_range: DateRange) -> Iterator[date]:
    cursor = date_range.start
    while cursor <= date_range.end:
        yield cursor
        cursor += timedelta(days=1)
