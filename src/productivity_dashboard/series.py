from __future__ import annotations

import re
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .dates import iter_days
from .models import DateRange, RawDatedRecord, TimePoint

_DATE_KEY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_EPOCH = re.compile(r"^-?\d+(\.\d+)?$")

TimezoneLike = Union[str, ZoneInfo, timezone, None]


def coerce_timezone(value: TimezoneLike) -> Union[ZoneInfo, timezone]:
    if value is None:
        return timezone.utc
    if isinstance(value, (ZoneInfo, timezone)):
        return value
    try:
        return ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def _localize(dt: datetime, tz: Union[ZoneInfo, timezone]) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(tz)


def normalize_date_key(raw: Any, tz: TimezoneLike = None) -> Optional[str]:
    """
    Map any accepted date representation onto a ``YYYY-MM-DD`` key.

    Accepts ``date``/``datetime`` values, ISO strings (date-only or full
    timestamps, ``Z`` suffix included), epoch milliseconds as numbers or
    numeric strings and ``{"$date": ...}`` wrappers used on the wire. Aware
    datetimes are converted into ``tz`` first; naive ones keep their wall-clock
    day. Returns ``None`` when the value cannot be read as a date.
    """

    zone = coerce_timezone(tz)

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        return _localize(raw, zone).date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    if isinstance(raw, Mapping):
        return normalize_date_key(raw.get("$date"), zone)
    if isinstance(raw, (int, float)):
        try:
            moment = datetime.fromtimestamp(raw / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
        return moment.astimezone(zone).date().isoformat()
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        if _DATE_KEY.match(text):
            try:
                return date.fromisoformat(text).isoformat()
            except ValueError:
                return None
        if _EPOCH.match(text):
            return normalize_date_key(float(text), zone)
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return normalize_date_key(parsed, zone)
    return None


def group_by_date_key(
    records: Optional[Iterable[RawDatedRecord]],
    tz: TimezoneLike = None,
) -> Dict[str, float]:
    """
    Sum ``count`` per normalized day, collapsing every ``key``.

    Records whose date cannot be normalized are left out.
    """

    grouped: Dict[str, float] = defaultdict(float)
    if not records:
        return {}

    zone = coerce_timezone(tz)
    for record in records:
        day_key = normalize_date_key(record.date, zone)
        if day_key is None:
            continue
        grouped[day_key] += record.count or 0.0
    return dict(grouped)


def fill_range(grouped: Mapping[str, float], date_range: DateRange) -> List[TimePoint]:
    """
    Emit one point per calendar day of ``date_range``, zero where ``grouped``
    has no entry.
    """

    return [TimePoint(date=day, value=grouped.get(day.isoformat(), 0.0)) for day in iter_days(date_range)]


def build_series(
    records: Optional[Iterable[RawDatedRecord]],
    date_range: DateRange,
    tz: TimezoneLike = None,
) -> List[TimePoint]:
    return fill_range(group_by_date_key(records, tz), date_range)
