"""Turn completed daily series into named, coloured datasets for charts."""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Sequence

from .dates import iter_days
from .models import DateRange, NamedSeries, PaletteColor, RawDatedRecord, TimePoint
from .series import TimezoneLike, build_series, coerce_timezone, normalize_date_key

PALETTE: Sequence[PaletteColor] = (
    PaletteColor(stroke="rgba(75, 192, 192, 1)", fill="rgba(75, 192, 192, 0.2)"),
    PaletteColor(stroke="rgba(255, 99, 132, 1)", fill="rgba(255, 99, 132, 0.2)"),
    PaletteColor(stroke="rgba(54, 162, 235, 1)", fill="rgba(54, 162, 235, 0.2)"),
    PaletteColor(stroke="rgba(255, 206, 86, 1)", fill="rgba(255, 206, 86, 0.2)"),
    PaletteColor(stroke="rgba(153, 102, 255, 1)", fill="rgba(153, 102, 255, 0.2)"),
    PaletteColor(stroke="rgba(255, 159, 64, 1)", fill="rgba(255, 159, 64, 0.2)"),
)

DEFAULT_KEY = "default"

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def palette_color(index: int) -> PaletteColor:
    return PALETTE[index % len(PALETTE)]


def format_key_label(key: Optional[str]) -> str:
    """
    Readable legend label for a series key.

    ``completed_tasks`` and ``completedTasks`` both become ``Completed Tasks``;
    an unset or ``default`` key is the ``Total`` series.
    """

    if not key or key == DEFAULT_KEY:
        return "Total"
    spaced = _CAMEL_BOUNDARY.sub(r" \1", key.replace("_", " "))
    return " ".join(word[:1].upper() + word[1:].lower() for word in spaced.split())


def _named(label: str, points: Sequence[TimePoint], index: int) -> NamedSeries:
    return NamedSeries(label=label, points=tuple(points), color_index=index, color=palette_color(index))


def build_labeled_datasets(points: Sequence[TimePoint], labels: Sequence[str]) -> List[NamedSeries]:
    """One dataset per label, every dataset sharing the same points."""

    return [_named(label, points, index) for index, label in enumerate(labels)]


def build_per_key_datasets(
    records: Optional[Iterable[RawDatedRecord]],
    date_range: DateRange,
    tz: TimezoneLike = None,
) -> List[NamedSeries]:
    """
    Partition records by ``key`` and complete each partition over the range.

    Colours follow the order in which keys are first seen. Records with an
    unreadable date are dropped before partitioning, so they never create an
    empty series of their own.
    """

    zone = coerce_timezone(tz)
    partitions: Dict[str, List[RawDatedRecord]] = {}
    for record in records or ():
        if normalize_date_key(record.date, zone) is None:
            continue
        partitions.setdefault(record.key or DEFAULT_KEY, []).append(record)

    return [
        _named(format_key_label(key), build_series(bucket, date_range, zone), index)
        for index, (key, bucket) in enumerate(partitions.items())
    ]


def date_labels(date_range: DateRange, fmt: str = "%d/%m") -> List[str]:
    """X-axis labels aligned with a series completed over ``date_range``."""

    return [day.strftime(fmt) for day in iter_days(date_range)]
