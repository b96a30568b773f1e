from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Union


RawDate = Union[str, int, float, date, datetime, Mapping[str, Any], None]


def _coerce_count(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class RawDatedRecord:
    """
    One dated count emitted by the raw-record source.

    ``key`` separates parallel series (action type, point type, company id)
    and ``player_id`` attributes the count to a collaborator so that team
    totals can be derived as the sum of their members.
    """

    date: RawDate
    count: float = 0.0
    key: Optional[str] = None
    player_id: Optional[str] = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "RawDatedRecord":
        """
        Coerce a JSON/row payload into a record.

        Understands the aggregate shape ``{"_id": {"date", "actionId"}, "count"}``
        as well as flat rows carrying ``date``/``key``/``count`` columns.
        """

        group = payload.get("_id")
        if isinstance(group, Mapping):
            raw_date = group.get("date", payload.get("date"))
            key = group.get("actionId") or group.get("key") or group.get("item")
            player = group.get("player") or group.get("userId")
        else:
            raw_date = payload.get("date", payload.get("time"))
            key = None
            player = None

        key = key or payload.get("key") or payload.get("actionId") or payload.get("item")
        player = player or payload.get("player_id") or payload.get("player") or payload.get("userId")
        count = payload.get("count", payload.get("total"))
        return cls(
            date=raw_date,
            count=_coerce_count(count),
            key=None if key is None else str(key),
            player_id=None if player is None else str(player),
        )


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar-day window; ``start`` never follows ``end``."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"start {self.start} must not be after end {self.end}")

    @property
    def days(self) -> int:
        return (self.end - self.start).days


@dataclass(frozen=True)
class TimePoint:
    date: date
    value: float


@dataclass(frozen=True)
class PaletteColor:
    stroke: str
    fill: str


@dataclass(frozen=True)
class NamedSeries:
    label: str
    points: Sequence[TimePoint]
    color_index: int
    color: PaletteColor

    def as_chart_dataset(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "data": [point.value for point in self.points],
            "borderColor": self.color.stroke,
            "backgroundColor": self.color.fill,
            "fill": False,
        }


@dataclass(frozen=True)
class TeamScope:
    team_id: str


@dataclass(frozen=True)
class CollaboratorScope:
    team_id: str
    collaborator_id: str


ScopeSelection = Union[TeamScope, CollaboratorScope]


class MetricCategory(str, Enum):
    POINTS = "points"
    PROGRESS_COUNTERS = "progress_counters"
    PRODUCTIVITY_SERIES = "productivity_series"
    PORTFOLIO = "portfolio"
    KPIS = "kpis"


@dataclass
class CategoryState:
    """
    Load status of one metric category.

    Each category owns its own instance so a failure recorded here never
    touches the state of the others.
    """

    is_loading: bool = False
    has_error: bool = False
    error_message: str = ""
    last_value: Any = None


@dataclass(frozen=True)
class Collaborator:
    id: str
    display_name: str
    email: str = ""


@dataclass(frozen=True)
class SeasonBounds:
    start: date
    end: date


@dataclass(frozen=True)
class RecordQuery:
    """
    Filter sent to the raw-record source.

    ``kind`` is one of ``actions``, ``points`` or ``portfolio``. A missing
    ``collaborator_id`` asks for every record of the team.
    """

    kind: str
    team_id: str
    start: date
    end: date
    collaborator_id: Optional[str] = None


@dataclass(frozen=True)
class PointTotals:
    total: float = 0.0
    locked: float = 0.0
    unlocked: float = 0.0


@dataclass(frozen=True)
class ProgressCounters:
    incomplete: float = 0.0
    completed: float = 0.0


@dataclass(frozen=True)
class ProductivityView:
    total: Sequence[TimePoint] = field(default_factory=tuple)
    datasets: Sequence[NamedSeries] = field(default_factory=tuple)


@dataclass(frozen=True)
class PortfolioEntry:
    company_id: str
    label: str
    count: float


@dataclass(frozen=True)
class PortfolioSummary:
    total_companies: int = 0
    entries: Sequence[PortfolioEntry] = field(default_factory=tuple)


@dataclass(frozen=True)
class GoalMetric:
    id: str
    label: str
    current: float
    target: float
    unit: str = ""
    percentage: float = 0.0


@dataclass(frozen=True)
class DashboardSnapshot:
    scope: Optional[ScopeSelection]
    date_window: Optional[DateRange]
    active_tab: str
    collaborators: Sequence[Collaborator]
    last_refresh: Optional[datetime]
    categories: Mapping[MetricCategory, CategoryState]
    period_window: Optional[DateRange] = None

    def as_dict(self) -> Dict[str, Any]:
        """
        Convert the snapshot into a JSON-serialisable structure.

        The FastAPI layer ships this to the UI without exposing dataclasses.
        """

        def _serialize(obj: Any) -> Any:
            if isinstance(obj, TeamScope):
                return {"type": "team", "teamId": obj.team_id, "collaboratorId": None}
            if isinstance(obj, CollaboratorScope):
                return {"type": "collaborator", "teamId": obj.team_id, "collaboratorId": obj.collaborator_id}
            if isinstance(obj, DateRange):
                return {"start": obj.start.isoformat(), "end": obj.end.isoformat()}
            if isinstance(obj, CategoryState):
                return {
                    "isLoading": obj.is_loading,
                    "hasError": obj.has_error,
                    "errorMessage": obj.error_message,
                    "value": _serialize(obj.last_value),
                }
            if isinstance(obj, TimePoint):
                return {"date": obj.date.isoformat(), "value": obj.value}
            if isinstance(obj, NamedSeries):
                return obj.as_chart_dataset()
            if isinstance(obj, PointTotals):
                return {"total": obj.total, "locked": obj.locked, "unlocked": obj.unlocked}
            if isinstance(obj, ProgressCounters):
                return {"incomplete": obj.incomplete, "completed": obj.completed}
            if isinstance(obj, ProductivityView):
                return {
                    "total": [_serialize(point) for point in obj.total],
                    "datasets": [_serialize(series) for series in obj.datasets],
                }
            if isinstance(obj, PortfolioSummary):
                return {
                    "totalCompanies": obj.total_companies,
                    "entries": [
                        {"companyId": entry.company_id, "label": entry.label, "count": entry.count}
                        for entry in obj.entries
                    ],
                }
            if isinstance(obj, GoalMetric):
                return {
                    "id": obj.id,
                    "label": obj.label,
                    "current": obj.current,
                    "target": obj.target,
                    "unit": obj.unit,
                    "percentage": obj.percentage,
                }
            if isinstance(obj, Collaborator):
                return {"id": obj.id, "displayName": obj.display_name, "email": obj.email}
            if isinstance(obj, Iterable) and not isinstance(obj, (str, bytes, Mapping)):
                return [_serialize(item) for item in obj]
            return obj

        return {
            "scope": _serialize(self.scope),
            "dateWindow": _serialize(self.date_window),
            "periodWindow": _serialize(self.period_window),
            "activeTab": self.active_tab,
            "collaborators": _serialize(self.collaborators),
            "lastRefresh": None if self.last_refresh is None else self.last_refresh.isoformat(),
            "categories": {category.value: _serialize(state) for category, state in self.categories.items()},
        }
