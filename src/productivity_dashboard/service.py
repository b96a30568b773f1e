from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple

from .cache import TTLCache
from .configuration import DashboardConfig
from .dates import month_options as build_month_options
from .dates import range_for_calendar_month, range_for_trailing_days
from .datasets import build_per_key_datasets
from .diagnostics import DiagnosticsSink, LoggingDiagnostics
from .errors import ScopeError, SourceUnavailable
from .models import (
    CategoryState,
    Collaborator,
    CollaboratorScope,
    DashboardSnapshot,
    DateRange,
    GoalMetric,
    MetricCategory,
    PointTotals,
    PortfolioEntry,
    PortfolioSummary,
    ProductivityView,
    ProgressCounters,
    RawDatedRecord,
    RecordQuery,
    ScopeSelection,
    SeasonBounds,
    TeamScope,
)
from .pagination import PaginatedBulkFetcher
from .repository import RawRecordSource, RosterSource, SeasonSource
from .series import build_series, coerce_timezone, normalize_date_key


LOCKED_POINTS_KEY = "locked_points"
UNLOCKED_POINTS_KEY = "unlocked_points"

TABS = ("goals", "productivity")

CATEGORY_RECORD_KINDS: Dict[MetricCategory, str] = {
    MetricCategory.POINTS: "points",
    MetricCategory.PROGRESS_COUNTERS: "actions",
    MetricCategory.PRODUCTIVITY_SERIES: "actions",
    MetricCategory.PORTFOLIO: "portfolio",
    MetricCategory.KPIS: "actions",
}

# Categories charted over the trailing-day period; the rest follow the selected month.
PERIOD_CATEGORIES = frozenset({MetricCategory.PRODUCTIVITY_SERIES})

CATEGORY_ERROR_MESSAGES: Dict[MetricCategory, str] = {
    MetricCategory.POINTS: "Could not load point totals.",
    MetricCategory.PROGRESS_COUNTERS: "Could not load progress counters.",
    MetricCategory.PRODUCTIVITY_SERIES: "Could not load the productivity chart.",
    MetricCategory.PORTFOLIO: "Could not load the company portfolio.",
    MetricCategory.KPIS: "Could not load KPI goals.",
}


def empty_value(category: MetricCategory) -> Any:
    if category is MetricCategory.POINTS:
        return PointTotals()
    if category is MetricCategory.PROGRESS_COUNTERS:
        return ProgressCounters()
    if category is MetricCategory.PRODUCTIVITY_SERIES:
        return ProductivityView()
    if category is MetricCategory.PORTFOLIO:
        return PortfolioSummary()
    return ()


def _default_season(reference: date) -> SeasonBounds:
    return SeasonBounds(start=date(reference.year, 1, 1), end=date(reference.year, 12, 31))


@dataclass(frozen=True)
class _WindowSpec:
    """
    Relative description of one reporting window.

    Kept instead of a concrete range so that ``retry`` and ``refresh``
    recompute the window against the current date and season.
    """

    months_ago: Optional[int] = None
    period_days: Optional[int] = None
    explicit: Optional[DateRange] = None


@dataclass(frozen=True)
class _Windows:
    month: DateRange
    period: DateRange

    def for_category(self, category: MetricCategory) -> DateRange:
        return self.period if category in PERIOD_CATEGORIES else self.month


class ScopedMetricsAggregator:
    """
    Loads every dashboard metric category for a team or for one collaborator.

    Reloads are triggered explicitly by the public coroutines. Each reload
    reads the roster and season bounds, then loads the categories
    concurrently; a category that fails records its own error and leaves the
    others untouched. Every category carries a request epoch and only the
    latest issued load may write its state, so a slow response for a
    superseded selection is discarded.

    Two windows are tracked: the selected month feeds points, progress,
    portfolio and KPIs, while the productivity chart covers the trailing-day
    period.

    Team values are always derived as the sum of the roster members'
    records, each member read through the same collaborator-scoped query the
    collaborator view uses. The team-wide total returned by the source is
    only compared against it and reported to the diagnostics sink on
    mismatch.
    """

    def __init__(
        self,
        record_source: RawRecordSource,
        roster_source: RosterSource,
        season_source: SeasonSource,
        config: Optional[DashboardConfig] = None,
        diagnostics: Optional[DiagnosticsSink] = None,
        cache: Optional[TTLCache] = None,
        today: Optional[Callable[[], date]] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.record_source = record_source
        self.roster_source = roster_source
        self.season_source = season_source
        self.config = config or DashboardConfig()
        self.diagnostics = diagnostics or LoggingDiagnostics(slow_load_seconds=self.config.slow_load_seconds)
        if cache is None:
            ttl = self.config.cache.ttl_seconds if self.config.cache.enable else 0
            cache = TTLCache(ttl_seconds=ttl)
        self.cache = cache
        self._today = today or date.today
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._tz = coerce_timezone(self.config.series.timezone)
        self._fetcher: PaginatedBulkFetcher[RecordQuery, RawDatedRecord] = PaginatedBulkFetcher(
            record_source.fetch_page
        )

        self._scope: Optional[ScopeSelection] = None
        self._month_spec = _WindowSpec(months_ago=0)
        self._period_spec = _WindowSpec(period_days=self.config.series.default_period_days)
        self._windows: Optional[_Windows] = None
        self._season: Optional[SeasonBounds] = None
        self._active_tab = TABS[0]
        self._collaborators: Sequence[Collaborator] = ()
        self._last_refresh: Optional[datetime] = None
        self._states: Dict[MetricCategory, CategoryState] = {category: CategoryState() for category in MetricCategory}
        self._epochs: Dict[MetricCategory, int] = {category: 0 for category in MetricCategory}
        self._reload_serial = 0
        self._cache_generation = 0
        self._inflight: Dict[Hashable, "asyncio.Future[List[RawDatedRecord]]"] = {}

    # ========== 1. Read-only views ==========
    @property
    def scope(self) -> Optional[ScopeSelection]:
        return self._scope

    @property
    def date_window(self) -> Optional[DateRange]:
        """Month window behind points, progress, portfolio and KPIs."""

        return self._windows.month if self._windows is not None else None

    @property
    def period_window(self) -> Optional[DateRange]:
        """Trailing-day window behind the productivity chart."""

        return self._windows.period if self._windows is not None else None

    @property
    def active_tab(self) -> str:
        return self._active_tab

    @property
    def collaborators(self) -> Sequence[Collaborator]:
        return self._collaborators

    @property
    def last_refresh_timestamp(self) -> Optional[datetime]:
        return self._last_refresh

    def state(self, category: MetricCategory) -> CategoryState:
        return replace(self._states[category])

    def snapshot(self) -> DashboardSnapshot:
        return DashboardSnapshot(
            scope=self._scope,
            date_window=self.date_window,
            period_window=self.period_window,
            active_tab=self._active_tab,
            collaborators=tuple(self._collaborators),
            last_refresh=self._last_refresh,
            categories={category: replace(state) for category, state in self._states.items()},
        )

    # ========== 2. Scope and window transitions ==========
    async def initialize(self, team_ids: Sequence[str], last_used: Optional[str] = None) -> DashboardSnapshot:
        """Select ``last_used`` when it is still offered, else the first team."""

        if not team_ids:
            return self.snapshot()
        chosen = last_used if last_used in team_ids else team_ids[0]
        return await self.select_team(chosen)

    async def select_team(self, team_id: str) -> DashboardSnapshot:
        self._scope = TeamScope(team_id=team_id)
        return await self._reload(tuple(MetricCategory))

    async def select_collaborator(self, collaborator_id: str) -> DashboardSnapshot:
        """
        Narrow the dashboard to one collaborator of the current team.

        The id is not checked against the roster; an id the source does not
        know simply yields empty metrics.
        """

        team_id = self._require_team()
        self._scope = CollaboratorScope(team_id=team_id, collaborator_id=collaborator_id)
        return await self._reload(tuple(MetricCategory))

    async def clear_collaborator(self) -> DashboardSnapshot:
        self._scope = TeamScope(team_id=self._require_team())
        return await self._reload(tuple(MetricCategory))

    async def change_date_window(self, date_range: DateRange) -> DashboardSnapshot:
        """Pin both the month and the period window to ``date_range``."""

        self._month_spec = _WindowSpec(explicit=date_range)
        self._period_spec = _WindowSpec(explicit=date_range)
        return await self._reload_if_scoped()

    async def select_month(self, months_ago: int) -> DashboardSnapshot:
        if months_ago < 0:
            raise ValueError("months_ago must be >= 0")
        self._month_spec = _WindowSpec(months_ago=months_ago)
        return await self._reload_if_scoped()

    async def select_period(self, days: int) -> DashboardSnapshot:
        if days < 0:
            raise ValueError("days must be >= 0")
        self._period_spec = _WindowSpec(period_days=days)
        return await self._reload_if_scoped()

    async def refresh(self) -> DashboardSnapshot:
        """Drop every memoized and pending fetch and reload; scope, windows and tab stay."""

        self.cache.clear()
        self._inflight.clear()
        self._cache_generation += 1
        return await self._reload_if_scoped()

    async def retry(self, category: MetricCategory) -> DashboardSnapshot:
        if self._scope is None:
            return self.snapshot()
        return await self._reload((category,), full=False)

    def invalidate_team(self, team_id: str) -> int:
        """Forget memoized records and roster of one team."""

        return self.cache.clear_matching(team_id)

    def switch_tab(self, tab: str) -> DashboardSnapshot:
        if tab not in TABS:
            raise ValueError(f"unknown tab {tab!r}; expected one of {', '.join(TABS)}")
        self._active_tab = tab
        return self.snapshot()

    def month_options(self) -> List[Tuple[int, str]]:
        """Months selectable since the season started, newest first."""

        floor = self._season.start if self._season is not None else None
        return build_month_options(self._today(), floor)

    def _require_team(self) -> str:
        if self._scope is None:
            raise ScopeError("a team must be selected first")
        return self._scope.team_id

    async def _reload_if_scoped(self) -> DashboardSnapshot:
        if self._scope is None:
            return self.snapshot()
        return await self._reload(tuple(MetricCategory))

    # ========== 3. Loading ==========
    async def _reload(self, categories: Sequence[MetricCategory], full: bool = True) -> DashboardSnapshot:
        """
        Load ``categories`` under the current scope.

        Only full reloads advance the reload serial. A retry shares the serial
        of the reload it follows, so it never keeps a concurrent full reload
        from publishing its roster, windows and refresh time.
        """

        scope = self._scope
        if scope is None:
            raise ScopeError("a team must be selected first")

        epochs: Dict[MetricCategory, int] = {}
        for category in categories:
            self._epochs[category] += 1
            epochs[category] = self._epochs[category]
            self._states[category].is_loading = True
        if full:
            self._reload_serial += 1
        serial = self._reload_serial

        season = await self._load_season()
        windows = _Windows(
            month=self._resolve_window(self._month_spec, season),
            period=self._resolve_window(self._period_spec, season),
        )
        members = await self._load_roster(scope.team_id)
        if serial == self._reload_serial:
            self._season = season
            self._windows = windows
            self._collaborators = members

        await asyncio.gather(
            *(
                self._load_category(category, scope, windows.for_category(category), members, epochs[category])
                for category in categories
            )
        )

        if serial == self._reload_serial:
            self._last_refresh = self._now()
        return self.snapshot()

    def _resolve_window(self, spec: _WindowSpec, season: SeasonBounds) -> DateRange:
        if spec.explicit is not None:
            return spec.explicit
        if spec.months_ago is not None:
            return range_for_calendar_month(spec.months_ago, self._today(), season_floor=season.start)
        days = spec.period_days if spec.period_days is not None else self.config.series.default_period_days
        return range_for_trailing_days(self._today(), days)

    async def _load_season(self) -> SeasonBounds:
        key = ("season",)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        try:
            season = await asyncio.to_thread(self.season_source.season_bounds)
        except Exception as exc:
            self.diagnostics.source_degraded("season", "using the calendar year as season", exc)
            return _default_season(self._today())
        self.cache.set(key, season)
        return season

    async def _load_roster(self, team_id: str) -> Sequence[Collaborator]:
        key = ("roster", team_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        try:
            members = tuple(await asyncio.to_thread(self.roster_source.list_members, team_id))
        except Exception as exc:
            self.diagnostics.source_degraded("roster", f"team {team_id} loaded without members", exc)
            return ()
        self.cache.set(key, members)
        return members

    async def _load_category(
        self,
        category: MetricCategory,
        scope: ScopeSelection,
        window: DateRange,
        members: Sequence[Collaborator],
        epoch: int,
    ) -> None:
        started = time.perf_counter()
        loader = self._loaders()[category]
        try:
            value = await loader(scope, window, members)
        except Exception as exc:
            if self._is_stale(category, epoch):
                return
            state = self._states[category]
            state.is_loading = False
            state.has_error = True
            state.error_message = CATEGORY_ERROR_MESSAGES[category]
            state.last_value = empty_value(category)
            self.diagnostics.category_failed(category, scope, exc)
            return

        if self._is_stale(category, epoch):
            return
        state = self._states[category]
        state.is_loading = False
        state.has_error = False
        state.error_message = ""
        state.last_value = value
        self.diagnostics.category_loaded(category, scope, time.perf_counter() - started)

    def _is_stale(self, category: MetricCategory, epoch: int) -> bool:
        latest = self._epochs[category]
        if epoch == latest:
            return False
        self.diagnostics.stale_result_dropped(category, epoch, latest)
        return True

    def _loaders(
        self,
    ) -> Dict[MetricCategory, Callable[[ScopeSelection, DateRange, Sequence[Collaborator]], Awaitable[Any]]]:
        return {
            MetricCategory.POINTS: self._load_points,
            MetricCategory.PROGRESS_COUNTERS: self._load_progress,
            MetricCategory.PRODUCTIVITY_SERIES: self._load_productivity,
            MetricCategory.PORTFOLIO: self._load_portfolio,
            MetricCategory.KPIS: self._load_kpis,
        }

    async def _records(self, kind: str, scope: ScopeSelection, window: DateRange) -> List[RawDatedRecord]:
        collaborator_id = scope.collaborator_id if isinstance(scope, CollaboratorScope) else None
        key = ("records", kind, scope.team_id, collaborator_id or "*", window.start.isoformat(), window.end.isoformat())
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        query = RecordQuery(
            kind=kind,
            team_id=scope.team_id,
            start=window.start,
            end=window.end,
            collaborator_id=collaborator_id,
        )
        return await self._shared(key, lambda: self._fetch_records(key, query, self._cache_generation))

    async def _shared(
        self, key: Hashable, start: Callable[[], Awaitable[List[RawDatedRecord]]]
    ) -> List[RawDatedRecord]:
        """Join the pending task for ``key`` or start a new one."""

        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(start())
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget_inflight(key, done))
        return await task

    def _forget_inflight(self, key: Hashable, task: "asyncio.Future[List[RawDatedRecord]]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _fetch_records(self, key: Hashable, query: RecordQuery, generation: int) -> List[RawDatedRecord]:
        outcome = await asyncio.to_thread(self._fetcher.fetch_pages, query, self.config.pagination.batch_size)
        if outcome.error is not None:
            if not outcome.items:
                raise SourceUnavailable(f"{query.kind} records unavailable for team {query.team_id}") from outcome.error
            self.diagnostics.source_degraded(
                f"{query.kind} records",
                f"kept {len(outcome.items)} items after {outcome.pages} pages",
                outcome.error,
            )
            return list(outcome.items)
        # a refresh issued while this fetch ran has already superseded it
        if generation == self._cache_generation:
            self.cache.set(key, outcome.items)
        return outcome.items

    def _attribute(
        self,
        records: Iterable[RawDatedRecord],
        window: DateRange,
        collaborator_id: Optional[str] = None,
    ) -> List[RawDatedRecord]:
        """
        Keep the records that count for ``window`` and ``collaborator_id``.

        Records with an unreadable date or a day outside the window are
        dropped, whatever the source returned. A record without a
        ``player_id`` belongs to the collaborator it was queried for.
        """

        first, last = window.start.isoformat(), window.end.isoformat()
        kept: List[RawDatedRecord] = []
        for record in records:
            day = normalize_date_key(record.date, self._tz)
            if day is None or not first <= day <= last:
                continue
            if collaborator_id is not None and (record.player_id or collaborator_id) != collaborator_id:
                continue
            kept.append(record)
        return kept

    def _is_incomplete(self, record: RawDatedRecord) -> bool:
        return (record.key or "") in self.config.progress.incomplete_keys

    async def _scoped_records(
        self,
        category: MetricCategory,
        scope: ScopeSelection,
        window: DateRange,
        members: Sequence[Collaborator],
    ) -> List[RawDatedRecord]:
        kind = CATEGORY_RECORD_KINDS[category]
        if isinstance(scope, CollaboratorScope):
            records = await self._records(kind, scope, window)
            return self._attribute(records, window, scope.collaborator_id)
        if not members:
            return self._attribute(await self._records(kind, scope, window), window)

        member_ids = tuple(member.id for member in members)
        key = ("team", kind, scope.team_id, window.start.isoformat(), window.end.isoformat(), member_ids)
        return await self._shared(key, lambda: self._team_records(category, kind, scope, window, members))

    async def _team_records(
        self,
        category: MetricCategory,
        kind: str,
        scope: TeamScope,
        window: DateRange,
        members: Sequence[Collaborator],
    ) -> List[RawDatedRecord]:
        """
        Collect a team's records as the union of its members' records.

        Categories reading the same kind and window share one call, so a
        total mismatch is reported once per record set.
        """

        per_member = await asyncio.gather(
            *(self._records(kind, CollaboratorScope(scope.team_id, member.id), window) for member in members)
        )
        derived: List[RawDatedRecord] = []
        for member, records in zip(members, per_member):
            derived.extend(self._attribute(records, window, member.id))

        try:
            team_wide = self._attribute(await self._records(kind, scope, window), window)
        except SourceUnavailable as exc:
            self.diagnostics.source_degraded(f"{kind} team total", "skipped the team total check", exc)
            return derived
        derived_total = sum(record.count for record in derived)
        raw_total = sum(record.count for record in team_wide)
        if derived_total != raw_total:
            self.diagnostics.total_mismatch(category, scope, derived_total, raw_total)
        return derived

    async def _load_points(
        self, scope: ScopeSelection, window: DateRange, members: Sequence[Collaborator]
    ) -> PointTotals:
        records = await self._scoped_records(MetricCategory.POINTS, scope, window, members)
        locked = sum(record.count for record in records if record.key == LOCKED_POINTS_KEY)
        unlocked = sum(record.count for record in records if record.key == UNLOCKED_POINTS_KEY)
        return PointTotals(total=sum(record.count for record in records), locked=locked, unlocked=unlocked)

    async def _load_progress(
        self, scope: ScopeSelection, window: DateRange, members: Sequence[Collaborator]
    ) -> ProgressCounters:
        records = await self._scoped_records(MetricCategory.PROGRESS_COUNTERS, scope, window, members)
        incomplete = sum(record.count for record in records if self._is_incomplete(record))
        completed = sum(record.count for record in records if not self._is_incomplete(record))
        return ProgressCounters(incomplete=incomplete, completed=completed)

    async def _load_productivity(
        self, scope: ScopeSelection, window: DateRange, members: Sequence[Collaborator]
    ) -> ProductivityView:
        records = await self._scoped_records(MetricCategory.PRODUCTIVITY_SERIES, scope, window, members)
        completed = [record for record in records if not self._is_incomplete(record)]
        return ProductivityView(
            total=tuple(build_series(completed, window, self._tz)),
            datasets=tuple(build_per_key_datasets(records, window, self._tz)),
        )

    async def _load_portfolio(
        self, scope: ScopeSelection, window: DateRange, members: Sequence[Collaborator]
    ) -> PortfolioSummary:
        records = await self._scoped_records(MetricCategory.PORTFOLIO, scope, window, members)
        counts: Dict[str, float] = defaultdict(float)
        for record in records:
            if record.key:
                counts[record.key] += record.count
        entries = sorted(
            (PortfolioEntry(company_id=company, label=company, count=count) for company, count in counts.items() if count > 0),
            key=lambda entry: (-entry.count, entry.company_id),
        )
        return PortfolioSummary(total_companies=len(entries), entries=tuple(entries))

    async def _load_kpis(
        self, scope: ScopeSelection, window: DateRange, members: Sequence[Collaborator]
    ) -> Sequence[GoalMetric]:
        records = await self._scoped_records(MetricCategory.KPIS, scope, window, members)
        metrics: List[GoalMetric] = []
        for goal in self.config.goals:
            if goal.keys:
                current = sum(record.count for record in records if record.key in goal.keys)
            else:
                current = sum(record.count for record in records if not self._is_incomplete(record))
            percentage = current / goal.target * 100 if goal.target else 0.0
            metrics.append(
                GoalMetric(
                    id=goal.id,
                    label=goal.label,
                    current=current,
                    target=goal.target,
                    unit=goal.unit,
                    percentage=percentage,
                )
            )
        return tuple(metrics)
