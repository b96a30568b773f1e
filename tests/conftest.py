"""Pytest fixtures and test doubles shared across the dashboard tests."""

from __future__ import annotations

import threading
from collections.abc import Sequence
from datetime import date
from typing import Dict, List, Mapping, Optional, Tuple

import pytest

from productivity_dashboard.errors import SourceUnavailable
from productivity_dashboard.models import (
    Collaborator,
    MetricCategory,
    RawDatedRecord,
    RecordQuery,
    ScopeSelection,
    SeasonBounds,
)
from productivity_dashboard.pagination import PageRequest
from productivity_dashboard.repository import (
    InMemoryRecordSource,
    InMemoryRosterSource,
    RawRecordSource,
    RosterSource,
    SeasonSource,
    StaticSeasonSource,
)

TODAY = date(2024, 3, 15)


class RecordingDiagnostics:
    """Diagnostics sink that keeps every event for later assertions."""

    def __init__(self) -> None:
        self.loaded: List[MetricCategory] = []
        self.failed: List[Tuple[MetricCategory, BaseException]] = []
        self.stale: List[Tuple[MetricCategory, int, int]] = []
        self.mismatches: List[Tuple[MetricCategory, float, float]] = []
        self.degraded: List[Tuple[str, str]] = []

    def category_loaded(self, category: MetricCategory, scope: ScopeSelection, elapsed: float) -> None:
        self.loaded.append(category)

    def category_failed(self, category: MetricCategory, scope: ScopeSelection, error: BaseException) -> None:
        self.failed.append((category, error))

    def stale_result_dropped(self, category: MetricCategory, epoch: int, latest: int) -> None:
        self.stale.append((category, epoch, latest))

    def total_mismatch(self, category: MetricCategory, scope: ScopeSelection, derived: float, raw: float) -> None:
        self.mismatches.append((category, derived, raw))

    def source_degraded(self, source: str, detail: str, error: Optional[BaseException] = None) -> None:
        self.degraded.append((source, detail))


class CountingRecordSource(RawRecordSource):
    """Wrap another source, count its page calls and optionally fail some kinds."""

    def __init__(self, inner: RawRecordSource, failing_kinds: Sequence[str] = ()):
        self.inner = inner
        self.failing_kinds = set(failing_kinds)
        self.calls: List[Tuple[RecordQuery, PageRequest]] = []

    def fetch_page(self, query: RecordQuery, page: PageRequest) -> Sequence[RawDatedRecord]:
        self.calls.append((query, page))
        if query.kind in self.failing_kinds:
            raise SourceUnavailable(f"{query.kind} backend offline")
        return self.inner.fetch_page(query, page)

    def calls_for(self, kind: str) -> int:
        return sum(1 for query, _ in self.calls if query.kind == kind)


class GatedRecordSource(RawRecordSource):
    """Block page requests for ``slow_team`` until ``release`` is set.

    With ``slow_kinds`` only those record kinds are held back.
    """

    def __init__(self, inner: RawRecordSource, slow_team: str, slow_kinds: Sequence[str] = ()):
        self.inner = inner
        self.slow_team = slow_team
        self.slow_kinds = set(slow_kinds)
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch_page(self, query: RecordQuery, page: PageRequest) -> Sequence[RawDatedRecord]:
        if query.team_id == self.slow_team and (not self.slow_kinds or query.kind in self.slow_kinds):
            self.entered.set()
            self.release.wait(timeout=5)
        return self.inner.fetch_page(query, page)


class FailingRosterSource(RosterSource):
    def list_members(self, team_id: str) -> Sequence[Collaborator]:
        raise SourceUnavailable("roster offline")


class FailingSeasonSource(SeasonSource):
    def season_bounds(self) -> SeasonBounds:
        raise SourceUnavailable("season offline")


def team_records() -> Dict[str, Dict[str, List[RawDatedRecord]]]:
    """Two-member team ``alpha`` and single-member team ``beta``."""

    return {
        "alpha": {
            "actions": [
                RawDatedRecord(date="2024-03-10", key="processo_finalizado", count=3, player_id="ana"),
                RawDatedRecord(date="2024-03-11", key="pendente", count=2, player_id="ana"),
                RawDatedRecord(date="2024-03-11", key="processo_finalizado", count=4, player_id="bruno"),
                RawDatedRecord(date="2024-03-12T10:00:00Z", key="atividade_finalizada", count=5, player_id="bruno"),
                RawDatedRecord(date="not-a-date", key="processo_finalizado", count=100, player_id="ana"),
            ],
            "points": [
                RawDatedRecord(date="2024-03-10", key="locked_points", count=10, player_id="ana"),
                RawDatedRecord(date="2024-03-10", key="unlocked_points", count=20, player_id="ana"),
                RawDatedRecord(date="2024-03-12", key="unlocked_points", count=30, player_id="bruno"),
                RawDatedRecord(date="2024-03-12", key="bonus", count=5, player_id="bruno"),
            ],
            "portfolio": [
                RawDatedRecord(date="2024-03-10", key="acme", count=2, player_id="ana"),
                RawDatedRecord(date="2024-03-11", key="globex", count=5, player_id="bruno"),
                RawDatedRecord(date="2024-03-12", key="acme", count=3, player_id="bruno"),
                RawDatedRecord(date="2024-03-12", key="initech", count=0, player_id="bruno"),
            ],
        },
        "beta": {
            "actions": [RawDatedRecord(date="2024-03-14", key="processo_finalizado", count=1, player_id="carla")],
            "points": [RawDatedRecord(date="2024-03-14", key="unlocked_points", count=7, player_id="carla")],
            "portfolio": [],
        },
    }


def team_members() -> Mapping[str, Sequence[Collaborator]]:
    return {
        "alpha": (
            Collaborator(id="ana", display_name="Ana", email="ana@example.com"),
            Collaborator(id="bruno", display_name="Bruno", email="bruno@example.com"),
        ),
        "beta": (Collaborator(id="carla", display_name="Carla"),),
    }


@pytest.fixture
def diagnostics() -> RecordingDiagnostics:
    return RecordingDiagnostics()


@pytest.fixture
def record_source() -> CountingRecordSource:
    return CountingRecordSource(InMemoryRecordSource(team_records()))


@pytest.fixture
def roster_source() -> InMemoryRosterSource:
    return InMemoryRosterSource(team_members())


@pytest.fixture
def season_source() -> StaticSeasonSource:
    return StaticSeasonSource(start=date(2024, 1, 1), end=date(2024, 12, 31))


def pytest_collection_modifyitems(items: Sequence[pytest.Item]) -> None:
    """Enforce that every test has exactly one speed marker.

    - `unit`: pure, fast tests with no engine or HTTP surface.
    - `integration`: tests touching SQLAlchemy engines or the FastAPI app.
    """

    invalid: list[str] = []
    for item in items:
        has_unit = item.get_closest_marker("unit") is not None
        has_integration = item.get_closest_marker("integration") is not None
        if has_unit == has_integration:
            markers = []
            if has_unit:
                markers.append("unit")
            if has_integration:
                markers.append("integration")
            invalid.append(f"{item.nodeid} (markers={markers or 'none'})")

    if invalid:
        joined = "\n".join(f"- {nodeid}" for nodeid in invalid)
        raise pytest.UsageError(
            "Each test must have exactly one speed marker: `@pytest.mark.unit` or "
            "`@pytest.mark.integration`.\n"
            f"Offending tests:\n{joined}"
        )
