"""Integration tests for the SQLAlchemy-backed sources on an in-memory SQLite engine."""

from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from productivity_dashboard.errors import SourceUnavailable
from productivity_dashboard.models import Collaborator, RecordQuery
from productivity_dashboard.pagination import PageRequest, PaginatedBulkFetcher
from productivity_dashboard.repository import SQLRecordSource, SQLRosterSource

pytestmark = pytest.mark.integration

MARCH = RecordQuery(kind="actions", team_id="alpha", start=date(2024, 3, 1), end=date(2024, 3, 31))


@pytest.fixture
def engine() -> Engine:
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    with engine.begin() as connection:
        connection.execute(
            text(
                "CREATE TABLE dashboard_records ("
                "kind TEXT, team_id TEXT, player_id TEXT, record_date TEXT, record_key TEXT, value REAL)"
            )
        )
        connection.execute(
            text("CREATE TABLE team_members (team_id TEXT, player_id TEXT, display_name TEXT, email TEXT)")
        )
        rows = [
            {"kind": "actions", "team": "alpha", "player": "ana", "day": f"2024-03-{day:02d}", "key": "done", "value": day}
            for day in range(1, 26)
        ]
        rows.append({"kind": "actions", "team": "alpha", "player": "bruno", "day": "2024-02-28", "key": "done", "value": 9})
        rows.append({"kind": "actions", "team": "beta", "player": "carla", "day": "2024-03-05", "key": "done", "value": 9})
        rows.append({"kind": "points", "team": "alpha", "player": "ana", "day": "2024-03-05", "key": "locked_points", "value": 9})
        connection.execute(
            text(
                "INSERT INTO dashboard_records (kind, team_id, player_id, record_date, record_key, value) "
                "VALUES (:kind, :team, :player, :day, :key, :value)"
            ),
            rows,
        )
        connection.execute(
            text("INSERT INTO team_members VALUES (:team, :player, :name, :email)"),
            [
                {"team": "alpha", "player": "bruno", "name": "Bruno", "email": None},
                {"team": "alpha", "player": "ana", "name": "Ana", "email": "ana@example.com"},
                {"team": "beta", "player": "carla", "name": "Carla", "email": None},
            ],
        )
    return engine


def test_record_source_pages_through_window(engine: Engine) -> None:
    """LIMIT/OFFSET paging should return the 25 March rows in three pages."""

    outcome = PaginatedBulkFetcher(SQLRecordSource(engine).fetch_page).fetch_pages(MARCH, 10)

    assert outcome.error is None
    assert outcome.pages == 3
    assert [record.count for record in outcome.items] == [float(day) for day in range(1, 26)]
    assert outcome.items[0].date == "2024-03-01"
    assert outcome.items[0].key == "done"
    assert outcome.items[0].player_id == "ana"


def test_record_source_page_is_half_open(engine: Engine) -> None:
    page = SQLRecordSource(engine).fetch_page(MARCH, PageRequest(offset=10, batch_size=5))
    assert [record.count for record in page] == [11.0, 12.0, 13.0, 14.0, 15.0]


def test_record_source_filters_collaborator(engine: Engine) -> None:
    query = RecordQuery(
        kind="actions", team_id="alpha", start=date(2024, 2, 1), end=date(2024, 2, 29), collaborator_id="bruno"
    )
    records = SQLRecordSource(engine).fetch_page(query, PageRequest(0, 10))
    assert [(record.player_id, record.count) for record in records] == [("bruno", 9.0)]


def test_roster_source_lists_members_by_name(engine: Engine) -> None:
    assert SQLRosterSource(engine).list_members("alpha") == (
        Collaborator(id="ana", display_name="Ana", email="ana@example.com"),
        Collaborator(id="bruno", display_name="Bruno", email=""),
    )


def test_missing_table_raises_source_unavailable(engine: Engine) -> None:
    source = SQLRecordSource(engine, table_name="does_not_exist")
    with pytest.raises(SourceUnavailable, match="items=0-10"):
        source.fetch_page(MARCH, PageRequest(0, 10))
