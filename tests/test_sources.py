"""Unit tests for the in-memory and HTTP source adapters."""

from __future__ import annotations

import io
import json
import urllib.error
from datetime import date
from typing import Any, List

import pytest

from productivity_dashboard import repository
from productivity_dashboard.errors import SourceUnavailable
from productivity_dashboard.models import Collaborator, RawDatedRecord, RecordQuery, SeasonBounds
from productivity_dashboard.pagination import PageRequest, PaginatedBulkFetcher
from productivity_dashboard.repository import (
    HttpRecordSource,
    HttpRosterSource,
    HttpSeasonSource,
    InMemoryRecordSource,
    RepositoryConfig,
    build_sources_from_env,
)

pytestmark = pytest.mark.unit

MARCH = RecordQuery(kind="actions", team_id="alpha", start=date(2024, 3, 1), end=date(2024, 3, 31))


class FakeResponse(io.BytesIO):
    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class FakeApi:
    """Stand-in for ``urlopen`` that records requests and replays payloads."""

    def __init__(self, payloads: List[Any]):
        self.payloads = list(payloads)
        self.requests: List[Any] = []

    def __call__(self, request: Any, timeout: float = 0) -> FakeResponse:
        self.requests.append(request)
        payload = self.payloads.pop(0)
        if isinstance(payload, Exception):
            raise payload
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        return FakeResponse(body)


@pytest.fixture
def api_sources():
    def _build(monkeypatch: pytest.MonkeyPatch, payloads: List[Any]):
        fake = FakeApi(payloads)
        monkeypatch.setattr(repository.urllib.request, "urlopen", fake)
        sources = build_sources_from_env(
            RepositoryConfig(api_url="https://api.example.com/v3/", api_token="secret")
        )
        return sources, fake

    return _build


def test_in_memory_source_filters_by_window_and_collaborator() -> None:
    records = {
        "alpha": {
            "actions": [
                RawDatedRecord(date="2024-02-29", count=1, player_id="ana"),
                RawDatedRecord(date="2024-03-01", count=2, player_id="ana"),
                RawDatedRecord(date="2024-03-31T12:00:00Z", count=3, player_id="bruno"),
                RawDatedRecord(date="unknown", count=4, player_id="ana"),
            ]
        }
    }
    source = InMemoryRecordSource(records)
    page = PageRequest(offset=0, batch_size=10)

    team = source.fetch_page(MARCH, page)
    assert [record.count for record in team] == [2, 3, 4]

    only_ana = RecordQuery(
        kind="actions", team_id="alpha", start=MARCH.start, end=MARCH.end, collaborator_id="ana"
    )
    assert [record.count for record in source.fetch_page(only_ana, page)] == [2, 4]
    assert source.fetch_page(RecordQuery("points", "alpha", MARCH.start, MARCH.end), page) == []


def test_in_memory_source_pages_with_half_open_slices() -> None:
    records = {"alpha": {"actions": [RawDatedRecord(date="2024-03-02", count=n) for n in range(7)]}}
    outcome = PaginatedBulkFetcher(InMemoryRecordSource(records).fetch_page).fetch_pages(MARCH, 3)
    assert [record.count for record in outcome.items] == list(range(7))
    assert outcome.pages == 3


def test_http_record_source_sends_range_header(monkeypatch: pytest.MonkeyPatch, api_sources) -> None:
    """Every page is addressed through the Range header and parsed from JSON."""

    sources, fake = api_sources(
        monkeypatch,
        [
            [
                {"_id": {"date": 1709251200000, "actionId": "processo_finalizado", "player": "ana"}, "count": 2},
                {"date": "2024-03-02", "key": "pendente", "total": 1, "userId": "bruno"},
            ],
            {"result": [{"date": "2024-03-03", "actionId": "processo_finalizado", "count": 5}]},
        ],
    )
    assert sources.origin == "api"
    assert isinstance(sources.records, HttpRecordSource)

    outcome = PaginatedBulkFetcher(sources.records.fetch_page).fetch_pages(MARCH, 2)

    assert [record.count for record in outcome.items] == [2, 1, 5]
    assert outcome.items[0] == RawDatedRecord(
        date=1709251200000, count=2, key="processo_finalizado", player_id="ana"
    )
    assert outcome.items[1].player_id == "bruno"
    assert [request.get_header("Range") for request in fake.requests] == ["items=0-2", "items=2-4"]
    assert fake.requests[0].get_header("Authorization") == "Bearer secret"
    assert fake.requests[0].full_url.startswith("https://api.example.com/v3/records/actions?")
    assert "team=alpha" in fake.requests[0].full_url
    assert "player" not in fake.requests[0].full_url


def test_http_failures_become_source_unavailable(monkeypatch: pytest.MonkeyPatch, api_sources) -> None:
    sources, _ = api_sources(monkeypatch, [urllib.error.URLError("refused"), b"<html>oops</html>"])

    with pytest.raises(SourceUnavailable):
        sources.records.fetch_page(MARCH, PageRequest(0, 10))
    with pytest.raises(SourceUnavailable, match="invalid JSON"):
        sources.records.fetch_page(MARCH, PageRequest(0, 10))


def test_http_roster_and_season(monkeypatch: pytest.MonkeyPatch, api_sources) -> None:
    sources, fake = api_sources(
        monkeypatch,
        [
            [{"_id": "ana", "name": "Ana", "email": "ana@example.com"}, {"id": "bruno"}],
            {"dataInicio": "2024-01-01T00:00:00Z", "dataFim": "2024-12-31"},
        ],
    )
    assert isinstance(sources.roster, HttpRosterSource)
    assert isinstance(sources.season, HttpSeasonSource)

    assert sources.roster.list_members("alpha") == (
        Collaborator(id="ana", display_name="Ana", email="ana@example.com"),
        Collaborator(id="bruno", display_name="bruno", email=""),
    )
    assert sources.season.season_bounds() == SeasonBounds(start=date(2024, 1, 1), end=date(2024, 12, 31))
    assert fake.requests[0].full_url == "https://api.example.com/v3/teams/alpha/members"


def test_static_season_from_environment_takes_precedence() -> None:
    sources = build_sources_from_env(
        RepositoryConfig(api_url="https://api.example.com", season_start="2024-02-01", season_end="2024-11-30")
    )
    assert sources.season.season_bounds() == SeasonBounds(start=date(2024, 2, 1), end=date(2024, 11, 30))


def test_no_configured_source_returns_none() -> None:
    assert build_sources_from_env(RepositoryConfig()) is None
