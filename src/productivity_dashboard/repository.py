from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, Row
from sqlalchemy.exc import SQLAlchemyError

from .errors import SourceUnavailable
from .models import Collaborator, RawDatedRecord, RecordQuery, SeasonBounds
from .pagination import PageRequest
from .series import normalize_date_key

logger = logging.getLogger(__name__)


class RawRecordSource:
    """
    Interface for the paginated raw-record store.

    ``fetch_page`` returns at most ``page.batch_size`` records of the
    requested kind for the half-open slice ``[page.offset, page.end)``. A page
    shorter than the batch size signals that the result set is exhausted.
    """

    def fetch_page(self, query: RecordQuery, page: PageRequest) -> Sequence[RawDatedRecord]:
        raise NotImplementedError


class RosterSource:
    def list_members(self, team_id: str) -> Sequence[Collaborator]:
        raise NotImplementedError


class SeasonSource:
    def season_bounds(self) -> SeasonBounds:
        raise NotImplementedError


def _parse_day(value: Any) -> date:
    key = normalize_date_key(value)
    if key is None:
        raise SourceUnavailable(f"unreadable season date: {value!r}")
    return date.fromisoformat(key)


def _collaborator_from_mapping(payload: Mapping[str, Any]) -> Collaborator:
    member_id = payload.get("id") or payload.get("_id") or payload.get("userId") or payload.get("email")
    display_name = payload.get("display_name") or payload.get("displayName") or payload.get("name") or member_id
    return Collaborator(
        id=str(member_id),
        display_name=str(display_name),
        email=str(payload.get("email") or ""),
    )


class InMemoryRecordSource(RawRecordSource):
    """
    Serve records held in memory, keyed by team and record kind.

    Used for inline dashboard requests and as a test double. Records whose
    date cannot be read are passed through so that the aggregation layer
    decides what to drop.
    """

    def __init__(self, records: Mapping[str, Mapping[str, Sequence[RawDatedRecord]]]):
        self.records = records

    def fetch_page(self, query: RecordQuery, page: PageRequest) -> Sequence[RawDatedRecord]:
        start, end = query.start.isoformat(), query.end.isoformat()
        matching: List[RawDatedRecord] = []
        for record in self.records.get(query.team_id, {}).get(query.kind, ()):
            if query.collaborator_id is not None and record.player_id != query.collaborator_id:
                continue
            day_key = normalize_date_key(record.date)
            if day_key is not None and not (start <= day_key <= end):
                continue
            matching.append(record)
        return matching[page.offset : page.end]


class InMemoryRosterSource(RosterSource):
    def __init__(self, members: Mapping[str, Sequence[Collaborator]]):
        self.members = members

    def list_members(self, team_id: str) -> Sequence[Collaborator]:
        return tuple(self.members.get(team_id, ()))


class StaticSeasonSource(SeasonSource):
    def __init__(self, start: date, end: date):
        self.bounds = SeasonBounds(start=start, end=end)

    def season_bounds(self) -> SeasonBounds:
        return self.bounds


class SQLRecordSource(RawRecordSource):
    """
    Page through the ``dashboard_records`` table.

    Expected table:
      - dashboard_records(kind, team_id, player_id, record_date, record_key, value)

    ``record_date`` holds ISO ``YYYY-MM-DD`` values so that range filters work
    the same on SQLite and PostgreSQL.
    """

    def __init__(self, engine: Engine, table_name: str = "dashboard_records"):
        self.engine = engine
        self.table_name = table_name

    def fetch_page(self, query: RecordQuery, page: PageRequest) -> Sequence[RawDatedRecord]:
        player_filter = "AND player_id = :player" if query.collaborator_id is not None else ""
        statement = text(
            f"""
            SELECT record_date, record_key, player_id, value
            FROM {self.table_name}
            WHERE kind = :kind AND team_id = :team
              AND record_date >= :start AND record_date <= :end
              {player_filter}
            ORDER BY record_date ASC, record_key ASC, player_id ASC
            LIMIT :limit OFFSET :offset
            """
        )
        params: Dict[str, Any] = {
            "kind": query.kind,
            "team": query.team_id,
            "start": query.start.isoformat(),
            "end": query.end.isoformat(),
            "limit": page.batch_size,
            "offset": page.offset,
        }
        if query.collaborator_id is not None:
            params["player"] = query.collaborator_id
        try:
            with self.engine.connect() as connection:
                rows = connection.execute(statement, params).fetchall()
        except SQLAlchemyError as exc:
            raise SourceUnavailable(f"record query failed at {page.range_header}") from exc
        return tuple(self._row_to_record(row) for row in rows)

    @staticmethod
    def _row_to_record(row: Row) -> RawDatedRecord:
        return RawDatedRecord(
            date=row.record_date,
            count=float(row.value or 0),
            key=row.record_key,
            player_id=None if row.player_id is None else str(row.player_id),
        )


class SQLRosterSource(RosterSource):
    """
    Expected table:
      - team_members(team_id, player_id, display_name, email)
    """

    def __init__(self, engine: Engine, table_name: str = "team_members"):
        self.engine = engine
        self.table_name = table_name

    def list_members(self, team_id: str) -> Sequence[Collaborator]:
        statement = text(
            f"""
            SELECT player_id, display_name, email
            FROM {self.table_name}
            WHERE team_id = :team
            ORDER BY display_name ASC
            """
        )
        try:
            with self.engine.connect() as connection:
                rows = connection.execute(statement, {"team": team_id}).fetchall()
        except SQLAlchemyError as exc:
            raise SourceUnavailable(f"roster query failed for team {team_id}") from exc
        return tuple(
            Collaborator(
                id=str(row.player_id),
                display_name=str(row.display_name or row.player_id),
                email=str(row.email or ""),
            )
            for row in rows
        )


class _JsonApiClient:
    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    def get(self, path: str, params: Optional[Mapping[str, Any]] = None, headers: Optional[Mapping[str, str]] = None) -> Any:
        url = f"{self.base_url}{path}"
        if params:
            query = {name: value for name, value in params.items() if value is not None}
            url = f"{url}?{urllib.parse.urlencode(query)}"

        request = urllib.request.Request(url, headers={"Accept": "application/json", **(headers or {})})
        if self.token:
            request.add_header("Authorization", f"Bearer {self.token}")

        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                body = response.read()
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            raise SourceUnavailable(f"request to {url} failed: {exc}") from exc

        try:
            return json.loads(body.decode("utf-8") or "null")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise SourceUnavailable(f"invalid JSON from {url}") from exc


def _unwrap_result(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("result"), list):
        return payload["result"]
    logger.warning("Unexpected record payload shape: %s", type(payload).__name__)
    return []


class HttpRecordSource(RawRecordSource):
    """
    Read records from ``GET /records/<kind>`` on the aggregate API.

    The page is addressed with a ``Range: items=<from>-<to>`` header; the API
    may answer with a bare list or with ``{"result": [...]}``.
    """

    def __init__(self, client: _JsonApiClient):
        self.client = client

    def fetch_page(self, query: RecordQuery, page: PageRequest) -> Sequence[RawDatedRecord]:
        payload = self.client.get(
            f"/records/{urllib.parse.quote(query.kind)}",
            params={
                "team": query.team_id,
                "player": query.collaborator_id,
                "start": query.start.isoformat(),
                "end": query.end.isoformat(),
            },
            headers={"Range": page.range_header},
        )
        return tuple(
            RawDatedRecord.from_mapping(item) for item in _unwrap_result(payload) if isinstance(item, Mapping)
        )


class HttpRosterSource(RosterSource):
    def __init__(self, client: _JsonApiClient):
        self.client = client

    def list_members(self, team_id: str) -> Sequence[Collaborator]:
        payload = self.client.get(f"/teams/{urllib.parse.quote(team_id)}/members")
        return tuple(
            _collaborator_from_mapping(item) for item in _unwrap_result(payload) if isinstance(item, Mapping)
        )


class HttpSeasonSource(SeasonSource):
    def __init__(self, client: _JsonApiClient):
        self.client = client

    def season_bounds(self) -> SeasonBounds:
        payload = self.client.get("/season")
        if not isinstance(payload, Mapping):
            raise SourceUnavailable("season payload is not an object")
        return SeasonBounds(
            start=_parse_day(payload.get("start") or payload.get("dataInicio")),
            end=_parse_day(payload.get("end") or payload.get("dataFim")),
        )


@dataclass(frozen=True)
class RepositoryConfig:
    database_url: Optional[str] = None
    api_url: Optional[str] = None
    api_token: Optional[str] = None
    api_timeout: float = 30.0
    season_start: Optional[str] = None
    season_end: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RepositoryConfig":
        timeout = os.getenv("DASHBOARD_API_TIMEOUT")
        try:
            api_timeout = float(timeout) if timeout else 30.0
        except ValueError:
            api_timeout = 30.0
        return cls(
            database_url=os.getenv("DASHBOARD_DATABASE_URL"),
            api_url=os.getenv("DASHBOARD_API_URL"),
            api_token=os.getenv("DASHBOARD_API_TOKEN"),
            api_timeout=api_timeout,
            season_start=os.getenv("DASHBOARD_SEASON_START"),
            season_end=os.getenv("DASHBOARD_SEASON_END"),
        )


@dataclass(frozen=True)
class DashboardSources:
    records: RawRecordSource
    roster: RosterSource
    season: SeasonSource
    origin: str


def _static_season(cfg: RepositoryConfig) -> Optional[SeasonSource]:
    if cfg.season_start and cfg.season_end:
        return StaticSeasonSource(start=_parse_day(cfg.season_start), end=_parse_day(cfg.season_end))
    return None


def build_sources_from_env(config: Optional[RepositoryConfig] = None) -> Optional[DashboardSources]:
    cfg = config or RepositoryConfig.from_env()
    if cfg.database_url:
        engine = create_engine(cfg.database_url)
        season = _static_season(cfg)
        if season is None:
            today = date.today()
            season = StaticSeasonSource(start=date(today.year, 1, 1), end=date(today.year, 12, 31))
        return DashboardSources(
            records=SQLRecordSource(engine),
            roster=SQLRosterSource(engine),
            season=season,
            origin="database",
        )
    if cfg.api_url:
        client = _JsonApiClient(cfg.api_url, token=cfg.api_token, timeout=cfg.api_timeout)
        return DashboardSources(
            records=HttpRecordSource(client),
            roster=HttpRosterSource(client),
            season=_static_season(cfg) or HttpSeasonSource(client),
            origin="api",
        )
    return None
