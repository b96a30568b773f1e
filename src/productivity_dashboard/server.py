from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, validator

from .configuration import load_dashboard_config
from .models import Collaborator, RawDatedRecord
from .repository import (
    DashboardSources,
    InMemoryRecordSource,
    InMemoryRosterSource,
    StaticSeasonSource,
    build_sources_from_env,
)
from .service import ScopedMetricsAggregator

app = FastAPI(title="Productivity Dashboard API", version="0.1.0")
sources: Optional[DashboardSources] = build_sources_from_env()


class RecordPayload(BaseModel):
    date: Any
    count: float = 0.0
    key: Optional[str] = None
    player_id: Optional[str] = None


class MemberPayload(BaseModel):
    id: str
    display_name: Optional[str] = None
    email: str = ""


class SeasonPayload(BaseModel):
    start: date
    end: date

    @validator("end")
    def _validate_range(cls, end: date, values: Dict[str, Any]) -> date:
        start = values.get("start")
        if start and end < start:
            raise ValueError("season end must not precede its start")
        return end


class DashboardRequest(BaseModel):
    team_id: str
    collaborator_id: Optional[str] = None
    months_ago: Optional[int] = Field(default=None, ge=0)
    period_days: Optional[int] = Field(default=None, ge=0)
    reference_date: Optional[date] = None
    active_tab: str = "goals"
    actions: Optional[List[RecordPayload]] = None
    points: Optional[List[RecordPayload]] = None
    portfolio: Optional[List[RecordPayload]] = None
    members: Optional[List[MemberPayload]] = None
    season: Optional[SeasonPayload] = None

    def has_inline_records(self) -> bool:
        return any(payload is not None for payload in (self.actions, self.points, self.portfolio))


class DashboardResponse(BaseModel):
    data: Dict[str, Any]
    source: str


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/dashboard", response_model=DashboardResponse)
async def dashboard_endpoint(request: DashboardRequest) -> DashboardResponse:
    resolved, origin = _resolve_sources(request)
    aggregator = ScopedMetricsAggregator(
        record_source=resolved.records,
        roster_source=resolved.roster,
        season_source=resolved.season,
        config=load_dashboard_config(),
        today=(lambda: request.reference_date) if request.reference_date else None,
    )

    try:
        aggregator.switch_tab(request.active_tab)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if request.months_ago is not None:
        await aggregator.select_month(request.months_ago)
    if request.period_days is not None:
        await aggregator.select_period(request.period_days)

    snapshot = await aggregator.select_team(request.team_id)
    if request.collaborator_id:
        snapshot = await aggregator.select_collaborator(request.collaborator_id)
    return DashboardResponse(data=snapshot.as_dict(), source=origin)


def _resolve_sources(request: DashboardRequest) -> Tuple[DashboardSources, str]:
    if sources is not None:
        return sources, sources.origin

    if not request.has_inline_records():
        raise HTTPException(
            status_code=400,
            detail=(
                "Neither DASHBOARD_DATABASE_URL nor DASHBOARD_API_URL is configured; "
                "supply actions/points/portfolio records in the request body."
            ),
        )

    records = {
        request.team_id: {
            "actions": [_convert_record_payload(payload) for payload in request.actions or ()],
            "points": [_convert_record_payload(payload) for payload in request.points or ()],
            "portfolio": [_convert_record_payload(payload) for payload in request.portfolio or ()],
        }
    }
    members = {request.team_id: [_convert_member_payload(payload) for payload in request.members or ()]}
    reference = request.reference_date or date.today()
    season = request.season or SeasonPayload(start=date(reference.year, 1, 1), end=date(reference.year, 12, 31))
    inline = DashboardSources(
        records=InMemoryRecordSource(records),
        roster=InMemoryRosterSource(members),
        season=StaticSeasonSource(start=season.start, end=season.end),
        origin="inline",
    )
    return inline, inline.origin


def _convert_record_payload(payload: RecordPayload) -> RawDatedRecord:
    return RawDatedRecord(date=payload.date, count=payload.count, key=payload.key, player_id=payload.player_id)


def _convert_member_payload(payload: MemberPayload) -> Collaborator:
    return Collaborator(id=payload.id, display_name=payload.display_name or payload.id, email=payload.email)
