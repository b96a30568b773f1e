"""
Settings for the analytics core.

Defaults live on the pydantic models; ``load_dashboard_config`` layers
caller overrides and ``DASHBOARD_*`` environment variables on top.
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field


class PaginationConfig(BaseModel):
    batch_size: int = 100
    """Items requested per page from the raw-record source"""


class CacheConfig(BaseModel):
    enable: bool = True
    ttl_seconds: int = 300
    """How long fetched records, rosters and season bounds are reused"""


class SeriesConfig(BaseModel):
    timezone: str = "UTC"
    """Zone used to map wire timestamps onto calendar days"""

    default_period_days: int = 30


class ProgressConfig(BaseModel):
    incomplete_keys: List[str] = Field(
        default_factory=lambda: [
            "processo_incompleto",
            "incomplete_process",
            "pending",
            "pendente",
            "in_progress",
            "em_execucao",
        ]
    )
    """Action keys counted as incomplete; every other key counts as completed"""


class GoalConfig(BaseModel):
    id: str
    label: str
    target: float
    keys: List[str] = Field(default_factory=list)
    """Action keys feeding the goal; empty means every completed action"""

    unit: str = ""


def _default_goals() -> List[GoalConfig]:
    return [
        GoalConfig(
            id="processos-finalizados",
            label="Completed Processes",
            target=100,
            keys=["processo_finalizado", "completed_process"],
        ),
        GoalConfig(id="atividades-finalizadas", label="Completed Activities", target=500),
    ]


class DashboardConfig(BaseModel):
    pagination: PaginationConfig = PaginationConfig()
    cache: CacheConfig = CacheConfig()
    series: SeriesConfig = SeriesConfig()
    progress: ProgressConfig = ProgressConfig()
    goals: List[GoalConfig] = Field(default_factory=_default_goals)
    slow_load_seconds: float = 1.0


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def load_dashboard_config(overrides: Optional[Mapping[str, Any]] = None) -> DashboardConfig:
    cfg = DashboardConfig()
    configurable: Dict[str, Any] = dict(overrides or {})

    pagination_cfg = configurable.get("pagination", {})
    cfg.pagination = PaginationConfig(
        batch_size=_env_int(
            "DASHBOARD_BATCH_SIZE", pagination_cfg.get("batch_size", cfg.pagination.batch_size)
        ),
    )

    cache_cfg = configurable.get("cache", {})
    cfg.cache = CacheConfig(
        enable=_env_bool("DASHBOARD_CACHE_ENABLE", cache_cfg.get("enable", cfg.cache.enable)),
        ttl_seconds=_env_int("DASHBOARD_CACHE_TTL", cache_cfg.get("ttl_seconds", cfg.cache.ttl_seconds)),
    )

    series_cfg = configurable.get("series", {})
    cfg.series = SeriesConfig(
        timezone=os.getenv("DASHBOARD_TIMEZONE", series_cfg.get("timezone", cfg.series.timezone)),
        default_period_days=_env_int(
            "DASHBOARD_PERIOD_DAYS",
            series_cfg.get("default_period_days", cfg.series.default_period_days),
        ),
    )

    progress_cfg = configurable.get("progress", {})
    cfg.progress = ProgressConfig(
        incomplete_keys=progress_cfg.get("incomplete_keys", cfg.progress.incomplete_keys),
    )

    if "goals" in configurable:
        cfg.goals = [GoalConfig(**goal) if isinstance(goal, Mapping) else goal for goal in configurable["goals"]]

    cfg.slow_load_seconds = _env_float(
        "DASHBOARD_SLOW_LOAD_SECONDS", configurable.get("slow_load_seconds", cfg.slow_load_seconds)
    )
    return cfg
