"""
Team productivity dashboard core.

This package turns sparse per-day action, point and portfolio records into
gap-filled daily series and into team or collaborator scoped metrics, pulling
raw records in bulk from paginated sources.
"""

from .configuration import DashboardConfig, load_dashboard_config  # noqa: F401
from .dates import (  # noqa: F401
    month_options,
    months_since_season_start,
    range_for_calendar_month,
    range_for_trailing_days,
)
from .datasets import PALETTE, build_labeled_datasets, build_per_key_datasets, palette_color  # noqa: F401
from .errors import DashboardError, ScopeError, SourceUnavailable  # noqa: F401
from .models import (  # noqa: F401
    CategoryState,
    Collaborator,
    CollaboratorScope,
    DashboardSnapshot,
    DateRange,
    GoalMetric,
    MetricCategory,
    NamedSeries,
    PointTotals,
    PortfolioSummary,
    ProductivityView,
    ProgressCounters,
    RawDatedRecord,
    RecordQuery,
    SeasonBounds,
    TeamScope,
    TimePoint,
)
from .pagination import FetchOutcome, PageRequest, PaginatedBulkFetcher, fetch_all  # noqa: F401
from .repository import (  # noqa: F401
    InMemoryRecordSource,
    InMemoryRosterSource,
    RawRecordSource,
    RepositoryConfig,
    RosterSource,
    SeasonSource,
    SQLRecordSource,
    SQLRosterSource,
    StaticSeasonSource,
    build_sources_from_env,
)
from .series import build_series, fill_range, group_by_date_key, normalize_date_key  # noqa: F401
from .service import ScopedMetricsAggregator  # noqa: F401
