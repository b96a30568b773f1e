from __future__ import annotations

import logging
from typing import Optional, Protocol

from .models import MetricCategory, ScopeSelection

logger = logging.getLogger(__name__)


class DiagnosticsSink(Protocol):
    """
    Receives load outcomes from the aggregator.

    Presentation policy (toasts, log files, metrics) lives behind this
    interface; the aggregator itself never logs.
    """

    def category_loaded(self, category: MetricCategory, scope: ScopeSelection, elapsed: float) -> None:
        ...

    def category_failed(self, category: MetricCategory, scope: ScopeSelection, error: BaseException) -> None:
        ...

    def stale_result_dropped(self, category: MetricCategory, epoch: int, latest: int) -> None:
        ...

    def total_mismatch(self, category: MetricCategory, scope: ScopeSelection, derived: float, raw: float) -> None:
        ...

    def source_degraded(self, source: str, detail: str, error: Optional[BaseException] = None) -> None:
        ...


class LoggingDiagnostics:
    def __init__(self, slow_load_seconds: float = 1.0, log: Optional[logging.Logger] = None):
        self.slow_load_seconds = slow_load_seconds
        self.log = log or logger

    def category_loaded(self, category: MetricCategory, scope: ScopeSelection, elapsed: float) -> None:
        if elapsed > self.slow_load_seconds:
            self.log.warning("Slow %s load for %s: %.2fs", category.value, scope, elapsed)
        else:
            self.log.debug("Loaded %s for %s in %.3fs", category.value, scope, elapsed)

    def category_failed(self, category: MetricCategory, scope: ScopeSelection, error: BaseException) -> None:
        self.log.warning("Failed to load %s for %s: %s", category.value, scope, error)

    def stale_result_dropped(self, category: MetricCategory, epoch: int, latest: int) -> None:
        self.log.debug("Dropped stale %s result (epoch %d, latest %d)", category.value, epoch, latest)

    def total_mismatch(self, category: MetricCategory, scope: ScopeSelection, derived: float, raw: float) -> None:
        self.log.warning(
            "Team %s total derived from members (%s) differs from raw source total (%s) for %s",
            category.value,
            derived,
            raw,
            scope,
        )

    def source_degraded(self, source: str, detail: str, error: Optional[BaseException] = None) -> None:
        if error is None:
            self.log.warning("%s degraded: %s", source, detail)
        else:
            self.log.warning("%s degraded: %s (%s)", source, detail, error)
