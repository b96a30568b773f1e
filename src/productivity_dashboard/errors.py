from __future__ import annotations


class DashboardError(Exception):
    """Base class for errors raised by the dashboard core."""


class SourceUnavailable(DashboardError):
    """A record, roster or season source could not be reached or read."""


class ScopeError(DashboardError, ValueError):
    """The requested operation needs a team to be selected first."""
