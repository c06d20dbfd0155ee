from __future__ import annotations

from typing import Optional


class AnalyticsError(Exception):
    """Base class for errors raised by the analytics engine."""


class InvalidDateRange(AnalyticsError, ValueError):
    pass


class DataSourceUnavailable(AnalyticsError):
    """
    A required raw-data fetch failed.

    Metrics are never synthesized from a partial set of sources, so this is
    fatal for the whole request; dashboards render an "unavailable" state.
    """

    def __init__(self, source: str, cause: Optional[BaseException] = None) -> None:
        self.source = source
        self.cause = cause
        message = f"Raw data source '{source}' is unavailable"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class CommissionSourceError(AnalyticsError):
    """The live commission service could not produce a rate."""
