"""Read-only reporting package."""

from tabkeeper.queries.dashboard import DashboardAggregator

__all__ = ["DashboardAggregator"]
