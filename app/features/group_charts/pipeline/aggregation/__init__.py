"""
Aggregation package for group charts.

Merges members' scored weekly top lists into ranked group charts and
replaces the stored week.
"""

from .service import WeeklyAggregator, weekly_aggregator

__all__ = ["WeeklyAggregator", "weekly_aggregator"]
