"""
Week arithmetic for group charts.

Weeks start at UTC midnight on the group's tracking day
(0 = Sunday ... 6 = Saturday) and last exactly seven days.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from .models import WEEK_LENGTH, WeekWindow


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def week_start_for_day(value: datetime, tracking_day_of_week: int) -> datetime:
    """Most recent tracking day at or before value, at 00:00 UTC."""
    if not 0 <= tracking_day_of_week <= 6:
        raise ValueError(f"tracking_day_of_week must be 0-6, got {tracking_day_of_week}")

    current = _as_utc(value)
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    # datetime.weekday() is Monday=0, tracking days are Sunday=0
    sunday_based = (midnight.weekday() + 1) % 7
    days_back = (sunday_based - tracking_day_of_week) % 7
    return midnight - timedelta(days=days_back)


def week_window(week_start: datetime) -> WeekWindow:
    return WeekWindow.starting(_as_utc(week_start))


def last_finished_weeks(count: int, tracking_day_of_week: int, now: datetime) -> list[WeekWindow]:
    """The last `count` finished weeks, oldest first."""
    current_start = week_start_for_day(now, tracking_day_of_week)
    windows = []
    for weeks_ago in range(count, 0, -1):
        window = WeekWindow.starting(current_start - weeks_ago * WEEK_LENGTH)
        if window.is_finished(_as_utc(now)):
            windows.append(window)
    return windows


def compute_backlog(
    last_week_start: datetime | None,
    tracking_day_of_week: int,
    now: datetime,
    max_weeks: int,
) -> list[WeekWindow]:
    """
    Weeks that still need a chart, oldest first, capped at max_weeks.

    Without history the backlog is seeded with the last max_weeks finished
    weeks. Otherwise it is the contiguous range after the last stored week up
    to the most recently finished one. The first week is re-aligned to the
    tracking day so a changed tracking day resumes on the new boundary.
    """
    now = _as_utc(now)
    if last_week_start is None:
        return last_finished_weeks(max_weeks, tracking_day_of_week, now)

    start = week_start_for_day(_as_utc(last_week_start) + WEEK_LENGTH, tracking_day_of_week)
    if start <= _as_utc(last_week_start):
        start += WEEK_LENGTH

    backlog: list[WeekWindow] = []
    window = WeekWindow.starting(start)
    while window.is_finished(now) and len(backlog) < max_weeks:
        backlog.append(window)
        window = WeekWindow.starting(window.start + WEEK_LENGTH)
    return backlog


def weeks_overlap(first: WeekWindow, second: WeekWindow) -> bool:
    return first.overlaps(second)
