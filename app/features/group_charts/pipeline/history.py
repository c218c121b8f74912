"""
Pure chart-history metrics for a single entry.

Shared by the entry deep-dive stats and the records engine so both read the
same streak, peak and gap semantics from an entry's appearances.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from app.features.group_charts.domain import WEEK_LENGTH


@dataclass(slots=True)
class Appearance:
    week_start: datetime
    position: int
    playcount: int
    vibe_score: float | None = None


@dataclass(slots=True)
class EntryHistoryMetrics:
    weeks_on_chart: int = 0
    weeks_at_one: int = 0
    weeks_in_top_10: int = 0
    peak_position: int | None = None
    weeks_at_peak: int = 0
    debut_position: int | None = None
    debut_date: datetime | None = None
    latest_appearance: datetime | None = None
    longest_streak: int = 0
    longest_streak_start: datetime | None = None
    longest_streak_end: datetime | None = None
    longest_streak_at_one: int = 0
    longest_streak_in_top_10: int = 0
    is_streak_ongoing: bool = False
    longest_gap_weeks: int = 0
    total_vs: float = 0.0
    total_plays: int = 0


def is_consecutive(previous: datetime, current: datetime) -> bool:
    """Two appearances belong to one streak when at most a week apart."""
    return current - previous <= WEEK_LENGTH


def weeks_absent_between(previous: datetime, current: datetime) -> int:
    return max(round((current - previous) / WEEK_LENGTH) - 1, 0)


def _longest_run(appearances: list[Appearance], qualifies) -> tuple[int, int, int]:
    """Longest (latest on ties) run of consecutive qualifying appearances as (length, first, last)."""
    best = (0, -1, -1)
    length = 0
    start = 0
    previous: Appearance | None = None
    for index, appearance in enumerate(appearances):
        if not qualifies(appearance):
            length = 0
            previous = None
            continue
        if previous is not None and is_consecutive(previous.week_start, appearance.week_start):
            length += 1
        else:
            length = 1
            start = index
        if length >= best[0]:
            best = (length, start, index)
        previous = appearance
    return best


def compute_entry_metrics(
    appearances: Iterable[Appearance], latest_week_start: datetime | None = None
) -> EntryHistoryMetrics:
    """
    Summarize an entry's chart history.

    Args:
        appearances: every week the entry charted, any order
        latest_week_start: start of the group's most recent stored week; an
            entry's streak is ongoing only if it appeared in that week
    """
    ordered = sorted(appearances, key=lambda appearance: appearance.week_start)
    metrics = EntryHistoryMetrics()
    if not ordered:
        return metrics

    metrics.weeks_on_chart = len(ordered)
    metrics.weeks_at_one = sum(1 for appearance in ordered if appearance.position == 1)
    metrics.weeks_in_top_10 = sum(1 for appearance in ordered if appearance.position <= 10)
    metrics.peak_position = min(appearance.position for appearance in ordered)
    metrics.weeks_at_peak = sum(
        1 for appearance in ordered if appearance.position == metrics.peak_position
    )
    metrics.debut_position = ordered[0].position
    metrics.debut_date = ordered[0].week_start
    metrics.latest_appearance = ordered[-1].week_start
    metrics.total_plays = sum(appearance.playcount for appearance in ordered)
    metrics.total_vs = round(sum(appearance.vibe_score or 0.0 for appearance in ordered), 2)

    length, first, last = _longest_run(ordered, lambda appearance: True)
    metrics.longest_streak = length
    metrics.longest_streak_start = ordered[first].week_start
    metrics.longest_streak_end = ordered[last].week_start
    metrics.longest_streak_at_one = _longest_run(ordered, lambda a: a.position == 1)[0]
    metrics.longest_streak_in_top_10 = _longest_run(ordered, lambda a: a.position <= 10)[0]

    metrics.is_streak_ongoing = (
        latest_week_start is not None
        and last == len(ordered) - 1
        and ordered[-1].week_start >= latest_week_start
    )

    for previous, current in zip(ordered, ordered[1:]):
        metrics.longest_gap_weeks = max(
            metrics.longest_gap_weeks, weeks_absent_between(previous.week_start, current.week_start)
        )

    return metrics
