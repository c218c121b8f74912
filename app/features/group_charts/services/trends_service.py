"""
Week-over-week chart trends for a group's latest week.
"""

from datetime import datetime
from typing import Any

from psycopg.types.json import Jsonb

from app.db.helpers import execute_query
from app.features.group_charts.domain import WEEK_LENGTH, ChartEntry
from app.features.group_charts.pipeline.aggregation.repository import ChartAggregationRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

TOP_MOVERS = 5


def _highlight(entry: ChartEntry) -> dict[str, Any]:
    return {
        "chart_type": entry.chart_type.value,
        "entry_key": entry.entry_key,
        "name": entry.name,
        "artist": entry.artist,
        "slug": entry.slug,
        "position": entry.position,
        "position_change": entry.position_change,
    }


def compute_trends(current: list[ChartEntry], previous: list[ChartEntry]) -> dict[str, Any]:
    """
    Compare a week's chart entries with the preceding week's.

    An empty `previous` means there is no stored preceding week, in which case
    `total_plays_change` is None and nothing counts as an exit.
    """
    current_keys = {(entry.chart_type, entry.entry_key) for entry in current}

    new_entries = [_highlight(entry) for entry in current if entry.entry_type == "new"]
    comebacks = [_highlight(entry) for entry in current if entry.entry_type == "returning"]
    exits = [
        _highlight(entry)
        for entry in previous
        if (entry.chart_type, entry.entry_key) not in current_keys
    ]

    moved = [entry for entry in current if entry.position_change]
    climbers = sorted(
        (entry for entry in moved if entry.position_change > 0),
        key=lambda entry: (-entry.position_change, entry.position),
    )
    fallers = sorted(
        (entry for entry in moved if entry.position_change < 0),
        key=lambda entry: (entry.position_change, entry.position),
    )

    total_plays = sum(entry.playcount for entry in current)
    previous_total = sum(entry.playcount for entry in previous) if previous else None

    return {
        "new_entries": new_entries,
        "comebacks": comebacks,
        "exits": exits,
        "biggest_climbers": [_highlight(entry) for entry in climbers[:TOP_MOVERS]],
        "biggest_fallers": [_highlight(entry) for entry in fallers[:TOP_MOVERS]],
        "total_plays": total_plays,
        "total_plays_change": (
            total_plays - previous_total if previous_total is not None else None
        ),
        "chart_turnover": len(new_entries),
    }


class TrendsService:
    async def calculate_for_week(self, group_id: str, week_start: datetime) -> dict[str, Any]:
        current = await ChartAggregationRepository.fetch_week_entries(group_id, week_start)
        previous = await ChartAggregationRepository.fetch_week_entries(
            group_id, week_start - WEEK_LENGTH
        )
        trends = compute_trends(current, previous)

        query = """
            INSERT INTO group_trends (group_id, week_start, trends, calculated_at)
            VALUES (%s, %s, %s, NOW())
            ON CONFLICT (group_id) DO UPDATE SET
                week_start = EXCLUDED.week_start,
                trends = EXCLUDED.trends,
                calculated_at = NOW()
        """
        await execute_query(query, (group_id, week_start, Jsonb(trends)))

        logger.info(
            "Trends calculated",
            group_id=group_id,
            week_start=week_start.isoformat(),
            new_entries=len(trends["new_entries"]),
            exits=len(trends["exits"]),
        )
        return trends


trends_service = TrendsService()
