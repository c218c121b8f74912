"""
All-time top lists for a group, rebuilt once per generation run from the
stored WeeklyStats snapshots.
"""

from collections.abc import Iterable

from psycopg.types.json import Jsonb

from app.db.helpers import execute_query
from app.features.group_charts.domain import ChartType, make_entry_key
from app.features.group_charts.pipeline.aggregation.repository import ChartAggregationRepository
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

WEEKLY_TOP_N = 10
ALLTIME_TOP_N = 100

SNAPSHOT_COLUMNS = {
    ChartType.ARTISTS: "top_artists",
    ChartType.TRACKS: "top_tracks",
    ChartType.ALBUMS: "top_albums",
}


def build_alltime_lists(weekly_stats: Iterable[dict]) -> dict[ChartType, list[dict]]:
    """
    Sum each week's top-10 playcounts per entry and keep the top 100.

    Ties on playcount are ordered by entry key.
    """
    totals: dict[ChartType, dict[str, dict]] = {chart_type: {} for chart_type in ChartType}
    for week in weekly_stats:
        for chart_type, column in SNAPSHOT_COLUMNS.items():
            for item in (week.get(column) or [])[:WEEKLY_TOP_N]:
                artist = item.get("artist") if chart_type != ChartType.ARTISTS else None
                key = item.get("entry_key") or make_entry_key(chart_type, item["name"], artist)
                existing = totals[chart_type].get(key)
                if existing is None:
                    totals[chart_type][key] = {
                        "entry_key": key,
                        "name": item["name"],
                        "artist": artist,
                        "playcount": int(item.get("playcount") or 0),
                    }
                else:
                    existing["playcount"] += int(item.get("playcount") or 0)

    return {
        chart_type: sorted(entries.values(), key=lambda e: (-e["playcount"], e["entry_key"]))[
            :ALLTIME_TOP_N
        ]
        for chart_type, entries in totals.items()
    }


class AllTimeStatsService:
    async def recalculate(self, group_id: str) -> dict[ChartType, list[dict]]:
        weekly_stats = await ChartAggregationRepository.fetch_all_weekly_stats(group_id)
        lists = build_alltime_lists(weekly_stats)

        query = """
            INSERT INTO group_alltime_stats (group_id, top_artists, top_tracks, top_albums, last_updated)
            VALUES (%s, %s, %s, %s, NOW())
            ON CONFLICT (group_id) DO UPDATE SET
                top_artists = EXCLUDED.top_artists,
                top_tracks = EXCLUDED.top_tracks,
                top_albums = EXCLUDED.top_albums,
                last_updated = NOW()
        """
        await execute_query(
            query,
            (
                group_id,
                Jsonb(lists[ChartType.ARTISTS]),
                Jsonb(lists[ChartType.TRACKS]),
                Jsonb(lists[ChartType.ALBUMS]),
            ),
        )

        logger.info(
            "All-time stats recalculated",
            group_id=group_id,
            weeks=len(weekly_stats),
            artists=len(lists[ChartType.ARTISTS]),
            tracks=len(lists[ChartType.TRACKS]),
            albums=len(lists[ChartType.ALBUMS]),
        )
        return lists


alltime_stats_service = AllTimeStatsService()
