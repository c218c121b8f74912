"""
Persistence for per-entry running stats (chart_entry_stats) and the chart
history they are derived from.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from app.db.helpers import execute_many, execute_query, fetch_all, fetch_one
from app.features.group_charts.domain import ChartEntryStats, ChartType
from app.features.group_charts.pipeline.history import Appearance
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class TouchedEntry:
    """Per-run delta for one entry, folded across every week the run processed."""

    chart_type: ChartType
    entry_key: str
    slug: str
    name: str
    artist: str | None
    vs_delta: float
    plays_delta: int
    latest_appearance: datetime


class EntryStatsRepository:
    STATS_COLUMNS = """
        group_id, chart_type, entry_key, slug, name, artist, peak_position, weeks_at_peak,
        debut_position, debut_date, weeks_at_one, weeks_in_top_10, total_weeks_charting,
        longest_streak, longest_streak_start, longest_streak_end, is_streak_ongoing,
        currently_charting, latest_appearance, total_vs, total_plays, stats_stale
    """

    RANKABLE_FIELDS = frozenset(
        {
            "total_weeks_charting",
            "weeks_in_top_10",
            "longest_streak",
            "total_plays",
            "total_vs",
            "weeks_at_one",
        }
    )

    @staticmethod
    def _row_to_stats(row: dict) -> ChartEntryStats:
        return ChartEntryStats(
            group_id=str(row["group_id"]),
            chart_type=ChartType(row["chart_type"]),
            entry_key=row["entry_key"],
            slug=row["slug"],
            name=row["name"],
            artist=row.get("artist"),
            peak_position=row.get("peak_position"),
            weeks_at_peak=row.get("weeks_at_peak") or 0,
            debut_position=row.get("debut_position"),
            debut_date=row.get("debut_date"),
            weeks_at_one=row.get("weeks_at_one") or 0,
            weeks_in_top_10=row.get("weeks_in_top_10") or 0,
            total_weeks_charting=row.get("total_weeks_charting") or 0,
            longest_streak=row.get("longest_streak") or 0,
            longest_streak_start=row.get("longest_streak_start"),
            longest_streak_end=row.get("longest_streak_end"),
            is_streak_ongoing=bool(row.get("is_streak_ongoing")),
            currently_charting=bool(row.get("currently_charting")),
            latest_appearance=row.get("latest_appearance"),
            total_vs=float(row.get("total_vs") or 0),
            total_plays=row.get("total_plays") or 0,
            stats_stale=bool(row.get("stats_stale")),
        )

    @classmethod
    async def get_by_slug(
        cls, group_id: str, chart_type: ChartType, slug: str
    ) -> ChartEntryStats | None:
        query = f"""
            SELECT {cls.STATS_COLUMNS}
            FROM chart_entry_stats
            WHERE group_id = %s AND chart_type = %s AND slug = %s
        """
        row = await fetch_one(query, (group_id, chart_type.value, slug))
        return cls._row_to_stats(row) if row else None

    @classmethod
    async def find_entry_by_slug(
        cls, group_id: str, chart_type: ChartType, slug: str
    ) -> dict | None:
        """Identity of the most recent chart entry with this slug."""
        query = """
            SELECT entry_key, name, artist, slug
            FROM chart_entries
            WHERE group_id = %s AND chart_type = %s AND slug = %s
            ORDER BY week_start DESC
            LIMIT 1
        """
        return await fetch_one(query, (group_id, chart_type.value, slug))

    @classmethod
    async def fetch_appearances(
        cls, group_id: str, chart_type: ChartType, entry_key: str
    ) -> list[Appearance]:
        query = """
            SELECT week_start, position, playcount, vibe_score
            FROM chart_entries
            WHERE group_id = %s AND chart_type = %s AND entry_key = %s
            ORDER BY week_start ASC
        """
        rows = await fetch_all(query, (group_id, chart_type.value, entry_key))
        return [
            Appearance(
                week_start=row["week_start"],
                position=row["position"],
                playcount=row["playcount"],
                vibe_score=float(row["vibe_score"]) if row.get("vibe_score") is not None else None,
            )
            for row in rows
        ]

    @classmethod
    async def list_charted_entries(cls, group_id: str) -> list[dict]:
        query = """
            SELECT DISTINCT ON (chart_type, entry_key) chart_type, entry_key, name, artist, slug
            FROM chart_entries
            WHERE group_id = %s
            ORDER BY chart_type, entry_key, week_start DESC
        """
        return await fetch_all(query, (group_id,))

    @classmethod
    async def save_stats(cls, stats: ChartEntryStats) -> None:
        query = """
            INSERT INTO chart_entry_stats (
                group_id, chart_type, entry_key, slug, name, artist, peak_position,
                weeks_at_peak, debut_position, debut_date, weeks_at_one, weeks_in_top_10,
                total_weeks_charting, longest_streak, longest_streak_start, longest_streak_end,
                is_streak_ongoing, currently_charting, latest_appearance, total_vs, total_plays,
                stats_stale
            ) VALUES (
                %(group_id)s, %(chart_type)s, %(entry_key)s, %(slug)s, %(name)s, %(artist)s,
                %(peak_position)s, %(weeks_at_peak)s, %(debut_position)s, %(debut_date)s,
                %(weeks_at_one)s, %(weeks_in_top_10)s, %(total_weeks_charting)s,
                %(longest_streak)s, %(longest_streak_start)s, %(longest_streak_end)s,
                %(is_streak_ongoing)s, %(currently_charting)s, %(latest_appearance)s,
                %(total_vs)s, %(total_plays)s, %(stats_stale)s
            )
            ON CONFLICT (group_id, chart_type, entry_key) DO UPDATE SET
                slug = EXCLUDED.slug,
                name = EXCLUDED.name,
                artist = EXCLUDED.artist,
                peak_position = EXCLUDED.peak_position,
                weeks_at_peak = EXCLUDED.weeks_at_peak,
                debut_position = EXCLUDED.debut_position,
                debut_date = EXCLUDED.debut_date,
                weeks_at_one = EXCLUDED.weeks_at_one,
                weeks_in_top_10 = EXCLUDED.weeks_in_top_10,
                total_weeks_charting = EXCLUDED.total_weeks_charting,
                longest_streak = EXCLUDED.longest_streak,
                longest_streak_start = EXCLUDED.longest_streak_start,
                longest_streak_end = EXCLUDED.longest_streak_end,
                is_streak_ongoing = EXCLUDED.is_streak_ongoing,
                currently_charting = EXCLUDED.currently_charting,
                latest_appearance = EXCLUDED.latest_appearance,
                total_vs = EXCLUDED.total_vs,
                total_plays = EXCLUDED.total_plays,
                stats_stale = EXCLUDED.stats_stale,
                updated_at = NOW()
        """
        await execute_query(
            query,
            {
                "group_id": stats.group_id,
                "chart_type": stats.chart_type.value,
                "entry_key": stats.entry_key,
                "slug": stats.slug,
                "name": stats.name,
                "artist": stats.artist,
                "peak_position": stats.peak_position,
                "weeks_at_peak": stats.weeks_at_peak,
                "debut_position": stats.debut_position,
                "debut_date": stats.debut_date,
                "weeks_at_one": stats.weeks_at_one,
                "weeks_in_top_10": stats.weeks_in_top_10,
                "total_weeks_charting": stats.total_weeks_charting,
                "longest_streak": stats.longest_streak,
                "longest_streak_start": stats.longest_streak_start,
                "longest_streak_end": stats.longest_streak_end,
                "is_streak_ongoing": stats.is_streak_ongoing,
                "currently_charting": stats.currently_charting,
                "latest_appearance": stats.latest_appearance,
                "total_vs": stats.total_vs,
                "total_plays": stats.total_plays,
                "stats_stale": stats.stats_stale,
            },
        )

    @classmethod
    async def apply_touched_entries(cls, group_id: str, touched: Iterable[TouchedEntry]) -> int:
        """
        Bulk-apply one run's deltas and mark every touched row stale.

        First-time entries get a stale row holding only the running totals;
        the full recompute happens on the next read.
        """
        payload = [
            (
                group_id,
                entry.chart_type.value,
                entry.entry_key,
                entry.slug,
                entry.name,
                entry.artist,
                entry.vs_delta,
                entry.plays_delta,
                entry.latest_appearance,
            )
            for entry in touched
        ]
        query = """
            INSERT INTO chart_entry_stats (
                group_id, chart_type, entry_key, slug, name, artist,
                total_vs, total_plays, latest_appearance, stats_stale
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, true)
            ON CONFLICT (group_id, chart_type, entry_key) DO UPDATE SET
                slug = EXCLUDED.slug,
                name = EXCLUDED.name,
                artist = EXCLUDED.artist,
                total_vs = chart_entry_stats.total_vs + EXCLUDED.total_vs,
                total_plays = chart_entry_stats.total_plays + EXCLUDED.total_plays,
                latest_appearance = GREATEST(chart_entry_stats.latest_appearance, EXCLUDED.latest_appearance),
                stats_stale = true,
                updated_at = NOW()
        """
        await execute_many(query, payload)
        return len(payload)

    @classmethod
    async def mark_stale(cls, group_id: str, keys: Iterable[tuple[ChartType, str]]) -> None:
        """Flag existing rows for recompute without touching their running totals."""
        pairs = sorted({(chart_type.value, entry_key) for chart_type, entry_key in keys})
        if not pairs:
            return

        query = """
            UPDATE chart_entry_stats
            SET stats_stale = true, updated_at = NOW()
            WHERE group_id = %s
              AND (chart_type, entry_key) IN (
                SELECT * FROM unnest(%s::text[], %s::text[])
              )
        """
        await execute_query(
            query, (group_id, [pair[0] for pair in pairs], [pair[1] for pair in pairs])
        )

    @classmethod
    async def list_stale(cls, group_id: str, chart_type: ChartType | None = None) -> list[dict]:
        query = """
            SELECT chart_type, entry_key, name, artist, slug
            FROM chart_entry_stats
            WHERE group_id = %s AND stats_stale = true
              AND (%s::text IS NULL OR chart_type = %s)
            ORDER BY chart_type, entry_key
        """
        chart_value = chart_type.value if chart_type else None
        return await fetch_all(query, (group_id, chart_value, chart_value))

    @classmethod
    async def top_by_field(
        cls, group_id: str, stats_field: str, chart_type: ChartType | None = None, limit: int = 10
    ) -> list[ChartEntryStats]:
        """Entries ranked by one numeric stats column, ties broken by entry key."""
        if stats_field not in cls.RANKABLE_FIELDS:
            raise ValueError(f"Cannot rank chart entry stats by {stats_field!r}")

        query = f"""
            SELECT {cls.STATS_COLUMNS}
            FROM chart_entry_stats
            WHERE group_id = %s AND {stats_field} > 0
              AND (%s::text IS NULL OR chart_type = %s)
            ORDER BY {stats_field} DESC, entry_key ASC
            LIMIT %s
        """
        chart_value = chart_type.value if chart_type else None
        rows = await fetch_all(query, (group_id, chart_value, chart_value, limit))
        return [cls._row_to_stats(row) for row in rows]
