"""
Repository helpers for weekly chart aggregation.

Reads the previous week's ranking and chart history, and replaces a week's
chart entries, WeeklyStats snapshot and member contributions atomically.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from psycopg.types.json import Jsonb

from app.db.helpers import execute_transaction, fetch_all, fetch_one
from app.features.group_charts.domain import (
    WEEK_LENGTH,
    ChartEntry,
    ChartType,
    UserContribution,
    WeekWindow,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class PreviousPlacement:
    position: int
    playcount: int


class ChartAggregationRepository:
    CHART_ENTRY_COLUMNS = """
        group_id, week_start, chart_type, entry_key, name, artist, slug, position,
        playcount, vibe_score, position_change, plays_change, entry_type, contributor_count
    """

    @staticmethod
    def row_to_chart_entry(row: dict) -> ChartEntry:
        return ChartEntry(
            group_id=str(row["group_id"]),
            week_start=row["week_start"],
            chart_type=ChartType(row["chart_type"]),
            entry_key=row["entry_key"],
            name=row["name"],
            artist=row.get("artist"),
            slug=row["slug"],
            position=row["position"],
            playcount=row["playcount"],
            vibe_score=float(row["vibe_score"]) if row.get("vibe_score") is not None else None,
            position_change=row.get("position_change"),
            plays_change=row.get("plays_change"),
            entry_type=row.get("entry_type"),
            contributor_count=row.get("contributor_count") or 0,
        )

    @classmethod
    async def fetch_last_week_start(cls, group_id: str) -> datetime | None:
        row = await fetch_one(
            "SELECT MAX(week_start) AS last_week_start FROM weekly_stats WHERE group_id = %s",
            (group_id,),
        )
        return row["last_week_start"] if row else None

    @classmethod
    async def fetch_previous_week_placements(
        cls, group_id: str, week: WeekWindow
    ) -> dict[tuple[ChartType, str], PreviousPlacement]:
        """Ranking of the week starting exactly seven days before `week`."""

        query = """
            SELECT chart_type, entry_key, position, playcount
            FROM chart_entries
            WHERE group_id = %s AND week_start = %s
        """
        rows = await fetch_all(query, (group_id, week.start - WEEK_LENGTH))
        return {
            (ChartType(row["chart_type"]), row["entry_key"]): PreviousPlacement(
                position=row["position"], playcount=row["playcount"]
            )
            for row in rows
        }

    @classmethod
    async def fetch_charted_keys_before(
        cls, group_id: str, before: datetime, entry_keys: Iterable[str]
    ) -> set[tuple[ChartType, str]]:
        keys = sorted(set(entry_keys))
        if not keys:
            return set()

        query = """
            SELECT DISTINCT chart_type, entry_key
            FROM chart_entries
            WHERE group_id = %s
              AND week_start < %s
              AND entry_key = ANY(%s)
        """
        rows = await fetch_all(query, (group_id, before, keys))
        return {(ChartType(row["chart_type"]), row["entry_key"]) for row in rows}

    @classmethod
    async def fetch_week_entries(
        cls, group_id: str, week_start: datetime, chart_type: ChartType | None = None
    ) -> list[ChartEntry]:
        query = f"""
            SELECT {cls.CHART_ENTRY_COLUMNS}
            FROM chart_entries
            WHERE group_id = %s AND week_start = %s
        """
        params: list = [group_id, week_start]
        if chart_type is not None:
            query += " AND chart_type = %s"
            params.append(chart_type.value)
        query += " ORDER BY chart_type ASC, position ASC"

        rows = await fetch_all(query, tuple(params))
        return [cls.row_to_chart_entry(row) for row in rows]

    @classmethod
    async def fetch_all_weekly_stats(cls, group_id: str) -> list[dict]:
        query = """
            SELECT week_start, top_artists, top_tracks, top_albums
            FROM weekly_stats
            WHERE group_id = %s
            ORDER BY week_start ASC
        """
        return await fetch_all(query, (group_id,))

    @classmethod
    async def fetch_overlapping_entries(cls, group_id: str, week: WeekWindow) -> list[ChartEntry]:
        """Stored chart entries of every week `replace_week` would delete for `week`."""
        query = f"""
            SELECT {cls.CHART_ENTRY_COLUMNS}
            FROM chart_entries
            WHERE group_id = %s AND week_start > %s AND week_start < %s
        """
        rows = await fetch_all(query, (group_id, week.start - WEEK_LENGTH, week.end))
        return [cls.row_to_chart_entry(row) for row in rows]

    @classmethod
    async def replace_week(
        cls,
        group_id: str,
        week: WeekWindow,
        entries: list[ChartEntry],
        contributions: list[UserContribution],
    ) -> list[ChartEntry]:
        """
        Delete every stored week overlapping `week` and write the new one.

        All stored weeks are seven days long, so a stored week overlaps exactly
        when its start lies in (week.start - 7d, week.end).

        Returns the stored entries whose (chart_type, entry_key) the new week
        no longer charts.
        """

        overlap_from = week.start - WEEK_LENGTH
        stored = await cls.fetch_overlapping_entries(group_id, week)
        snapshot = {chart_type: [] for chart_type in ChartType}
        for entry in entries:
            snapshot[entry.chart_type].append(entry.summary())

        entry_rows = [
            (
                group_id,
                entry.week_start,
                week.end,
                entry.chart_type.value,
                entry.entry_key,
                entry.name,
                entry.artist,
                entry.slug,
                entry.position,
                entry.playcount,
                entry.vibe_score,
                entry.position_change,
                entry.plays_change,
                entry.entry_type,
                entry.contributor_count,
            )
            for entry in entries
        ]
        contribution_rows = [
            (
                group_id,
                contribution.user_id,
                contribution.week_start,
                contribution.chart_type.value,
                contribution.entry_key,
                contribution.name,
                contribution.artist,
                contribution.playcount,
                contribution.rank,
                contribution.vibe_score,
                contribution.contribution,
            )
            for contribution in contributions
        ]

        await execute_transaction(
            [
                (
                    "DELETE FROM user_contributions WHERE group_id = %s AND week_start > %s AND week_start < %s",
                    (group_id, overlap_from, week.end),
                ),
                (
                    "DELETE FROM chart_entries WHERE group_id = %s AND week_start > %s AND week_start < %s",
                    (group_id, overlap_from, week.end),
                ),
                (
                    "DELETE FROM weekly_stats WHERE group_id = %s AND week_start > %s AND week_start < %s",
                    (group_id, overlap_from, week.end),
                ),
                (
                    """
                    INSERT INTO chart_entries (
                        group_id, week_start, week_end, chart_type, entry_key, name, artist,
                        slug, position, playcount, vibe_score, position_change, plays_change,
                        entry_type, contributor_count
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    entry_rows,
                ),
                (
                    """
                    INSERT INTO weekly_stats (group_id, week_start, week_end, top_artists, top_tracks, top_albums)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        group_id,
                        week.start,
                        week.end,
                        Jsonb(snapshot[ChartType.ARTISTS]),
                        Jsonb(snapshot[ChartType.TRACKS]),
                        Jsonb(snapshot[ChartType.ALBUMS]),
                    ),
                ),
                (
                    """
                    INSERT INTO user_contributions (
                        group_id, user_id, week_start, chart_type, entry_key, name, artist,
                        playcount, rank, vibe_score, contribution
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    contribution_rows,
                ),
            ]
        )

        charted = {(entry.chart_type, entry.entry_key) for entry in entries}
        dropped = [entry for entry in stored if (entry.chart_type, entry.entry_key) not in charted]

        logger.info(
            "Week replaced",
            group_id=group_id,
            week_start=week.start.isoformat(),
            entries=len(entry_rows),
            contributions=len(contribution_rows),
            dropped=len(dropped),
        )
        return dropped
