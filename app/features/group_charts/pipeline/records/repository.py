"""
Repository helpers for group records.

Reads chart history and member contributions, and owns the group_records
row lifecycle (calculating -> completed | failed).
"""

from collections.abc import Iterable
from datetime import datetime

from psycopg.types.json import Jsonb

from .calculations import ContributionRow, HistoryRow
from app.db.helpers import (
    execute_query,
    execute_transaction,
    fetch_all,
    fetch_one,
    with_db_retry,
)
from app.features.group_charts.domain import ChartType, GroupRecords, NewChartEntry, RecordsStatus
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 500


def _key_arrays(keys: Iterable[tuple[ChartType, str]]) -> tuple[list[str], list[str]]:
    pairs = sorted({(chart_type.value, entry_key) for chart_type, entry_key in keys})
    return [pair[0] for pair in pairs], [pair[1] for pair in pairs]


def _row_to_history(row: dict) -> HistoryRow:
    return HistoryRow(
        chart_type=ChartType(row["chart_type"]),
        entry_key=row["entry_key"],
        name=row["name"],
        artist=row.get("artist"),
        slug=row["slug"],
        week_start=row["week_start"],
        position=row["position"],
        playcount=row["playcount"],
        vibe_score=float(row["vibe_score"]) if row.get("vibe_score") is not None else None,
    )


class RecordsRepository:
    HISTORY_SELECT = """
        SELECT chart_type, entry_key, name, artist, slug, week_start, position, playcount, vibe_score
        FROM chart_entries
    """

    @classmethod
    @with_db_retry()
    async def fetch_chart_history(
        cls, group_id: str, keys: Iterable[tuple[ChartType, str]] | None = None
    ) -> list[HistoryRow]:
        """Full chart history, optionally restricted to (chart_type, entry_key) pairs."""
        if keys is None:
            query = cls.HISTORY_SELECT + " WHERE group_id = %s ORDER BY week_start ASC"
            rows = await fetch_all(query, (group_id,))
        else:
            chart_types, entry_keys = _key_arrays(keys)
            if not entry_keys:
                return []
            query = (
                cls.HISTORY_SELECT
                + """
                WHERE group_id = %s
                  AND (chart_type, entry_key) IN (
                    SELECT * FROM unnest(%s::text[], %s::text[])
                  )
                ORDER BY week_start ASC
                """
            )
            rows = await fetch_all(query, (group_id, chart_types, entry_keys))
        return [_row_to_history(row) for row in rows]

    @classmethod
    @with_db_retry()
    async def fetch_artist_history(cls, group_id: str, artist_keys: Iterable[str]) -> list[HistoryRow]:
        """Track and album history for the given lowercased artist names."""
        artists = sorted(set(artist_keys))
        if not artists:
            return []

        query = (
            cls.HISTORY_SELECT
            + """
            WHERE group_id = %s
              AND chart_type IN ('tracks', 'albums')
              AND LOWER(artist) = ANY(%s)
            ORDER BY week_start ASC
            """
        )
        rows = await fetch_all(query, (group_id, artists))
        return [_row_to_history(row) for row in rows]

    @classmethod
    @with_db_retry()
    async def fetch_contributions(
        cls, group_id: str, keys: Iterable[tuple[ChartType, str]] | None = None
    ) -> list[ContributionRow]:
        query = """
            SELECT uc.user_id, uc.chart_type, uc.entry_key, uc.week_start,
                   uc.playcount, uc.vibe_score, ce.position
            FROM user_contributions uc
            JOIN chart_entries ce
              ON ce.group_id = uc.group_id
             AND ce.week_start = uc.week_start
             AND ce.chart_type = uc.chart_type
             AND ce.entry_key = uc.entry_key
            WHERE uc.group_id = %s
        """
        params: tuple = (group_id,)
        if keys is not None:
            chart_types, entry_keys = _key_arrays(keys)
            if not entry_keys:
                return []
            query += """
              AND (uc.chart_type, uc.entry_key) IN (
                SELECT * FROM unnest(%s::text[], %s::text[])
              )
            """
            params = (group_id, chart_types, entry_keys)

        rows = await fetch_all(query, params)
        return [
            ContributionRow(
                user_id=str(row["user_id"]),
                chart_type=ChartType(row["chart_type"]),
                entry_key=row["entry_key"],
                week_start=row["week_start"],
                playcount=row["playcount"],
                vibe_score=float(row["vibe_score"] or 0),
                position=row["position"],
            )
            for row in rows
        ]

    @classmethod
    async def fetch_entry_counts(cls, group_id: str) -> dict[str, dict[str, int]]:
        query = """
            SELECT chart_type,
                   COUNT(DISTINCT entry_key) AS charted,
                   COUNT(DISTINCT entry_key) FILTER (WHERE position = 1) AS at_one
            FROM chart_entries
            WHERE group_id = %s
            GROUP BY chart_type
        """
        rows = await fetch_all(query, (group_id,))
        by_type = {row["chart_type"]: row for row in rows}

        counts: dict[str, dict[str, int]] = {
            "total_different_entries_at_one": {},
            "total_different_entries_charted": {},
        }
        for chart_type in ChartType:
            row = by_type.get(chart_type.value) or {}
            counts["total_different_entries_at_one"][chart_type.value] = int(row.get("at_one") or 0)
            counts["total_different_entries_charted"][chart_type.value] = int(row.get("charted") or 0)
        return counts

    @classmethod
    async def fetch_latest_week_start(cls, group_id: str) -> datetime | None:
        row = await fetch_one(
            "SELECT MAX(week_start) AS latest FROM chart_entries WHERE group_id = %s", (group_id,)
        )
        return row["latest"] if row else None

    @classmethod
    async def fetch_entries_since(cls, group_id: str, after: datetime) -> list[NewChartEntry]:
        """Every entry charted in a week starting after `after`, at its best position."""
        query = """
            SELECT chart_type, entry_key, MIN(position) AS position
            FROM chart_entries
            WHERE group_id = %s AND week_start > %s
            GROUP BY chart_type, entry_key
            ORDER BY chart_type, entry_key
        """
        rows = await fetch_all(query, (group_id, after))
        return [
            NewChartEntry(
                entry_key=row["entry_key"],
                chart_type=ChartType(row["chart_type"]),
                position=row["position"],
            )
            for row in rows
        ]

    @classmethod
    async def get_records(cls, group_id: str) -> GroupRecords | None:
        query = """
            SELECT group_id, status, records, calculation_started_at, charts_generated_at,
                   covered_through, error_message, updated_at
            FROM group_records
            WHERE group_id = %s
        """
        row = await fetch_one(query, (group_id,))
        if not row:
            return None

        return GroupRecords(
            group_id=str(row["group_id"]),
            status=RecordsStatus(row["status"]),
            records=row.get("records"),
            calculation_started_at=row.get("calculation_started_at"),
            charts_generated_at=row.get("charts_generated_at"),
            error_message=row.get("error_message"),
            updated_at=row.get("updated_at"),
            covered_through=row.get("covered_through"),
        )

    @classmethod
    async def reset_for_calculation(cls, group_id: str, charts_generated_at: datetime) -> None:
        """Replace any existing row with a fresh `calculating` one."""
        await execute_transaction(
            [
                ("DELETE FROM group_records WHERE group_id = %s", (group_id,)),
                (
                    """
                    INSERT INTO group_records (
                        group_id, status, calculation_started_at, charts_generated_at, updated_at
                    ) VALUES (%s, %s, NOW(), %s, NOW())
                    """,
                    (group_id, RecordsStatus.CALCULATING.value, charts_generated_at),
                ),
            ]
        )

    @classmethod
    async def mark_completed(
        cls, group_id: str, records: dict, covered_through: datetime | None
    ) -> None:
        query = """
            UPDATE group_records
            SET status = %s,
                records = %s,
                covered_through = %s,
                error_message = NULL,
                updated_at = NOW()
            WHERE group_id = %s
        """
        await execute_query(
            query, (RecordsStatus.COMPLETED.value, Jsonb(records), covered_through, group_id)
        )

    @classmethod
    async def mark_failed(cls, group_id: str, error_message: str) -> None:
        query = """
            UPDATE group_records
            SET status = %s,
                error_message = %s,
                updated_at = NOW()
            WHERE group_id = %s
        """
        await execute_query(
            query, (RecordsStatus.FAILED.value, error_message[:MAX_ERROR_LENGTH], group_id)
        )
