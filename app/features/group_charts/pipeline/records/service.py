"""
Group records service.

Runs full or incremental records calculations and owns the status
discipline of the group_records row.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from .calculations import (
    build_entry_aggregates,
    compute_artist_records,
    compute_artist_values,
    compute_entry_records,
    compute_user_records,
    merge_artist_records,
    merge_entry_records,
    rank_artists,
)
from .record_types import (
    ARTIST_RECORD_TYPES,
    get_record_type_field_mapping,
    is_artist_specific_record_type,
)
from .repository import RecordsRepository
from app.config import settings
from app.features.group_charts.domain import (
    ChartType,
    GroupRecords,
    NewChartEntry,
    RecordHolder,
    RecordsCalculationSkipped,
    RecordsStatus,
)
from app.features.group_charts.jobs.queue import enqueue_records_calculation
from app.features.group_charts.repository.group_repository import GroupRepository
from app.features.group_charts.services.entry_stats_service import entry_stats_service
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


def dedupe_new_entries(new_entries: list[NewChartEntry]) -> list[NewChartEntry]:
    """One entry per (chart_type, entry_key), keeping the best position."""
    best: dict[tuple[ChartType, str], NewChartEntry] = {}
    for entry in new_entries:
        key = (entry.chart_type, entry.entry_key)
        if key not in best or entry.position < best[key].position:
            best[key] = entry
    return sorted(best.values(), key=lambda e: (e.chart_type.value, e.entry_key))


class RecordsService:
    async def calculate(
        self,
        group_id: str,
        new_entries: list[NewChartEntry] | None = None,
        existing_records: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Compute the records blob.

        With both `new_entries` and `existing_records` only the new entries
        (and the artists of new tracks/albums) are re-evaluated against the
        stored holders; otherwise the whole history is scanned.
        """
        members = await GroupRepository.list_members(group_id)
        incremental = bool(new_entries) and existing_records is not None

        if incremental:
            keys = [(entry.chart_type, entry.entry_key) for entry in dedupe_new_entries(new_entries)]
            history = await RecordsRepository.fetch_chart_history(group_id, keys)
            contributions = await RecordsRepository.fetch_contributions(group_id, keys)
            entry_records = merge_entry_records(
                existing_records, build_entry_aggregates(history, contributions)
            )

            artist_keys = {
                row.artist.lower()
                for row in history
                if row.chart_type != ChartType.ARTISTS and row.artist
            }
            artist_history = await RecordsRepository.fetch_artist_history(group_id, artist_keys)
            artist_records = merge_artist_records(
                existing_records, compute_artist_values(artist_history)
            )
            all_contributions = await RecordsRepository.fetch_contributions(group_id)
        else:
            history = await RecordsRepository.fetch_chart_history(group_id)
            contributions = await RecordsRepository.fetch_contributions(group_id)
            entry_records = compute_entry_records(build_entry_aggregates(history, contributions))
            artist_records = compute_artist_records(compute_artist_values(history))
            all_contributions = contributions

        records: dict[str, Any] = {}
        records.update(entry_records)
        records.update(await RecordsRepository.fetch_entry_counts(group_id))
        records.update(artist_records)
        records.update(compute_user_records(all_contributions, members))

        logger.info(
            "Records calculated",
            group_id=group_id,
            mode="incremental" if incremental else "full",
            history_rows=len(history),
            members=len(members),
        )
        return records

    async def run_calculation(
        self,
        group_id: str,
        new_entries: list[NewChartEntry] | None = None,
        charts_generated_at: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Recalculate and store the group's records.

        Incremental mode re-evaluates `new_entries` plus every entry charted
        after the week the stored records cover, so weeks whose run never
        queued a calculation are still accounted for.
        """
        existing = await RecordsRepository.get_records(group_id)
        covered_through = await RecordsRepository.fetch_latest_week_start(group_id)
        use_incremental = (
            bool(new_entries)
            and existing is not None
            and existing.status == RecordsStatus.COMPLETED
            and bool(existing.records)
            and existing.covered_through is not None
        )
        if use_incremental:
            missed = await RecordsRepository.fetch_entries_since(group_id, existing.covered_through)
            new_entries = dedupe_new_entries([*new_entries, *missed])

        generated_at = (
            charts_generated_at
            or (existing.charts_generated_at if existing is not None else None)
            or datetime.now(UTC)
        )
        await RecordsRepository.reset_for_calculation(group_id, generated_at)
        try:
            records = await self.calculate(
                group_id,
                new_entries if use_incremental else None,
                existing.records if use_incremental else None,
            )
        except Exception as e:
            logger.error("Records calculation failed", group_id=group_id, error=str(e))
            await RecordsRepository.mark_failed(group_id, str(e) or type(e).__name__)
            raise

        await RecordsRepository.mark_completed(group_id, records, covered_through)
        return records

    def _should_calculate(self, existing: GroupRecords | None, now: datetime) -> bool:
        if existing is None:
            return True
        retry_after = timedelta(hours=settings.RECORDS_RETRY_AFTER_HOURS)
        if existing.status in (RecordsStatus.FAILED, RecordsStatus.NOT_STARTED):
            return True
        if existing.status == RecordsStatus.CALCULATING:
            started = existing.calculation_started_at
            return started is None or now - started > retry_after
        generated = existing.charts_generated_at
        return generated is None or now - generated > retry_after

    async def should_calculate(self, group_id: str, now: datetime | None = None) -> bool:
        existing = await RecordsRepository.get_records(group_id)
        return self._should_calculate(existing, now or datetime.now(UTC))

    async def request_calculation(
        self,
        group_id: str,
        new_entries: list[NewChartEntry] | None = None,
        force: bool = False,
        charts_generated_at: datetime | None = None,
    ) -> None:
        """
        Queue a records calculation.

        Raises:
            RecordsCalculationSkipped: a calculation is running or fresh and
                `force` is not set
        """
        if not force and not await self.should_calculate(group_id):
            raise RecordsCalculationSkipped(
                f"Records for group {group_id} are already calculating or up to date"
            )

        await enqueue_records_calculation(
            group_id,
            dedupe_new_entries(new_entries) if new_entries else None,
            charts_generated_at=charts_generated_at,
        )

    async def get_records(self, group_id: str) -> GroupRecords | None:
        return await RecordsRepository.get_records(group_id)

    async def get_leaderboard(
        self,
        group_id: str,
        record_type: str,
        chart_type: ChartType | None = None,
        limit: int = 10,
    ) -> list[RecordHolder]:
        """
        Top holders for one URL-facing record type.

        Raises:
            ValueError: unsupported record type
        """
        if is_artist_specific_record_type(record_type):
            history = await RecordsRepository.fetch_chart_history(group_id)
            return rank_artists(
                compute_artist_values(history), ARTIST_RECORD_TYPES[record_type], limit
            )

        stats_field = get_record_type_field_mapping(record_type)
        if stats_field is None:
            raise ValueError(f"Unsupported record type: {record_type}")

        ranked = await entry_stats_service.top_entries(group_id, stats_field, chart_type, limit)
        return [
            RecordHolder(
                entry_key=stats.entry_key,
                chart_type=stats.chart_type,
                name=stats.name,
                artist=stats.artist,
                value=getattr(stats, stats_field),
                slug=stats.slug,
            )
            for stats in ranked
        ]


records_service = RecordsService()
