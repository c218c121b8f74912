"""
Chart generation orchestrator.

Owns the group's generation lock for the duration of a run, walks the week
backlog oldest-first through the weekly aggregator and finalizes derived
data (all-time stats, entry stats, trends, records, icon) once per run.

State machine:
    idle -> locked(initializing) -> locked(fetching)
         -> locked(processing, week i/N) -> locked(finalizing) -> idle
Every path back to idle goes through the `finally` that releases the lock.
Weeks a run already committed are finalized even when it stops early.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .alltime_stats_service import alltime_stats_service
from .cache_invalidation import cache_invalidation_batcher
from .trends_service import trends_service
from app.config import settings
from app.features.group_charts.domain import (
    ChartEntry,
    GenerationAbortedError,
    GenerationInProgressError,
    GenerationLock,
    GenerationProgress,
    GenerationStage,
    Group,
    GroupNotFoundError,
    NewChartEntry,
    WeekAggregationResult,
)
from app.features.group_charts.domain.weeks import compute_backlog
from app.features.group_charts.jobs.queue import JobQueueError, enqueue_chart_generation
from app.features.group_charts.pipeline.aggregation import weekly_aggregator
from app.features.group_charts.pipeline.aggregation.repository import ChartAggregationRepository
from app.features.group_charts.pipeline.records import dedupe_new_entries, records_service
from app.features.group_charts.repository.group_repository import GroupRepository
from app.infrastructure.observability.logging import get_logger
from app.services.lastfm.client import lastfm_client

logger = get_logger(__name__)


@dataclass(slots=True)
class GenerationRunResult:
    group_id: str
    weeks_processed: int = 0
    failed_users: list[str] = field(default_factory=list)
    lock_lost: bool = False


class ChartGenerationService:
    async def acquire_lock(self, group_id: str) -> GenerationLock | None:
        """Reset a stale lock, then try to take the lock; None when another run holds it."""
        await GroupRepository.reset_stale_lock(group_id, settings.CHART_LOCK_TIMEOUT_MINUTES)
        return await GroupRepository.try_acquire_lock(
            group_id, GenerationProgress(0, 0, GenerationStage.INITIALIZING)
        )

    async def _acquire_or_raise(self, group_id: str) -> GenerationLock:
        group = await GroupRepository.get_group(group_id)
        if group is None:
            raise GroupNotFoundError(group_id)

        lock = await self.acquire_lock(group_id)
        if lock is None:
            raise GenerationInProgressError(group_id)
        return lock

    async def start(self, group_id: str) -> GenerationLock:
        """
        Take the lock and hand the run to a worker.

        Raises:
            GroupNotFoundError: unknown group
            GenerationInProgressError: another run holds the lock
            JobQueueError: the job could not be queued (the lock is released)
        """
        lock = await self._acquire_or_raise(group_id)
        try:
            await enqueue_chart_generation(lock)
        except JobQueueError:
            await GroupRepository.release_lock(lock)
            raise
        return lock

    async def generate(self, group_id: str, now: datetime | None = None) -> GenerationRunResult:
        """Acquire the lock and run generation in-process."""
        lock = await self._acquire_or_raise(group_id)
        return await self.run_locked(lock, now)

    async def run_locked(
        self, lock: GenerationLock, now: datetime | None = None
    ) -> GenerationRunResult:
        try:
            return await self._run(lock, now or datetime.now(UTC))
        finally:
            await GroupRepository.release_lock(lock)

    async def _progress(
        self, lock: GenerationLock, stage: GenerationStage, current_week: int, total_weeks: int
    ) -> bool:
        return await GroupRepository.update_progress(
            lock, GenerationProgress(current_week, total_weeks, stage)
        )

    async def _run(self, lock: GenerationLock, now: datetime) -> GenerationRunResult:
        result = GenerationRunResult(group_id=lock.group_id)
        if not await self._progress(lock, GenerationStage.INITIALIZING, 0, 0):
            result.lock_lost = True
            return result

        group = await GroupRepository.get_group(lock.group_id)
        if group is None:
            raise GroupNotFoundError(lock.group_id)

        last_week_start = await ChartAggregationRepository.fetch_last_week_start(group.id)
        backlog = compute_backlog(
            last_week_start, group.tracking_day_of_week, now, settings.CHART_MAX_BACKLOG_WEEKS
        )
        total = len(backlog)
        if not backlog:
            logger.info("No weeks to generate", group_id=group.id)
            return result

        logger.info(
            "Chart generation started",
            group_id=group.id,
            total_weeks=total,
            first_week=backlog[0].start.isoformat(),
            last_week=backlog[-1].start.isoformat(),
        )

        if not await self._progress(lock, GenerationStage.FETCHING, 0, total):
            result.lock_lost = True
            return result
        members = await GroupRepository.list_members(group.id)

        failed_users: set[str] = set()
        processed: list[WeekAggregationResult] = []
        aborted_week: WeekAggregationResult | None = None
        try:
            for index, week in enumerate(backlog, start=1):
                if not await self._progress(lock, GenerationStage.PROCESSING, index, total):
                    result.lock_lost = True
                    break

                week_result = await weekly_aggregator.aggregate_week(
                    group, week, members, failed_users
                )
                failed_users = week_result.failed_users
                if week_result.should_abort:
                    aborted_week = week_result
                    break

                processed.append(week_result)
                if index < total:
                    await asyncio.sleep(settings.CHART_WEEK_DELAY_SECONDS)
        except Exception as e:
            logger.error(
                "Chart generation failed",
                group_id=group.id,
                weeks_committed=len(processed),
                error=str(e),
            )
            await self._record_interrupted_run(group, sorted(failed_users), processed)
            raise

        if aborted_week is not None:
            failed = sorted(failed_users)
            await GroupRepository.record_run_diagnostics(group.id, failed, aborted=True)
            if processed:
                await self._finalize(group, processed)
            logger.error(
                "Chart generation aborted",
                group_id=group.id,
                week_start=aborted_week.week.start.isoformat(),
                weeks_committed=len(processed),
                failed_users=len(failed),
            )
            raise GenerationAbortedError(group.id, failed, len(processed))

        result.weeks_processed = len(processed)
        result.failed_users = sorted(failed_users)
        if result.lock_lost:
            logger.warning(
                "Generation lock lost mid-run", group_id=group.id, weeks_processed=len(processed)
            )
            # the next lock holder resumes after these weeks, so report them now
            await self._finalize_best_effort(group, processed)
            return result

        await self._progress(lock, GenerationStage.FINALIZING, total, total)
        await self._finalize(group, processed)
        await GroupRepository.record_run_diagnostics(group.id, result.failed_users, aborted=False)

        logger.info(
            "Chart generation completed",
            group_id=group.id,
            weeks_processed=result.weeks_processed,
            failed_users=len(result.failed_users),
        )
        return result

    def _collect_new_entries(self, processed: list[WeekAggregationResult]) -> list[NewChartEntry]:
        return dedupe_new_entries(
            [
                NewChartEntry(
                    entry_key=entry.entry_key, chart_type=entry.chart_type, position=entry.position
                )
                for week_result in processed
                for entry in week_result.entries
            ]
        )

    async def _finalize(self, group: Group, processed: list[WeekAggregationResult]) -> None:
        """Once-per-run derived data for the weeks this run committed."""
        entries: list[ChartEntry] = [entry for week in processed for entry in week.entries]
        dropped: list[ChartEntry] = [entry for week in processed for entry in week.dropped_entries]
        latest = processed[-1]

        await alltime_stats_service.recalculate(group.id)
        await cache_invalidation_batcher.invalidate(group.id, entries, dropped)
        await trends_service.calculate_for_week(group.id, latest.week.start)

        try:
            await records_service.request_calculation(
                group.id,
                self._collect_new_entries(processed),
                force=True,
                charts_generated_at=datetime.now(UTC),
            )
        except Exception as e:
            logger.warning("Records calculation trigger failed", group_id=group.id, error=str(e))

        await self._update_group_icon(group, latest.entries)

    async def _finalize_best_effort(
        self, group: Group, processed: list[WeekAggregationResult]
    ) -> None:
        if not processed:
            return
        try:
            await self._finalize(group, processed)
        except Exception as e:
            logger.warning(
                "Finalizing committed weeks failed",
                group_id=group.id,
                weeks_committed=len(processed),
                error=str(e),
            )

    async def _record_interrupted_run(
        self, group: Group, failed_users: list[str], processed: list[WeekAggregationResult]
    ) -> None:
        """Diagnostics and derived data for a run that raised part way through the backlog."""
        try:
            await GroupRepository.record_run_diagnostics(group.id, failed_users, aborted=True)
        except Exception as e:
            logger.warning("Run diagnostics not recorded", group_id=group.id, error=str(e))
        await self._finalize_best_effort(group, processed)

    async def _update_group_icon(self, group: Group, latest_entries: list[ChartEntry]) -> None:
        if not group.dynamic_icon_enabled:
            return

        top = next(
            (
                entry
                for entry in latest_entries
                if entry.chart_type == group.dynamic_icon_source and entry.position == 1
            ),
            None,
        )
        if top is None:
            return

        try:
            image_url = await lastfm_client.get_image_url(top.chart_type, top.name, top.artist)
            if image_url and image_url != group.image_url:
                await GroupRepository.update_image_url(group.id, image_url)
                logger.info("Group icon updated", group_id=group.id, entry_key=top.entry_key)
        except Exception as e:
            logger.warning("Group icon update failed", group_id=group.id, error=str(e))

    async def get_status(self, group_id: str, now: datetime | None = None) -> dict[str, Any]:
        group = await GroupRepository.get_group(group_id)
        if group is None:
            raise GroupNotFoundError(group_id)

        now = now or datetime.now(UTC)
        stale = (
            group.generation_in_progress
            and group.generation_started_at is not None
            and now - group.generation_started_at
            > timedelta(minutes=settings.CHART_LOCK_TIMEOUT_MINUTES)
        )
        in_progress = group.generation_in_progress and not stale

        last_week_start = await ChartAggregationRepository.fetch_last_week_start(group_id)
        backlog = compute_backlog(
            last_week_start, group.tracking_day_of_week, now, settings.CHART_MAX_BACKLOG_WEEKS
        )

        progress = group.generation_progress if in_progress else None
        return {
            "in_progress": in_progress,
            "can_update": not in_progress and bool(backlog),
            "pending_weeks": len(backlog),
            "started_at": group.generation_started_at if in_progress else None,
            "progress": progress.to_dict() if progress else None,
            "last_failed_users": group.last_failed_users,
            "last_aborted": group.last_aborted,
        }


chart_generation_service = ChartGenerationService()
