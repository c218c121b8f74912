"""
Chart-entry deep-dive stats.

Served from Redis when cached, otherwise from chart_entry_stats, and
recomputed from chart history whenever the stored row is missing or stale.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime

from .cache_invalidation import entry_stats_cache_key
from app.config import settings
from app.features.group_charts.domain import ChartEntryStats, ChartType
from app.features.group_charts.pipeline.aggregation.repository import ChartAggregationRepository
from app.features.group_charts.pipeline.history import compute_entry_metrics
from app.features.group_charts.repository.entry_stats_repository import EntryStatsRepository
from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.redis_client import fast_redis

logger = get_logger(__name__)

_DATETIME_FIELDS = ("debut_date", "longest_streak_start", "longest_streak_end", "latest_appearance")


def stats_to_json(stats: ChartEntryStats) -> str:
    payload = asdict(stats)
    payload["chart_type"] = stats.chart_type.value
    for name in _DATETIME_FIELDS:
        value = payload[name]
        payload[name] = value.isoformat() if value else None
    return json.dumps(payload)


def stats_from_json(raw: str) -> ChartEntryStats:
    payload = json.loads(raw)
    payload["chart_type"] = ChartType(payload["chart_type"])
    for name in _DATETIME_FIELDS:
        value = payload.get(name)
        payload[name] = datetime.fromisoformat(value) if value else None
    return ChartEntryStats(**payload)


class EntryStatsService:
    async def _recompute(
        self,
        group_id: str,
        chart_type: ChartType,
        entry_key: str,
        name: str,
        artist: str | None,
        slug: str,
        latest_week_start: datetime | None,
    ) -> ChartEntryStats:
        appearances = await EntryStatsRepository.fetch_appearances(group_id, chart_type, entry_key)
        metrics = compute_entry_metrics(appearances, latest_week_start)

        stats = ChartEntryStats(
            group_id=group_id,
            chart_type=chart_type,
            entry_key=entry_key,
            slug=slug,
            name=name,
            artist=artist,
            peak_position=metrics.peak_position,
            weeks_at_peak=metrics.weeks_at_peak,
            debut_position=metrics.debut_position,
            debut_date=metrics.debut_date,
            weeks_at_one=metrics.weeks_at_one,
            weeks_in_top_10=metrics.weeks_in_top_10,
            total_weeks_charting=metrics.weeks_on_chart,
            longest_streak=metrics.longest_streak,
            longest_streak_start=metrics.longest_streak_start,
            longest_streak_end=metrics.longest_streak_end,
            is_streak_ongoing=metrics.is_streak_ongoing,
            currently_charting=(
                latest_week_start is not None
                and metrics.latest_appearance is not None
                and metrics.latest_appearance >= latest_week_start
            ),
            latest_appearance=metrics.latest_appearance,
            total_vs=metrics.total_vs,
            total_plays=metrics.total_plays,
            stats_stale=False,
        )
        await EntryStatsRepository.save_stats(stats)
        return stats

    @staticmethod
    def _outdated(stats: ChartEntryStats, latest_week_start: datetime | None) -> bool:
        """Stats still claim the entry is charting although a newer week without it exists."""
        return (
            stats.currently_charting
            and latest_week_start is not None
            and (stats.latest_appearance is None or stats.latest_appearance < latest_week_start)
        )

    async def get_entry_stats(
        self, group_id: str, chart_type: ChartType, slug: str
    ) -> ChartEntryStats | None:
        cache_key = entry_stats_cache_key(group_id, chart_type, slug)
        latest_week_start = await ChartAggregationRepository.fetch_last_week_start(group_id)

        cached = await fast_redis.get(cache_key)
        if cached:
            try:
                stats = stats_from_json(cached)
                if not self._outdated(stats, latest_week_start):
                    return stats
            except (ValueError, TypeError, KeyError) as e:
                logger.warning("Discarding unreadable entry stats cache", cache_key=cache_key, error=str(e))

        stored = await EntryStatsRepository.get_by_slug(group_id, chart_type, slug)
        if (
            stored is not None
            and not stored.stats_stale
            and not self._outdated(stored, latest_week_start)
        ):
            stats = stored
        else:
            identity = (
                {"entry_key": stored.entry_key, "name": stored.name, "artist": stored.artist}
                if stored is not None
                else await EntryStatsRepository.find_entry_by_slug(group_id, chart_type, slug)
            )
            if not identity:
                return None

            stats = await self._recompute(
                group_id,
                chart_type,
                identity["entry_key"],
                identity["name"],
                identity.get("artist"),
                slug,
                latest_week_start,
            )
            logger.info(
                "Entry stats recomputed",
                group_id=group_id,
                chart_type=chart_type.value,
                entry_key=stats.entry_key,
                was_stale=stored is not None,
            )

        await fast_redis.set_with_ttl(
            cache_key, stats_to_json(stats), settings.ENTRY_STATS_CACHE_TTL_SECONDS
        )
        return stats

    async def refresh_stale(self, group_id: str, chart_type: ChartType | None = None) -> int:
        """Recompute rows the invalidation batcher flagged, so rankings read exact values."""
        stale = await EntryStatsRepository.list_stale(group_id, chart_type)
        if not stale:
            return 0

        latest_week_start = await ChartAggregationRepository.fetch_last_week_start(group_id)
        for entry in stale:
            await self._recompute(
                group_id,
                ChartType(entry["chart_type"]),
                entry["entry_key"],
                entry["name"],
                entry.get("artist"),
                entry["slug"],
                latest_week_start,
            )

        logger.info("Stale entry stats refreshed", group_id=group_id, entries=len(stale))
        return len(stale)

    async def top_entries(
        self,
        group_id: str,
        stats_field: str,
        chart_type: ChartType | None = None,
        limit: int = 10,
    ) -> list[ChartEntryStats]:
        await self.refresh_stale(group_id, chart_type)
        return await EntryStatsRepository.top_by_field(group_id, stats_field, chart_type, limit)

    async def rebuild_all(self, group_id: str) -> int:
        """Explicit full rebuild of every entry's stats from chart history."""
        latest_week_start = await ChartAggregationRepository.fetch_last_week_start(group_id)
        entries = await EntryStatsRepository.list_charted_entries(group_id)
        for entry in entries:
            await self._recompute(
                group_id,
                ChartType(entry["chart_type"]),
                entry["entry_key"],
                entry["name"],
                entry.get("artist"),
                entry["slug"],
                latest_week_start,
            )

        await fast_redis.delete_many(
            [
                entry_stats_cache_key(group_id, ChartType(entry["chart_type"]), entry["slug"])
                for entry in entries
            ]
        )
        logger.info("Entry stats rebuilt", group_id=group_id, entries=len(entries))
        return len(entries)


entry_stats_service = EntryStatsService()
