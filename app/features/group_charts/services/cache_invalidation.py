"""
Batched cache invalidation for chart-entry deep-dive stats.

Called once per generation run with every entry the run touched, instead of
once per week.
"""

from collections.abc import Iterable

from app.features.group_charts.domain import ChartEntry, ChartType
from app.features.group_charts.repository.entry_stats_repository import (
    EntryStatsRepository,
    TouchedEntry,
)
from app.infrastructure.observability.logging import get_logger
from app.services.infrastructure.redis_client import fast_redis

logger = get_logger(__name__)

ENTRY_STATS_CACHE_PREFIX = "chart-stats"


def entry_stats_cache_key(group_id: str, chart_type: ChartType, slug: str) -> str:
    return f"{ENTRY_STATS_CACHE_PREFIX}:{group_id}:{chart_type.value}:{slug}"


def fold_touched_entries(entries: Iterable[ChartEntry]) -> list[TouchedEntry]:
    """Collapse a run's chart entries to one delta per (chart_type, entry_key)."""
    folded: dict[tuple[ChartType, str], TouchedEntry] = {}
    for entry in entries:
        key = (entry.chart_type, entry.entry_key)
        touched = folded.get(key)
        if touched is None:
            folded[key] = TouchedEntry(
                chart_type=entry.chart_type,
                entry_key=entry.entry_key,
                slug=entry.slug,
                name=entry.name,
                artist=entry.artist,
                vs_delta=entry.vibe_score or 0.0,
                plays_delta=entry.playcount,
                latest_appearance=entry.week_start,
            )
            continue

        touched.vs_delta = round(touched.vs_delta + (entry.vibe_score or 0.0), 2)
        touched.plays_delta += entry.playcount
        if entry.week_start >= touched.latest_appearance:
            touched.latest_appearance = entry.week_start
            touched.name = entry.name
            touched.artist = entry.artist
            touched.slug = entry.slug

    return sorted(folded.values(), key=lambda t: (t.chart_type.value, t.entry_key))


class CacheInvalidationBatcher:
    async def invalidate(
        self,
        group_id: str,
        entries: Iterable[ChartEntry],
        dropped_entries: Iterable[ChartEntry] = (),
    ) -> int:
        """
        Mark every touched entry's stats stale and drop their cached deep dives.

        `dropped_entries` are stored entries a rewritten week no longer charts;
        their stats lose weeks, so they are marked stale without a delta.
        """
        touched = fold_touched_entries(entries)
        touched_keys = {(entry.chart_type, entry.entry_key) for entry in touched}
        dropped: dict[tuple[ChartType, str], ChartEntry] = {}
        for entry in dropped_entries:
            key = (entry.chart_type, entry.entry_key)
            if key not in touched_keys:
                dropped[key] = entry
        if not touched and not dropped:
            return 0

        if touched:
            await EntryStatsRepository.apply_touched_entries(group_id, touched)
        if dropped:
            await EntryStatsRepository.mark_stale(group_id, dropped.keys())

        cache_keys = [
            entry_stats_cache_key(group_id, entry.chart_type, entry.slug)
            for entry in [*touched, *dropped.values()]
        ]
        removed = await fast_redis.delete_many(cache_keys)

        logger.info(
            "Entry stats invalidated",
            group_id=group_id,
            entries=len(touched),
            dropped_entries=len(dropped),
            cache_keys_removed=removed,
        )
        return len(touched) + len(dropped)


cache_invalidation_batcher = CacheInvalidationBatcher()
