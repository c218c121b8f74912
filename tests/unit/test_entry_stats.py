from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.features.group_charts.domain import ChartEntryStats, ChartType
from app.features.group_charts.pipeline.history import (
    Appearance,
    compute_entry_metrics,
    weeks_absent_between,
)
from app.features.group_charts.services.cache_invalidation import entry_stats_cache_key
from app.features.group_charts.services.entry_stats_service import (
    EntryStatsService,
    stats_from_json,
    stats_to_json,
)

MODULE = "app.features.group_charts.services.entry_stats_service"
W = datetime(2024, 3, 3, tzinfo=UTC)
WEEK = timedelta(days=7)


def _appearance(weeks_after_w: int, position: int, playcount: int = 10, vs: float = 1.0):
    return Appearance(W + weeks_after_w * WEEK, position, playcount, vs)


def test_metrics_for_empty_history():
    metrics = compute_entry_metrics([])

    assert metrics.weeks_on_chart == 0
    assert metrics.peak_position is None
    assert metrics.is_streak_ongoing is False


def test_metrics_peak_debut_and_totals():
    metrics = compute_entry_metrics(
        [
            _appearance(2, 1, 30, 2.5),
            _appearance(0, 8, 10, 0.75),
            _appearance(1, 1, 25, 2.0),
            _appearance(3, 12, 5, 0.25),
        ]
    )

    assert metrics.debut_position == 8
    assert metrics.debut_date == W
    assert metrics.peak_position == 1
    assert metrics.weeks_at_peak == 2
    assert metrics.weeks_at_one == 2
    assert metrics.weeks_in_top_10 == 3
    assert metrics.total_plays == 70
    assert metrics.total_vs == 5.5
    assert metrics.longest_streak == 4
    assert metrics.longest_streak_at_one == 2
    assert metrics.longest_streak_in_top_10 == 3


def test_streak_closes_when_entry_drops_off():
    # charted W-1 and W, absent in W+1 (the latest stored week)
    metrics = compute_entry_metrics(
        [_appearance(-1, 5), _appearance(0, 3)], latest_week_start=W + WEEK
    )

    assert metrics.longest_streak == 2
    assert metrics.longest_streak_end == W
    assert metrics.latest_appearance == W
    assert metrics.is_streak_ongoing is False


def test_streak_ongoing_when_present_in_latest_week():
    metrics = compute_entry_metrics([_appearance(0, 3), _appearance(1, 2)], W + WEEK)

    assert metrics.is_streak_ongoing is True


def test_latest_longest_streak_wins_ties_and_gap_is_counted():
    metrics = compute_entry_metrics(
        [_appearance(0, 4), _appearance(1, 4), _appearance(5, 6), _appearance(6, 6)]
    )

    assert metrics.longest_streak == 2
    assert metrics.longest_streak_start == W + 5 * WEEK
    assert metrics.longest_gap_weeks == 3


def test_weeks_absent_between():
    assert weeks_absent_between(W, W + WEEK) == 0
    assert weeks_absent_between(W, W + 4 * WEEK) == 3
    # realigned weeks a few days apart still count as adjacent
    assert weeks_absent_between(W, W + timedelta(days=10)) == 0


def _stats(**overrides) -> ChartEntryStats:
    values = {
        "group_id": "group-1",
        "chart_type": ChartType.TRACKS,
        "entry_key": "song x|artist",
        "slug": "song-x-artist",
        "name": "Song X",
        "artist": "Artist",
        "peak_position": 3,
        "total_weeks_charting": 1,
        "currently_charting": True,
        "latest_appearance": W,
    }
    values.update(overrides)
    return ChartEntryStats(**values)


def test_stats_json_round_trip_keeps_datetimes():
    stats = _stats(debut_date=W)

    restored = stats_from_json(stats_to_json(stats))

    assert restored == stats


@pytest.fixture
def stats_mocks(monkeypatch, fake_redis):
    mocks = {
        "latest_week": AsyncMock(return_value=W),
        "get_by_slug": AsyncMock(return_value=None),
        "find_entry": AsyncMock(return_value=None),
        "appearances": AsyncMock(return_value=[]),
        "save": AsyncMock(),
    }
    monkeypatch.setattr(f"{MODULE}.fast_redis", fake_redis)
    monkeypatch.setattr(
        f"{MODULE}.ChartAggregationRepository.fetch_last_week_start", mocks["latest_week"]
    )
    monkeypatch.setattr(f"{MODULE}.EntryStatsRepository.get_by_slug", mocks["get_by_slug"])
    monkeypatch.setattr(f"{MODULE}.EntryStatsRepository.find_entry_by_slug", mocks["find_entry"])
    monkeypatch.setattr(f"{MODULE}.EntryStatsRepository.fetch_appearances", mocks["appearances"])
    monkeypatch.setattr(f"{MODULE}.EntryStatsRepository.save_stats", mocks["save"])
    return mocks


@pytest.mark.asyncio
async def test_fresh_stored_stats_are_served_and_cached(stats_mocks, fake_redis):
    stats_mocks["get_by_slug"].return_value = _stats()

    stats = await EntryStatsService().get_entry_stats("group-1", ChartType.TRACKS, "song-x-artist")

    assert stats.peak_position == 3
    stats_mocks["appearances"].assert_not_awaited()
    key = entry_stats_cache_key("group-1", ChartType.TRACKS, "song-x-artist")
    assert key in fake_redis.store


@pytest.mark.asyncio
async def test_cached_stats_skip_database(stats_mocks, fake_redis):
    key = entry_stats_cache_key("group-1", ChartType.TRACKS, "song-x-artist")
    fake_redis.store[key] = stats_to_json(_stats(peak_position=2))

    stats = await EntryStatsService().get_entry_stats("group-1", ChartType.TRACKS, "song-x-artist")

    assert stats.peak_position == 2
    stats_mocks["get_by_slug"].assert_not_awaited()


@pytest.mark.asyncio
async def test_stale_stats_are_recomputed(stats_mocks):
    stats_mocks["get_by_slug"].return_value = _stats(stats_stale=True, total_weeks_charting=1)
    stats_mocks["appearances"].return_value = [_appearance(-1, 5), _appearance(0, 3)]

    stats = await EntryStatsService().get_entry_stats("group-1", ChartType.TRACKS, "song-x-artist")

    assert stats.total_weeks_charting == 2
    assert stats.currently_charting is True
    assert stats.stats_stale is False
    stats_mocks["save"].assert_awaited_once()


@pytest.mark.asyncio
async def test_entry_that_dropped_off_is_no_longer_charting(stats_mocks, fake_redis):
    # cached and stored rows still claim the entry charts, but a newer week exists
    stats_mocks["latest_week"].return_value = W + WEEK
    key = entry_stats_cache_key("group-1", ChartType.TRACKS, "song-x-artist")
    fake_redis.store[key] = stats_to_json(_stats())
    stats_mocks["get_by_slug"].return_value = _stats()
    stats_mocks["appearances"].return_value = [_appearance(0, 3)]

    stats = await EntryStatsService().get_entry_stats("group-1", ChartType.TRACKS, "song-x-artist")

    assert stats.currently_charting is False
    assert stats.longest_streak_end == W
    assert stats.is_streak_ongoing is False


@pytest.mark.asyncio
async def test_unknown_entry_returns_none(stats_mocks):
    stats = await EntryStatsService().get_entry_stats("group-1", ChartType.TRACKS, "missing")

    assert stats is None
    stats_mocks["save"].assert_not_awaited()


@pytest.mark.asyncio
async def test_first_read_of_new_entry_builds_stats(stats_mocks):
    stats_mocks["find_entry"].return_value = {
        "entry_key": "song x|artist",
        "name": "Song X",
        "artist": "Artist",
        "slug": "song-x-artist",
    }
    stats_mocks["appearances"].return_value = [_appearance(0, 1, 40, 3.0)]

    stats = await EntryStatsService().get_entry_stats("group-1", ChartType.TRACKS, "song-x-artist")

    assert stats.entry_key == "song x|artist"
    assert stats.weeks_at_one == 1
    assert stats.total_vs == 3.0
    assert stats.is_streak_ongoing is True


def _identity(key="song x|artist", slug="song-x-artist", chart_type="tracks"):
    return {"chart_type": chart_type, "entry_key": key, "name": "Song X", "artist": "Artist", "slug": slug}


@pytest.mark.asyncio
async def test_top_entries_refreshes_stale_rows_before_ranking(stats_mocks, monkeypatch):
    ranked = [_stats(weeks_at_one=3)]
    list_stale = AsyncMock(return_value=[_identity()])
    top_by_field = AsyncMock(return_value=ranked)
    monkeypatch.setattr(f"{MODULE}.EntryStatsRepository.list_stale", list_stale)
    monkeypatch.setattr(f"{MODULE}.EntryStatsRepository.top_by_field", top_by_field)
    stats_mocks["appearances"].return_value = [_appearance(0, 1)]

    result = await EntryStatsService().top_entries("group-1", "weeks_at_one", ChartType.TRACKS, 5)

    assert result == ranked
    list_stale.assert_awaited_once_with("group-1", ChartType.TRACKS)
    stats_mocks["save"].assert_awaited_once()
    top_by_field.assert_awaited_once_with("group-1", "weeks_at_one", ChartType.TRACKS, 5)


@pytest.mark.asyncio
async def test_refresh_stale_without_stale_rows(stats_mocks, monkeypatch):
    monkeypatch.setattr(f"{MODULE}.EntryStatsRepository.list_stale", AsyncMock(return_value=[]))

    assert await EntryStatsService().refresh_stale("group-1") == 0
    stats_mocks["latest_week"].assert_not_awaited()


@pytest.mark.asyncio
async def test_rebuild_all_recomputes_and_drops_cache(stats_mocks, monkeypatch, fake_redis):
    entries = [_identity(), _identity("muse", "muse", "artists")]
    monkeypatch.setattr(
        f"{MODULE}.EntryStatsRepository.list_charted_entries", AsyncMock(return_value=entries)
    )
    fake_redis.store[entry_stats_cache_key("group-1", ChartType.ARTISTS, "muse")] = "{}"
    stats_mocks["appearances"].return_value = [_appearance(0, 2)]

    rebuilt = await EntryStatsService().rebuild_all("group-1")

    assert rebuilt == 2
    assert stats_mocks["save"].await_count == 2
    assert fake_redis.store == {}
