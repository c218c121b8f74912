from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.features.group_charts.domain import ChartEntry, ChartType
from app.features.group_charts.services.cache_invalidation import (
    CacheInvalidationBatcher,
    entry_stats_cache_key,
    fold_touched_entries,
)

MODULE = "app.features.group_charts.services.cache_invalidation"
W1 = datetime(2024, 3, 3, tzinfo=UTC)
W2 = W1 + timedelta(days=7)


def _entry(week_start, chart_type, key, position, playcount, vs, name=None) -> ChartEntry:
    return ChartEntry(
        group_id="group-1",
        week_start=week_start,
        chart_type=chart_type,
        entry_key=key,
        name=name or key.title(),
        artist=None,
        slug=key.replace(" ", "-"),
        position=position,
        playcount=playcount,
        vibe_score=vs,
        position_change=None,
    )


def test_cache_key_format():
    assert (
        entry_stats_cache_key("group-1", ChartType.ALBUMS, "in-rainbows-radiohead")
        == "chart-stats:group-1:albums:in-rainbows-radiohead"
    )


def test_fold_merges_weeks_per_entry():
    entries = [
        _entry(W1, ChartType.ARTISTS, "radiohead", 1, 40, 2.5, name="radiohead"),
        _entry(W2, ChartType.ARTISTS, "radiohead", 2, 30, 1.75, name="Radiohead"),
        _entry(W1, ChartType.ARTISTS, "bjork", 2, 12, 1.0),
    ]

    touched = fold_touched_entries(entries)

    assert [t.entry_key for t in touched] == ["bjork", "radiohead"]
    radiohead = touched[1]
    assert radiohead.vs_delta == 4.25
    assert radiohead.plays_delta == 70
    assert radiohead.latest_appearance == W2
    assert radiohead.name == "Radiohead"


def test_fold_keeps_chart_types_apart():
    entries = [
        _entry(W1, ChartType.ARTISTS, "muse", 1, 10, 1.0),
        _entry(W1, ChartType.ALBUMS, "muse", 1, 10, 1.0),
    ]

    assert len(fold_touched_entries(entries)) == 2


def test_fold_treats_missing_vibe_score_as_zero():
    touched = fold_touched_entries([_entry(W1, ChartType.TRACKS, "song", 1, 10, None)])

    assert touched[0].vs_delta == 0.0


@pytest.mark.asyncio
async def test_invalidate_issues_one_bulk_write_and_drops_cache(monkeypatch, fake_redis):
    apply_mock = AsyncMock(return_value=2)
    monkeypatch.setattr(f"{MODULE}.EntryStatsRepository.apply_touched_entries", apply_mock)
    monkeypatch.setattr(f"{MODULE}.fast_redis", fake_redis)
    fake_redis.store["chart-stats:group-1:artists:radiohead"] = "{}"
    fake_redis.store["chart-stats:group-1:artists:unrelated"] = "{}"

    count = await CacheInvalidationBatcher().invalidate(
        "group-1",
        [
            _entry(W1, ChartType.ARTISTS, "radiohead", 1, 40, 2.5),
            _entry(W2, ChartType.ARTISTS, "radiohead", 1, 35, 2.0),
            _entry(W2, ChartType.ARTISTS, "bjork", 2, 12, 1.0),
        ],
    )

    assert count == 2
    apply_mock.assert_awaited_once()
    group_id, touched = apply_mock.await_args.args
    assert group_id == "group-1"
    assert {t.entry_key for t in touched} == {"radiohead", "bjork"}
    assert "chart-stats:group-1:artists:radiohead" not in fake_redis.store
    assert "chart-stats:group-1:artists:unrelated" in fake_redis.store


@pytest.mark.asyncio
async def test_invalidate_without_entries_is_noop(monkeypatch, fake_redis):
    apply_mock = AsyncMock()
    monkeypatch.setattr(f"{MODULE}.EntryStatsRepository.apply_touched_entries", apply_mock)
    monkeypatch.setattr(f"{MODULE}.fast_redis", fake_redis)

    assert await CacheInvalidationBatcher().invalidate("group-1", []) == 0
    apply_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_invalidate_marks_entries_dropped_by_a_rewritten_week(monkeypatch, fake_redis):
    apply_mock = AsyncMock(return_value=1)
    stale_mock = AsyncMock()
    monkeypatch.setattr(f"{MODULE}.EntryStatsRepository.apply_touched_entries", apply_mock)
    monkeypatch.setattr(f"{MODULE}.EntryStatsRepository.mark_stale", stale_mock)
    monkeypatch.setattr(f"{MODULE}.fast_redis", fake_redis)
    fake_redis.store["chart-stats:group-1:artists:bjork"] = "{}"

    count = await CacheInvalidationBatcher().invalidate(
        "group-1",
        [_entry(W2, ChartType.ARTISTS, "radiohead", 1, 35, 2.0)],
        [
            _entry(W2, ChartType.ARTISTS, "bjork", 2, 12, 1.0),
            # still charted in the new week, so it goes through the delta path
            _entry(W2, ChartType.ARTISTS, "radiohead", 2, 20, 1.5),
        ],
    )

    assert count == 2
    stale_mock.assert_awaited_once()
    group_id, keys = stale_mock.await_args.args
    assert group_id == "group-1"
    assert list(keys) == [(ChartType.ARTISTS, "bjork")]
    assert "chart-stats:group-1:artists:bjork" not in fake_redis.store


@pytest.mark.asyncio
async def test_invalidate_with_only_dropped_entries_skips_delta_write(monkeypatch, fake_redis):
    apply_mock = AsyncMock()
    stale_mock = AsyncMock()
    monkeypatch.setattr(f"{MODULE}.EntryStatsRepository.apply_touched_entries", apply_mock)
    monkeypatch.setattr(f"{MODULE}.EntryStatsRepository.mark_stale", stale_mock)
    monkeypatch.setattr(f"{MODULE}.fast_redis", fake_redis)

    count = await CacheInvalidationBatcher().invalidate(
        "group-1", [], [_entry(W1, ChartType.TRACKS, "old song", 5, 3, 0.4)]
    )

    assert count == 1
    apply_mock.assert_not_awaited()
    stale_mock.assert_awaited_once()
