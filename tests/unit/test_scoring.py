from datetime import UTC, datetime

import pytest

from app.features.group_charts.domain import ChartMode, ChartType, ListeningItem
from app.features.group_charts.pipeline.scoring.service import (
    ChartScoringService,
    score,
    vibe_score_for_rank,
)

WEEK = datetime(2024, 3, 3, tzinfo=UTC)


def test_vibe_score_curve_anchor_points():
    assert vibe_score_for_rank(1) == 1.0
    assert vibe_score_for_rank(3) == 0.95
    assert vibe_score_for_rank(11) == 0.75
    assert vibe_score_for_rank(21) == 0.5
    assert vibe_score_for_rank(22) == 0.49
    assert vibe_score_for_rank(61) == 0.25
    assert vibe_score_for_rank(100) == 0.01
    assert vibe_score_for_rank(101) == 0.0
    assert vibe_score_for_rank(500) == 0.0


def test_vibe_score_is_monotonic_non_increasing():
    scores = [vibe_score_for_rank(rank) for rank in range(1, 120)]
    assert all(a >= b for a, b in zip(scores, scores[1:]))


def test_vibe_score_rejects_rank_zero():
    with pytest.raises(ValueError):
        vibe_score_for_rank(0)


def test_score_by_mode():
    assert score(ChartMode.PLAYS_ONLY, 3, 40) == 40.0
    assert score(ChartMode.VS, 3, 40) == 0.95
    assert score(ChartMode.VS_WEIGHTED, 3, 40) == 38.0


def test_rank_items_orders_by_playcount_then_key():
    service = ChartScoringService()
    items = [
        ListeningItem("Zebra", None, 10),
        ListeningItem("Alpha", None, 10),
        ListeningItem("Mid", None, 25),
    ]

    ranked = service.rank_items(ChartType.ARTISTS, items)

    assert [(rank, key) for rank, key, _ in ranked] == [(1, "mid"), (2, "alpha"), (3, "zebra")]


def test_rank_items_merges_case_variants_and_drops_empty():
    service = ChartScoringService()
    items = [
        ListeningItem("Halo", "Beyoncé", 4),
        ListeningItem("HALO", "beyoncé", 3),
        ListeningItem("Silence", "Someone", 0),
    ]

    ranked = service.rank_items(ChartType.TRACKS, items)

    assert len(ranked) == 1
    rank, key, item = ranked[0]
    assert (rank, key, item.playcount) == (1, "halo|beyoncé", 7)
    # the caller's item is not mutated
    assert items[0].playcount == 4


def test_score_member_items_keeps_personal_vs_in_plays_only_mode():
    service = ChartScoringService()
    items = [ListeningItem("A", None, 9), ListeningItem("B", None, 5)]

    contributions = service.score_member_items(
        "user-1", WEEK, ChartType.ARTISTS, items, ChartMode.PLAYS_ONLY
    )

    assert [c.contribution for c in contributions] == [9.0, 5.0]
    assert contributions[1].vibe_score == vibe_score_for_rank(2)
    assert contributions[0].rank == 1 and contributions[0].vibe_score == 1.0
    assert all(c.artist is None for c in contributions)
