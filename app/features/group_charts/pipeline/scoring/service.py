"""
Chart scoring - turns a member's weekly playcounts into per-entry contributions.

Everything here is pure and deterministic so it can be tested without
aggregation or persistence.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from app.features.group_charts.domain import (
    ChartMode,
    ChartType,
    ListeningItem,
    UserContribution,
    make_entry_key,
)

# Vibe Score curve over a member's personal top list
VS_TOP_SCORE = 1.0
VS_STEEP_UNTIL_RANK = 21
VS_STEEP_STEP = 0.025
VS_MAX_RANK = 100


def vibe_score_for_rank(rank: int) -> float:
    """
    Personal Vibe Score of the entry ranked `rank` in a member's own list.

    1.00 at rank 1, minus 0.025 per rank down to 0.50 at rank 21, then a
    straight line to 0 at rank 101. Ranks past 100 score nothing.
    """
    if rank < 1:
        raise ValueError(f"rank must be >= 1, got {rank}")
    if rank == 1:
        return VS_TOP_SCORE
    if rank <= VS_STEEP_UNTIL_RANK:
        return round(VS_TOP_SCORE - VS_STEEP_STEP * (rank - 1), 2)
    if rank <= VS_MAX_RANK:
        floor = VS_TOP_SCORE - VS_STEEP_STEP * (VS_STEEP_UNTIL_RANK - 1)
        remaining = VS_MAX_RANK + 1 - rank
        return round(floor * remaining / (VS_MAX_RANK + 1 - VS_STEEP_UNTIL_RANK), 2)
    return 0.0


def score(mode: ChartMode, rank: int, playcount: int) -> float:
    """Contribution of one member to one entry under the group's chart mode."""
    if mode == ChartMode.PLAYS_ONLY:
        return float(playcount)
    vs = vibe_score_for_rank(rank)
    if mode == ChartMode.VS:
        return vs
    if mode == ChartMode.VS_WEIGHTED:
        return round(vs * playcount, 2)
    raise ValueError(f"Unknown chart mode: {mode}")


class ChartScoringService:
    """Ranks a member's personal lists and scores them under a chart mode."""

    def rank_items(
        self, chart_type: ChartType, items: Iterable[ListeningItem]
    ) -> list[tuple[int, str, ListeningItem]]:
        """
        Rank a member's list 1..K by playcount desc, entry_key asc.

        Items sharing an entry key (case variants from the provider) are merged.
        """
        merged: dict[str, ListeningItem] = {}
        for item in items:
            if item.playcount <= 0 or not item.name:
                continue
            key = make_entry_key(chart_type, item.name, item.artist)
            existing = merged.get(key)
            if existing is None:
                merged[key] = ListeningItem(item.name, item.artist, item.playcount)
            else:
                existing.playcount += item.playcount

        ordered = sorted(merged.items(), key=lambda pair: (-pair[1].playcount, pair[0]))
        return [(rank, key, item) for rank, (key, item) in enumerate(ordered, start=1)]

    def score_member_items(
        self,
        user_id: str,
        week_start: datetime,
        chart_type: ChartType,
        items: Iterable[ListeningItem],
        mode: ChartMode,
    ) -> list[UserContribution]:
        contributions = []
        for rank, key, item in self.rank_items(chart_type, items):
            contributions.append(
                UserContribution(
                    user_id=user_id,
                    week_start=week_start,
                    chart_type=chart_type,
                    entry_key=key,
                    name=item.name,
                    artist=item.artist if chart_type != ChartType.ARTISTS else None,
                    playcount=item.playcount,
                    rank=rank,
                    vibe_score=vibe_score_for_rank(rank),
                    contribution=score(mode, rank, item.playcount),
                )
            )
        return contributions


chart_scoring_service = ChartScoringService()
