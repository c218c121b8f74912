"""
Weekly chart aggregation.

Merges every member's scored top lists for one week into a ranked chart per
chart type, diffs it against the previous week and replaces the stored week.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from .repository import ChartAggregationRepository, PreviousPlacement
from app.config import settings
from app.features.group_charts.domain import (
    ChartEntry,
    ChartMode,
    ChartType,
    Group,
    ListeningHistoryError,
    Member,
    UserContribution,
    WeekAggregationResult,
    WeeklyListening,
    WeekWindow,
)
from app.features.group_charts.domain.slugs import generate_slug
from app.features.group_charts.pipeline.scoring import chart_scoring_service
from app.features.group_charts.services.listening_history_service import (
    listening_history_service,
)
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _EntryWorkingSet:
    entry_key: str
    name: str
    artist: str | None
    score: float = 0.0
    playcount: int = 0
    contributors: set[str] = field(default_factory=set)


class WeeklyAggregator:
    def _should_abort(self, failed_count: int, member_count: int) -> bool:
        if member_count == 0:
            return False
        return failed_count > settings.CHART_ABORT_FAILED_MEMBER_RATIO * member_count

    async def _fetch_members(
        self, members: list[Member], week: WeekWindow, failed_users: set[str]
    ) -> dict[str, WeeklyListening]:
        """Fetch members one at a time; a failure marks the member failed for the rest of the run."""
        listening: dict[str, WeeklyListening] = {}
        for member in members:
            if member.user_id in failed_users:
                continue
            try:
                listening[member.user_id] = await listening_history_service.get_weekly_listening(
                    member, week
                )
            except ListeningHistoryError as e:
                failed_users.add(member.user_id)
                logger.warning(
                    "Member listening fetch failed",
                    group_id=member.group_id,
                    user_id=member.user_id,
                    week_start=week.start.isoformat(),
                    error=str(e),
                )
        return listening

    def _rank_entries(
        self, contributions: Iterable[UserContribution], chart_size: int
    ) -> list[_EntryWorkingSet]:
        totals: dict[str, _EntryWorkingSet] = {}
        for contribution in contributions:
            entry = totals.get(contribution.entry_key)
            if entry is None:
                entry = _EntryWorkingSet(
                    entry_key=contribution.entry_key,
                    name=contribution.name,
                    artist=contribution.artist,
                )
                totals[contribution.entry_key] = entry
            entry.score += contribution.contribution
            entry.playcount += contribution.playcount
            entry.contributors.add(contribution.user_id)

        ranked = sorted(
            totals.values(),
            key=lambda entry: (-round(entry.score, 2), -entry.playcount, entry.entry_key),
        )
        return ranked[:chart_size]

    def _build_chart_entries(
        self,
        group: Group,
        week: WeekWindow,
        chart_type: ChartType,
        ranked: list[_EntryWorkingSet],
        previous: dict[tuple[ChartType, str], PreviousPlacement],
        charted_before: set[tuple[ChartType, str]],
    ) -> list[ChartEntry]:
        entries = []
        for position, entry in enumerate(ranked, start=1):
            placement = previous.get((chart_type, entry.entry_key))
            if placement is not None:
                position_change = placement.position - position
                plays_change = entry.playcount - placement.playcount
                entry_type = None
            else:
                position_change = None
                plays_change = None
                entry_type = (
                    "returning" if (chart_type, entry.entry_key) in charted_before else "new"
                )

            entries.append(
                ChartEntry(
                    group_id=group.id,
                    week_start=week.start,
                    chart_type=chart_type,
                    entry_key=entry.entry_key,
                    name=entry.name,
                    artist=entry.artist,
                    slug=generate_slug(entry.entry_key),
                    position=position,
                    playcount=entry.playcount,
                    vibe_score=(
                        None if group.chart_mode == ChartMode.PLAYS_ONLY else round(entry.score, 2)
                    ),
                    position_change=position_change,
                    plays_change=plays_change,
                    entry_type=entry_type,
                    contributor_count=len(entry.contributors),
                )
            )
        return entries

    async def aggregate_week(
        self,
        group: Group,
        week: WeekWindow,
        members: list[Member],
        failed_users: set[str],
    ) -> WeekAggregationResult:
        """
        Build and store the group's charts for one week.

        `failed_users` carries members that already failed earlier in the run;
        members failing here are added to the returned set. When the failure
        threshold is crossed nothing is written and `should_abort` is set.
        """
        failed = set(failed_users)
        listening = await self._fetch_members(members, week, failed)

        if self._should_abort(len(failed), len(members)):
            logger.warning(
                "Too many members failed, aborting week",
                group_id=group.id,
                week_start=week.start.isoformat(),
                failed_users=len(failed),
                members=len(members),
            )
            return WeekAggregationResult(
                week=week, entries=[], contributions=[], failed_users=failed, should_abort=True
            )

        scored: dict[ChartType, list[UserContribution]] = {}
        ranked: dict[ChartType, list[_EntryWorkingSet]] = {}
        for chart_type in ChartType:
            contributions = []
            for user_id, member_listening in listening.items():
                contributions.extend(
                    chart_scoring_service.score_member_items(
                        user_id,
                        week.start,
                        chart_type,
                        member_listening.items(chart_type),
                        group.chart_mode,
                    )
                )
            scored[chart_type] = contributions
            ranked[chart_type] = self._rank_entries(contributions, group.chart_size)

        previous = await ChartAggregationRepository.fetch_previous_week_placements(group.id, week)
        candidate_keys = [
            entry.entry_key
            for chart_type, entries in ranked.items()
            for entry in entries
            if (chart_type, entry.entry_key) not in previous
        ]
        charted_before = await ChartAggregationRepository.fetch_charted_keys_before(
            group.id, week.start, candidate_keys
        )

        entries: list[ChartEntry] = []
        for chart_type in ChartType:
            entries.extend(
                self._build_chart_entries(
                    group, week, chart_type, ranked[chart_type], previous, charted_before
                )
            )

        charted = {(entry.chart_type, entry.entry_key) for entry in entries}
        kept_contributions = [
            contribution
            for chart_type in ChartType
            for contribution in scored[chart_type]
            if (chart_type, contribution.entry_key) in charted
        ]

        dropped = await ChartAggregationRepository.replace_week(
            group.id, week, entries, kept_contributions
        )

        logger.info(
            "Week aggregated",
            group_id=group.id,
            week_start=week.start.isoformat(),
            members_fetched=len(listening),
            failed_users=len(failed),
            entries=len(entries),
        )
        return WeekAggregationResult(
            week=week,
            entries=entries,
            contributions=kept_contributions,
            failed_users=failed,
            dropped_entries=dropped,
        )


weekly_aggregator = WeeklyAggregator()
