"""
Pure record calculations.

Every superlative is picked with the same comparator: highest value first,
then the lexically smallest key. A holder needs a value above zero.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.features.group_charts.domain import (
    ChartType,
    Member,
    RecordHolder,
    UserRecordHolder,
)
from app.features.group_charts.domain.slugs import generate_slug
from app.features.group_charts.pipeline.history import (
    Appearance,
    EntryHistoryMetrics,
    compute_entry_metrics,
)

MIN_MEMBERS_FOR_USER_RECORDS = 3
PEAK_PERFORMER_MIN_ENTRIES = 5

ENTRY_RECORD_VALUES: dict[str, Callable[[EntryAggregate], float]] = {
    "most_weeks_on_chart": lambda a: a.metrics.weeks_on_chart,
    "most_weeks_at_one": lambda a: a.metrics.weeks_at_one,
    "most_weeks_in_top_10": lambda a: a.metrics.weeks_in_top_10,
    "most_consecutive_weeks": lambda a: a.metrics.longest_streak,
    "most_consecutive_weeks_at_one": lambda a: a.metrics.longest_streak_at_one,
    "most_consecutive_weeks_in_top_10": lambda a: a.metrics.longest_streak_in_top_10,
    "most_total_vs": lambda a: a.metrics.total_vs,
    "most_plays": lambda a: a.metrics.total_plays,
    "most_popular": lambda a: len(a.contributors),
    "longest_time_between_appearances": lambda a: a.metrics.longest_gap_weeks,
}

# record name -> (chart type counted, what is counted)
ARTIST_RECORDS: dict[str, tuple[ChartType, str]] = {
    "artist_most_number_one_songs": (ChartType.TRACKS, "at_one"),
    "artist_most_number_one_albums": (ChartType.ALBUMS, "at_one"),
    "artist_most_songs_in_top_10": (ChartType.TRACKS, "in_top_10"),
    "artist_most_albums_in_top_10": (ChartType.ALBUMS, "in_top_10"),
    "artist_most_songs_charted": (ChartType.TRACKS, "charted"),
    "artist_most_albums_charted": (ChartType.ALBUMS, "charted"),
}

USER_RECORDS = (
    "user_most_vs",
    "user_most_plays",
    "user_most_entries",
    "user_least_entries",
    "user_most_number_ones",
    "user_most_weeks_contributing",
    "user_taste_maker",
    "user_peak_performer",
)


@dataclass(slots=True)
class HistoryRow:
    chart_type: ChartType
    entry_key: str
    name: str
    artist: str | None
    slug: str
    week_start: datetime
    position: int
    playcount: int
    vibe_score: float | None


@dataclass(slots=True)
class ContributionRow:
    user_id: str
    chart_type: ChartType
    entry_key: str
    week_start: datetime
    playcount: int
    vibe_score: float
    position: int


@dataclass
class EntryAggregate:
    chart_type: ChartType
    entry_key: str
    name: str
    artist: str | None
    slug: str
    metrics: EntryHistoryMetrics
    contributors: set[str] = field(default_factory=set)

    def holder(self, value: float) -> RecordHolder:
        return RecordHolder(
            entry_key=self.entry_key,
            chart_type=self.chart_type,
            name=self.name,
            artist=self.artist,
            value=value,
            slug=self.slug,
        )


def _dominates(value: float, key: str, other_value: float, other_key: str) -> bool:
    return value > other_value or (value == other_value and key < other_key)


def pick_best(candidates: Iterable[tuple[float, str, Any]]) -> Any | None:
    """Winner among (value, key, payload) triples, or None when nothing scores above zero."""
    best: tuple[float, str, Any] | None = None
    for value, key, payload in candidates:
        if value <= 0:
            continue
        if best is None or _dominates(value, key, best[0], best[1]):
            best = (value, key, payload)
    return best[2] if best else None


def build_entry_aggregates(
    history: Iterable[HistoryRow], contributions: Iterable[ContributionRow] = ()
) -> dict[tuple[ChartType, str], EntryAggregate]:
    rows_by_entry: dict[tuple[ChartType, str], list[HistoryRow]] = defaultdict(list)
    for row in history:
        rows_by_entry[(row.chart_type, row.entry_key)].append(row)

    aggregates: dict[tuple[ChartType, str], EntryAggregate] = {}
    for key, rows in rows_by_entry.items():
        latest = max(rows, key=lambda row: row.week_start)
        aggregates[key] = EntryAggregate(
            chart_type=latest.chart_type,
            entry_key=latest.entry_key,
            name=latest.name,
            artist=latest.artist,
            slug=latest.slug,
            metrics=compute_entry_metrics(
                Appearance(row.week_start, row.position, row.playcount, row.vibe_score)
                for row in rows
            ),
        )

    for contribution in contributions:
        aggregate = aggregates.get((contribution.chart_type, contribution.entry_key))
        if aggregate is not None:
            aggregate.contributors.add(contribution.user_id)

    return aggregates


def compute_entry_records(
    aggregates: dict[tuple[ChartType, str], EntryAggregate],
) -> dict[str, dict[str, dict | None]]:
    records: dict[str, dict[str, dict | None]] = {}
    for record_name, value_of in ENTRY_RECORD_VALUES.items():
        records[record_name] = {}
        for chart_type in ChartType:
            winner = pick_best(
                (value_of(aggregate), aggregate.entry_key, aggregate)
                for aggregate in aggregates.values()
                if aggregate.chart_type == chart_type
            )
            records[record_name][chart_type.value] = (
                winner.holder(value_of(winner)).to_dict() if winner else None
            )
    return records


def merge_entry_records(
    existing: dict[str, Any],
    affected: dict[tuple[ChartType, str], EntryAggregate],
) -> dict[str, dict[str, dict | None]]:
    """
    Re-evaluate only the affected entries against the stored holders.

    A stored holder that is itself affected is replaced by its refreshed
    aggregate; unaffected holders keep their stored value.
    """
    records: dict[str, dict[str, dict | None]] = {}
    for record_name, value_of in ENTRY_RECORD_VALUES.items():
        stored_by_type = existing.get(record_name) or {}
        records[record_name] = {}
        for chart_type in ChartType:
            holder = RecordHolder.from_dict(stored_by_type.get(chart_type.value))
            candidates: list[tuple[float, str, RecordHolder]] = []
            if holder is not None and (chart_type, holder.entry_key) not in affected:
                candidates.append((holder.value, holder.entry_key, holder))
            for aggregate in affected.values():
                if aggregate.chart_type != chart_type:
                    continue
                value = value_of(aggregate)
                candidates.append((value, aggregate.entry_key, aggregate.holder(value)))

            winner = pick_best(candidates)
            records[record_name][chart_type.value] = winner.to_dict() if winner else None
    return records


def compute_artist_values(history: Iterable[HistoryRow]) -> dict[str, dict[str, Any]]:
    """
    Per-artist counts over track and album charts, keyed by lowercased artist.

    Each value maps record name to count plus a `name` display field.
    """
    sets: dict[str, dict[str, set[str]]] = defaultdict(lambda: defaultdict(set))
    display: dict[str, tuple[datetime, str]] = {}
    for row in history:
        if row.chart_type == ChartType.ARTISTS or not row.artist:
            continue
        artist_key = row.artist.lower()
        seen = display.get(artist_key)
        if seen is None or row.week_start >= seen[0]:
            display[artist_key] = (row.week_start, row.artist)
        for record_name, (chart_type, kind) in ARTIST_RECORDS.items():
            if row.chart_type != chart_type:
                continue
            if (
                kind == "charted"
                or (kind == "at_one" and row.position == 1)
                or (kind == "in_top_10" and row.position <= 10)
            ):
                sets[artist_key][record_name].add(row.entry_key)

    values: dict[str, dict[str, Any]] = {}
    for artist_key, (_, name) in display.items():
        values[artist_key] = {"name": name}
        for record_name in ARTIST_RECORDS:
            values[artist_key][record_name] = len(sets[artist_key][record_name])
    return values


def _artist_holder(artist_key: str, name: str, value: int) -> RecordHolder:
    return RecordHolder(
        entry_key=artist_key,
        chart_type=ChartType.ARTISTS,
        name=name,
        artist=None,
        value=value,
        slug=generate_slug(artist_key),
    )


def compute_artist_records(artist_values: dict[str, dict[str, Any]]) -> dict[str, dict | None]:
    records: dict[str, dict | None] = {}
    for record_name in ARTIST_RECORDS:
        winner = pick_best(
            (values[record_name], artist_key, _artist_holder(artist_key, values["name"], values[record_name]))
            for artist_key, values in artist_values.items()
        )
        records[record_name] = winner.to_dict() if winner else None
    return records


def rank_artists(
    artist_values: dict[str, dict[str, Any]], record_name: str, limit: int = 10
) -> list[RecordHolder]:
    """Artists ordered for one artist record, same comparator as the holder."""
    ranked = sorted(
        (
            (values[record_name], artist_key, values["name"])
            for artist_key, values in artist_values.items()
            if values[record_name] > 0
        ),
        key=lambda item: (-item[0], item[1]),
    )
    return [_artist_holder(artist_key, name, value) for value, artist_key, name in ranked[:limit]]


def merge_artist_records(
    existing: dict[str, Any], affected_values: dict[str, dict[str, Any]]
) -> dict[str, dict | None]:
    records: dict[str, dict | None] = {}
    for record_name in ARTIST_RECORDS:
        holder = RecordHolder.from_dict(existing.get(record_name))
        candidates: list[tuple[float, str, RecordHolder]] = []
        if holder is not None and holder.entry_key not in affected_values:
            candidates.append((holder.value, holder.entry_key, holder))
        for artist_key, values in affected_values.items():
            value = values[record_name]
            candidates.append(
                (value, artist_key, _artist_holder(artist_key, values["name"], value))
            )

        winner = pick_best(candidates)
        records[record_name] = winner.to_dict() if winner else None
    return records


def compute_user_records(
    contributions: Iterable[ContributionRow], members: list[Member]
) -> dict[str, dict | None]:
    """User superlatives; all None for groups with fewer than three members."""
    records: dict[str, dict | None] = {name: None for name in USER_RECORDS}
    if len(members) < MIN_MEMBERS_FOR_USER_RECORDS:
        return records

    rows = list(contributions)
    member_names = {member.user_id: member.label for member in members}

    first_week: dict[tuple[ChartType, str], datetime] = {}
    reached_one: set[tuple[ChartType, str]] = set()
    for row in rows:
        key = (row.chart_type, row.entry_key)
        if key not in first_week or row.week_start < first_week[key]:
            first_week[key] = row.week_start
        if row.position == 1:
            reached_one.add(key)

    total_vs: dict[str, float] = defaultdict(float)
    total_plays: dict[str, int] = defaultdict(int)
    entries: dict[str, set[tuple[ChartType, str]]] = defaultdict(set)
    number_ones: dict[str, int] = defaultdict(int)
    weeks: dict[str, set[datetime]] = defaultdict(set)
    taste: dict[str, set[tuple[ChartType, str]]] = defaultdict(set)
    vs_samples: dict[str, list[float]] = defaultdict(list)

    for row in rows:
        if row.user_id not in member_names:
            continue
        key = (row.chart_type, row.entry_key)
        total_vs[row.user_id] += row.vibe_score
        total_plays[row.user_id] += row.playcount
        entries[row.user_id].add(key)
        weeks[row.user_id].add(row.week_start)
        vs_samples[row.user_id].append(row.vibe_score)
        if row.position == 1:
            number_ones[row.user_id] += 1
        if key in reached_one and row.week_start == first_week[key]:
            taste[row.user_id].add(key)

    def holder(user_id: str, value: float) -> UserRecordHolder:
        return UserRecordHolder(user_id=user_id, name=member_names[user_id], value=value)

    def best(values: dict[str, float]) -> dict | None:
        winner = pick_best((value, user_id, user_id) for user_id, value in values.items())
        return holder(winner, values[winner]).to_dict() if winner else None

    records["user_most_vs"] = best({uid: round(v, 2) for uid, v in total_vs.items()})
    records["user_most_plays"] = best(dict(total_plays))
    records["user_most_entries"] = best({uid: len(keys) for uid, keys in entries.items()})
    records["user_most_number_ones"] = best(dict(number_ones))
    records["user_most_weeks_contributing"] = best({uid: len(w) for uid, w in weeks.items()})
    records["user_taste_maker"] = best({uid: len(keys) for uid, keys in taste.items()})
    records["user_peak_performer"] = best(
        {
            uid: round(sum(samples) / len(samples), 2)
            for uid, samples in vs_samples.items()
            if len(entries[uid]) >= PEAK_PERFORMER_MIN_ENTRIES
        }
    )

    # fewest distinct entries, at least one
    least = sorted(
        ((len(keys), uid) for uid, keys in entries.items() if keys),
        key=lambda pair: (pair[0], pair[1]),
    )
    if least:
        count, user_id = least[0]
        records["user_least_entries"] = holder(user_id, count).to_dict()

    return records
