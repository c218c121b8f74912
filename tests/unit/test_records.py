from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from app.features.group_charts.domain import (
    ChartEntryStats,
    ChartType,
    GroupRecords,
    NewChartEntry,
    RecordsCalculationSkipped,
    RecordsStatus,
)
from app.features.group_charts.pipeline.records.calculations import (
    ContributionRow,
    HistoryRow,
    build_entry_aggregates,
    compute_artist_records,
    compute_artist_values,
    compute_entry_records,
    compute_user_records,
    pick_best,
    rank_artists,
)
from app.features.group_charts.pipeline.records.record_types import (
    get_record_type_display_name,
    get_record_type_field_mapping,
    is_artist_specific_record_type,
    is_record_type_supported,
)
from app.features.group_charts.pipeline.records.service import RecordsService, dedupe_new_entries

MODULE = "app.features.group_charts.pipeline.records.service"
W1 = datetime(2024, 2, 4, tzinfo=UTC)
W2 = W1 + timedelta(days=7)
W3 = W2 + timedelta(days=7)
NOW = datetime(2024, 3, 1, tzinfo=UTC)


def _row(chart_type, key, week, position, playcount, vs, artist=None) -> HistoryRow:
    name = key.split("|")[0].title()
    return HistoryRow(
        chart_type=chart_type,
        entry_key=key,
        name=name,
        artist=artist,
        slug=key.replace("|", "-"),
        week_start=week,
        position=position,
        playcount=playcount,
        vibe_score=vs,
    )


def _contribution(user_id, row: HistoryRow) -> ContributionRow:
    return ContributionRow(
        user_id=user_id,
        chart_type=row.chart_type,
        entry_key=row.entry_key,
        week_start=row.week_start,
        playcount=row.playcount,
        vibe_score=row.vibe_score or 0.0,
        position=row.position,
    )


OLD_HISTORY = [
    _row(ChartType.TRACKS, "a|art1", W1, 1, 30, 2.0, "Art1"),
    _row(ChartType.TRACKS, "b|art2", W1, 2, 20, 1.5, "Art2"),
    _row(ChartType.TRACKS, "d|art3", W1, 3, 15, 1.0, "Art3"),
    _row(ChartType.TRACKS, "b|art2", W2, 1, 25, 2.0, "Art2"),
    _row(ChartType.TRACKS, "a|art1", W2, 2, 10, 1.0, "Art1"),
    _row(ChartType.ARTISTS, "art1", W1, 1, 40, 2.0),
    _row(ChartType.ARTISTS, "art2", W2, 1, 45, 2.0),
]
NEW_WEEK = [
    _row(ChartType.TRACKS, "c|art1", W3, 1, 50, 2.0, "Art1"),
    _row(ChartType.TRACKS, "b|art2", W3, 2, 5, 0.97, "Art2"),
    _row(ChartType.ARTISTS, "art2", W3, 1, 60, 2.0),
]


def _contributions(history):
    users = ["u1", "u2", "u3"]
    return [
        _contribution(users[index % len(users)], row) for index, row in enumerate(history)
    ]


def test_pick_best_prefers_value_then_smaller_key_and_ignores_zero():
    assert pick_best([(3, "b", "B"), (3, "a", "A"), (2, "c", "C")]) == "A"
    assert pick_best([(0, "a", "A"), (0, "b", "B")]) is None
    assert pick_best([]) is None


def test_full_entry_records():
    aggregates = build_entry_aggregates(OLD_HISTORY, _contributions(OLD_HISTORY))

    records = compute_entry_records(aggregates)

    assert records["most_weeks_on_chart"]["tracks"]["entry_key"] == "a|art1"
    assert records["most_weeks_on_chart"]["tracks"]["value"] == 2
    assert records["most_weeks_at_one"]["tracks"]["entry_key"] == "a|art1"
    assert records["most_plays"]["tracks"]["entry_key"] == "b|art2"
    assert records["most_plays"]["tracks"]["value"] == 45
    assert records["most_weeks_on_chart"]["albums"] is None


def test_artist_values_and_ranking():
    values = compute_artist_values(OLD_HISTORY)

    assert values["art1"]["artist_most_songs_charted"] == 1
    assert values["art2"]["artist_most_number_one_songs"] == 1
    records = compute_artist_records(values)
    # art1 and art2 both have one #1 song, the smaller key wins
    assert records["artist_most_number_one_songs"]["entry_key"] == "art1"
    ranked = rank_artists(values, "artist_most_songs_charted")
    assert [holder.entry_key for holder in ranked] == ["art1", "art2", "art3"]


def test_user_records_need_three_members(make_members):
    contributions = _contributions(OLD_HISTORY)

    assert all(v is None for v in compute_user_records(contributions, make_members("u1", "u2")).values())

    records = compute_user_records(contributions, make_members("u1", "u2", "u3"))
    assert records["user_most_entries"] is not None
    assert records["user_least_entries"] is not None
    assert records["user_peak_performer"] is None


def test_taste_maker_credits_first_week_of_a_future_number_one(make_members):
    rows = [
        _row(ChartType.TRACKS, "x|a", W1, 4, 10, 1.0, "A"),
        _row(ChartType.TRACKS, "x|a", W2, 1, 30, 2.0, "A"),
    ]
    contributions = [
        _contribution("u1", rows[0]),
        _contribution("u2", rows[1]),
        _contribution("u3", rows[1]),
    ]

    records = compute_user_records(contributions, make_members("u1", "u2", "u3"))

    assert records["user_taste_maker"]["user_id"] == "u1"


def test_dedupe_new_entries_keeps_best_position():
    entries = dedupe_new_entries(
        [
            NewChartEntry("b|art2", ChartType.TRACKS, 2),
            NewChartEntry("b|art2", ChartType.TRACKS, 1),
            NewChartEntry("art2", ChartType.ARTISTS, 1),
        ]
    )

    assert entries == [
        NewChartEntry("art2", ChartType.ARTISTS, 1),
        NewChartEntry("b|art2", ChartType.TRACKS, 1),
    ]


class _InMemoryRecords:
    """Stands in for RecordsRepository over an in-memory chart history."""

    def __init__(self, history):
        self.history = list(history)
        self.row: GroupRecords | None = None

    async def fetch_chart_history(self, group_id, keys=None):
        if keys is None:
            return list(self.history)
        wanted = set(keys)
        return [row for row in self.history if (row.chart_type, row.entry_key) in wanted]

    async def fetch_artist_history(self, group_id, artist_keys):
        wanted = set(artist_keys)
        return [
            row
            for row in self.history
            if row.chart_type != ChartType.ARTISTS and row.artist and row.artist.lower() in wanted
        ]

    async def fetch_contributions(self, group_id, keys=None):
        rows = await self.fetch_chart_history(group_id, keys)
        contributions = _contributions(self.history)
        wanted = {(row.chart_type, row.entry_key) for row in rows}
        return [c for c in contributions if (c.chart_type, c.entry_key) in wanted]

    async def fetch_entry_counts(self, group_id):
        return {"total_different_entries_at_one": {}, "total_different_entries_charted": {}}

    async def fetch_latest_week_start(self, group_id):
        return max((row.week_start for row in self.history), default=None)

    async def fetch_entries_since(self, group_id, after):
        return [
            NewChartEntry(row.entry_key, row.chart_type, row.position)
            for row in self.history
            if row.week_start > after
        ]

    async def get_records(self, group_id):
        return self.row

    async def reset_for_calculation(self, group_id, charts_generated_at):
        self.row = GroupRecords(
            group_id=group_id,
            status=RecordsStatus.CALCULATING,
            records=None,
            calculation_started_at=NOW,
            charts_generated_at=charts_generated_at,
        )

    async def mark_completed(self, group_id, records, covered_through):
        self.row.status = RecordsStatus.COMPLETED
        self.row.records = records
        self.row.covered_through = covered_through

    async def mark_failed(self, group_id, error_message):
        self.row.status = RecordsStatus.FAILED
        self.row.error_message = error_message


def _patch_repository(monkeypatch, repo: _InMemoryRecords, members):
    for name in (
        "fetch_chart_history",
        "fetch_artist_history",
        "fetch_contributions",
        "fetch_entry_counts",
        "fetch_latest_week_start",
        "fetch_entries_since",
        "get_records",
        "reset_for_calculation",
        "mark_completed",
        "mark_failed",
    ):
        monkeypatch.setattr(f"{MODULE}.RecordsRepository.{name}", getattr(repo, name))
    monkeypatch.setattr(
        f"{MODULE}.GroupRepository.list_members", AsyncMock(return_value=members)
    )


@pytest.mark.asyncio
async def test_incremental_calculation_matches_full(monkeypatch, make_members):
    service = RecordsService()
    members = make_members("u1", "u2", "u3")

    _patch_repository(monkeypatch, _InMemoryRecords(OLD_HISTORY), members)
    existing = await service.calculate("group-1")

    _patch_repository(monkeypatch, _InMemoryRecords(OLD_HISTORY + NEW_WEEK), members)
    new_entries = [
        NewChartEntry(row.entry_key, row.chart_type, row.position) for row in NEW_WEEK
    ]
    incremental = await service.calculate("group-1", new_entries, existing)
    full = await service.calculate("group-1")

    assert incremental == full
    assert full["most_plays"]["tracks"]["entry_key"] == "b|art2"
    assert full["most_weeks_at_one"]["artists"]["entry_key"] == "art2"
    assert full["artist_most_songs_charted"]["entry_key"] == "art1"


@pytest.mark.asyncio
async def test_incremental_run_picks_up_weeks_its_trigger_never_reported(
    monkeypatch, make_members
):
    service = RecordsService()
    members = make_members("u1", "u2", "u3")
    repo = _InMemoryRecords([row for row in OLD_HISTORY if row.week_start == W1])
    _patch_repository(monkeypatch, repo, members)
    await service.run_calculation("group-1")
    assert repo.row.covered_through == W1

    # W2 was committed by a run that never queued records; W3 reports only its own entry
    new_track = _row(ChartType.TRACKS, "c|art1", W3, 1, 50, 2.0, "Art1")
    repo.history = OLD_HISTORY + [new_track]
    incremental = await service.run_calculation(
        "group-1", [NewChartEntry(new_track.entry_key, new_track.chart_type, 1)]
    )
    full = await service.calculate("group-1")

    assert incremental == full
    assert full["most_weeks_on_chart"]["tracks"]["entry_key"] == "a|art1"
    assert full["most_weeks_on_chart"]["tracks"]["value"] == 2
    assert repo.row.covered_through == W3


@pytest.mark.asyncio
async def test_records_without_coverage_mark_fall_back_to_full(monkeypatch, make_members):
    service = RecordsService()
    repo = _InMemoryRecords(OLD_HISTORY + NEW_WEEK)
    _patch_repository(monkeypatch, repo, make_members("u1", "u2", "u3"))
    repo.row = _records_row(RecordsStatus.COMPLETED, records={"most_plays": {"tracks": None}})
    calculate_mock = AsyncMock(return_value={})
    monkeypatch.setattr(service, "calculate", calculate_mock)

    await service.run_calculation("group-1", [NewChartEntry("c|art1", ChartType.TRACKS, 1)])

    calculate_mock.assert_awaited_once_with("group-1", None, None)


def _records_row(status, started=None, generated=None, records=None) -> GroupRecords:
    return GroupRecords(
        group_id="group-1",
        status=status,
        records=records,
        calculation_started_at=started,
        charts_generated_at=generated,
    )


@pytest.mark.parametrize(
    ("existing", "expected"),
    [
        (None, True),
        (_records_row(RecordsStatus.FAILED), True),
        (_records_row(RecordsStatus.NOT_STARTED), True),
        (_records_row(RecordsStatus.CALCULATING, started=NOW - timedelta(minutes=5)), False),
        (_records_row(RecordsStatus.CALCULATING, started=NOW - timedelta(hours=2)), True),
        (_records_row(RecordsStatus.COMPLETED, generated=NOW - timedelta(minutes=5)), False),
        (_records_row(RecordsStatus.COMPLETED, generated=NOW - timedelta(hours=2)), True),
    ],
)
def test_records_guard(existing, expected):
    assert RecordsService()._should_calculate(existing, NOW) is expected


@pytest.mark.asyncio
async def test_request_calculation_refused_by_guard(monkeypatch):
    monkeypatch.setattr(
        f"{MODULE}.RecordsRepository.get_records",
        AsyncMock(return_value=_records_row(RecordsStatus.CALCULATING, started=datetime.now(UTC))),
    )
    enqueue_mock = AsyncMock()
    monkeypatch.setattr(f"{MODULE}.enqueue_records_calculation", enqueue_mock)

    with pytest.raises(RecordsCalculationSkipped):
        await RecordsService().request_calculation("group-1")
    enqueue_mock.assert_not_awaited()

    await RecordsService().request_calculation("group-1", force=True)
    enqueue_mock.assert_awaited_once_with("group-1", None, charts_generated_at=None)


@pytest.mark.asyncio
async def test_run_calculation_marks_completed(monkeypatch):
    service = RecordsService()
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.get_records", AsyncMock(return_value=None))
    monkeypatch.setattr(
        f"{MODULE}.RecordsRepository.fetch_latest_week_start", AsyncMock(return_value=W3)
    )
    reset_mock = AsyncMock()
    completed_mock = AsyncMock()
    failed_mock = AsyncMock()
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.reset_for_calculation", reset_mock)
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.mark_completed", completed_mock)
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.mark_failed", failed_mock)
    calculate_mock = AsyncMock(return_value={"most_plays": {}})
    monkeypatch.setattr(service, "calculate", calculate_mock)

    await service.run_calculation(
        "group-1", [NewChartEntry("x", ChartType.ARTISTS, 1)], charts_generated_at=NOW
    )

    reset_mock.assert_awaited_once_with("group-1", NOW)
    # no completed row to build on, so the run is a full one
    calculate_mock.assert_awaited_once_with("group-1", None, None)
    completed_mock.assert_awaited_once_with("group-1", {"most_plays": {}}, W3)
    failed_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_manual_run_keeps_stored_generation_time(monkeypatch):
    service = RecordsService()
    generated = NOW - timedelta(days=2)
    monkeypatch.setattr(
        f"{MODULE}.RecordsRepository.get_records",
        AsyncMock(return_value=_records_row(RecordsStatus.FAILED, generated=generated)),
    )
    monkeypatch.setattr(
        f"{MODULE}.RecordsRepository.fetch_latest_week_start", AsyncMock(return_value=W3)
    )
    reset_mock = AsyncMock()
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.reset_for_calculation", reset_mock)
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.mark_completed", AsyncMock())
    monkeypatch.setattr(service, "calculate", AsyncMock(return_value={}))

    await service.run_calculation("group-1")

    reset_mock.assert_awaited_once_with("group-1", generated)


@pytest.mark.asyncio
async def test_run_calculation_marks_failed_and_reraises(monkeypatch):
    service = RecordsService()
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.get_records", AsyncMock(return_value=None))
    monkeypatch.setattr(
        f"{MODULE}.RecordsRepository.fetch_latest_week_start", AsyncMock(return_value=W3)
    )
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.reset_for_calculation", AsyncMock())
    completed_mock = AsyncMock()
    failed_mock = AsyncMock()
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.mark_completed", completed_mock)
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.mark_failed", failed_mock)
    monkeypatch.setattr(service, "calculate", AsyncMock(side_effect=RuntimeError("history unreadable")))

    with pytest.raises(RuntimeError):
        await service.run_calculation("group-1")

    failed_mock.assert_awaited_once_with("group-1", "history unreadable")
    completed_mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_run_calculation_goes_incremental_on_completed_row(monkeypatch):
    service = RecordsService()
    stored = {"most_plays": {"tracks": None}}
    row = _records_row(RecordsStatus.COMPLETED, records=stored)
    row.covered_through = W2
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.get_records", AsyncMock(return_value=row))
    monkeypatch.setattr(
        f"{MODULE}.RecordsRepository.fetch_latest_week_start", AsyncMock(return_value=W3)
    )
    since_mock = AsyncMock(return_value=[NewChartEntry("x", ChartType.ARTISTS, 2)])
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.fetch_entries_since", since_mock)
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.reset_for_calculation", AsyncMock())
    monkeypatch.setattr(f"{MODULE}.RecordsRepository.mark_completed", AsyncMock())
    calculate_mock = AsyncMock(return_value={})
    monkeypatch.setattr(service, "calculate", calculate_mock)
    new_entries = [NewChartEntry("x", ChartType.ARTISTS, 1)]

    await service.run_calculation("group-1", new_entries)

    since_mock.assert_awaited_once_with("group-1", W2)
    calculate_mock.assert_awaited_once_with("group-1", new_entries, stored)


def test_record_type_helpers():
    assert get_record_type_field_mapping("most-weeks-at-one") == "weeks_at_one"
    assert get_record_type_field_mapping("artist-most-songs-charted") is None
    assert is_artist_specific_record_type("artist-most-songs-charted")
    assert is_record_type_supported("most-plays")
    assert not is_record_type_supported("most-skips")
    assert get_record_type_display_name("most-weeks-at-one") == "Most Weeks at #1"


@pytest.mark.asyncio
async def test_artist_leaderboard_ranks_full_history(monkeypatch):
    monkeypatch.setattr(
        f"{MODULE}.RecordsRepository.fetch_chart_history",
        AsyncMock(return_value=OLD_HISTORY + NEW_WEEK),
    )

    holders = await RecordsService().get_leaderboard("group-1", "artist-most-songs-charted", limit=2)

    assert [(h.entry_key, h.value) for h in holders] == [("art1", 2), ("art2", 1)]


@pytest.mark.asyncio
async def test_entry_leaderboard_reads_stats_field(monkeypatch):
    stats = ChartEntryStats(
        group_id="group-1",
        chart_type=ChartType.TRACKS,
        entry_key="b|art2",
        slug="b-art2",
        name="B",
        artist="Art2",
        weeks_at_one=1,
    )
    top_mock = AsyncMock(return_value=[stats])
    monkeypatch.setattr(f"{MODULE}.entry_stats_service.top_entries", top_mock)

    holders = await RecordsService().get_leaderboard("group-1", "most-weeks-at-one", ChartType.TRACKS)

    assert holders[0].entry_key == "b|art2"
    assert holders[0].value == 1
    top_mock.assert_awaited_once_with("group-1", "weeks_at_one", ChartType.TRACKS, 10)


@pytest.mark.asyncio
async def test_leaderboard_rejects_unknown_type():
    with pytest.raises(ValueError):
        await RecordsService().get_leaderboard("group-1", "most-cowbell")
