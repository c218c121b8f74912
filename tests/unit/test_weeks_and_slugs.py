from datetime import UTC, datetime, timedelta

import pytest

from app.features.group_charts.domain import WeekWindow
from app.features.group_charts.domain.slugs import generate_slug
from app.features.group_charts.domain.weeks import (
    compute_backlog,
    last_finished_weeks,
    week_start_for_day,
    weeks_overlap,
)

# Wednesday
NOW = datetime(2024, 3, 20, 12, 0, tzinfo=UTC)


def _day(month: int, day: int) -> datetime:
    return datetime(2024, month, day, tzinfo=UTC)


def test_week_start_for_sunday_and_wednesday():
    assert week_start_for_day(NOW, 0) == _day(3, 17)
    assert week_start_for_day(NOW, 3) == _day(3, 20)
    assert week_start_for_day(NOW, 4) == _day(3, 14)


def test_week_start_rejects_bad_day():
    with pytest.raises(ValueError):
        week_start_for_day(NOW, 7)


def test_last_finished_weeks_excludes_current_week():
    weeks = last_finished_weeks(3, 0, NOW)

    assert [w.start for w in weeks] == [_day(2, 25), _day(3, 3), _day(3, 10)]
    assert all(w.end - w.start == timedelta(days=7) for w in weeks)


def test_backlog_seeded_without_history():
    backlog = compute_backlog(None, 0, NOW, 10)

    assert len(backlog) == 10
    assert backlog[-1].start == _day(3, 10)
    assert backlog == sorted(backlog, key=lambda w: w.start)


def test_backlog_resumes_after_last_week():
    backlog = compute_backlog(_day(2, 25), 0, NOW, 10)

    assert [w.start for w in backlog] == [_day(3, 3), _day(3, 10)]


def test_backlog_empty_when_up_to_date():
    assert compute_backlog(_day(3, 10), 0, NOW, 10) == []


def test_backlog_is_capped():
    backlog = compute_backlog(_day(1, 7), 0, NOW, 2)

    assert [w.start for w in backlog] == [_day(1, 14), _day(1, 21)]


def test_backlog_realigns_after_tracking_day_change():
    # last charted Sunday week, group now tracks Wednesdays
    backlog = compute_backlog(_day(3, 3), 3, NOW, 10)

    assert [w.start for w in backlog] == [_day(3, 6), _day(3, 13)]
    previous = WeekWindow.starting(_day(3, 3))
    assert weeks_overlap(previous, backlog[0])
    assert not weeks_overlap(previous, backlog[1])


def test_generate_slug():
    assert generate_slug("halo|beyoncé") == "halo-beyonce"
    assert generate_slug("ac/dc") == "acdc"
    assert generate_slug("  the  national ") == "the-national"
    assert generate_slug("hoppípolla|sigur rós") == "hoppipolla-sigur-ros"
