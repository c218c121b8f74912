"""
Domain models for the group charts feature.

Plain dataclasses shared by repositories, pipeline services, jobs and the
API layer. Business rules live in the pipeline/services packages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

WEEK_LENGTH = timedelta(days=7)


class ChartType(str, Enum):
    ARTISTS = "artists"
    TRACKS = "tracks"
    ALBUMS = "albums"


class ChartMode(str, Enum):
    PLAYS_ONLY = "plays_only"
    VS = "vs"
    VS_WEIGHTED = "vs_weighted"


class GenerationStage(str, Enum):
    INITIALIZING = "initializing"
    FETCHING = "fetching"
    PROCESSING = "processing"
    FINALIZING = "finalizing"


class RecordsStatus(str, Enum):
    NOT_STARTED = "not_started"
    CALCULATING = "calculating"
    COMPLETED = "completed"
    FAILED = "failed"


def make_entry_key(chart_type: ChartType, name: str, artist: str | None = None) -> str:
    """Normalized identity of a chart entry within one chart type."""
    if chart_type == ChartType.ARTISTS:
        return name.lower()
    return f"{name}|{artist or ''}".lower()


@dataclass(slots=True)
class GenerationProgress:
    current_week: int
    total_weeks: int
    stage: GenerationStage

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_week": self.current_week,
            "total_weeks": self.total_weeks,
            "stage": self.stage.value,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> GenerationProgress | None:
        if not payload:
            return None
        return cls(
            current_week=int(payload.get("current_week", 0)),
            total_weeks=int(payload.get("total_weeks", 0)),
            stage=GenerationStage(payload.get("stage", GenerationStage.INITIALIZING.value)),
        )


@dataclass(slots=True)
class Group:
    id: str
    name: str
    tracking_day_of_week: int
    chart_size: int
    chart_mode: ChartMode
    generation_in_progress: bool = False
    generation_started_at: datetime | None = None
    generation_progress: GenerationProgress | None = None
    last_failed_users: list[str] = field(default_factory=list)
    last_aborted: bool = False
    dynamic_icon_enabled: bool = False
    dynamic_icon_source: ChartType = ChartType.ARTISTS
    image_url: str | None = None


@dataclass(slots=True)
class GenerationLock:
    """Proof of a won compare-and-swap on the group's generation flag."""

    group_id: str
    started_at: datetime


@dataclass(slots=True)
class Member:
    group_id: str
    user_id: str
    lastfm_username: str
    display_name: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.lastfm_username


@dataclass(slots=True)
class WeekWindow:
    """Half-open week [start, end), always seven days long."""

    start: datetime
    end: datetime

    @classmethod
    def starting(cls, start: datetime) -> WeekWindow:
        return cls(start=start, end=start + WEEK_LENGTH)

    def is_finished(self, now: datetime) -> bool:
        return self.end < now

    def overlaps(self, other: WeekWindow) -> bool:
        return self.start < other.end and other.start < self.end


@dataclass(slots=True)
class ListeningItem:
    """One row of a member's weekly top list as returned by the provider."""

    name: str
    artist: str | None
    playcount: int

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "artist": self.artist, "playcount": self.playcount}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ListeningItem:
        return cls(
            name=payload["name"],
            artist=payload.get("artist"),
            playcount=int(payload.get("playcount") or 0),
        )


@dataclass(slots=True)
class WeeklyListening:
    """A member's top artists/tracks/albums for one week."""

    artists: list[ListeningItem] = field(default_factory=list)
    tracks: list[ListeningItem] = field(default_factory=list)
    albums: list[ListeningItem] = field(default_factory=list)

    def items(self, chart_type: ChartType) -> list[ListeningItem]:
        if chart_type == ChartType.ARTISTS:
            return self.artists
        if chart_type == ChartType.TRACKS:
            return self.tracks
        return self.albums


@dataclass(slots=True)
class UserContribution:
    user_id: str
    week_start: datetime
    chart_type: ChartType
    entry_key: str
    name: str
    artist: str | None
    playcount: int
    rank: int
    vibe_score: float  # personal VS for this entry, independent of chart mode
    contribution: float  # amount added to the group score under the chart mode


@dataclass(slots=True)
class ChartEntry:
    group_id: str
    week_start: datetime
    chart_type: ChartType
    entry_key: str
    name: str
    artist: str | None
    slug: str
    position: int
    playcount: int
    vibe_score: float | None
    position_change: int | None
    plays_change: int | None = None
    entry_type: str | None = None
    contributor_count: int = 0

    def summary(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "entry_key": self.entry_key,
            "name": self.name,
            "artist": self.artist,
            "slug": self.slug,
            "playcount": self.playcount,
            "vibe_score": self.vibe_score,
            "position_change": self.position_change,
        }


@dataclass(slots=True)
class WeekAggregationResult:
    week: WeekWindow
    entries: list[ChartEntry]
    contributions: list[UserContribution]
    failed_users: set[str]
    should_abort: bool = False
    # stored entries the rewrite removed from the chart
    dropped_entries: list[ChartEntry] = field(default_factory=list)


@dataclass(slots=True)
class NewChartEntry:
    """Best position an entry reached across the weeks of one generation run."""

    entry_key: str
    chart_type: ChartType
    position: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_key": self.entry_key,
            "chart_type": self.chart_type.value,
            "position": self.position,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> NewChartEntry:
        return cls(
            entry_key=payload["entry_key"],
            chart_type=ChartType(payload["chart_type"]),
            position=int(payload["position"]),
        )


@dataclass(slots=True)
class ChartEntryStats:
    group_id: str
    chart_type: ChartType
    entry_key: str
    slug: str
    name: str
    artist: str | None
    peak_position: int | None = None
    weeks_at_peak: int = 0
    debut_position: int | None = None
    debut_date: datetime | None = None
    weeks_at_one: int = 0
    weeks_in_top_10: int = 0
    total_weeks_charting: int = 0
    longest_streak: int = 0
    longest_streak_start: datetime | None = None
    longest_streak_end: datetime | None = None
    is_streak_ongoing: bool = False
    currently_charting: bool = False
    latest_appearance: datetime | None = None
    total_vs: float = 0.0
    total_plays: int = 0
    stats_stale: bool = False


@dataclass(slots=True)
class RecordHolder:
    entry_key: str
    chart_type: ChartType
    name: str
    artist: str | None
    value: float
    slug: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_key": self.entry_key,
            "chart_type": self.chart_type.value,
            "name": self.name,
            "artist": self.artist,
            "value": self.value,
            "slug": self.slug,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> RecordHolder | None:
        if not payload:
            return None
        return cls(
            entry_key=payload["entry_key"],
            chart_type=ChartType(payload["chart_type"]),
            name=payload["name"],
            artist=payload.get("artist"),
            value=payload["value"],
            slug=payload["slug"],
        )


@dataclass(slots=True)
class UserRecordHolder:
    user_id: str
    name: str
    value: float

    def to_dict(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "name": self.name, "value": self.value}


@dataclass(slots=True)
class GroupRecords:
    """Represents a group_records row."""

    group_id: str
    status: RecordsStatus
    records: dict[str, Any] | None
    calculation_started_at: datetime | None
    charts_generated_at: datetime | None
    error_message: str | None = None
    updated_at: datetime | None = None
    # latest chart week the stored records account for
    covered_through: datetime | None = None
