# app/features/group_charts/api/schemas.py
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from app.features.group_charts.domain import (
    ChartEntryStats,
    ChartType,
    GenerationStage,
    NewChartEntry,
    RecordHolder,
)


class StartedResponse(BaseModel):
    """Response for accepted background work."""

    status: Literal["started"] = "started"


class GenerationProgressResponse(BaseModel):
    current_week: int
    total_weeks: int
    stage: GenerationStage


class ChartStatusResponse(BaseModel):
    """Response for GET /groups/{group_id}/charts/status"""

    in_progress: bool
    can_update: bool
    pending_weeks: int
    started_at: datetime | None = None
    progress: GenerationProgressResponse | None = None
    last_failed_users: list[str] = Field(default_factory=list)
    last_aborted: bool = False


class NewEntryRequest(BaseModel):
    entry_key: str = Field(..., min_length=1)
    chart_type: ChartType
    position: int = Field(..., ge=1)

    def to_domain(self) -> NewChartEntry:
        return NewChartEntry(
            entry_key=self.entry_key, chart_type=self.chart_type, position=self.position
        )


class RecordsCalculateRequest(BaseModel):
    """Body for POST /groups/{group_id}/records/calculate"""

    new_entries: list[NewEntryRequest] | None = None


class RecordsResponse(BaseModel):
    """Response for GET /groups/{group_id}/records"""

    status: str
    records: dict[str, Any] | None = None
    calculation_started_at: datetime | None = None
    charts_generated_at: datetime | None = None
    error_message: str | None = None


class RecordHolderResponse(BaseModel):
    rank: int
    entry_key: str
    chart_type: ChartType
    name: str
    artist: str | None = None
    slug: str
    value: float

    @classmethod
    def from_domain(cls, rank: int, holder: RecordHolder) -> "RecordHolderResponse":
        return cls(rank=rank, **holder.to_dict())


class RecordLeaderboardResponse(BaseModel):
    """Response for GET /groups/{group_id}/records/{record_type}"""

    record_type: str
    display_name: str
    holders: list[RecordHolderResponse]


class EntryStatsResponse(BaseModel):
    """Response for GET /groups/{group_id}/charts/{chart_type}/{slug}/stats"""

    chart_type: ChartType
    entry_key: str
    slug: str
    name: str
    artist: str | None = None
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

    @classmethod
    def from_domain(cls, stats: ChartEntryStats) -> "EntryStatsResponse":
        return cls(
            chart_type=stats.chart_type,
            entry_key=stats.entry_key,
            slug=stats.slug,
            name=stats.name,
            artist=stats.artist,
            peak_position=stats.peak_position,
            weeks_at_peak=stats.weeks_at_peak,
            debut_position=stats.debut_position,
            debut_date=stats.debut_date,
            weeks_at_one=stats.weeks_at_one,
            weeks_in_top_10=stats.weeks_in_top_10,
            total_weeks_charting=stats.total_weeks_charting,
            longest_streak=stats.longest_streak,
            longest_streak_start=stats.longest_streak_start,
            longest_streak_end=stats.longest_streak_end,
            is_streak_ongoing=stats.is_streak_ongoing,
            currently_charting=stats.currently_charting,
            latest_appearance=stats.latest_appearance,
            total_vs=stats.total_vs,
            total_plays=stats.total_plays,
        )
