"""
Domain subpackage for the group charts feature.
"""

from .errors import (
    GenerationAbortedError,
    GenerationInProgressError,
    GroupChartsError,
    GroupNotFoundError,
    ListeningHistoryError,
    RecordsCalculationSkipped,
)
from .models import (
    WEEK_LENGTH,
    ChartEntry,
    ChartEntryStats,
    ChartMode,
    ChartType,
    GenerationLock,
    GenerationProgress,
    GenerationStage,
    Group,
    GroupRecords,
    ListeningItem,
    Member,
    NewChartEntry,
    RecordHolder,
    RecordsStatus,
    UserContribution,
    UserRecordHolder,
    WeekAggregationResult,
    WeeklyListening,
    WeekWindow,
    make_entry_key,
)

__all__ = [
    "WEEK_LENGTH",
    "ChartEntry",
    "ChartEntryStats",
    "ChartMode",
    "ChartType",
    "GenerationAbortedError",
    "GenerationInProgressError",
    "GenerationLock",
    "GenerationProgress",
    "GenerationStage",
    "Group",
    "GroupChartsError",
    "GroupNotFoundError",
    "GroupRecords",
    "ListeningHistoryError",
    "ListeningItem",
    "Member",
    "NewChartEntry",
    "RecordHolder",
    "RecordsCalculationSkipped",
    "RecordsStatus",
    "UserContribution",
    "UserRecordHolder",
    "WeekAggregationResult",
    "WeeklyListening",
    "WeekWindow",
    "make_entry_key",
]
