"""
Group chart routes.

Thin HTTP layer over the generation orchestrator, the records service and
the entry stats service. Long-running work is handed to the Redis job
queue; these endpoints only take locks, enqueue and read.

Usage:
    1. POST /groups/{group_id}/charts/generate - Start chart generation
    2. GET /groups/{group_id}/charts/status - Lock and backlog state
    3. POST /groups/{group_id}/records/calculate - Queue a records calculation
    4. GET /groups/{group_id}/records - Stored records blob
    5. GET /groups/{group_id}/records/{record_type} - Leaderboard for one record
    6. GET /groups/{group_id}/charts/{chart_type}/{slug}/stats - Entry deep dive
"""

from fastapi import APIRouter, HTTPException, Query, status

from .schemas import (
    ChartStatusResponse,
    EntryStatsResponse,
    RecordHolderResponse,
    RecordLeaderboardResponse,
    RecordsCalculateRequest,
    RecordsResponse,
    StartedResponse,
)
from app.features.group_charts.domain import (
    ChartType,
    GenerationInProgressError,
    GroupNotFoundError,
    RecordsCalculationSkipped,
    RecordsStatus,
)
from app.features.group_charts.jobs.queue import JobQueueError
from app.features.group_charts.pipeline.records import records_service
from app.features.group_charts.pipeline.records.record_types import (
    get_record_type_display_name,
    is_record_type_supported,
)
from app.features.group_charts.repository.group_repository import GroupRepository
from app.features.group_charts.services.entry_stats_service import entry_stats_service
from app.features.group_charts.services.generation_service import chart_generation_service
from app.infrastructure.observability.logging import get_logger

router = APIRouter(prefix="/groups", tags=["group-charts"])
logger = get_logger(__name__)


async def _require_group(group_id: str) -> None:
    if await GroupRepository.get_group(group_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Group not found")


@router.post(
    "/{group_id}/charts/generate",
    response_model=StartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def generate_charts(group_id: str):
    """
    Start chart generation for every finished week not yet charted.

    Raises:
        404: Unknown group
        409: Generation already in progress
        503: Job queue unavailable
    """
    try:
        await chart_generation_service.start(group_id)
    except GroupNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Group not found")
    except GenerationInProgressError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Chart generation already in progress"
        )
    except JobQueueError as e:
        logger.error("Chart generation could not be queued", group_id=group_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job queue unavailable"
        )

    logger.info("Chart generation started", group_id=group_id)
    return StartedResponse()


@router.get("/{group_id}/charts/status", response_model=ChartStatusResponse)
async def get_chart_status(group_id: str):
    try:
        return await chart_generation_service.get_status(group_id)
    except GroupNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Group not found")


@router.post(
    "/{group_id}/records/calculate",
    response_model=StartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def calculate_records(group_id: str, request: RecordsCalculateRequest | None = None):
    """
    Queue a records calculation, incremental when new entries are supplied.

    Raises:
        404: Unknown group
        409: Records already calculating or up to date
        503: Job queue unavailable
    """
    await _require_group(group_id)

    new_entries = (
        [entry.to_domain() for entry in request.new_entries]
        if request is not None and request.new_entries
        else None
    )
    try:
        await records_service.request_calculation(group_id, new_entries)
    except RecordsCalculationSkipped as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except JobQueueError as e:
        logger.error("Records calculation could not be queued", group_id=group_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Job queue unavailable"
        )

    return StartedResponse()


@router.get("/{group_id}/records", response_model=RecordsResponse)
async def get_records(group_id: str):
    await _require_group(group_id)

    group_records = await records_service.get_records(group_id)
    if group_records is None:
        return RecordsResponse(status=RecordsStatus.NOT_STARTED.value)

    return RecordsResponse(
        status=group_records.status.value,
        records=group_records.records,
        calculation_started_at=group_records.calculation_started_at,
        charts_generated_at=group_records.charts_generated_at,
        error_message=group_records.error_message,
    )


@router.get("/{group_id}/records/{record_type}", response_model=RecordLeaderboardResponse)
async def get_record_leaderboard(
    group_id: str,
    record_type: str,
    chart_type: ChartType | None = None,
    limit: int = Query(10, ge=1, le=100),
):
    """Ranked holders for one record, e.g. most-weeks-at-one or artist-most-songs-charted."""
    if not is_record_type_supported(record_type):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown record type: {record_type}"
        )
    await _require_group(group_id)

    holders = await records_service.get_leaderboard(group_id, record_type, chart_type, limit)
    return RecordLeaderboardResponse(
        record_type=record_type,
        display_name=get_record_type_display_name(record_type),
        holders=[
            RecordHolderResponse.from_domain(rank, holder)
            for rank, holder in enumerate(holders, start=1)
        ],
    )


@router.get("/{group_id}/charts/{chart_type}/{slug}/stats", response_model=EntryStatsResponse)
async def get_entry_stats(group_id: str, chart_type: ChartType, slug: str):
    stats = await entry_stats_service.get_entry_stats(group_id, chart_type, slug)
    if stats is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chart entry not found")
    return EntryStatsResponse.from_domain(stats)
