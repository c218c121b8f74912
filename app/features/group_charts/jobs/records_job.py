"""
Records calculation job runner.

Records run in their own job so a calculation never depends on the
lifetime of the generation run that triggered it.
"""

import asyncio
from datetime import datetime
from typing import Any

from .queue import RECORDS_QUEUE, consume
from app.features.group_charts.domain import NewChartEntry
from app.features.group_charts.pipeline.records import records_service
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


async def handle_records_job(payload: dict[str, Any]) -> None:
    raw_entries = payload.get("new_entries")
    new_entries = (
        [NewChartEntry.from_dict(entry) for entry in raw_entries] if raw_entries else None
    )
    raw_generated_at = payload.get("charts_generated_at")
    await records_service.run_calculation(
        payload["group_id"],
        new_entries,
        charts_generated_at=(
            datetime.fromisoformat(raw_generated_at) if raw_generated_at else None
        ),
    )
    logger.info(
        "Records job finished",
        group_id=payload["group_id"],
        new_entries=len(new_entries) if new_entries else 0,
    )


async def start_records_worker(stop_event: asyncio.Event | None = None) -> None:
    logger.info("Records worker started", queue=RECORDS_QUEUE)
    await consume(RECORDS_QUEUE, handle_records_job, stop_event=stop_event)
