"""
Chart generation job runner.

Runs inside the worker service: pops generation jobs queued by the API
(which already took the group's lock) and runs them under that lock.
"""

import asyncio
from datetime import datetime
from typing import Any

from .queue import GENERATION_QUEUE, consume
from app.features.group_charts.domain import GenerationAbortedError, GenerationLock
from app.features.group_charts.services.generation_service import chart_generation_service
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


async def handle_generation_job(payload: dict[str, Any]) -> None:
    lock = GenerationLock(
        group_id=payload["group_id"],
        started_at=datetime.fromisoformat(payload["lock_started_at"]),
    )
    try:
        result = await chart_generation_service.run_locked(lock)
    except GenerationAbortedError as e:
        logger.warning(
            "Generation job aborted",
            group_id=e.group_id,
            failed_users=e.failed_users,
            weeks_committed=e.weeks_committed,
        )
        return

    logger.info(
        "Generation job finished",
        group_id=result.group_id,
        weeks_processed=result.weeks_processed,
        lock_lost=result.lock_lost,
    )


async def start_chart_generation_worker(stop_event: asyncio.Event | None = None) -> None:
    logger.info("Chart generation worker started", queue=GENERATION_QUEUE)
    await consume(GENERATION_QUEUE, handle_generation_job, stop_event=stop_event)
