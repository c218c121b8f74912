"""
Durable Redis job queue for group chart background work.

Jobs are JSON payloads on a Redis list. Workers move each job to an
in-flight list with BRPOPLPUSH and remove it once handled, so a worker that
dies mid-job leaves the job recoverable on the next start.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from app.config import settings
from app.features.group_charts.domain import GenerationLock, NewChartEntry
from app.infrastructure.observability.logging import bind_job_context, get_logger
from app.services.infrastructure.redis_client import fast_redis

logger = get_logger(__name__)

GENERATION_QUEUE = "jobs:chart_generation"
RECORDS_QUEUE = "jobs:records_calculation"

JobHandler = Callable[[dict[str, Any]], Awaitable[None]]


class JobQueueError(Exception):
    """The job could not be handed to Redis."""


def inflight_key(queue: str) -> str:
    return f"{queue}:inflight"


async def enqueue_job(queue: str, payload: dict[str, Any]) -> None:
    raw = json.dumps(payload, sort_keys=True)
    if not await fast_redis.push_to_list(queue, raw):
        raise JobQueueError(f"Failed to enqueue job on {queue}")
    logger.info("Job enqueued", queue=queue, group_id=payload.get("group_id"))


async def enqueue_chart_generation(lock: GenerationLock) -> None:
    await enqueue_job(
        GENERATION_QUEUE,
        {"group_id": lock.group_id, "lock_started_at": lock.started_at.isoformat()},
    )


async def enqueue_records_calculation(
    group_id: str,
    new_entries: list[NewChartEntry] | None = None,
    charts_generated_at: datetime | None = None,
) -> None:
    await enqueue_job(
        RECORDS_QUEUE,
        {
            "group_id": group_id,
            "new_entries": (
                [entry.to_dict() for entry in new_entries] if new_entries is not None else None
            ),
            "charts_generated_at": (
                charts_generated_at.isoformat() if charts_generated_at is not None else None
            ),
        },
    )


async def recover_inflight(queue: str) -> int:
    """Move jobs left in flight by a dead worker back onto the queue."""
    recovered = 0
    for raw in await fast_redis.list_range(inflight_key(queue)):
        if await fast_redis.requeue_from_inflight(inflight_key(queue), queue, raw):
            recovered += 1

    if recovered:
        logger.warning("Recovered in-flight jobs", queue=queue, count=recovered)
    return recovered


async def consume(
    queue: str,
    handler: JobHandler,
    *,
    stop_event: asyncio.Event | None = None,
    max_jobs: int | None = None,
) -> int:
    """
    Process jobs from `queue` until stopped.

    A job is acknowledged once the handler returns or raises; handler
    failures are logged and the job is dropped, since the handlers record
    their own failure state (released lock, failed records row).
    """
    await recover_inflight(queue)
    processed = 0

    while not (stop_event and stop_event.is_set()):
        if max_jobs is not None and processed >= max_jobs:
            break

        raw = await fast_redis.pop_to_inflight(
            queue, inflight_key(queue), timeout=settings.JOB_QUEUE_BLOCK_SECONDS
        )
        if raw is None:
            continue

        try:
            payload = json.loads(raw)
        except ValueError:
            logger.error("Dropping malformed job", queue=queue, raw_preview=raw[:100])
            await fast_redis.ack_from_inflight(inflight_key(queue), raw)
            continue

        bind_job_context(queue=queue, group_id=payload.get("group_id"))
        try:
            await handler(payload)
        except Exception:
            logger.exception("Job failed", queue=queue)
        finally:
            await fast_redis.ack_from_inflight(inflight_key(queue), raw)
            processed += 1

    return processed
