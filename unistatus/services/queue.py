from __future__ import annotations

import asyncio
from datetime import timedelta
import logging
from typing import Any

from arq import create_pool
from arq.connections import RedisSettings

from unistatus.core.config import get_settings


logger = logging.getLogger(__name__)

_queue_pool = None
_queue_pool_loop = None
_queue_pool_lock = asyncio.Lock()


async def get_queue_pool():
    # Cache the ARQ Redis pool per event loop to avoid reconnect churn in API and worker code paths.
    global _queue_pool, _queue_pool_loop
    current_loop = asyncio.get_running_loop()
    if _queue_pool is not None and _queue_pool_loop == current_loop:
        return _queue_pool
    if _queue_pool is not None and _queue_pool_loop != current_loop:
        _queue_pool = None
    async with _queue_pool_lock:
        if _queue_pool is None:
            settings = get_settings()
            _queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.check_queue_name,
            )
            _queue_pool_loop = current_loop
    return _queue_pool


async def enqueue_job(
    function: str,
    *args: Any,
    queue_name: str,
    defer_ms: int = 0,
    job_id: str | None = None,
) -> bool:
    # Publish onto ARQ best-effort; callers decide whether a dropped job matters.
    defer_delta = timedelta(milliseconds=max(0, int(defer_ms)))
    try:
        redis = await get_queue_pool()
        job = await redis.enqueue_job(
            function,
            *args,
            _queue_name=queue_name,
            _job_id=job_id,
            _defer_by=defer_delta if defer_delta.total_seconds() > 0 else None,
        )
    except Exception:  # noqa: BLE001 - best-effort; callers see False and decide whether to retry.
        logger.warning("queue_enqueue_failed function=%s queue=%s", function, queue_name, exc_info=True)
        return False
    # ARQ returns None when a job with the same id is already queued.
    return job is not None
