from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from unistatus.core.config import get_settings
from unistatus.core.logging import configure_logging
from unistatus.persistence.db import SessionLocal
from unistatus.services.housekeeping import housekeeping_loop
from unistatus.services.monitors.runner import run_monitor_check
from unistatus.services.monitors.scheduler import scheduler_loop


logger = logging.getLogger(__name__)


async def run_monitor_check_job(ctx, monitor_id: str, region: str) -> dict:
    # One check per (monitor, region); the job id already dedupes per scheduling slot.
    async with SessionLocal() as session:
        summary = await run_monitor_check(session, monitor_id=monitor_id, region=region)
    logger.debug("check_job_done job_id=%s monitor_id=%s region=%s", ctx.get("job_id"), monitor_id, region)
    return summary


async def _startup(ctx) -> None:
    # Scheduling and housekeeping ride along with the check worker.
    configure_logging()
    ctx["scheduler_task"] = asyncio.create_task(scheduler_loop())
    ctx["housekeeping_task"] = asyncio.create_task(housekeeping_loop())


async def _shutdown(ctx) -> None:
    for key in ("scheduler_task", "housekeeping_task"):
        task = ctx.get(key)
        if task:
            task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.check_queue_name
    # Checks are periodic; a failed attempt is superseded by the next slot.
    max_tries = 1
    functions = [run_monitor_check_job]
    on_startup = _startup
    on_shutdown = _shutdown
