from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.core.config import get_settings
from unistatus.persistence.db import SessionLocal
from unistatus.persistence.repos import monitors as monitors_repo
from unistatus.services.coordination import (
    SCHEDULER_HEARTBEAT_KEY,
    SCHEDULER_LOCK_KEY,
    acquire_lock,
    release_lock,
    set_heartbeat,
)
from unistatus.services.maintenance import active_maintenance_monitor_ids
from unistatus.services.monitors.runner import run_monitor_check
from unistatus.services.probes import dispatch_to_probes
from unistatus.services.queue import enqueue_job


logger = logging.getLogger(__name__)

RUN_MONITOR_CHECK_JOB = "run_monitor_check_job"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def monitor_regions(monitor) -> list[str]:
    regions = [str(region) for region in (monitor.regions_json or []) if str(region).strip()]
    return regions or [get_settings().default_region]


def check_job_id(monitor_id: str, region: str, now: datetime) -> str:
    # Stable per slot so a double-scheduled cycle does not duplicate the same check.
    return f"check:{monitor_id}:{region}:{int(now.timestamp())}"


async def schedule_due_checks(session: AsyncSession, *, now: datetime | None = None) -> dict[str, int]:
    """Run one scheduling cycle and return its counters.

    Due rows are locked with SKIP LOCKED and advanced before the transaction
    commits; checks are only handed off after the commit. A monitor whose
    check could not be queued gets its previous slot back, so the next cycle
    picks it up again instead of waiting a full interval.
    """
    settings = get_settings()
    current = now or _utc_now()
    summary = {"due": 0, "enqueued": 0, "requeued": 0, "skipped_maintenance": 0, "dispatched_to_probes": 0}

    in_maintenance = await active_maintenance_monitor_ids(session, now=current)
    due = await monitors_repo.list_due_monitors(
        session, now=current, limit=max(1, int(settings.scheduler_batch_size))
    )
    summary["due"] = len(due)
    pending_checks: list[tuple[str, str]] = []
    previous: dict[str, tuple[datetime, datetime | None, datetime | None]] = {}
    for monitor in due:
        next_check = current + timedelta(seconds=max(1, int(monitor.interval_seconds or 60)))
        if monitor.id in in_maintenance:
            summary["skipped_maintenance"] += 1
            monitor.next_check_at = next_check
            continue
        dispatched, has_exclusive = await dispatch_to_probes(session, monitor, now=current)
        summary["dispatched_to_probes"] += dispatched
        if not has_exclusive:
            regions = monitor_regions(monitor)
            # Heartbeats are evaluated from stored pings, so one region is enough.
            if monitor.type == "heartbeat":
                regions = regions[:1]
            pending_checks.extend((monitor.id, region) for region in regions)
            previous[monitor.id] = (next_check, monitor.next_check_at, monitor.last_checked_at)
        monitor.next_check_at = next_check
        monitor.last_checked_at = current
    await session.commit()

    inline = settings.check_execution_mode == "inline"
    failed: set[str] = set()
    for monitor_id, region in pending_checks:
        if inline:
            await run_monitor_check(session, monitor_id=monitor_id, region=region, now=current)
            summary["enqueued"] += 1
            continue
        queued = await enqueue_job(
            RUN_MONITOR_CHECK_JOB,
            monitor_id,
            region,
            queue_name=settings.check_queue_name,
            job_id=check_job_id(monitor_id, region, current),
        )
        if queued:
            summary["enqueued"] += 1
        else:
            failed.add(monitor_id)
    for monitor_id in sorted(failed):
        advanced_to, next_check_at, last_checked_at = previous[monitor_id]
        if await monitors_repo.restore_schedule(
            session,
            monitor_id,
            advanced_to=advanced_to,
            next_check_at=next_check_at,
            last_checked_at=last_checked_at,
        ):
            summary["requeued"] += 1
            logger.warning("scheduler_enqueue_failed monitor_id=%s slot_restored=true", monitor_id)
    if failed:
        await session.commit()
    if summary["due"]:
        logger.info(
            "scheduler_cycle due=%s enqueued=%s requeued=%s skipped_maintenance=%s dispatched_to_probes=%s",
            summary["due"],
            summary["enqueued"],
            summary["requeued"],
            summary["skipped_maintenance"],
            summary["dispatched_to_probes"],
        )
    return summary


async def run_scheduler_cycle() -> dict[str, Any] | None:
    # Only the lock holder schedules; other instances skip this interval.
    settings = get_settings()
    owner = uuid4().hex
    if not await acquire_lock(SCHEDULER_LOCK_KEY, owner=owner, ttl_s=settings.scheduler_lock_ttl_s):
        return None
    try:
        async with SessionLocal() as session:
            summary = await schedule_due_checks(session)
        await set_heartbeat(SCHEDULER_HEARTBEAT_KEY)
        return summary
    finally:
        await release_lock(SCHEDULER_LOCK_KEY, owner=owner)


async def scheduler_loop() -> None:
    interval_s = max(1, int(get_settings().scheduler_poll_interval_s))
    while True:
        try:
            await run_scheduler_cycle()
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("scheduler cycle failed")
        await asyncio.sleep(interval_s)
