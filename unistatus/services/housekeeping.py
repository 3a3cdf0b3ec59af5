from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable

from unistatus.core.config import get_settings
from unistatus.persistence.db import SessionLocal
from unistatus.services.audit import prune_audit_events
from unistatus.services.licensing import run_license_grace_cycle
from unistatus.services.monitors.aggregation import (
    aggregate_day,
    aggregate_hour,
    floor_day,
    floor_hour,
    prune_check_results,
)
from unistatus.services.notifications.subscribers import run_maintenance_start_cycle
from unistatus.services.probes import run_probe_health_cycle


logger = logging.getLogger(__name__)


@dataclass
class HousekeepingState:
    """Rollup watermarks for one worker process.

    The first cycle after boot re-aggregates the previous hour and day, which
    is safe because bucket writes are upserts. Maintenance start emails need a
    previous cycle to compare against, so the first cycle sends none.
    """

    last_run: datetime | None = None
    last_hour: datetime | None = None
    last_day: datetime | None = None
    failures: dict[str, int] = field(default_factory=dict)


async def _step(state: HousekeepingState, name: str, action: Callable[[], Awaitable[Any]]) -> Any:
    # One failing step must not starve the others.
    try:
        return await action()
    except Exception:  # noqa: BLE001 - surfaced in worker logs; retried next cycle
        state.failures[name] = state.failures.get(name, 0) + 1
        logger.exception("housekeeping_step_failed step=%s", name)
        return None


async def run_housekeeping_cycle(state: HousekeepingState, *, now: datetime | None = None) -> dict[str, Any]:
    current = now or datetime.now(timezone.utc)
    summary: dict[str, Any] = {}

    async def probes() -> dict[str, int]:
        async with SessionLocal() as session:
            return await run_probe_health_cycle(session, now=current)

    summary["probes"] = await _step(state, "probes", probes)

    hour = floor_hour(current)
    if state.last_hour is None or hour > state.last_hour:

        async def hourly() -> int:
            async with SessionLocal() as session:
                return await aggregate_hour(session, hour_start=hour - timedelta(hours=1))

        summary["hourly_buckets"] = await _step(state, "hourly", hourly)
        state.last_hour = hour

    day = floor_day(current)
    if state.last_day is None or day > state.last_day:
        settings = get_settings()

        async def daily() -> int:
            async with SessionLocal() as session:
                return await aggregate_day(session, day_start=day - timedelta(days=1))

        async def prune_results() -> int:
            async with SessionLocal() as session:
                return await prune_check_results(
                    session, before=current - timedelta(days=max(1, int(settings.check_results_retention_days)))
                )

        async def prune_audit() -> int:
            async with SessionLocal() as session:
                return await prune_audit_events(
                    session, before=current - timedelta(days=max(1, int(settings.audit_retention_days)))
                )

        summary["daily_buckets"] = await _step(state, "daily", daily)
        summary["results_pruned"] = await _step(state, "prune_results", prune_results)
        summary["audit_pruned"] = await _step(state, "prune_audit", prune_audit)
        state.last_day = day

    async def licenses() -> dict[str, int]:
        async with SessionLocal() as session:
            return await run_license_grace_cycle(session, now=current)

    summary["licenses"] = await _step(state, "licenses", licenses)

    previous = state.last_run
    if previous is not None:

        async def maintenance_starts() -> int:
            async with SessionLocal() as session:
                return await run_maintenance_start_cycle(session, previous=previous, now=current)

        summary["maintenance_notified"] = await _step(state, "maintenance_starts", maintenance_starts)
    state.last_run = current
    return summary


async def housekeeping_loop() -> None:
    interval_s = max(1, int(get_settings().maintenance_interval_s))
    state = HousekeepingState()
    while True:
        try:
            await run_housekeeping_cycle(state)
        except Exception:  # noqa: BLE001 - keep the loop alive while surfacing failures in worker logs.
            logger.exception("housekeeping cycle failed")
        await asyncio.sleep(interval_s)
