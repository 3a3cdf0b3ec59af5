from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
import logging
import math
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.core.config import get_settings
from unistatus.domain.models import CheckResultDaily, CheckResultHourly
from unistatus.persistence.repos import check_results as check_results_repo


logger = logging.getLogger(__name__)

PERCENTILES = (50, 75, 90, 95, 99)


def percentile(sorted_values: list[int], pct: float) -> int | None:
    # Nearest-rank percentile over an ascending list.
    if not sorted_values:
        return None
    rank = max(1, math.ceil(pct / 100.0 * len(sorted_values)))
    return sorted_values[min(rank, len(sorted_values)) - 1]


def summarize(results: Iterable[Any]) -> dict[str, Any]:
    """Reduce check results to one rollup row's statistics.

    Degraded checks count as up for uptime. Response-time statistics only use
    results that recorded a response time.
    """
    counts = {"success": 0, "degraded": 0, "failure": 0}
    times: list[int] = []
    for result in results:
        if result.status == "success":
            counts["success"] += 1
        elif result.status == "degraded":
            counts["degraded"] += 1
        else:
            counts["failure"] += 1
        if result.response_time_ms is not None:
            times.append(int(result.response_time_ms))
    total = sum(counts.values())
    times.sort()
    stats: dict[str, Any] = {
        "success_count": counts["success"],
        "degraded_count": counts["degraded"],
        "failure_count": counts["failure"],
        "total_count": total,
        "uptime_percentage": (counts["success"] + counts["degraded"]) / total * 100.0 if total else None,
        "avg_response_time_ms": sum(times) / len(times) if times else None,
        "min_response_time_ms": times[0] if times else None,
        "max_response_time_ms": times[-1] if times else None,
    }
    for pct in PERCENTILES:
        stats[f"p{pct}_response_time_ms"] = percentile(times, pct)
    return stats


def _group(results: Iterable[Any]) -> dict[tuple[str, str], list[Any]]:
    grouped: dict[tuple[str, str], list[Any]] = defaultdict(list)
    for result in results:
        grouped[(result.monitor_id, result.region)].append(result)
    return grouped


def floor_hour(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def floor_day(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


async def aggregate_hour(session: AsyncSession, *, hour_start: datetime) -> int:
    # Upsert one hourly bucket per monitor and region; re-running an hour overwrites it.
    start = floor_hour(hour_start)
    results = await check_results_repo.results_in_range(session, start=start, end=start + timedelta(hours=1))
    written = 0
    for (monitor_id, region), rows in _group(results).items():
        stats = summarize(rows)
        bucket = await check_results_repo.get_hourly_bucket(session, monitor_id=monitor_id, region=region, hour=start)
        if bucket is None:
            bucket = CheckResultHourly(id=uuid4().hex, monitor_id=monitor_id, region=region, hour=start)
            session.add(bucket)
        for key, value in stats.items():
            setattr(bucket, key, value)
        written += 1
    await session.commit()
    return written


async def aggregate_day(session: AsyncSession, *, day_start: datetime) -> int:
    start = floor_day(day_start)
    results = await check_results_repo.results_in_range(session, start=start, end=start + timedelta(days=1))
    written = 0
    for (monitor_id, region), rows in _group(results).items():
        stats = summarize(rows)
        bucket = await check_results_repo.get_daily_bucket(session, monitor_id=monitor_id, region=region, date=start)
        if bucket is None:
            bucket = CheckResultDaily(id=uuid4().hex, monitor_id=monitor_id, region=region, date=start)
            session.add(bucket)
        for key, value in stats.items():
            setattr(bucket, key, value)
        written += 1
    await session.commit()
    return written


async def prune_check_results(session: AsyncSession, *, before: datetime | None = None) -> int:
    cutoff = before or datetime.now(timezone.utc) - timedelta(
        days=max(1, int(get_settings().check_results_retention_days))
    )
    deleted = await check_results_repo.prune_results(session, before=cutoff)
    await session.commit()
    if deleted:
        logger.info("check_results_pruned deleted=%s before=%s", deleted, cutoff.isoformat())
    return deleted
