from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, case, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import CheckResult, CheckResultDaily, CheckResultHourly


async def list_results(
    session: AsyncSession,
    *,
    monitor_id: str,
    status: str | None = None,
    region: str | None = None,
    since: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[CheckResult]:
    stmt = select(CheckResult).where(CheckResult.monitor_id == monitor_id)
    if status:
        stmt = stmt.where(CheckResult.status == status)
    if region:
        stmt = stmt.where(CheckResult.region == region)
    if since:
        stmt = stmt.where(CheckResult.created_at >= since)
    stmt = stmt.order_by(CheckResult.created_at.desc(), CheckResult.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def recent_statuses(session: AsyncSession, *, monitor_id: str, limit: int) -> list[str]:
    # Newest first; the evaluator walks this list from the latest check backwards.
    result = await session.execute(
        select(CheckResult.status)
        .where(CheckResult.monitor_id == monitor_id)
        .order_by(CheckResult.created_at.desc(), CheckResult.id.desc())
        .limit(limit)
    )
    return [row[0] for row in result.all()]


async def statuses_since(session: AsyncSession, *, monitor_id: str, since: datetime) -> list[str]:
    result = await session.execute(
        select(CheckResult.status)
        .where(CheckResult.monitor_id == monitor_id, CheckResult.created_at >= since)
        .order_by(CheckResult.created_at.desc())
    )
    return [row[0] for row in result.all()]


async def status_counts(
    session: AsyncSession, *, monitor_id: str, since: datetime
) -> tuple[dict[str, int], float | None]:
    # Return per-status counts plus the average response time across the range.
    result = await session.execute(
        select(CheckResult.status, func.count(), func.avg(CheckResult.response_time_ms))
        .where(CheckResult.monitor_id == monitor_id, CheckResult.created_at >= since)
        .group_by(CheckResult.status)
    )
    counts: dict[str, int] = {}
    weighted_total = 0.0
    weighted_count = 0
    for status, count, avg_ms in result.all():
        counts[status] = int(count)
        if avg_ms is not None:
            weighted_total += float(avg_ms) * int(count)
            weighted_count += int(count)
    average = weighted_total / weighted_count if weighted_count else None
    return counts, average


async def results_in_range(
    session: AsyncSession, *, start: datetime, end: datetime
) -> list[CheckResult]:
    result = await session.execute(
        select(CheckResult)
        .where(CheckResult.created_at >= start, CheckResult.created_at < end)
        .order_by(CheckResult.monitor_id, CheckResult.region)
    )
    return list(result.scalars().all())


async def get_hourly_bucket(
    session: AsyncSession, *, monitor_id: str, region: str, hour: datetime
) -> CheckResultHourly | None:
    result = await session.execute(
        select(CheckResultHourly).where(
            CheckResultHourly.monitor_id == monitor_id,
            CheckResultHourly.region == region,
            CheckResultHourly.hour == hour,
        )
    )
    return result.scalar_one_or_none()


async def get_daily_bucket(
    session: AsyncSession, *, monitor_id: str, region: str, date: datetime
) -> CheckResultDaily | None:
    result = await session.execute(
        select(CheckResultDaily).where(
            CheckResultDaily.monitor_id == monitor_id,
            CheckResultDaily.region == region,
            CheckResultDaily.date == date,
        )
    )
    return result.scalar_one_or_none()


async def daily_uptime(
    session: AsyncSession, *, monitor_ids: list[str], since: datetime
) -> dict[str, tuple[int, int, float, int, datetime | None]]:
    # Per monitor: (up, total, response_ms_sum, response_count, last_date) over daily rollups.
    if not monitor_ids:
        return {}
    timed = CheckResultDaily.avg_response_time_ms.is_not(None)
    result = await session.execute(
        select(
            CheckResultDaily.monitor_id,
            func.sum(CheckResultDaily.success_count + CheckResultDaily.degraded_count),
            func.sum(CheckResultDaily.total_count),
            func.sum(case((timed, CheckResultDaily.avg_response_time_ms * CheckResultDaily.total_count), else_=0)),
            func.sum(case((timed, CheckResultDaily.total_count), else_=0)),
            func.max(CheckResultDaily.date),
        )
        .where(CheckResultDaily.monitor_id.in_(monitor_ids), CheckResultDaily.date >= since)
        .group_by(CheckResultDaily.monitor_id)
    )
    return {
        monitor_id: (int(up or 0), int(total or 0), float(ms_sum or 0), int(timed_count or 0), last_date)
        for monitor_id, up, total, ms_sum, timed_count, last_date in result.all()
    }


async def raw_uptime(
    session: AsyncSession, *, cutoffs: dict[str, datetime]
) -> dict[str, tuple[int, int, float, int]]:
    # Per monitor: (up, total, response_ms_sum, response_count) over raw results newer than its cutoff.
    if not cutoffs:
        return {}
    result = await session.execute(
        select(
            CheckResult.monitor_id,
            func.sum(case((CheckResult.status.in_(("success", "degraded")), 1), else_=0)),
            func.count(CheckResult.id),
            func.sum(CheckResult.response_time_ms),
            func.count(CheckResult.response_time_ms),
        )
        .where(
            or_(
                *[
                    and_(CheckResult.monitor_id == monitor_id, CheckResult.created_at >= cutoff)
                    for monitor_id, cutoff in cutoffs.items()
                ]
            )
        )
        .group_by(CheckResult.monitor_id)
    )
    return {
        monitor_id: (int(up or 0), int(total or 0), float(ms_sum or 0), int(timed_count or 0))
        for monitor_id, up, total, ms_sum, timed_count in result.all()
    }


async def prune_results(session: AsyncSession, *, before: datetime) -> int:
    result = await session.execute(delete(CheckResult).where(CheckResult.created_at < before))
    return int(result.rowcount or 0)
