from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import HeartbeatPing, Monitor


async def get_monitor(session: AsyncSession, monitor_id: str) -> Monitor | None:
    result = await session.execute(select(Monitor).where(Monitor.id == monitor_id))
    return result.scalar_one_or_none()


async def get_monitor_for_org(
    session: AsyncSession, monitor_id: str, organization_id: str
) -> Monitor | None:
    # Ensure organization scoping to prevent cross-tenant monitor access.
    result = await session.execute(
        select(Monitor).where(Monitor.id == monitor_id, Monitor.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def get_monitor_by_heartbeat_token(session: AsyncSession, token: str) -> Monitor | None:
    result = await session.execute(
        select(Monitor).where(Monitor.heartbeat_token == token, Monitor.type == "heartbeat")
    )
    return result.scalar_one_or_none()


async def list_monitors(
    session: AsyncSession,
    *,
    organization_id: str,
    status: str | None = None,
    monitor_type: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Monitor]:
    stmt = select(Monitor).where(Monitor.organization_id == organization_id)
    if status:
        stmt = stmt.where(Monitor.status == status)
    if monitor_type:
        stmt = stmt.where(Monitor.type == monitor_type)
    stmt = stmt.order_by(Monitor.created_at, Monitor.id).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_monitors_by_ids(
    session: AsyncSession, *, organization_id: str, monitor_ids: list[str]
) -> list[Monitor]:
    if not monitor_ids:
        return []
    result = await session.execute(
        select(Monitor).where(Monitor.organization_id == organization_id, Monitor.id.in_(monitor_ids))
    )
    return list(result.scalars().all())


async def count_monitors(session: AsyncSession, *, organization_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(Monitor).where(Monitor.organization_id == organization_id)
    )
    return int(result.scalar_one())


async def list_due_monitors(session: AsyncSession, *, now: datetime, limit: int) -> list[Monitor]:
    # Lock due rows so concurrent schedulers never enqueue the same check twice.
    result = await session.execute(
        select(Monitor)
        .where(
            Monitor.paused.is_(False),
            or_(Monitor.next_check_at.is_(None), Monitor.next_check_at <= now),
        )
        .order_by(Monitor.next_check_at.asc().nulls_first())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    return list(result.scalars().all())


async def restore_schedule(
    session: AsyncSession,
    monitor_id: str,
    *,
    advanced_to: datetime,
    next_check_at: datetime | None,
    last_checked_at: datetime | None,
) -> bool:
    # Only undo our own advance; a later cycle may already own the row.
    result = await session.execute(
        update(Monitor)
        .where(Monitor.id == monitor_id, Monitor.next_check_at == advanced_to)
        .values(next_check_at=next_check_at, last_checked_at=last_checked_at)
    )
    return bool(result.rowcount)


async def get_latest_ping(session: AsyncSession, monitor_id: str) -> HeartbeatPing | None:
    result = await session.execute(
        select(HeartbeatPing)
        .where(HeartbeatPing.monitor_id == monitor_id)
        .order_by(HeartbeatPing.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
