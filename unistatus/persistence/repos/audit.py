from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import AuditEvent


async def list_events(
    session: AsyncSession,
    *,
    organization_id: str,
    event_type: str | None = None,
    outcome: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    # Scope all audit queries to an organization to prevent cross-tenant leakage.
    stmt = select(AuditEvent).where(AuditEvent.organization_id == organization_id)
    if event_type:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    if outcome:
        stmt = stmt.where(AuditEvent.outcome == outcome)
    if resource_type:
        stmt = stmt.where(AuditEvent.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditEvent.resource_id == resource_id)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_event_by_id(
    session: AsyncSession,
    *,
    organization_id: str,
    event_id: int,
) -> AuditEvent | None:
    result = await session.execute(
        select(AuditEvent).where(AuditEvent.id == event_id, AuditEvent.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def prune_events(session: AsyncSession, *, before: datetime) -> int:
    # Delete events past retention; callers own the commit.
    result = await session.execute(delete(AuditEvent).where(AuditEvent.occurred_at < before))
    return int(result.rowcount or 0)
