from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import Incident, IncidentUpdate, MaintenanceWindow


async def get_incident_for_org(session: AsyncSession, incident_id: str, organization_id: str) -> Incident | None:
    result = await session.execute(
        select(Incident).where(Incident.id == incident_id, Incident.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def list_incidents(
    session: AsyncSession,
    *,
    organization_id: str,
    status: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Incident]:
    stmt = select(Incident).where(Incident.organization_id == organization_id)
    if status:
        stmt = stmt.where(Incident.status == status)
    stmt = stmt.order_by(Incident.started_at.desc(), Incident.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_unresolved_incidents(session: AsyncSession, *, organization_id: str) -> list[Incident]:
    result = await session.execute(
        select(Incident)
        .where(Incident.organization_id == organization_id, Incident.status != "resolved")
        .order_by(Incident.started_at.desc())
    )
    return list(result.scalars().all())


async def list_updates(session: AsyncSession, incident_id: str) -> list[IncidentUpdate]:
    result = await session.execute(
        select(IncidentUpdate)
        .where(IncidentUpdate.incident_id == incident_id)
        .order_by(IncidentUpdate.created_at.desc())
    )
    return list(result.scalars().all())


async def get_window_for_org(
    session: AsyncSession, window_id: str, organization_id: str
) -> MaintenanceWindow | None:
    result = await session.execute(
        select(MaintenanceWindow).where(
            MaintenanceWindow.id == window_id, MaintenanceWindow.organization_id == organization_id
        )
    )
    return result.scalar_one_or_none()


async def list_windows(
    session: AsyncSession, *, organization_id: str, offset: int = 0, limit: int = 50
) -> list[MaintenanceWindow]:
    result = await session.execute(
        select(MaintenanceWindow)
        .where(MaintenanceWindow.organization_id == organization_id)
        .order_by(MaintenanceWindow.starts_at.desc(), MaintenanceWindow.id)
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_candidate_windows(
    session: AsyncSession, *, now: datetime, organization_id: str | None = None
) -> list[MaintenanceWindow]:
    # Active windows that have started; recurrence is resolved in Python.
    stmt = select(MaintenanceWindow).where(
        MaintenanceWindow.active.is_(True), MaintenanceWindow.starts_at <= now
    )
    if organization_id is not None:
        stmt = stmt.where(MaintenanceWindow.organization_id == organization_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_upcoming_windows(
    session: AsyncSession, *, organization_id: str, now: datetime
) -> list[MaintenanceWindow]:
    result = await session.execute(
        select(MaintenanceWindow)
        .where(
            MaintenanceWindow.organization_id == organization_id,
            MaintenanceWindow.active.is_(True),
            MaintenanceWindow.starts_at > now,
        )
        .order_by(MaintenanceWindow.starts_at)
    )
    return list(result.scalars().all())
