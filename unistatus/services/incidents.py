from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import Incident, IncidentUpdate
from unistatus.services.notifications.subscribers import notify_incident_subscribers


INCIDENT_STATUSES = ("investigating", "identified", "monitoring", "resolved")
INCIDENT_SEVERITIES = ("minor", "major", "critical")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def apply_status(incident: Incident, status: str, *, now: datetime) -> None:
    # Resolving stamps resolved_at once; reopening clears it.
    if status not in INCIDENT_STATUSES:
        raise ValueError(f"Unsupported incident status: {status}")
    incident.status = status
    if status == "resolved":
        incident.resolved_at = incident.resolved_at or now
    else:
        incident.resolved_at = None


async def create_incident(
    session: AsyncSession,
    *,
    organization_id: str,
    title: str,
    status: str,
    severity: str,
    message: str | None,
    affected_monitors: list[str],
    created_by: str | None,
    now: datetime | None = None,
) -> Incident:
    current = now or _utc_now()
    if severity not in INCIDENT_SEVERITIES:
        raise ValueError(f"Unsupported incident severity: {severity}")
    incident = Incident(
        id=uuid4().hex,
        organization_id=organization_id,
        title=title,
        severity=severity,
        message=message,
        affected_monitors_json=list(dict.fromkeys(affected_monitors)),
        started_at=current,
        created_by=created_by,
    )
    apply_status(incident, status, now=current)
    session.add(incident)
    if message:
        # The opening message doubles as the first timeline entry.
        session.add(
            IncidentUpdate(
                id=uuid4().hex,
                incident_id=incident.id,
                status=status,
                message=message,
                created_by=created_by,
                created_at=current,
            )
        )
    await session.commit()
    await session.refresh(incident)
    await notify_incident_subscribers(session, incident, status=incident.status, message=message)
    return incident


async def post_incident_update(
    session: AsyncSession,
    *,
    incident: Incident,
    status: str,
    message: str,
    created_by: str | None,
    now: datetime | None = None,
) -> IncidentUpdate:
    current = now or _utc_now()
    apply_status(incident, status, now=current)
    update = IncidentUpdate(
        id=uuid4().hex,
        incident_id=incident.id,
        status=status,
        message=message,
        created_by=created_by,
        created_at=current,
    )
    session.add(update)
    await session.commit()
    await session.refresh(update)
    await notify_incident_subscribers(session, incident, status=status, message=message)
    return update
