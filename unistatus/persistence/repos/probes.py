from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import Probe, ProbeAssignment, ProbePendingJob


async def get_probe_for_org(session: AsyncSession, probe_id: str, organization_id: str) -> Probe | None:
    result = await session.execute(
        select(Probe).where(Probe.id == probe_id, Probe.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def get_probe_by_token_hash(session: AsyncSession, token_hash: str) -> Probe | None:
    result = await session.execute(select(Probe).where(Probe.auth_token_hash == token_hash))
    return result.scalar_one_or_none()


async def list_probes(
    session: AsyncSession, *, organization_id: str, offset: int = 0, limit: int = 50
) -> list[Probe]:
    result = await session.execute(
        select(Probe)
        .where(Probe.organization_id == organization_id)
        .order_by(Probe.created_at, Probe.id)
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_assignments(session: AsyncSession, probe_id: str) -> list[ProbeAssignment]:
    result = await session.execute(
        select(ProbeAssignment)
        .where(ProbeAssignment.probe_id == probe_id)
        .order_by(ProbeAssignment.priority, ProbeAssignment.created_at)
    )
    return list(result.scalars().all())


async def get_assignment(session: AsyncSession, *, probe_id: str, monitor_id: str) -> ProbeAssignment | None:
    result = await session.execute(
        select(ProbeAssignment).where(
            ProbeAssignment.probe_id == probe_id, ProbeAssignment.monitor_id == monitor_id
        )
    )
    return result.scalar_one_or_none()


async def list_monitor_assignments(
    session: AsyncSession, monitor_id: str
) -> list[tuple[ProbeAssignment, Probe]]:
    result = await session.execute(
        select(ProbeAssignment, Probe)
        .join(Probe, Probe.id == ProbeAssignment.probe_id)
        .where(ProbeAssignment.monitor_id == monitor_id)
        .order_by(ProbeAssignment.priority)
    )
    return [(row[0], row[1]) for row in result.all()]


async def claim_pending_jobs(
    session: AsyncSession, *, probe_id: str, now: datetime, limit: int
) -> list[ProbePendingJob]:
    # SKIP LOCKED lets several agent workers poll the same probe without double claims.
    result = await session.execute(
        select(ProbePendingJob)
        .where(
            ProbePendingJob.probe_id == probe_id,
            ProbePendingJob.status == "pending",
            ProbePendingJob.expires_at > now,
        )
        .order_by(ProbePendingJob.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    return list(result.scalars().all())


async def get_job_for_probe(session: AsyncSession, *, job_id: str, probe_id: str) -> ProbePendingJob | None:
    result = await session.execute(
        select(ProbePendingJob)
        .where(ProbePendingJob.id == job_id, ProbePendingJob.probe_id == probe_id)
        .with_for_update()
    )
    return result.scalar_one_or_none()
