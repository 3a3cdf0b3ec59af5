from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import logging
import secrets
from typing import Any
from uuid import uuid4

from fastapi import HTTPException
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.core.config import get_settings
from unistatus.domain.models import Monitor, Probe, ProbeHeartbeat, ProbePendingJob
from unistatus.persistence.repos import probes as probes_repo
from unistatus.services.monitors.checkers import CheckOutcome
from unistatus.services.monitors.runner import record_outcome
from unistatus.services.monitors.status import CHECK_STATUSES


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "usp_"
PRIVATE_REGION = "private"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def hash_probe_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_probe_token() -> tuple[str, str, str]:
    # Returns (raw, prefix, hash); only the hash and prefix are persisted.
    raw_token = f"{TOKEN_PREFIX}{secrets.token_urlsafe(32)}"
    return raw_token, raw_token[:8], hash_probe_token(raw_token)


def monitor_job_data(monitor: Monitor) -> dict[str, Any]:
    # Snapshot the monitor definition so agents never need API read access.
    return {
        "type": monitor.type,
        "url": monitor.url,
        "method": monitor.method,
        "headers": monitor.headers_json or {},
        "body": monitor.body,
        "timeout_ms": monitor.timeout_ms,
        "assertions": monitor.assertions_json or {},
        "config": monitor.config_json or {},
        "degraded_threshold_ms": monitor.degraded_threshold_ms,
    }


async def register_probe(
    session: AsyncSession,
    *,
    organization_id: str,
    name: str,
    description: str | None = None,
    region: str | None = None,
) -> tuple[Probe, str]:
    raw_token, prefix, token_hash = generate_probe_token()
    probe = Probe(
        id=uuid4().hex,
        organization_id=organization_id,
        name=name,
        description=description,
        region=region,
        status="pending",
        auth_token_hash=token_hash,
        auth_token_prefix=prefix,
    )
    session.add(probe)
    await session.commit()
    await session.refresh(probe)
    return probe, raw_token


async def regenerate_probe_token(session: AsyncSession, probe: Probe) -> str:
    raw_token, prefix, token_hash = generate_probe_token()
    probe.auth_token_hash = token_hash
    probe.auth_token_prefix = prefix
    await session.commit()
    await session.refresh(probe)
    return raw_token


async def authenticate_probe(session: AsyncSession, raw_token: str | None) -> Probe:
    # Agent tokens are opaque bearer secrets; lookups go through the stored hash only.
    if not raw_token or not raw_token.startswith(TOKEN_PREFIX):
        raise HTTPException(status_code=401, detail={"code": "PROBE_UNAUTHORIZED", "message": "Invalid probe token"})
    probe = await probes_repo.get_probe_by_token_hash(session, hash_probe_token(raw_token))
    if probe is None:
        raise HTTPException(status_code=401, detail={"code": "PROBE_UNAUTHORIZED", "message": "Invalid probe token"})
    if probe.status == "disabled":
        raise HTTPException(status_code=403, detail={"code": "PROBE_DISABLED", "message": "Probe is disabled"})
    return probe


async def record_probe_heartbeat(
    session: AsyncSession,
    *,
    probe: Probe,
    version: str | None,
    hostname: str | None,
    metrics: dict[str, Any] | None,
    now: datetime | None = None,
) -> Probe:
    current = now or _utc_now()
    session.add(ProbeHeartbeat(id=uuid4().hex, probe_id=probe.id, metrics_json=metrics, created_at=current))
    probe.status = "active"
    probe.last_heartbeat_at = current
    if version is not None:
        probe.version = version
    if hostname is not None:
        probe.hostname = hostname
    await session.commit()
    await session.refresh(probe)
    return probe


async def dispatch_to_probes(
    session: AsyncSession, monitor: Monitor, *, now: datetime | None = None
) -> tuple[int, bool]:
    """Queue pending jobs for the active probes assigned to ``monitor``.

    Only active assignments count. When one of them is exclusive, that probe
    alone gets the job and ``has_exclusive`` is true so the shared check fleet
    skips the monitor. With no active probe nothing is queued and the fleet
    keeps checking. Returns ``(dispatched_count, has_exclusive)``; the caller
    commits.
    """
    current = now or _utc_now()
    ttl = timedelta(seconds=max(1, int(get_settings().probe_job_ttl_s)))
    active = [
        (assignment, probe)
        for assignment, probe in await probes_repo.list_monitor_assignments(session, monitor.id)
        if probe.status == "active"
    ]
    exclusive = next((probe for assignment, probe in active if assignment.exclusive), None)
    targets = [exclusive] if exclusive is not None else [probe for _assignment, probe in active]
    for probe in targets:
        session.add(
            ProbePendingJob(
                id=uuid4().hex,
                probe_id=probe.id,
                monitor_id=monitor.id,
                job_data=monitor_job_data(monitor),
                status="pending",
                expires_at=current + ttl,
                created_at=current,
            )
        )
    return len(targets), exclusive is not None


async def claim_jobs(
    session: AsyncSession, *, probe: Probe, limit: int, now: datetime | None = None
) -> list[ProbePendingJob]:
    current = now or _utc_now()
    bounded = max(1, min(int(limit), int(get_settings().probe_job_claim_limit)))
    jobs = await probes_repo.claim_pending_jobs(session, probe_id=probe.id, now=current, limit=bounded)
    for job in jobs:
        job.status = "claimed"
        job.claimed_at = current
    await session.commit()
    return jobs


async def submit_job_result(
    session: AsyncSession,
    *,
    probe: Probe,
    job_id: str,
    result: dict[str, Any],
    now: datetime | None = None,
) -> dict[str, Any]:
    current = now or _utc_now()
    status = str(result.get("status") or "")
    if status not in CHECK_STATUSES:
        raise HTTPException(
            status_code=422,
            detail={"code": "INVALID_CHECK_STATUS", "message": f"Unsupported check status: {status}"},
        )
    job = await probes_repo.get_job_for_probe(session, job_id=job_id, probe_id=probe.id)
    if job is None:
        raise HTTPException(status_code=404, detail={"code": "PROBE_JOB_NOT_FOUND", "message": "Job not found"})
    if job.status != "claimed":
        raise HTTPException(
            status_code=409,
            detail={"code": "PROBE_JOB_NOT_CLAIMED", "message": f"Job is {job.status}, expected claimed"},
        )
    job.status = "completed"
    job.completed_at = current
    monitor = await session.get(Monitor, job.monitor_id)
    if monitor is None or monitor.paused:
        await session.commit()
        return {"job_id": job.id, "recorded": False}

    outcome = CheckOutcome(
        status=status,
        response_time_ms=result.get("response_time_ms"),
        status_code=result.get("status_code"),
        error_message=result.get("error_message"),
        error_code=result.get("error_code"),
        metadata=dict(result.get("metadata") or {}),
    )
    # record_outcome commits the job completion together with the result row.
    summary = await record_outcome(
        session,
        monitor=monitor,
        region=probe.region or PRIVATE_REGION,
        outcome=outcome,
        probe_id=probe.id,
        now=current,
    )
    return {"job_id": job_id, "recorded": True, **summary}


async def run_probe_health_cycle(session: AsyncSession, *, now: datetime | None = None) -> dict[str, int]:
    # Mark silent probes offline, expire stale jobs and trim heartbeat history.
    settings = get_settings()
    current = now or _utc_now()
    offline_before = current - timedelta(seconds=max(1, int(settings.probe_offline_after_s)))
    offline = await session.execute(
        update(Probe)
        .where(Probe.status == "active", Probe.last_heartbeat_at < offline_before)
        .values(status="offline")
    )
    expired = await session.execute(
        update(ProbePendingJob)
        .where(ProbePendingJob.status.in_(("pending", "claimed")), ProbePendingJob.expires_at < current)
        .values(status="expired")
    )
    purged = await session.execute(
        delete(ProbePendingJob).where(
            ProbePendingJob.status.in_(("expired", "completed")),
            ProbePendingJob.expires_at < current - timedelta(days=1),
        )
    )
    heartbeats = await session.execute(
        delete(ProbeHeartbeat).where(
            ProbeHeartbeat.created_at < current - timedelta(days=max(1, int(settings.probe_heartbeat_retention_days)))
        )
    )
    await session.commit()
    summary = {
        "offline": int(offline.rowcount or 0),
        "expired": int(expired.rowcount or 0),
        "purged": int(purged.rowcount or 0),
        "heartbeats_pruned": int(heartbeats.rowcount or 0),
    }
    if summary["offline"] or summary["expired"]:
        logger.info("probe_health_cycle offline=%s expired=%s", summary["offline"], summary["expired"])
    return summary
