from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import get_db
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, success_response
from unistatus.domain.models import Probe
from unistatus.services.probes import authenticate_probe, claim_jobs, record_probe_heartbeat, submit_job_result


router = APIRouter(prefix="/agent", tags=["agent"], responses=DEFAULT_ERROR_RESPONSES)


class AgentHeartbeatRequest(BaseModel):
    version: str | None = Field(default=None, max_length=64)
    hostname: str | None = Field(default=None, max_length=255)
    metrics: dict[str, Any] | None = None


class AgentHeartbeatResponse(BaseModel):
    probe_id: str
    status: str


class AgentJob(BaseModel):
    id: str
    monitor_id: str
    job_data: dict[str, Any]


class AgentJobsResponse(BaseModel):
    jobs: list[AgentJob]


class AgentJobResultRequest(BaseModel):
    status: str
    response_time_ms: int | None = Field(default=None, ge=0)
    status_code: int | None = None
    error_message: str | None = Field(default=None, max_length=4000)
    error_code: str | None = Field(default=None, max_length=64)
    metadata: dict[str, Any] | None = None


async def get_current_probe(request: Request, db: AsyncSession = Depends(get_db)) -> Probe:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    return await authenticate_probe(db, token.strip() if scheme.lower() == "bearer" else None)


@router.post("/heartbeat", response_model=SuccessEnvelope[AgentHeartbeatResponse] | AgentHeartbeatResponse)
async def heartbeat(
    payload: AgentHeartbeatRequest,
    request: Request,
    probe: Probe = Depends(get_current_probe),
    db: AsyncSession = Depends(get_db),
) -> dict:
    probe = await record_probe_heartbeat(
        db, probe=probe, version=payload.version, hostname=payload.hostname, metrics=payload.metrics
    )
    return success_response(request=request, data=AgentHeartbeatResponse(probe_id=probe.id, status=probe.status))


@router.get("/jobs", response_model=SuccessEnvelope[AgentJobsResponse] | AgentJobsResponse)
async def poll_jobs(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
    probe: Probe = Depends(get_current_probe),
    db: AsyncSession = Depends(get_db),
) -> dict:
    jobs = await claim_jobs(db, probe=probe, limit=limit)
    data = AgentJobsResponse(
        jobs=[AgentJob(id=job.id, monitor_id=job.monitor_id, job_data=job.job_data) for job in jobs]
    )
    return success_response(request=request, data=data)


@router.post("/jobs/{job_id}/result", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def submit_result(
    job_id: str,
    payload: AgentJobResultRequest,
    request: Request,
    probe: Probe = Depends(get_current_probe),
    db: AsyncSession = Depends(get_db),
) -> dict:
    summary = await submit_job_result(db, probe=probe, job_id=job_id, result=payload.model_dump())
    return success_response(request=request, data=summary)
