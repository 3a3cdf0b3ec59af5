from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Pagination, Principal, get_db, pagination, require_role
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, page_slice, success_response
from unistatus.domain.models import Probe, ProbeAssignment
from unistatus.persistence.repos import monitors as monitors_repo
from unistatus.persistence.repos import probes as probes_repo
from unistatus.services.audit import record_request_event
from unistatus.services.probes import regenerate_probe_token, register_probe


router = APIRouter(prefix="/probes", tags=["probes"], responses=DEFAULT_ERROR_RESPONSES)


class ProbeCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    region: str | None = Field(default=None, max_length=64)


class ProbePatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    region: str | None = Field(default=None, max_length=64)
    metadata: dict[str, Any] | None = None


class ProbeResponse(BaseModel):
    id: str
    name: str
    description: str | None
    region: str | None
    status: str
    token_prefix: str
    version: str | None
    hostname: str | None
    last_heartbeat_at: datetime | None
    metadata: dict[str, Any] | None
    created_at: datetime


class ProbeTokenResponse(BaseModel):
    probe: ProbeResponse
    token: str


class AssignmentRequest(BaseModel):
    monitor_id: str
    priority: int = Field(default=1, ge=1, le=100)
    exclusive: bool = False


class AssignmentResponse(BaseModel):
    id: str
    probe_id: str
    monitor_id: str
    priority: int
    exclusive: bool


def _probe_payload(probe: Probe) -> ProbeResponse:
    return ProbeResponse(
        id=probe.id,
        name=probe.name,
        description=probe.description,
        region=probe.region,
        status=probe.status,
        token_prefix=probe.auth_token_prefix,
        version=probe.version,
        hostname=probe.hostname,
        last_heartbeat_at=probe.last_heartbeat_at,
        metadata=probe.metadata_json,
        created_at=probe.created_at,
    )


def _assignment_payload(row: ProbeAssignment) -> AssignmentResponse:
    return AssignmentResponse(
        id=row.id, probe_id=row.probe_id, monitor_id=row.monitor_id, priority=row.priority, exclusive=row.exclusive
    )


async def _load_probe(db: AsyncSession, probe_id: str, principal: Principal) -> Probe:
    probe = await probes_repo.get_probe_for_org(db, probe_id, principal.organization_id)
    if probe is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Probe not found"})
    return probe


async def _commit(db: AsyncSession, row: Any, action: str) -> None:
    try:
        await db.commit()
        await db.refresh(row)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail=f"Database error while {action}") from exc


async def _audit(request: Request, db: AsyncSession, principal: Principal, event_type: str, probe_id: str, **meta) -> None:
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type=event_type,
        resource_type="probe",
        resource_id=probe_id,
        metadata=meta or None,
    )


@router.get("", response_model=SuccessEnvelope[list[ProbeResponse]] | list[ProbeResponse])
async def list_probes(
    request: Request,
    page: Pagination = Depends(pagination),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await probes_repo.list_probes(
        db, organization_id=principal.organization_id, offset=page.offset, limit=page.limit + 1
    )
    rows, next_offset = page_slice(rows, offset=page.offset, limit=page.limit)
    return success_response(request=request, data=[_probe_payload(row) for row in rows], next_offset=next_offset)


@router.post("", status_code=201, response_model=SuccessEnvelope[ProbeTokenResponse] | ProbeTokenResponse)
async def create_probe(
    payload: ProbeCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        probe, raw_token = await register_probe(
            db,
            organization_id=principal.organization_id,
            name=payload.name,
            description=payload.description,
            region=payload.region,
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while registering probe") from exc
    await _audit(request, db, principal, "probe.registered", probe.id, region=probe.region)
    # The raw token is shown exactly once.
    return success_response(request=request, data=ProbeTokenResponse(probe=_probe_payload(probe), token=raw_token))


@router.get("/{probe_id}", response_model=SuccessEnvelope[ProbeResponse] | ProbeResponse)
async def get_probe(
    probe_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    probe = await _load_probe(db, probe_id, principal)
    return success_response(request=request, data=_probe_payload(probe))


@router.patch("/{probe_id}", response_model=SuccessEnvelope[ProbeResponse] | ProbeResponse)
async def patch_probe(
    probe_id: str,
    payload: ProbePatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    probe = await _load_probe(db, probe_id, principal)
    changes = payload.model_dump(exclude_unset=True)
    if payload.name is not None:
        probe.name = payload.name
    if "description" in changes:
        probe.description = payload.description
    if "region" in changes:
        probe.region = payload.region
    if "metadata" in changes:
        probe.metadata_json = payload.metadata
    await _commit(db, probe, "updating probe")
    await _audit(request, db, principal, "probe.updated", probe.id, fields=sorted(changes.keys()))
    return success_response(request=request, data=_probe_payload(probe))


@router.post("/{probe_id}/disable", response_model=SuccessEnvelope[ProbeResponse] | ProbeResponse)
async def disable_probe(
    probe_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    probe = await _load_probe(db, probe_id, principal)
    probe.status = "disabled"
    await _commit(db, probe, "disabling probe")
    await _audit(request, db, principal, "probe.disabled", probe.id)
    return success_response(request=request, data=_probe_payload(probe))


@router.post("/{probe_id}/enable", response_model=SuccessEnvelope[ProbeResponse] | ProbeResponse)
async def enable_probe(
    probe_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    probe = await _load_probe(db, probe_id, principal)
    # Back to pending until the agent's next heartbeat proves it alive.
    if probe.status == "disabled":
        probe.status = "pending"
    await _commit(db, probe, "enabling probe")
    await _audit(request, db, principal, "probe.enabled", probe.id)
    return success_response(request=request, data=_probe_payload(probe))


@router.delete("/{probe_id}", status_code=204)
async def delete_probe(
    probe_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    probe = await _load_probe(db, probe_id, principal)
    await db.delete(probe)
    await db.commit()
    await _audit(request, db, principal, "probe.deleted", probe_id)
    return None


@router.post(
    "/{probe_id}/regenerate-token",
    response_model=SuccessEnvelope[ProbeTokenResponse] | ProbeTokenResponse,
)
async def regenerate_token(
    probe_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    probe = await _load_probe(db, probe_id, principal)
    raw_token = await regenerate_probe_token(db, probe)
    await _audit(request, db, principal, "probe.token_regenerated", probe.id)
    return success_response(request=request, data=ProbeTokenResponse(probe=_probe_payload(probe), token=raw_token))


@router.get(
    "/{probe_id}/assignments",
    response_model=SuccessEnvelope[list[AssignmentResponse]] | list[AssignmentResponse],
)
async def list_assignments(
    probe_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    probe = await _load_probe(db, probe_id, principal)
    rows = await probes_repo.list_assignments(db, probe.id)
    return success_response(request=request, data=[_assignment_payload(row) for row in rows])


@router.post(
    "/{probe_id}/assignments",
    status_code=201,
    response_model=SuccessEnvelope[AssignmentResponse] | AssignmentResponse,
)
async def assign_monitor(
    probe_id: str,
    payload: AssignmentRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    probe = await _load_probe(db, probe_id, principal)
    monitor = await monitors_repo.get_monitor_for_org(db, payload.monitor_id, principal.organization_id)
    if monitor is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Monitor not found"})
    assignment = ProbeAssignment(
        id=uuid4().hex,
        probe_id=probe.id,
        monitor_id=monitor.id,
        priority=payload.priority,
        exclusive=payload.exclusive,
    )
    db.add(assignment)
    try:
        await db.commit()
        await db.refresh(assignment)
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(
            status_code=409,
            detail={"code": "ASSIGNMENT_EXISTS", "message": "Monitor is already assigned to this probe"},
        ) from exc
    await _audit(request, db, principal, "probe.monitor_assigned", probe.id, monitor_id=monitor.id)
    return success_response(request=request, data=_assignment_payload(assignment))


@router.delete("/{probe_id}/assignments/{monitor_id}", status_code=204)
async def unassign_monitor(
    probe_id: str,
    monitor_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    probe = await _load_probe(db, probe_id, principal)
    assignment = await probes_repo.get_assignment(db, probe_id=probe.id, monitor_id=monitor_id)
    if assignment is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Assignment not found"})
    await db.delete(assignment)
    await db.commit()
    await _audit(request, db, principal, "probe.monitor_unassigned", probe.id, monitor_id=monitor_id)
    return None
