from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Pagination, Principal, get_db, pagination, require_role
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, page_slice, success_response
from unistatus.domain.models import Incident, IncidentUpdate
from unistatus.persistence.repos import incidents as incidents_repo
from unistatus.persistence.repos import monitors as monitors_repo
from unistatus.services.audit import record_request_event
from unistatus.services.incidents import (
    INCIDENT_SEVERITIES,
    INCIDENT_STATUSES,
    apply_status,
    create_incident,
    post_incident_update,
)


router = APIRouter(prefix="/incidents", tags=["incidents"], responses=DEFAULT_ERROR_RESPONSES)

_STATUS_PATTERN = "^(" + "|".join(INCIDENT_STATUSES) + ")$"
_SEVERITY_PATTERN = "^(" + "|".join(INCIDENT_SEVERITIES) + ")$"


class IncidentCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    status: str = Field(default="investigating", pattern=_STATUS_PATTERN)
    severity: str = Field(default="minor", pattern=_SEVERITY_PATTERN)
    message: str | None = Field(default=None, max_length=10000)
    affected_monitors: list[str] = Field(default_factory=list)


class IncidentPatchRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=300)
    status: str | None = Field(default=None, pattern=_STATUS_PATTERN)
    severity: str | None = Field(default=None, pattern=_SEVERITY_PATTERN)
    message: str | None = Field(default=None, max_length=10000)
    affected_monitors: list[str] | None = None


class IncidentUpdateRequest(BaseModel):
    status: str = Field(pattern=_STATUS_PATTERN)
    message: str = Field(min_length=1, max_length=10000)


class IncidentUpdateResponse(BaseModel):
    id: str
    status: str
    message: str
    created_by: str | None
    created_at: datetime


class IncidentResponse(BaseModel):
    id: str
    title: str
    status: str
    severity: str
    message: str | None
    affected_monitors: list[str]
    started_at: datetime
    resolved_at: datetime | None
    created_by: str | None
    updates: list[IncidentUpdateResponse] | None = None


def _update_payload(row: IncidentUpdate) -> IncidentUpdateResponse:
    return IncidentUpdateResponse(
        id=row.id, status=row.status, message=row.message, created_by=row.created_by, created_at=row.created_at
    )


def _incident_payload(row: Incident, updates: list[IncidentUpdate] | None = None) -> IncidentResponse:
    return IncidentResponse(
        id=row.id,
        title=row.title,
        status=row.status,
        severity=row.severity,
        message=row.message,
        affected_monitors=list(row.affected_monitors_json or []),
        started_at=row.started_at,
        resolved_at=row.resolved_at,
        created_by=row.created_by,
        updates=[_update_payload(item) for item in updates] if updates is not None else None,
    )


async def _validate_monitors(db: AsyncSession, principal: Principal, monitor_ids: list[str]) -> list[str]:
    unique_ids = list(dict.fromkeys(monitor_ids))
    found = await monitors_repo.list_monitors_by_ids(
        db, organization_id=principal.organization_id, monitor_ids=unique_ids
    )
    missing = sorted(set(unique_ids) - {monitor.id for monitor in found})
    if missing:
        raise HTTPException(
            status_code=422,
            detail={"code": "UNKNOWN_MONITOR", "message": "Affected monitors not found", "monitor_ids": missing},
        )
    return unique_ids


async def _load_incident(db: AsyncSession, incident_id: str, principal: Principal) -> Incident:
    incident = await incidents_repo.get_incident_for_org(db, incident_id, principal.organization_id)
    if incident is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Incident not found"})
    return incident


@router.get("", response_model=SuccessEnvelope[list[IncidentResponse]] | list[IncidentResponse])
async def list_incidents(
    request: Request,
    status: str | None = Query(default=None, pattern=_STATUS_PATTERN),
    page: Pagination = Depends(pagination),
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await incidents_repo.list_incidents(
        db,
        organization_id=principal.organization_id,
        status=status,
        offset=page.offset,
        limit=page.limit + 1,
    )
    rows, next_offset = page_slice(rows, offset=page.offset, limit=page.limit)
    return success_response(request=request, data=[_incident_payload(row) for row in rows], next_offset=next_offset)


@router.post("", status_code=201, response_model=SuccessEnvelope[IncidentResponse] | IncidentResponse)
async def open_incident(
    payload: IncidentCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    affected = await _validate_monitors(db, principal, payload.affected_monitors)
    try:
        incident = await create_incident(
            db,
            organization_id=principal.organization_id,
            title=payload.title,
            status=payload.status,
            severity=payload.severity,
            message=payload.message,
            affected_monitors=affected,
            created_by=principal.subject_id,
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while creating incident") from exc
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="incident.created",
        resource_type="incident",
        resource_id=incident.id,
        metadata={"status": incident.status, "severity": incident.severity},
    )
    updates = await incidents_repo.list_updates(db, incident.id)
    return success_response(request=request, data=_incident_payload(incident, updates))


@router.get("/{incident_id}", response_model=SuccessEnvelope[IncidentResponse] | IncidentResponse)
async def get_incident(
    incident_id: str,
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    incident = await _load_incident(db, incident_id, principal)
    updates = await incidents_repo.list_updates(db, incident.id)
    return success_response(request=request, data=_incident_payload(incident, updates))


@router.patch("/{incident_id}", response_model=SuccessEnvelope[IncidentResponse] | IncidentResponse)
async def patch_incident(
    incident_id: str,
    payload: IncidentPatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    incident = await _load_incident(db, incident_id, principal)
    changes = payload.model_dump(exclude_unset=True)
    if payload.title is not None:
        incident.title = payload.title
    if payload.severity is not None:
        incident.severity = payload.severity
    if "message" in changes:
        incident.message = payload.message
    if payload.affected_monitors is not None:
        incident.affected_monitors_json = await _validate_monitors(db, principal, payload.affected_monitors)
    if payload.status is not None:
        apply_status(incident, payload.status, now=datetime.now(timezone.utc))
    try:
        await db.commit()
        await db.refresh(incident)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating incident") from exc
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="incident.updated",
        resource_type="incident",
        resource_id=incident.id,
        metadata={"fields": sorted(changes.keys())},
    )
    return success_response(request=request, data=_incident_payload(incident))


@router.delete("/{incident_id}", status_code=204)
async def delete_incident(
    incident_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    incident = await _load_incident(db, incident_id, principal)
    await db.delete(incident)
    await db.commit()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="incident.deleted",
        resource_type="incident",
        resource_id=incident_id,
    )
    return None


@router.get(
    "/{incident_id}/updates",
    response_model=SuccessEnvelope[list[IncidentUpdateResponse]] | list[IncidentUpdateResponse],
)
async def list_incident_updates(
    incident_id: str,
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    incident = await _load_incident(db, incident_id, principal)
    updates = await incidents_repo.list_updates(db, incident.id)
    return success_response(request=request, data=[_update_payload(item) for item in updates])


@router.post(
    "/{incident_id}/updates",
    status_code=201,
    response_model=SuccessEnvelope[IncidentUpdateResponse] | IncidentUpdateResponse,
)
async def add_incident_update(
    incident_id: str,
    payload: IncidentUpdateRequest,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    incident = await _load_incident(db, incident_id, principal)
    try:
        update = await post_incident_update(
            db,
            incident=incident,
            status=payload.status,
            message=payload.message,
            created_by=principal.subject_id,
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while posting incident update") from exc
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="incident.resolved" if payload.status == "resolved" else "incident.update_posted",
        resource_type="incident",
        resource_id=incident.id,
        metadata={"status": payload.status},
    )
    return success_response(request=request, data=_update_payload(update))
