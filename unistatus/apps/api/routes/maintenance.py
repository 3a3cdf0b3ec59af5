from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Pagination, Principal, get_db, pagination, require_role
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, page_slice, success_response
from unistatus.domain.models import MaintenanceWindow
from unistatus.persistence.repos import incidents as incidents_repo
from unistatus.persistence.repos import monitors as monitors_repo
from unistatus.services.audit import record_request_event
from unistatus.services.maintenance import RECURRENCE_TYPES, window_is_active


router = APIRouter(prefix="/maintenance-windows", tags=["maintenance"], responses=DEFAULT_ERROR_RESPONSES)


class Recurrence(BaseModel):
    type: str = Field(default="none", pattern="^(" + "|".join(RECURRENCE_TYPES) + ")$")
    interval: int = Field(default=1, ge=1, le=365)
    daysOfWeek: list[int] | None = None
    dayOfMonth: int | None = Field(default=None, ge=1, le=31)
    endDate: datetime | None = None


class MaintenanceWindowCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    affected_monitors: list[str] = Field(default_factory=list)
    starts_at: datetime
    ends_at: datetime
    timezone: str = "UTC"
    recurrence: Recurrence = Field(default_factory=Recurrence)
    active: bool = True


class MaintenanceWindowPatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=5000)
    affected_monitors: list[str] | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    timezone: str | None = None
    recurrence: Recurrence | None = None
    active: bool | None = None


class MaintenanceWindowResponse(BaseModel):
    id: str
    name: str
    description: str | None
    affected_monitors: list[str]
    starts_at: datetime
    ends_at: datetime
    timezone: str
    recurrence: dict[str, Any]
    active: bool
    in_progress: bool
    created_by: str | None


def _window_payload(row: MaintenanceWindow, now: datetime) -> MaintenanceWindowResponse:
    return MaintenanceWindowResponse(
        id=row.id,
        name=row.name,
        description=row.description,
        affected_monitors=list(row.affected_monitors_json or []),
        starts_at=row.starts_at,
        ends_at=row.ends_at,
        timezone=row.timezone,
        recurrence=dict(row.recurrence_json or {"type": "none"}),
        active=row.active,
        in_progress=row.active and window_is_active(row, now),
        created_by=row.created_by,
    )


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise HTTPException(
            status_code=422, detail={"code": "INVALID_TIMEZONE", "message": f"Unknown timezone: {name}"}
        ) from exc
    return name


def _recurrence_json(recurrence: Recurrence) -> dict[str, Any]:
    if recurrence.daysOfWeek is not None and any(day < 0 or day > 6 for day in recurrence.daysOfWeek):
        raise HTTPException(
            status_code=422,
            detail={"code": "INVALID_RECURRENCE", "message": "daysOfWeek values must be 0 (Monday) to 6"},
        )
    return recurrence.model_dump(mode="json", exclude_none=True)


def _validate_span(starts_at: datetime, ends_at: datetime) -> None:
    if ends_at <= starts_at:
        raise HTTPException(
            status_code=422, detail={"code": "INVALID_WINDOW", "message": "ends_at must be after starts_at"}
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


async def _load_window(db: AsyncSession, window_id: str, principal: Principal) -> MaintenanceWindow:
    window = await incidents_repo.get_window_for_org(db, window_id, principal.organization_id)
    if window is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Maintenance window not found"})
    return window


async def _commit(db: AsyncSession, window: MaintenanceWindow, action: str) -> None:
    try:
        await db.commit()
        await db.refresh(window)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail=f"Database error while {action}") from exc


@router.get(
    "",
    response_model=SuccessEnvelope[list[MaintenanceWindowResponse]] | list[MaintenanceWindowResponse],
)
async def list_maintenance_windows(
    request: Request,
    page: Pagination = Depends(pagination),
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await incidents_repo.list_windows(
        db, organization_id=principal.organization_id, offset=page.offset, limit=page.limit + 1
    )
    rows, next_offset = page_slice(rows, offset=page.offset, limit=page.limit)
    now = datetime.now(timezone.utc)
    return success_response(request=request, data=[_window_payload(row, now) for row in rows], next_offset=next_offset)


@router.post(
    "",
    status_code=201,
    response_model=SuccessEnvelope[MaintenanceWindowResponse] | MaintenanceWindowResponse,
)
async def create_maintenance_window(
    payload: MaintenanceWindowCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    starts_at, ends_at = _aware(payload.starts_at), _aware(payload.ends_at)
    _validate_span(starts_at, ends_at)
    window = MaintenanceWindow(
        id=uuid4().hex,
        organization_id=principal.organization_id,
        name=payload.name,
        description=payload.description,
        affected_monitors_json=await _validate_monitors(db, principal, payload.affected_monitors),
        starts_at=starts_at,
        ends_at=ends_at,
        timezone=_validate_timezone(payload.timezone),
        recurrence_json=_recurrence_json(payload.recurrence),
        active=payload.active,
        created_by=principal.subject_id,
    )
    db.add(window)
    await _commit(db, window, "creating maintenance window")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="maintenance.created",
        resource_type="maintenance_window",
        resource_id=window.id,
        metadata={"recurrence": window.recurrence_json.get("type")},
    )
    return success_response(request=request, data=_window_payload(window, datetime.now(timezone.utc)))


@router.get(
    "/{window_id}",
    response_model=SuccessEnvelope[MaintenanceWindowResponse] | MaintenanceWindowResponse,
)
async def get_maintenance_window(
    window_id: str,
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    window = await _load_window(db, window_id, principal)
    return success_response(request=request, data=_window_payload(window, datetime.now(timezone.utc)))


@router.patch(
    "/{window_id}",
    response_model=SuccessEnvelope[MaintenanceWindowResponse] | MaintenanceWindowResponse,
)
async def patch_maintenance_window(
    window_id: str,
    payload: MaintenanceWindowPatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    window = await _load_window(db, window_id, principal)
    changes = payload.model_dump(exclude_unset=True)
    starts_at = _aware(payload.starts_at) if payload.starts_at is not None else window.starts_at
    ends_at = _aware(payload.ends_at) if payload.ends_at is not None else window.ends_at
    _validate_span(starts_at, ends_at)
    window.starts_at, window.ends_at = starts_at, ends_at
    if payload.name is not None:
        window.name = payload.name
    if "description" in changes:
        window.description = payload.description
    if payload.affected_monitors is not None:
        window.affected_monitors_json = await _validate_monitors(db, principal, payload.affected_monitors)
    if payload.timezone is not None:
        window.timezone = _validate_timezone(payload.timezone)
    if payload.recurrence is not None:
        window.recurrence_json = _recurrence_json(payload.recurrence)
    if payload.active is not None:
        window.active = payload.active
    await _commit(db, window, "updating maintenance window")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="maintenance.updated",
        resource_type="maintenance_window",
        resource_id=window.id,
        metadata={"fields": sorted(changes.keys())},
    )
    return success_response(request=request, data=_window_payload(window, datetime.now(timezone.utc)))


@router.delete("/{window_id}", status_code=204)
async def delete_maintenance_window(
    window_id: str,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> None:
    window = await _load_window(db, window_id, principal)
    await db.delete(window)
    await db.commit()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="maintenance.deleted",
        resource_type="maintenance_window",
        resource_id=window_id,
    )
    return None
