from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Pagination, Principal, get_db, pagination, require_feature_access
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, page_slice, success_response
from unistatus.domain.models import OncallOverride, OncallRotation, OrganizationMember
from unistatus.persistence.repos import alerts as alerts_repo
from unistatus.services.alerts.oncall import current_oncall_member_id
from unistatus.services.audit import record_request_event
from unistatus.services.entitlements import FEATURE_ONCALL


router = APIRouter(prefix="/oncall", tags=["oncall"], responses=DEFAULT_ERROR_RESPONSES)


class OverrideResponse(BaseModel):
    id: str
    member_id: str
    start_at: datetime
    end_at: datetime
    reason: str | None


class RotationResponse(BaseModel):
    id: str
    name: str
    description: str | None
    timezone: str
    rotation_start: datetime
    shift_duration_minutes: int
    participants: list[str]
    active: bool
    overrides: list[OverrideResponse]
    created_at: datetime


class RotationCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    timezone: str = "UTC"
    rotation_start: datetime
    shift_duration_minutes: int = Field(default=720, ge=15, le=43200)
    participants: list[str] = Field(default_factory=list)
    active: bool = True


class RotationPatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    timezone: str | None = None
    rotation_start: datetime | None = None
    shift_duration_minutes: int | None = Field(default=None, ge=15, le=43200)
    participants: list[str] | None = None
    active: bool | None = None


class OverrideCreateRequest(BaseModel):
    member_id: str
    start_at: datetime
    end_at: datetime
    reason: str | None = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _ordered(self) -> "OverrideCreateRequest":
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self


class CurrentOncallResponse(BaseModel):
    rotation_id: str
    member_id: str | None
    email: str | None
    display_name: str | None
    at: datetime


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _rotation_payload(rotation: OncallRotation, overrides: list[OncallOverride]) -> RotationResponse:
    return RotationResponse(
        id=rotation.id,
        name=rotation.name,
        description=rotation.description,
        timezone=rotation.timezone,
        rotation_start=rotation.rotation_start,
        shift_duration_minutes=rotation.shift_duration_minutes,
        participants=list(rotation.participants_json or []),
        active=rotation.active,
        overrides=[
            OverrideResponse(
                id=row.id, member_id=row.member_id, start_at=row.start_at, end_at=row.end_at, reason=row.reason
            )
            for row in overrides
        ],
        created_at=rotation.created_at,
    )


def _validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise HTTPException(
            status_code=422, detail={"code": "INVALID_TIMEZONE", "message": f"Unknown timezone: {name}"}
        ) from exc
    return name


async def _validate_members(db: AsyncSession, principal: Principal, member_ids: list[str]) -> None:
    if not member_ids:
        return
    result = await db.execute(
        select(OrganizationMember.id).where(
            OrganizationMember.organization_id == principal.organization_id,
            OrganizationMember.id.in_(member_ids),
        )
    )
    known = {row[0] for row in result.all()}
    missing = [member_id for member_id in member_ids if member_id not in known]
    if missing:
        raise HTTPException(
            status_code=422,
            detail={"code": "INVALID_MEMBER", "message": f"Unknown members: {', '.join(missing)}"},
        )


async def _load_rotation(db: AsyncSession, rotation_id: str, principal: Principal) -> OncallRotation:
    rotation = await alerts_repo.get_rotation_for_org(db, rotation_id, principal.organization_id)
    if rotation is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "On-call rotation not found"})
    return rotation


async def _commit(db: AsyncSession, row, action: str) -> None:
    try:
        await db.commit()
        await db.refresh(row)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail=f"Database error while {action}") from exc


@router.get("/rotations", response_model=SuccessEnvelope[list[RotationResponse]] | list[RotationResponse])
async def list_rotations(
    request: Request,
    page: Pagination = Depends(pagination),
    principal: Principal = Depends(require_feature_access(FEATURE_ONCALL, "viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await alerts_repo.list_rotations(
        db, organization_id=principal.organization_id, offset=page.offset, limit=page.limit + 1
    )
    rows, next_offset = page_slice(rows, offset=page.offset, limit=page.limit)
    data = [_rotation_payload(row, await alerts_repo.list_overrides(db, row.id)) for row in rows]
    return success_response(request=request, data=data, next_offset=next_offset)


@router.post(
    "/rotations",
    status_code=201,
    response_model=SuccessEnvelope[RotationResponse] | RotationResponse,
)
async def create_rotation(
    payload: RotationCreateRequest,
    request: Request,
    principal: Principal = Depends(require_feature_access(FEATURE_ONCALL, "admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _validate_members(db, principal, payload.participants)
    rotation = OncallRotation(
        id=uuid4().hex,
        organization_id=principal.organization_id,
        name=payload.name,
        description=payload.description,
        timezone=_validate_timezone(payload.timezone),
        rotation_start=_aware(payload.rotation_start),
        shift_duration_minutes=payload.shift_duration_minutes,
        participants_json=list(payload.participants),
        active=payload.active,
    )
    db.add(rotation)
    await _commit(db, rotation, "creating on-call rotation")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="oncall_rotation.created",
        resource_type="oncall_rotation",
        resource_id=rotation.id,
    )
    return success_response(request=request, data=_rotation_payload(rotation, []))


@router.get("/rotations/{rotation_id}", response_model=SuccessEnvelope[RotationResponse] | RotationResponse)
async def get_rotation(
    rotation_id: str,
    request: Request,
    principal: Principal = Depends(require_feature_access(FEATURE_ONCALL, "viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rotation = await _load_rotation(db, rotation_id, principal)
    overrides = await alerts_repo.list_overrides(db, rotation.id)
    return success_response(request=request, data=_rotation_payload(rotation, overrides))


@router.patch("/rotations/{rotation_id}", response_model=SuccessEnvelope[RotationResponse] | RotationResponse)
async def patch_rotation(
    rotation_id: str,
    payload: RotationPatchRequest,
    request: Request,
    principal: Principal = Depends(require_feature_access(FEATURE_ONCALL, "admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rotation = await _load_rotation(db, rotation_id, principal)
    changes = payload.model_dump(exclude_unset=True)
    if payload.participants is not None:
        await _validate_members(db, principal, payload.participants)
        rotation.participants_json = list(payload.participants)
    if payload.timezone is not None:
        rotation.timezone = _validate_timezone(payload.timezone)
    if payload.rotation_start is not None:
        rotation.rotation_start = _aware(payload.rotation_start)
    for field in ("name", "description", "shift_duration_minutes", "active"):
        if field in changes and changes[field] is not None:
            setattr(rotation, field, changes[field])
    await _commit(db, rotation, "updating on-call rotation")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="oncall_rotation.updated",
        resource_type="oncall_rotation",
        resource_id=rotation.id,
        metadata={"fields": sorted(changes.keys())},
    )
    overrides = await alerts_repo.list_overrides(db, rotation.id)
    return success_response(request=request, data=_rotation_payload(rotation, overrides))


@router.delete("/rotations/{rotation_id}", status_code=204)
async def delete_rotation(
    rotation_id: str,
    request: Request,
    principal: Principal = Depends(require_feature_access(FEATURE_ONCALL, "admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    rotation = await _load_rotation(db, rotation_id, principal)
    await db.delete(rotation)
    await db.commit()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="oncall_rotation.deleted",
        resource_type="oncall_rotation",
        resource_id=rotation_id,
    )
    return None


@router.post(
    "/rotations/{rotation_id}/overrides",
    status_code=201,
    response_model=SuccessEnvelope[OverrideResponse] | OverrideResponse,
)
async def add_override(
    rotation_id: str,
    payload: OverrideCreateRequest,
    request: Request,
    principal: Principal = Depends(require_feature_access(FEATURE_ONCALL, "admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rotation = await _load_rotation(db, rotation_id, principal)
    await _validate_members(db, principal, [payload.member_id])
    override = OncallOverride(
        id=uuid4().hex,
        rotation_id=rotation.id,
        member_id=payload.member_id,
        start_at=_aware(payload.start_at),
        end_at=_aware(payload.end_at),
        reason=payload.reason,
    )
    db.add(override)
    await _commit(db, override, "adding on-call override")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="oncall_override.created",
        resource_type="oncall_rotation",
        resource_id=rotation.id,
        metadata={"override_id": override.id, "member_id": override.member_id},
    )
    payload_out = OverrideResponse(
        id=override.id,
        member_id=override.member_id,
        start_at=override.start_at,
        end_at=override.end_at,
        reason=override.reason,
    )
    return success_response(request=request, data=payload_out)


@router.delete("/rotations/{rotation_id}/overrides/{override_id}", status_code=204)
async def remove_override(
    rotation_id: str,
    override_id: str,
    request: Request,
    principal: Principal = Depends(require_feature_access(FEATURE_ONCALL, "admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    rotation = await _load_rotation(db, rotation_id, principal)
    override = await db.get(OncallOverride, override_id)
    if override is None or override.rotation_id != rotation.id:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Override not found"})
    await db.delete(override)
    await db.commit()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="oncall_override.deleted",
        resource_type="oncall_rotation",
        resource_id=rotation.id,
        metadata={"override_id": override_id},
    )
    return None


@router.get(
    "/rotations/{rotation_id}/current",
    response_model=SuccessEnvelope[CurrentOncallResponse] | CurrentOncallResponse,
)
async def get_current_oncall(
    rotation_id: str,
    request: Request,
    principal: Principal = Depends(require_feature_access(FEATURE_ONCALL, "viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rotation = await _load_rotation(db, rotation_id, principal)
    now = datetime.now(timezone.utc)
    member_id = await current_oncall_member_id(db, rotation, now=now)
    member = await db.get(OrganizationMember, member_id) if member_id else None
    payload = CurrentOncallResponse(
        rotation_id=rotation.id,
        member_id=member_id,
        email=member.email if member is not None else None,
        display_name=member.display_name if member is not None else None,
        at=now,
    )
    return success_response(request=request, data=payload)
