from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Principal, clear_auth_cache, get_db, require_role
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, success_response
from unistatus.domain.models import ApiKey, OrganizationMember
from unistatus.services.audit import record_request_event
from unistatus.services.auth.api_keys import generate_api_key
from unistatus.services.organizations import get_member_for_org


router = APIRouter(prefix="/api-keys", tags=["security"], responses=DEFAULT_ERROR_RESPONSES)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ApiKeyResponse(BaseModel):
    key_id: str
    key_prefix: str
    name: str | None
    member_id: str
    role: str
    created_at: datetime
    last_used_at: datetime | None
    expires_at: datetime | None
    revoked_at: datetime | None
    is_active: bool


class ApiKeyCreatedResponse(ApiKeyResponse):
    # Returned once; only the hash is stored.
    api_key: str


class ApiKeyCreateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    # Defaults to the calling member.
    member_id: str | None = None
    expires_at: datetime | None = None


class ApiKeyPatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    expires_at: datetime | None = None
    active: bool | None = None


def _to_payload(api_key: ApiKey, member: OrganizationMember, now: datetime) -> ApiKeyResponse:
    is_expired = api_key.expires_at is not None and api_key.expires_at <= now
    return ApiKeyResponse(
        key_id=api_key.id,
        key_prefix=api_key.key_prefix,
        name=api_key.name,
        member_id=member.id,
        role=member.role,
        created_at=api_key.created_at,
        last_used_at=api_key.last_used_at,
        expires_at=api_key.expires_at,
        revoked_at=api_key.revoked_at,
        is_active=member.status == "active" and api_key.revoked_at is None and not is_expired,
    )


async def _load_key(db: AsyncSession, key_id: str, principal: Principal) -> tuple[ApiKey, OrganizationMember]:
    row = (
        await db.execute(
            select(ApiKey, OrganizationMember)
            .join(OrganizationMember, ApiKey.member_id == OrganizationMember.id)
            .where(ApiKey.id == key_id, ApiKey.organization_id == principal.organization_id)
        )
    ).first()
    if row is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "API key not found"})
    return row[0], row[1]


@router.get("", response_model=SuccessEnvelope[list[ApiKeyResponse]] | list[ApiKeyResponse])
async def list_api_keys(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Metadata only; raw keys are never retrievable after creation.
    try:
        rows = (
            await db.execute(
                select(ApiKey, OrganizationMember)
                .join(OrganizationMember, ApiKey.member_id == OrganizationMember.id)
                .where(ApiKey.organization_id == principal.organization_id)
                .order_by(ApiKey.created_at.desc())
            )
        ).all()
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while listing API keys") from exc
    now = _utc_now()
    return success_response(request=request, data=[_to_payload(key, member, now) for key, member in rows])


@router.post(
    "",
    status_code=201,
    response_model=SuccessEnvelope[ApiKeyCreatedResponse] | ApiKeyCreatedResponse,
)
async def create_api_key(
    payload: ApiKeyCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    member_id = payload.member_id or principal.subject_id
    member = await get_member_for_org(db, member_id, principal.organization_id)
    if member is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Member not found"})
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    api_key = ApiKey(
        id=key_id,
        member_id=member.id,
        organization_id=principal.organization_id,
        key_prefix=key_prefix,
        key_hash=key_hash,
        name=payload.name,
        expires_at=payload.expires_at,
    )
    db.add(api_key)
    try:
        await db.commit()
        await db.refresh(api_key)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while creating API key") from exc
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="auth.api_key.created",
        resource_type="api_key",
        resource_id=api_key.id,
        metadata={"member_id": member.id, "key_prefix": key_prefix},
    )
    base = _to_payload(api_key, member, _utc_now())
    return success_response(request=request, data=ApiKeyCreatedResponse(**base.model_dump(), api_key=raw_key))


@router.patch("/{key_id}", response_model=SuccessEnvelope[ApiKeyResponse] | ApiKeyResponse)
async def patch_api_key(
    key_id: str,
    payload: ApiKeyPatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    api_key, member = await _load_key(db, key_id, principal)
    now = _utc_now()
    event_type = "auth.api_key.updated"
    if payload.name is not None:
        api_key.name = payload.name
    if payload.expires_at is not None:
        api_key.expires_at = payload.expires_at
    # revoked_at doubles as the reversible deactivation marker.
    if payload.active is False and api_key.revoked_at is None:
        api_key.revoked_at = now
        event_type = "auth.api_key.deactivated"
    if payload.active is True and api_key.revoked_at is not None:
        api_key.revoked_at = None
        event_type = "auth.api_key.reactivated"
    try:
        await db.commit()
        await db.refresh(api_key)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating API key") from exc
    clear_auth_cache()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type=event_type,
        resource_type="api_key",
        resource_id=api_key.id,
    )
    return success_response(request=request, data=_to_payload(api_key, member, now))


@router.delete("/{key_id}", response_model=SuccessEnvelope[ApiKeyResponse] | ApiKeyResponse)
async def revoke_api_key(
    key_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    api_key, member = await _load_key(db, key_id, principal)
    now = _utc_now()
    if api_key.revoked_at is None:
        api_key.revoked_at = now
        try:
            await db.commit()
            await db.refresh(api_key)
        except SQLAlchemyError as exc:
            await db.rollback()
            raise HTTPException(status_code=500, detail="Database error while revoking API key") from exc
    clear_auth_cache()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="auth.api_key.revoked",
        resource_type="api_key",
        resource_id=api_key.id,
    )
    return success_response(request=request, data=_to_payload(api_key, member, now))
