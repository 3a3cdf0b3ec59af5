from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Pagination, Principal, clear_auth_cache, get_db, pagination, require_role
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, page_slice, success_response
from unistatus.domain.models import Organization, OrganizationMember
from unistatus.services.audit import record_request_event
from unistatus.services.auth.api_keys import normalize_role
from unistatus.services.entitlements import LIMIT_TEAM_MEMBERS, enforce_resource_limit
from unistatus.services.organizations import (
    MEMBER_STATUSES,
    count_members,
    ensure_can_assign_role,
    ensure_not_last_owner,
    get_member_for_org,
    list_members,
)


router = APIRouter(prefix="/organization", tags=["organizations"], responses=DEFAULT_ERROR_RESPONSES)


class OrganizationResponse(BaseModel):
    id: str
    name: str
    slug: str
    settings: dict[str, Any]
    created_at: datetime


class OrganizationPatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    settings: dict[str, Any] | None = None


class MemberResponse(BaseModel):
    id: str
    email: str
    display_name: str | None
    role: str
    status: str
    external_subject: str | None
    last_login_at: datetime | None
    created_at: datetime


class MemberCreateRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    display_name: str | None = Field(default=None, max_length=200)
    role: str = "member"


class MemberPatchRequest(BaseModel):
    display_name: str | None = Field(default=None, max_length=200)
    role: str | None = None
    status: str | None = None


def _org_payload(org: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=org.id, name=org.name, slug=org.slug, settings=org.settings_json or {}, created_at=org.created_at
    )


def _member_payload(member: OrganizationMember) -> MemberResponse:
    return MemberResponse(
        id=member.id,
        email=member.email,
        display_name=member.display_name,
        role=member.role,
        status=member.status,
        external_subject=member.external_subject,
        last_login_at=member.last_login_at,
        created_at=member.created_at,
    )


def _normalize_role_or_422(role: str) -> str:
    try:
        return normalize_role(role)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail={"code": "INVALID_ROLE", "message": str(exc)}) from exc


async def _load_member(db: AsyncSession, member_id: str, principal: Principal) -> OrganizationMember:
    member = await get_member_for_org(db, member_id, principal.organization_id)
    if member is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Member not found"})
    return member


@router.get("", response_model=SuccessEnvelope[OrganizationResponse] | OrganizationResponse)
async def get_organization(
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    org = await db.get(Organization, principal.organization_id)
    if org is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Organization not found"})
    return success_response(request=request, data=_org_payload(org))


@router.patch("", response_model=SuccessEnvelope[OrganizationResponse] | OrganizationResponse)
async def patch_organization(
    payload: OrganizationPatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    org = await db.get(Organization, principal.organization_id)
    if org is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Organization not found"})
    if payload.name is not None:
        org.name = payload.name
    if payload.settings is not None:
        org.settings_json = {**(org.settings_json or {}), **payload.settings}
    try:
        await db.commit()
        await db.refresh(org)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating organization") from exc
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="organization.updated",
        resource_type="organization",
        resource_id=org.id,
        metadata={"fields": sorted(payload.model_dump(exclude_none=True).keys())},
    )
    return success_response(request=request, data=_org_payload(org))


@router.get("/members", response_model=SuccessEnvelope[list[MemberResponse]] | list[MemberResponse])
async def get_members(
    request: Request,
    page: Pagination = Depends(pagination),
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_members(db, organization_id=principal.organization_id, offset=page.offset, limit=page.limit + 1)
    rows, next_offset = page_slice(rows, offset=page.offset, limit=page.limit)
    return success_response(request=request, data=[_member_payload(row) for row in rows], next_offset=next_offset)


@router.post(
    "/members",
    status_code=201,
    response_model=SuccessEnvelope[MemberResponse] | MemberResponse,
)
async def add_member(
    payload: MemberCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = _normalize_role_or_422(payload.role)
    ensure_can_assign_role(actor_role=principal.role, current_role=None, new_role=role)
    current = await count_members(db, organization_id=principal.organization_id)
    await enforce_resource_limit(
        session=db,
        organization_id=principal.organization_id,
        resource=LIMIT_TEAM_MEMBERS,
        current_count=current,
    )
    member = OrganizationMember(
        id=uuid4().hex,
        organization_id=principal.organization_id,
        email=payload.email.strip().lower(),
        display_name=payload.display_name,
        role=role,
        status="active",
    )
    db.add(member)
    try:
        await db.commit()
        await db.refresh(member)
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(
            status_code=409,
            detail={"code": "MEMBER_EXISTS", "message": "A member with this email already exists"},
        ) from exc
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="member.added",
        resource_type="member",
        resource_id=member.id,
        metadata={"role": role},
    )
    return success_response(request=request, data=_member_payload(member))


@router.patch("/members/{member_id}", response_model=SuccessEnvelope[MemberResponse] | MemberResponse)
async def patch_member(
    member_id: str,
    payload: MemberPatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    member = await _load_member(db, member_id, principal)
    changes: dict[str, Any] = {}
    if payload.role is not None:
        role = _normalize_role_or_422(payload.role)
        ensure_can_assign_role(actor_role=principal.role, current_role=member.role, new_role=role)
        if role != member.role:
            if member.role == "owner":
                await ensure_not_last_owner(db, member)
            changes["role"] = {"from": member.role, "to": role}
            member.role = role
    if payload.status is not None:
        if payload.status not in MEMBER_STATUSES:
            raise HTTPException(
                status_code=422,
                detail={"code": "INVALID_STATUS", "message": f"status must be one of {', '.join(MEMBER_STATUSES)}"},
            )
        if payload.status == "disabled" and member.status == "active":
            await ensure_not_last_owner(db, member)
        changes["status"] = payload.status
        member.status = payload.status
    if payload.display_name is not None:
        member.display_name = payload.display_name
    try:
        await db.commit()
        await db.refresh(member)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating member") from exc
    clear_auth_cache()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="member.updated",
        resource_type="member",
        resource_id=member.id,
        metadata=changes,
    )
    return success_response(request=request, data=_member_payload(member))


@router.delete("/members/{member_id}", status_code=204)
async def remove_member(
    member_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    member = await _load_member(db, member_id, principal)
    ensure_can_assign_role(actor_role=principal.role, current_role=member.role, new_role=member.role)
    await ensure_not_last_owner(db, member)
    await db.delete(member)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while removing member") from exc
    clear_auth_cache()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="member.removed",
        resource_type="member",
        resource_id=member_id,
    )
    return None
