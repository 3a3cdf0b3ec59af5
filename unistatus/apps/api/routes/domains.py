from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Principal, get_db, require_role
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, success_response
from unistatus.domain.models import OrganizationDomain, SsoProvider
from unistatus.services.audit import record_request_event
from unistatus.services.auth.domains import (
    generate_verification_token,
    get_domain_by_name,
    get_domain_for_org,
    list_domains,
    normalize_domain,
    verification_instructions,
    verify_domain,
)


router = APIRouter(prefix="/domains", tags=["domains"], responses=DEFAULT_ERROR_RESPONSES)


class DomainCreateRequest(BaseModel):
    domain: str = Field(min_length=3, max_length=253)
    auto_join_enabled: bool = False
    auto_join_role: str = Field(default="member", pattern="^(admin|member|viewer)$")


class DomainPatchRequest(BaseModel):
    auto_join_enabled: bool | None = None
    auto_join_role: str | None = Field(default=None, pattern="^(admin|member|viewer)$")
    sso_provider_id: str | None = None
    sso_required: bool | None = None


class DomainResponse(BaseModel):
    id: str
    domain: str
    verified: bool
    verified_at: datetime | None
    auto_join_enabled: bool
    auto_join_role: str
    sso_provider_id: str | None
    sso_required: bool
    verification: dict[str, Any]
    created_at: datetime


def _domain_payload(row: OrganizationDomain) -> DomainResponse:
    return DomainResponse(
        id=row.id,
        domain=row.domain,
        verified=row.verified,
        verified_at=row.verified_at,
        auto_join_enabled=row.auto_join_enabled,
        auto_join_role=row.auto_join_role,
        sso_provider_id=row.sso_provider_id,
        sso_required=row.sso_required,
        verification=verification_instructions(row),
        created_at=row.created_at,
    )


def _already_registered() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "DOMAIN_ALREADY_REGISTERED", "message": "Domain is already registered"},
    )


async def _load_domain(db: AsyncSession, domain_id: str, principal: Principal) -> OrganizationDomain:
    row = await get_domain_for_org(db, domain_id, principal.organization_id)
    if row is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Domain not found"})
    return row


@router.get("", response_model=SuccessEnvelope[list[DomainResponse]] | list[DomainResponse])
async def list_organization_domains(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await list_domains(db, organization_id=principal.organization_id)
    return success_response(request=request, data=[_domain_payload(row) for row in rows])


@router.post("", status_code=201, response_model=SuccessEnvelope[DomainResponse] | DomainResponse)
async def add_domain(
    payload: DomainCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        domain = normalize_domain(payload.domain)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail={"code": "INVALID_DOMAIN", "message": str(exc)}) from exc
    # Domains are claimed globally, not per organization.
    if await get_domain_by_name(db, domain) is not None:
        raise _already_registered()
    row = OrganizationDomain(
        id=uuid4().hex,
        organization_id=principal.organization_id,
        domain=domain,
        verified=False,
        verification_token=generate_verification_token(),
        auto_join_enabled=payload.auto_join_enabled,
        auto_join_role=payload.auto_join_role,
        sso_required=False,
    )
    db.add(row)
    try:
        await db.commit()
        await db.refresh(row)
    except IntegrityError as exc:
        await db.rollback()
        raise _already_registered() from exc
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="domain.added",
        resource_type="organization_domain",
        resource_id=row.id,
        metadata={"domain": domain},
    )
    return success_response(request=request, data=_domain_payload(row))


@router.get("/{domain_id}", response_model=SuccessEnvelope[DomainResponse] | DomainResponse)
async def get_domain(
    domain_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await _load_domain(db, domain_id, principal)
    return success_response(request=request, data=_domain_payload(row))


@router.patch("/{domain_id}", response_model=SuccessEnvelope[DomainResponse] | DomainResponse)
async def patch_domain(
    domain_id: str,
    payload: DomainPatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await _load_domain(db, domain_id, principal)
    changes = payload.model_dump(exclude_unset=True)
    if payload.auto_join_enabled is not None:
        row.auto_join_enabled = payload.auto_join_enabled
    if payload.auto_join_role is not None:
        row.auto_join_role = payload.auto_join_role
    if "sso_provider_id" in changes:
        if payload.sso_provider_id is not None:
            provider = await db.get(SsoProvider, payload.sso_provider_id)
            if provider is None or provider.organization_id != principal.organization_id:
                raise HTTPException(
                    status_code=404,
                    detail={"code": "SSO_PROVIDER_NOT_FOUND", "message": "SSO provider not found"},
                )
        row.sso_provider_id = payload.sso_provider_id
        if row.sso_provider_id is None:
            row.sso_required = False
    if payload.sso_required is not None:
        if payload.sso_required and (not row.verified or row.sso_provider_id is None):
            raise HTTPException(
                status_code=422,
                detail={
                    "code": "SSO_REQUIREMENT_INVALID",
                    "message": "SSO can only be required on verified domains with a provider",
                },
            )
        row.sso_required = payload.sso_required
    try:
        await db.commit()
        await db.refresh(row)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating domain") from exc
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="domain.updated",
        resource_type="organization_domain",
        resource_id=row.id,
        metadata={"fields": sorted(changes.keys())},
    )
    return success_response(request=request, data=_domain_payload(row))


@router.delete("/{domain_id}", status_code=204)
async def delete_domain(
    domain_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    row = await _load_domain(db, domain_id, principal)
    domain = row.domain
    await db.delete(row)
    await db.commit()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="domain.removed",
        resource_type="organization_domain",
        resource_id=domain_id,
        metadata={"domain": domain},
    )
    return None


@router.post("/{domain_id}/verify", response_model=SuccessEnvelope[DomainResponse] | DomainResponse)
async def verify_organization_domain(
    domain_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await _load_domain(db, domain_id, principal)
    was_verified = row.verified
    result = await verify_domain(db, row)
    if not result.verified:
        await record_request_event(
            session=db,
            request=request,
            principal=principal,
            event_type="domain.verification.failure",
            resource_type="organization_domain",
            resource_id=row.id,
            outcome="failure",
            error_code=result.error_code,
        )
        raise HTTPException(
            status_code=422,
            detail={
                "code": result.error_code,
                "message": result.message,
                "expected": verification_instructions(row),
                "found": list(result.found_records),
            },
        )
    if not was_verified:
        await record_request_event(
            session=db,
            request=request,
            principal=principal,
            event_type="domain.verified",
            resource_type="organization_domain",
            resource_id=row.id,
            metadata={"domain": row.domain},
        )
    return success_response(request=request, data=_domain_payload(row))
