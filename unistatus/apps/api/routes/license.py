from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Pagination, Principal, get_db, pagination, require_role
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, page_slice, success_response
from unistatus.core.errors import LicenseError
from unistatus.domain.models import License, LicenseValidation
from unistatus.services.audit import record_request_event
from unistatus.services.entitlements import get_effective_entitlements, invalidate_entitlements_cache
from unistatus.services.licensing import (
    activate_license,
    days_until_expiry,
    deactivate_license,
    get_license,
    is_expiring_soon,
    list_validations,
    validate_license,
)


router = APIRouter(prefix="/license", tags=["license"], responses=DEFAULT_ERROR_RESPONSES)


class LicenseActivateRequest(BaseModel):
    key: str = Field(min_length=10, max_length=20000)


class LicenseSummary(BaseModel):
    license_id: str | None
    plan: str
    status: str
    valid_from: datetime | None
    expires_at: datetime | None
    days_remaining: int | None
    expiring_soon: bool
    grace_period_status: str
    grace_period_ends_at: datetime | None
    last_validated_at: datetime | None
    last_validation_result: str | None
    licensee_email: str | None
    licensee_name: str | None
    entitlements: dict[str, Any]


class LicenseValidationResponse(BaseModel):
    id: str
    validation_type: str
    success: bool
    error_code: str | None
    error_message: str | None
    validated_at: datetime


async def _summary(db: AsyncSession, organization_id: str, row: License | None) -> LicenseSummary:
    entitlements = await get_effective_entitlements(db, organization_id)
    rendered = {key: {"enabled": value.enabled, "config": value.config} for key, value in sorted(entitlements.items())}
    if row is None:
        return LicenseSummary(
            license_id=None,
            plan="free",
            status="none",
            valid_from=None,
            expires_at=None,
            days_remaining=None,
            expiring_soon=False,
            grace_period_status="none",
            grace_period_ends_at=None,
            last_validated_at=None,
            last_validation_result=None,
            licensee_email=None,
            licensee_name=None,
            entitlements=rendered,
        )
    return LicenseSummary(
        license_id=row.license_id,
        plan=row.plan,
        status=row.status,
        valid_from=row.valid_from,
        expires_at=row.expires_at,
        days_remaining=days_until_expiry(row.expires_at),
        expiring_soon=row.status == "active" and is_expiring_soon(row.expires_at),
        grace_period_status=row.grace_period_status,
        grace_period_ends_at=row.grace_period_ends_at,
        last_validated_at=row.last_validated_at,
        last_validation_result=row.last_validation_result,
        licensee_email=row.licensee_email,
        licensee_name=row.licensee_name,
        entitlements=rendered,
    )


def _validation_payload(row: LicenseValidation) -> LicenseValidationResponse:
    return LicenseValidationResponse(
        id=row.id,
        validation_type=row.validation_type,
        success=row.success,
        error_code=row.error_code,
        error_message=row.error_message,
        validated_at=row.validated_at,
    )


def _no_license() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "LICENSE_NOT_FOUND", "message": "No license is installed"})


async def _commit(db: AsyncSession, row: License, action: str) -> None:
    try:
        await db.commit()
        await db.refresh(row)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail=f"Database error while {action}") from exc


@router.get("", response_model=SuccessEnvelope[LicenseSummary] | LicenseSummary)
async def get_license_status(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await get_license(db, principal.organization_id)
    return success_response(request=request, data=await _summary(db, principal.organization_id, row))


@router.post("/activate", response_model=SuccessEnvelope[LicenseSummary] | LicenseSummary)
async def activate(
    payload: LicenseActivateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        row = await activate_license(db, organization_id=principal.organization_id, key=payload.key)
    except LicenseError as exc:
        await db.rollback()
        await record_request_event(
            session=db,
            request=request,
            principal=principal,
            event_type="license.activation.failure",
            resource_type="license",
            resource_id=None,
            outcome="failure",
            error_code=exc.code,
        )
        raise
    await _commit(db, row, "activating license")
    invalidate_entitlements_cache(principal.organization_id)
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="license.activated",
        resource_type="license",
        resource_id=row.id,
        metadata={"license_id": row.license_id, "plan": row.plan},
    )
    return success_response(request=request, data=await _summary(db, principal.organization_id, row))


@router.post("/validate", response_model=SuccessEnvelope[LicenseSummary] | LicenseSummary)
async def validate(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await validate_license(db, organization_id=principal.organization_id)
    if row is None:
        raise _no_license()
    await _commit(db, row, "validating license")
    invalidate_entitlements_cache(principal.organization_id)
    return success_response(request=request, data=await _summary(db, principal.organization_id, row))


@router.post("/deactivate", response_model=SuccessEnvelope[LicenseSummary] | LicenseSummary)
async def deactivate(
    request: Request,
    principal: Principal = Depends(require_role("owner")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await deactivate_license(db, organization_id=principal.organization_id)
    if row is None:
        raise _no_license()
    await _commit(db, row, "deactivating license")
    invalidate_entitlements_cache(principal.organization_id)
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="license.deactivated",
        resource_type="license",
        resource_id=row.id,
        metadata={"grace_period_ends_at": row.grace_period_ends_at.isoformat() if row.grace_period_ends_at else None},
    )
    return success_response(request=request, data=await _summary(db, principal.organization_id, row))


@router.get(
    "/validations",
    response_model=SuccessEnvelope[list[LicenseValidationResponse]] | list[LicenseValidationResponse],
)
async def validation_history(
    request: Request,
    page: Pagination = Depends(pagination),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await get_license(db, principal.organization_id)
    if row is None:
        raise _no_license()
    rows = await list_validations(db, license_id=row.id, offset=page.offset, limit=page.limit + 1)
    rows, next_offset = page_slice(rows, offset=page.offset, limit=page.limit)
    return success_response(request=request, data=[_validation_payload(item) for item in rows], next_offset=next_offset)
