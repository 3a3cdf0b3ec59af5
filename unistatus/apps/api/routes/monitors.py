from __future__ import annotations

from datetime import datetime, timedelta, timezone
import secrets
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Pagination, Principal, get_db, pagination, require_role
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, page_slice, success_response
from unistatus.core.config import get_settings
from unistatus.domain.models import CheckResult, Monitor, MonitorAlertPolicy
from unistatus.persistence.repos import alerts as alerts_repo
from unistatus.persistence.repos import check_results as results_repo
from unistatus.persistence.repos import monitors as monitors_repo
from unistatus.services.audit import record_request_event
from unistatus.services.entitlements import (
    LIMIT_MONITORS,
    LIMIT_REGIONS,
    enforce_resource_limit,
)
from unistatus.services.monitors.runner import run_monitor_check
from unistatus.services.monitors.status import CHECK_STATUSES, MONITOR_TYPES, URL_REQUIRED_TYPES


router = APIRouter(prefix="/monitors", tags=["monitors"], responses=DEFAULT_ERROR_RESPONSES)

MIN_INTERVAL_SECONDS = 30
MAX_TIMEOUT_MS = 120000
_HTTP_METHODS = ("GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_method(value: str) -> str:
    method = value.upper()
    if method not in _HTTP_METHODS:
        raise ValueError(f"method must be one of {', '.join(_HTTP_METHODS)}")
    return method


class MonitorBase(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    url: str | None = Field(default=None, max_length=2048)
    method: str = "GET"
    headers: dict[str, str] | None = None
    body: str | None = None
    interval_seconds: int = Field(default=60, ge=MIN_INTERVAL_SECONDS)
    timeout_ms: int = Field(default=30000, ge=100, le=MAX_TIMEOUT_MS)
    regions: list[str] = Field(default_factory=lambda: ["uk"], min_length=1)
    assertions: dict[str, Any] | None = None
    config: dict[str, Any] | None = None
    degraded_threshold_ms: int | None = Field(default=None, ge=1)
    degraded_after_count: int = Field(default=1, ge=1, le=100)
    down_after_count: int = Field(default=1, ge=1, le=100)

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return _normalize_method(value)


class MonitorCreateRequest(MonitorBase):
    type: str


class MonitorPatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    url: str | None = Field(default=None, max_length=2048)
    method: str | None = None
    headers: dict[str, str] | None = None
    body: str | None = None
    interval_seconds: int | None = Field(default=None, ge=MIN_INTERVAL_SECONDS)
    timeout_ms: int | None = Field(default=None, ge=100, le=MAX_TIMEOUT_MS)
    regions: list[str] | None = Field(default=None, min_length=1)
    assertions: dict[str, Any] | None = None
    config: dict[str, Any] | None = None
    degraded_threshold_ms: int | None = Field(default=None, ge=1)
    degraded_after_count: int | None = Field(default=None, ge=1, le=100)
    down_after_count: int | None = Field(default=None, ge=1, le=100)

    @field_validator(
        "name", "method", "interval_seconds", "timeout_ms", "regions", "degraded_after_count", "down_after_count"
    )
    @classmethod
    def _reject_null(cls, value: Any) -> Any:
        # Required columns; omit the field to keep the current value.
        if value is None:
            raise ValueError("must not be null")
        return value


class MonitorResponse(BaseModel):
    id: str
    name: str
    description: str | None
    type: str
    url: str | None
    method: str
    headers: dict[str, str] | None
    body: str | None
    interval_seconds: int
    timeout_ms: int
    regions: list[str]
    assertions: dict[str, Any] | None
    config: dict[str, Any] | None
    degraded_threshold_ms: int | None
    degraded_after_count: int
    down_after_count: int
    consecutive_degraded_count: int
    consecutive_failure_count: int
    status: str
    paused: bool
    heartbeat_token: str | None
    last_checked_at: datetime | None
    next_check_at: datetime | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class CheckResultResponse(BaseModel):
    id: str
    monitor_id: str
    region: str
    status: str
    response_time_ms: int | None
    status_code: int | None
    error_message: str | None
    error_code: str | None
    headers: dict[str, str] | None
    certificate_info: dict[str, Any] | None
    metadata: dict[str, Any] | None
    probe_id: str | None
    created_at: datetime


class UptimeResponse(BaseModel):
    monitor_id: str
    days: int
    total: int
    success: int
    degraded: int
    failure: int
    uptime_percentage: float | None
    avg_response_time_ms: float | None


class CheckNowResponse(BaseModel):
    summary: dict[str, Any]
    result: CheckResultResponse | None


def _monitor_payload(monitor: Monitor) -> MonitorResponse:
    return MonitorResponse(
        id=monitor.id,
        name=monitor.name,
        description=monitor.description,
        type=monitor.type,
        url=monitor.url,
        method=monitor.method,
        headers=monitor.headers_json,
        body=monitor.body,
        interval_seconds=monitor.interval_seconds,
        timeout_ms=monitor.timeout_ms,
        regions=list(monitor.regions_json or []),
        assertions=monitor.assertions_json,
        config=monitor.config_json,
        degraded_threshold_ms=monitor.degraded_threshold_ms,
        degraded_after_count=monitor.degraded_after_count,
        down_after_count=monitor.down_after_count,
        consecutive_degraded_count=monitor.consecutive_degraded_count,
        consecutive_failure_count=monitor.consecutive_failure_count,
        status=monitor.status,
        paused=monitor.paused,
        heartbeat_token=monitor.heartbeat_token,
        last_checked_at=monitor.last_checked_at,
        next_check_at=monitor.next_check_at,
        created_by=monitor.created_by,
        created_at=monitor.created_at,
        updated_at=monitor.updated_at,
    )


def result_payload(row: CheckResult) -> CheckResultResponse:
    return CheckResultResponse(
        id=row.id,
        monitor_id=row.monitor_id,
        region=row.region,
        status=row.status,
        response_time_ms=row.response_time_ms,
        status_code=row.status_code,
        error_message=row.error_message,
        error_code=row.error_code,
        headers=row.headers_json,
        certificate_info=row.certificate_info,
        metadata=row.metadata_json,
        probe_id=row.probe_id,
        created_at=row.created_at,
    )


def _validate_type(monitor_type: str) -> str:
    normalized = monitor_type.strip().lower()
    if normalized not in MONITOR_TYPES:
        raise HTTPException(
            status_code=422,
            detail={
                "code": "UNSUPPORTED_MONITOR_TYPE",
                "message": f"Monitor type '{monitor_type}' is not supported",
                "supported": list(MONITOR_TYPES),
            },
        )
    return normalized


def _require_url(monitor_type: str, url: str | None) -> None:
    if monitor_type in URL_REQUIRED_TYPES and not (url or "").strip():
        raise HTTPException(
            status_code=422,
            detail={"code": "URL_REQUIRED", "message": f"url is required for {monitor_type} monitors"},
        )


async def _enforce_regions(db: AsyncSession, principal: Principal, regions: list[str]) -> None:
    # Region count is gated by the plan independently of the monitor count.
    await enforce_resource_limit(
        session=db,
        organization_id=principal.organization_id,
        resource=LIMIT_REGIONS,
        current_count=0,
        requested=len(set(regions)),
    )


async def load_monitor(db: AsyncSession, monitor_id: str, principal: Principal) -> Monitor:
    monitor = await monitors_repo.get_monitor_for_org(db, monitor_id, principal.organization_id)
    if monitor is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Monitor not found"})
    return monitor


async def _commit(db: AsyncSession, monitor: Monitor, action: str) -> None:
    try:
        await db.commit()
        await db.refresh(monitor)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail=f"Database error while {action} monitor") from exc


@router.get("", response_model=SuccessEnvelope[list[MonitorResponse]] | list[MonitorResponse])
async def list_monitors(
    request: Request,
    status: str | None = Query(default=None),
    type: str | None = Query(default=None),
    page: Pagination = Depends(pagination),
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await monitors_repo.list_monitors(
        db,
        organization_id=principal.organization_id,
        status=status,
        monitor_type=type,
        offset=page.offset,
        limit=page.limit + 1,
    )
    rows, next_offset = page_slice(rows, offset=page.offset, limit=page.limit)
    return success_response(request=request, data=[_monitor_payload(row) for row in rows], next_offset=next_offset)


@router.post("", status_code=201, response_model=SuccessEnvelope[MonitorResponse] | MonitorResponse)
async def create_monitor(
    payload: MonitorCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    monitor_type = _validate_type(payload.type)
    _require_url(monitor_type, payload.url)
    current = await monitors_repo.count_monitors(db, organization_id=principal.organization_id)
    await enforce_resource_limit(
        session=db,
        organization_id=principal.organization_id,
        resource=LIMIT_MONITORS,
        current_count=current,
    )
    await _enforce_regions(db, principal, payload.regions)
    now = _utc_now()
    monitor = Monitor(
        id=uuid4().hex,
        organization_id=principal.organization_id,
        name=payload.name,
        description=payload.description,
        type=monitor_type,
        url=payload.url,
        method=payload.method,
        headers_json=payload.headers,
        body=payload.body,
        interval_seconds=payload.interval_seconds,
        timeout_ms=payload.timeout_ms,
        regions_json=list(dict.fromkeys(payload.regions)),
        assertions_json=payload.assertions,
        config_json=payload.config,
        degraded_threshold_ms=payload.degraded_threshold_ms,
        degraded_after_count=payload.degraded_after_count,
        down_after_count=payload.down_after_count,
        consecutive_degraded_count=0,
        consecutive_failure_count=0,
        heartbeat_token=secrets.token_urlsafe(24) if monitor_type == "heartbeat" else None,
        paused=False,
        status="pending",
        next_check_at=now,
        created_by=principal.subject_id,
    )
    db.add(monitor)
    await _commit(db, monitor, "creating")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="monitor.created",
        resource_type="monitor",
        resource_id=monitor.id,
        metadata={"type": monitor_type, "name": monitor.name},
    )
    return success_response(request=request, data=_monitor_payload(monitor))


@router.get("/{monitor_id}", response_model=SuccessEnvelope[MonitorResponse] | MonitorResponse)
async def get_monitor(
    monitor_id: str,
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    monitor = await load_monitor(db, monitor_id, principal)
    return success_response(request=request, data=_monitor_payload(monitor))


@router.patch("/{monitor_id}", response_model=SuccessEnvelope[MonitorResponse] | MonitorResponse)
async def patch_monitor(
    monitor_id: str,
    payload: MonitorPatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    monitor = await load_monitor(db, monitor_id, principal)
    changes = payload.model_dump(exclude_unset=True)
    if "url" in changes:
        _require_url(monitor.type, payload.url)
    if payload.regions is not None:
        await _enforce_regions(db, principal, payload.regions)
        monitor.regions_json = list(dict.fromkeys(payload.regions))
    if payload.method is not None:
        try:
            monitor.method = _normalize_method(payload.method)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail={"code": "INVALID_METHOD", "message": str(exc)}) from exc
    column_map = {
        "name": "name",
        "description": "description",
        "url": "url",
        "headers": "headers_json",
        "body": "body",
        "interval_seconds": "interval_seconds",
        "timeout_ms": "timeout_ms",
        "assertions": "assertions_json",
        "config": "config_json",
        "degraded_threshold_ms": "degraded_threshold_ms",
        "degraded_after_count": "degraded_after_count",
        "down_after_count": "down_after_count",
    }
    for field, column in column_map.items():
        if field in changes:
            setattr(monitor, column, changes[field])
    await _commit(db, monitor, "updating")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="monitor.updated",
        resource_type="monitor",
        resource_id=monitor.id,
        metadata={"fields": sorted(changes.keys())},
    )
    return success_response(request=request, data=_monitor_payload(monitor))


@router.delete("/{monitor_id}", status_code=204)
async def delete_monitor(
    monitor_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    monitor = await load_monitor(db, monitor_id, principal)
    await db.delete(monitor)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while deleting monitor") from exc
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="monitor.deleted",
        resource_type="monitor",
        resource_id=monitor_id,
    )
    return None


@router.post("/{monitor_id}/pause", response_model=SuccessEnvelope[MonitorResponse] | MonitorResponse)
async def pause_monitor(
    monitor_id: str,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    monitor = await load_monitor(db, monitor_id, principal)
    monitor.paused = True
    monitor.status = "paused"
    await _commit(db, monitor, "pausing")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="monitor.paused",
        resource_type="monitor",
        resource_id=monitor.id,
    )
    return success_response(request=request, data=_monitor_payload(monitor))


@router.post("/{monitor_id}/resume", response_model=SuccessEnvelope[MonitorResponse] | MonitorResponse)
async def resume_monitor(
    monitor_id: str,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    monitor = await load_monitor(db, monitor_id, principal)
    monitor.paused = False
    monitor.status = "pending"
    monitor.consecutive_degraded_count = 0
    monitor.consecutive_failure_count = 0
    monitor.next_check_at = _utc_now()
    await _commit(db, monitor, "resuming")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="monitor.resumed",
        resource_type="monitor",
        resource_id=monitor.id,
    )
    return success_response(request=request, data=_monitor_payload(monitor))


@router.get(
    "/{monitor_id}/results",
    response_model=SuccessEnvelope[list[CheckResultResponse]] | list[CheckResultResponse],
)
async def list_check_results(
    monitor_id: str,
    request: Request,
    status: str | None = Query(default=None),
    region: str | None = Query(default=None),
    page: Pagination = Depends(pagination),
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if status is not None and status not in CHECK_STATUSES:
        raise HTTPException(
            status_code=422,
            detail={"code": "INVALID_CHECK_STATUS", "message": f"status must be one of {', '.join(CHECK_STATUSES)}"},
        )
    monitor = await load_monitor(db, monitor_id, principal)
    rows = await results_repo.list_results(
        db, monitor_id=monitor.id, status=status, region=region, offset=page.offset, limit=page.limit + 1
    )
    rows, next_offset = page_slice(rows, offset=page.offset, limit=page.limit)
    return success_response(request=request, data=[result_payload(row) for row in rows], next_offset=next_offset)


@router.get("/{monitor_id}/uptime", response_model=SuccessEnvelope[UptimeResponse] | UptimeResponse)
async def get_uptime(
    monitor_id: str,
    request: Request,
    days: int = Query(default=30, ge=1, le=90),
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    monitor = await load_monitor(db, monitor_id, principal)
    counts, average = await results_repo.status_counts(
        db, monitor_id=monitor.id, since=_utc_now() - timedelta(days=days)
    )
    success = counts.get("success", 0)
    degraded = counts.get("degraded", 0)
    failure = sum(counts.get(name, 0) for name in ("failure", "timeout", "error"))
    total = success + degraded + failure
    payload = UptimeResponse(
        monitor_id=monitor.id,
        days=days,
        total=total,
        success=success,
        degraded=degraded,
        failure=failure,
        uptime_percentage=round((success + degraded) / total * 100, 3) if total else None,
        avg_response_time_ms=round(average, 2) if average is not None else None,
    )
    return success_response(request=request, data=payload)


@router.post("/{monitor_id}/check", response_model=SuccessEnvelope[CheckNowResponse] | CheckNowResponse)
async def check_now(
    monitor_id: str,
    request: Request,
    region: str | None = Query(default=None),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Runs inline regardless of execution mode so the caller sees the stored result.
    monitor = await load_monitor(db, monitor_id, principal)
    if monitor.paused:
        raise HTTPException(status_code=409, detail={"code": "MONITOR_PAUSED", "message": "Monitor is paused"})
    target_region = region or (list(monitor.regions_json or []) or [get_settings().default_region])[0]
    summary = await run_monitor_check(db, monitor_id=monitor.id, region=target_region)
    result = None
    if summary.get("check_result_id"):
        row = await db.get(CheckResult, summary["check_result_id"])
        result = result_payload(row) if row is not None else None
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="monitor.checked",
        resource_type="monitor",
        resource_id=monitor_id,
        metadata={"region": target_region, "status": summary.get("status")},
    )
    return success_response(request=request, data=CheckNowResponse(summary=summary, result=result))


@router.get("/{monitor_id}/policies", response_model=SuccessEnvelope[list[str]] | list[str])
async def list_linked_policies(
    monitor_id: str,
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    monitor = await load_monitor(db, monitor_id, principal)
    rows = await db.execute(
        select(MonitorAlertPolicy.policy_id)
        .where(MonitorAlertPolicy.monitor_id == monitor.id)
        .order_by(MonitorAlertPolicy.created_at)
    )
    return success_response(request=request, data=[row[0] for row in rows.all()])


@router.put("/{monitor_id}/policies/{policy_id}", status_code=204)
async def link_policy(
    monitor_id: str,
    policy_id: str,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> None:
    monitor = await load_monitor(db, monitor_id, principal)
    policy = await alerts_repo.get_policy_for_org(db, policy_id, principal.organization_id)
    if policy is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Alert policy not found"})
    if await alerts_repo.get_policy_link(db, monitor_id=monitor.id, policy_id=policy.id) is not None:
        return None
    db.add(MonitorAlertPolicy(monitor_id=monitor.id, policy_id=policy.id))
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent link already exists.
        await db.rollback()
        return None
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="monitor.policy_linked",
        resource_type="monitor",
        resource_id=monitor_id,
        metadata={"policy_id": policy_id},
    )
    return None


@router.delete("/{monitor_id}/policies/{policy_id}", status_code=204)
async def unlink_policy(
    monitor_id: str,
    policy_id: str,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> None:
    monitor = await load_monitor(db, monitor_id, principal)
    await db.execute(
        delete(MonitorAlertPolicy).where(
            MonitorAlertPolicy.monitor_id == monitor.id, MonitorAlertPolicy.policy_id == policy_id
        )
    )
    await db.commit()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="monitor.policy_unlinked",
        resource_type="monitor",
        resource_id=monitor_id,
        metadata={"policy_id": policy_id},
    )
    return None
