from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Pagination, Principal, get_db, pagination, require_role
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, page_slice, success_response
from unistatus.domain.models import AlertChannel, AlertHistory, AlertPolicy, NotificationLog
from unistatus.persistence.repos import alerts as alerts_repo
from unistatus.services.audit import record_request_event, sanitize_metadata
from unistatus.services.notifications.channels import CHANNEL_TYPES, validate_channel_config
from unistatus.services.notifications.dispatch import send_test_notification


router = APIRouter(tags=["alerts"], responses=DEFAULT_ERROR_RESPONSES)

ALERT_STATUSES = ("triggered", "acknowledged", "resolved")
_CONDITION_KEYS = ("consecutiveFailures", "failuresInWindow", "degradedDuration", "consecutiveSuccesses")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChannelCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    type: str
    config: dict[str, Any]
    enabled: bool = True


class ChannelPatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    config: dict[str, Any] | None = None
    enabled: bool | None = None


class ChannelResponse(BaseModel):
    id: str
    name: str
    type: str
    config: dict[str, Any]
    enabled: bool
    created_at: datetime
    updated_at: datetime


class ChannelTestResponse(BaseModel):
    success: bool
    error: str | None
    response_code: int | None


class PolicyCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    enabled: bool = True
    conditions: dict[str, Any] = Field(default_factory=lambda: {"consecutiveFailures": 2})
    channels: list[str] = Field(default_factory=list)
    cooldown_minutes: int = Field(default=15, ge=0, le=10080)
    oncall_rotation_id: str | None = None


class PolicyPatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    enabled: bool | None = None
    conditions: dict[str, Any] | None = None
    channels: list[str] | None = None
    cooldown_minutes: int | None = Field(default=None, ge=0, le=10080)
    oncall_rotation_id: str | None = None

    @field_validator("name", "enabled", "conditions", "channels", "cooldown_minutes")
    @classmethod
    def _reject_null(cls, value: Any) -> Any:
        # Required columns; omit the field to keep the current value.
        if value is None:
            raise ValueError("must not be null")
        return value


class PolicyResponse(BaseModel):
    id: str
    name: str
    description: str | None
    enabled: bool
    conditions: dict[str, Any]
    channels: list[str]
    cooldown_minutes: int
    oncall_rotation_id: str | None
    monitor_ids: list[str]
    created_at: datetime
    updated_at: datetime


class AlertResponse(BaseModel):
    id: str
    monitor_id: str
    policy_id: str
    status: str
    triggered_at: datetime
    acknowledged_at: datetime | None
    acknowledged_by: str | None
    resolved_at: datetime | None
    resolved_by: str | None
    metadata: dict[str, Any] | None


class NotificationLogResponse(BaseModel):
    id: str
    channel_id: str | None
    success: bool
    error_message: str | None
    response_code: int | None
    retry_count: int
    sent_at: datetime


def _channel_payload(channel: AlertChannel) -> ChannelResponse:
    # Signing and routing secrets are write-only.
    return ChannelResponse(
        id=channel.id,
        name=channel.name,
        type=channel.type,
        config=sanitize_metadata(dict(channel.config_json or {})),
        enabled=channel.enabled,
        created_at=channel.created_at,
        updated_at=channel.updated_at,
    )


def _policy_payload(policy: AlertPolicy, monitor_ids: list[str]) -> PolicyResponse:
    return PolicyResponse(
        id=policy.id,
        name=policy.name,
        description=policy.description,
        enabled=policy.enabled,
        conditions=dict(policy.conditions_json or {}),
        channels=list(policy.channels_json or []),
        cooldown_minutes=policy.cooldown_minutes,
        oncall_rotation_id=policy.oncall_rotation_id,
        monitor_ids=monitor_ids,
        created_at=policy.created_at,
        updated_at=policy.updated_at,
    )


def _alert_payload(alert: AlertHistory) -> AlertResponse:
    return AlertResponse(
        id=alert.id,
        monitor_id=alert.monitor_id,
        policy_id=alert.policy_id,
        status=alert.status,
        triggered_at=alert.triggered_at,
        acknowledged_at=alert.acknowledged_at,
        acknowledged_by=alert.acknowledged_by,
        resolved_at=alert.resolved_at,
        resolved_by=alert.resolved_by,
        metadata=alert.metadata_json,
    )


def _log_payload(row: NotificationLog) -> NotificationLogResponse:
    return NotificationLogResponse(
        id=row.id,
        channel_id=row.channel_id,
        success=row.success,
        error_message=row.error_message,
        response_code=row.response_code,
        retry_count=row.retry_count,
        sent_at=row.sent_at,
    )


def _validate_config(channel_type: str, config: dict[str, Any]) -> None:
    try:
        validate_channel_config(channel_type, config)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail={"code": "INVALID_CHANNEL_CONFIG", "message": str(exc)}) from exc


def _validate_conditions(conditions: dict[str, Any]) -> dict[str, Any]:
    unknown = sorted(set(conditions) - set(_CONDITION_KEYS))
    if unknown:
        raise HTTPException(
            status_code=422,
            detail={"code": "INVALID_CONDITIONS", "message": f"Unknown conditions: {', '.join(unknown)}"},
        )
    window = conditions.get("failuresInWindow")
    if window is not None and not (
        isinstance(window, dict) and int(window.get("count", 0)) > 0 and int(window.get("windowMinutes", 0)) > 0
    ):
        raise HTTPException(
            status_code=422,
            detail={
                "code": "INVALID_CONDITIONS",
                "message": "failuresInWindow requires positive count and windowMinutes",
            },
        )
    return conditions


async def _validate_policy_refs(
    db: AsyncSession, principal: Principal, *, channels: list[str] | None, rotation_id: str | None
) -> None:
    # Channel and rotation references must stay inside the caller's organization.
    for channel_id in channels or []:
        if await alerts_repo.get_channel_for_org(db, channel_id, principal.organization_id) is None:
            raise HTTPException(
                status_code=422,
                detail={"code": "INVALID_CHANNEL", "message": f"Unknown alert channel: {channel_id}"},
            )
    if rotation_id and await alerts_repo.get_rotation_for_org(db, rotation_id, principal.organization_id) is None:
        raise HTTPException(
            status_code=422,
            detail={"code": "INVALID_ROTATION", "message": f"Unknown on-call rotation: {rotation_id}"},
        )


async def _load_channel(db: AsyncSession, channel_id: str, principal: Principal) -> AlertChannel:
    channel = await alerts_repo.get_channel_for_org(db, channel_id, principal.organization_id)
    if channel is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Alert channel not found"})
    return channel


async def _load_policy(db: AsyncSession, policy_id: str, principal: Principal) -> AlertPolicy:
    policy = await alerts_repo.get_policy_for_org(db, policy_id, principal.organization_id)
    if policy is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Alert policy not found"})
    return policy


async def _load_alert(db: AsyncSession, alert_id: str, principal: Principal) -> AlertHistory:
    alert = await alerts_repo.get_alert_for_org(db, alert_id, principal.organization_id)
    if alert is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Alert not found"})
    return alert


async def _commit(db: AsyncSession, row: Any, action: str) -> None:
    try:
        await db.commit()
        await db.refresh(row)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail=f"Database error while {action}") from exc


@router.get("/alert-channels", response_model=SuccessEnvelope[list[ChannelResponse]] | list[ChannelResponse])
async def list_channels(
    request: Request,
    page: Pagination = Depends(pagination),
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await alerts_repo.list_channels(
        db, organization_id=principal.organization_id, offset=page.offset, limit=page.limit + 1
    )
    rows, next_offset = page_slice(rows, offset=page.offset, limit=page.limit)
    return success_response(request=request, data=[_channel_payload(row) for row in rows], next_offset=next_offset)


@router.post(
    "/alert-channels",
    status_code=201,
    response_model=SuccessEnvelope[ChannelResponse] | ChannelResponse,
)
async def create_channel(
    payload: ChannelCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    channel_type = payload.type.strip().lower()
    if channel_type not in CHANNEL_TYPES:
        raise HTTPException(
            status_code=422,
            detail={"code": "UNSUPPORTED_CHANNEL_TYPE", "message": f"Unsupported channel type: {payload.type}"},
        )
    _validate_config(channel_type, payload.config)
    channel = AlertChannel(
        id=uuid4().hex,
        organization_id=principal.organization_id,
        name=payload.name,
        type=channel_type,
        config_json=payload.config,
        enabled=payload.enabled,
    )
    db.add(channel)
    await _commit(db, channel, "creating alert channel")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="alert_channel.created",
        resource_type="alert_channel",
        resource_id=channel.id,
        metadata={"type": channel_type},
    )
    return success_response(request=request, data=_channel_payload(channel))


@router.get("/alert-channels/{channel_id}", response_model=SuccessEnvelope[ChannelResponse] | ChannelResponse)
async def get_channel(
    channel_id: str,
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    channel = await _load_channel(db, channel_id, principal)
    return success_response(request=request, data=_channel_payload(channel))


@router.patch("/alert-channels/{channel_id}", response_model=SuccessEnvelope[ChannelResponse] | ChannelResponse)
async def patch_channel(
    channel_id: str,
    payload: ChannelPatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    channel = await _load_channel(db, channel_id, principal)
    if payload.config is not None:
        # Redacted placeholders echo back from reads; keep the stored secret for those keys.
        stored = dict(channel.config_json or {})
        merged = {
            key: stored.get(key) if value == "[REDACTED]" else value for key, value in payload.config.items()
        }
        _validate_config(channel.type, merged)
        channel.config_json = merged
    if payload.name is not None:
        channel.name = payload.name
    if payload.enabled is not None:
        channel.enabled = payload.enabled
    await _commit(db, channel, "updating alert channel")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="alert_channel.updated",
        resource_type="alert_channel",
        resource_id=channel.id,
    )
    return success_response(request=request, data=_channel_payload(channel))


@router.delete("/alert-channels/{channel_id}", status_code=204)
async def delete_channel(
    channel_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    channel = await _load_channel(db, channel_id, principal)
    await db.delete(channel)
    await db.commit()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="alert_channel.deleted",
        resource_type="alert_channel",
        resource_id=channel_id,
    )
    return None


@router.post(
    "/alert-channels/{channel_id}/test",
    response_model=SuccessEnvelope[ChannelTestResponse] | ChannelTestResponse,
)
async def test_channel(
    channel_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    channel = await _load_channel(db, channel_id, principal)
    result = await send_test_notification(channel)
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="alert_channel.tested",
        resource_type="alert_channel",
        resource_id=channel.id,
        outcome="success" if result["success"] else "failure",
    )
    return success_response(request=request, data=ChannelTestResponse(**result))


@router.get("/alert-policies", response_model=SuccessEnvelope[list[PolicyResponse]] | list[PolicyResponse])
async def list_policies(
    request: Request,
    page: Pagination = Depends(pagination),
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await alerts_repo.list_policies(
        db, organization_id=principal.organization_id, offset=page.offset, limit=page.limit + 1
    )
    rows, next_offset = page_slice(rows, offset=page.offset, limit=page.limit)
    data = [_policy_payload(row, await alerts_repo.list_policy_monitor_ids(db, row.id)) for row in rows]
    return success_response(request=request, data=data, next_offset=next_offset)


@router.post(
    "/alert-policies",
    status_code=201,
    response_model=SuccessEnvelope[PolicyResponse] | PolicyResponse,
)
async def create_policy(
    payload: PolicyCreateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    conditions = _validate_conditions(payload.conditions)
    await _validate_policy_refs(db, principal, channels=payload.channels, rotation_id=payload.oncall_rotation_id)
    policy = AlertPolicy(
        id=uuid4().hex,
        organization_id=principal.organization_id,
        name=payload.name,
        description=payload.description,
        enabled=payload.enabled,
        conditions_json=conditions,
        channels_json=list(dict.fromkeys(payload.channels)),
        cooldown_minutes=payload.cooldown_minutes,
        oncall_rotation_id=payload.oncall_rotation_id,
    )
    db.add(policy)
    await _commit(db, policy, "creating alert policy")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="alert_policy.created",
        resource_type="alert_policy",
        resource_id=policy.id,
    )
    return success_response(request=request, data=_policy_payload(policy, []))


@router.get("/alert-policies/{policy_id}", response_model=SuccessEnvelope[PolicyResponse] | PolicyResponse)
async def get_policy(
    policy_id: str,
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policy = await _load_policy(db, policy_id, principal)
    monitor_ids = await alerts_repo.list_policy_monitor_ids(db, policy.id)
    return success_response(request=request, data=_policy_payload(policy, monitor_ids))


@router.patch("/alert-policies/{policy_id}", response_model=SuccessEnvelope[PolicyResponse] | PolicyResponse)
async def patch_policy(
    policy_id: str,
    payload: PolicyPatchRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    policy = await _load_policy(db, policy_id, principal)
    changes = payload.model_dump(exclude_unset=True)
    await _validate_policy_refs(
        db, principal, channels=payload.channels, rotation_id=changes.get("oncall_rotation_id")
    )
    if payload.conditions is not None:
        policy.conditions_json = _validate_conditions(payload.conditions)
    if payload.channels is not None:
        policy.channels_json = list(dict.fromkeys(payload.channels))
    for field in ("name", "description", "enabled", "cooldown_minutes", "oncall_rotation_id"):
        if field in changes:
            setattr(policy, field, changes[field])
    await _commit(db, policy, "updating alert policy")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="alert_policy.updated",
        resource_type="alert_policy",
        resource_id=policy.id,
        metadata={"fields": sorted(changes.keys())},
    )
    monitor_ids = await alerts_repo.list_policy_monitor_ids(db, policy.id)
    return success_response(request=request, data=_policy_payload(policy, monitor_ids))


@router.delete("/alert-policies/{policy_id}", status_code=204)
async def delete_policy(
    policy_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    policy = await _load_policy(db, policy_id, principal)
    await db.delete(policy)
    await db.commit()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="alert_policy.deleted",
        resource_type="alert_policy",
        resource_id=policy_id,
    )
    return None


@router.get("/alerts", response_model=SuccessEnvelope[list[AlertResponse]] | list[AlertResponse])
async def list_alerts(
    request: Request,
    status: str | None = Query(default=None),
    monitor_id: str | None = Query(default=None),
    policy_id: str | None = Query(default=None),
    page: Pagination = Depends(pagination),
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if status is not None and status not in ALERT_STATUSES:
        raise HTTPException(
            status_code=422,
            detail={"code": "INVALID_ALERT_STATUS", "message": f"status must be one of {', '.join(ALERT_STATUSES)}"},
        )
    rows = await alerts_repo.list_alerts(
        db,
        organization_id=principal.organization_id,
        status=status,
        monitor_id=monitor_id,
        policy_id=policy_id,
        offset=page.offset,
        limit=page.limit + 1,
    )
    rows, next_offset = page_slice(rows, offset=page.offset, limit=page.limit)
    return success_response(request=request, data=[_alert_payload(row) for row in rows], next_offset=next_offset)


@router.get("/alerts/{alert_id}", response_model=SuccessEnvelope[AlertResponse] | AlertResponse)
async def get_alert(
    alert_id: str,
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    alert = await _load_alert(db, alert_id, principal)
    return success_response(request=request, data=_alert_payload(alert))


@router.post("/alerts/{alert_id}/acknowledge", response_model=SuccessEnvelope[AlertResponse] | AlertResponse)
async def acknowledge_alert(
    alert_id: str,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    alert = await _load_alert(db, alert_id, principal)
    if alert.status != "triggered":
        raise HTTPException(
            status_code=409,
            detail={"code": "ALERT_NOT_TRIGGERED", "message": f"Alert is already {alert.status}"},
        )
    alert.status = "acknowledged"
    alert.acknowledged_at = _utc_now()
    alert.acknowledged_by = principal.subject_id
    await _commit(db, alert, "acknowledging alert")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="alert.acknowledged",
        resource_type="alert",
        resource_id=alert.id,
    )
    return success_response(request=request, data=_alert_payload(alert))


@router.post("/alerts/{alert_id}/resolve", response_model=SuccessEnvelope[AlertResponse] | AlertResponse)
async def resolve_alert(
    alert_id: str,
    request: Request,
    principal: Principal = Depends(require_role("member")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    alert = await _load_alert(db, alert_id, principal)
    if alert.status == "resolved":
        return success_response(request=request, data=_alert_payload(alert))
    alert.status = "resolved"
    alert.resolved_at = _utc_now()
    alert.resolved_by = principal.subject_id
    await _commit(db, alert, "resolving alert")
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="alert.resolved",
        resource_type="alert",
        resource_id=alert.id,
    )
    return success_response(request=request, data=_alert_payload(alert))


@router.get(
    "/alerts/{alert_id}/notifications",
    response_model=SuccessEnvelope[list[NotificationLogResponse]] | list[NotificationLogResponse],
)
async def list_alert_notifications(
    alert_id: str,
    request: Request,
    principal: Principal = Depends(require_role("viewer")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    alert = await _load_alert(db, alert_id, principal)
    rows = await alerts_repo.list_notification_logs(db, alert.id)
    return success_response(request=request, data=[_log_payload(row) for row in rows])
