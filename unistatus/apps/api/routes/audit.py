from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Pagination, Principal, get_db, pagination, require_feature_access
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, page_slice, success_response
from unistatus.persistence.repos import audit as audit_repo
from unistatus.services.entitlements import FEATURE_AUDIT_LOGS


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: str
    organization_id: str | None
    actor_type: str
    actor_id: str | None
    actor_role: str | None
    event_type: str
    outcome: str
    resource_type: str | None
    resource_id: str | None
    request_id: str | None
    ip_address: str | None
    user_agent: str | None
    metadata_json: dict[str, Any] | None
    error_code: str | None


def _to_response(event) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.id,
        occurred_at=event.occurred_at.isoformat(),
        organization_id=event.organization_id,
        actor_type=event.actor_type,
        actor_id=event.actor_id,
        actor_role=event.actor_role,
        event_type=event.event_type,
        outcome=event.outcome,
        resource_type=event.resource_type,
        resource_id=event.resource_id,
        request_id=event.request_id,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        metadata_json=event.metadata_json,
        error_code=event.error_code,
    )


@router.get("/events", response_model=SuccessEnvelope[list[AuditEventResponse]] | list[AuditEventResponse])
async def list_audit_events(
    request: Request,
    event_type: str | None = None,
    outcome: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    page: Pagination = Depends(pagination),
    principal: Principal = Depends(require_feature_access(FEATURE_AUDIT_LOGS, "admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Organization scope always comes from the credential, never the query.
    try:
        events = await audit_repo.list_events(
            db,
            organization_id=principal.organization_id,
            event_type=event_type,
            outcome=outcome,
            resource_type=resource_type,
            resource_id=resource_id,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=page.offset,
            limit=page.limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit events") from exc

    events, next_offset = page_slice(events, offset=page.offset, limit=page.limit)
    return success_response(request=request, data=[_to_response(event) for event in events], next_offset=next_offset)


@router.get("/events/{event_id}", response_model=SuccessEnvelope[AuditEventResponse] | AuditEventResponse)
async def get_audit_event(
    event_id: int,
    request: Request,
    principal: Principal = Depends(require_feature_access(FEATURE_AUDIT_LOGS, "admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        event = await audit_repo.get_event_by_id(db, organization_id=principal.organization_id, event_id=event_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit event") from exc
    if event is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Audit event not found"})
    return success_response(request=request, data=_to_response(event))
