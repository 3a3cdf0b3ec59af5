from __future__ import annotations

from datetime import datetime, timezone
import logging
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import get_db
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, success_response
from unistatus.domain.models import HeartbeatPing
from unistatus.persistence.repos import monitors as monitors_repo


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/heartbeats", tags=["heartbeats"], responses=DEFAULT_ERROR_RESPONSES)

PING_STATUSES = ("start", "complete", "fail")


class PingResponse(BaseModel):
    monitor_id: str
    ping_id: str
    status: str
    received_at: datetime


async def _record_ping(
    *,
    db: AsyncSession,
    token: str,
    status: str,
    duration_ms: int | None,
    exit_code: int | None,
    request: Request,
) -> PingResponse:
    # The token itself authenticates; unknown tokens look like missing monitors.
    monitor = await monitors_repo.get_monitor_by_heartbeat_token(db, token)
    if monitor is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Heartbeat monitor not found"})
    if monitor.paused:
        raise HTTPException(status_code=409, detail={"code": "MONITOR_PAUSED", "message": "Monitor is paused"})
    now = datetime.now(timezone.utc)
    ping = HeartbeatPing(
        id=uuid4().hex,
        monitor_id=monitor.id,
        status=status,
        duration_ms=duration_ms,
        exit_code=exit_code,
        metadata_json={"user_agent": request.headers.get("user-agent")},
        created_at=now,
    )
    db.add(ping)
    monitor.last_checked_at = now
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while recording heartbeat") from exc
    logger.info("heartbeat_ping_received monitor_id=%s status=%s", monitor.id, status)
    return PingResponse(monitor_id=monitor.id, ping_id=ping.id, status=status, received_at=now)


@router.api_route(
    "/{token}",
    methods=["GET", "POST"],
    response_model=SuccessEnvelope[PingResponse] | PingResponse,
)
async def ping(
    token: str,
    request: Request,
    status: str = Query(default="complete", pattern="^(start|complete|fail)$"),
    duration_ms: int | None = Query(default=None, ge=0),
    exit_code: int | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    payload = await _record_ping(
        db=db,
        token=token,
        status=status,
        duration_ms=duration_ms,
        exit_code=exit_code,
        request=request,
    )
    return success_response(request=request, data=payload)
