from __future__ import annotations

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Principal, get_db, require_role
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, success_response
from unistatus.core.config import get_settings
from unistatus.services.coordination import (
    NOTIFY_WORKER_HEARTBEAT_KEY,
    SCHEDULER_HEARTBEAT_KEY,
    get_heartbeat,
    ping_redis,
)


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class OpsHealthResponse(BaseModel):
    status: str
    database: str
    redis: str
    scheduler_heartbeat_age_s: float | None
    notify_worker_heartbeat_age_s: float | None


def _heartbeat_age(value: datetime | None, now: datetime) -> float | None:
    if value is None:
        return None
    return round((now - value).total_seconds(), 3)


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get("/ops/health", response_model=SuccessEnvelope[OpsHealthResponse] | OpsHealthResponse)
async def ops_health(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Report dependency reachability and worker liveness for operators.
    settings = get_settings()
    now = datetime.now(timezone.utc)
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        logger.warning("ops_health_database_unreachable", exc_info=True)
        database = "error"
    redis_state = "ok" if await ping_redis() else "unavailable"
    scheduler_age = _heartbeat_age(await get_heartbeat(SCHEDULER_HEARTBEAT_KEY), now)
    notify_age = _heartbeat_age(await get_heartbeat(NOTIFY_WORKER_HEARTBEAT_KEY), now)

    status = "ok"
    if database != "ok":
        status = "down"
    elif (
        redis_state != "ok"
        or scheduler_age is None
        or scheduler_age > settings.worker_heartbeat_stale_after_s
    ):
        status = "degraded"
    payload = OpsHealthResponse(
        status=status,
        database=database,
        redis=redis_state,
        scheduler_heartbeat_age_s=scheduler_age,
        notify_worker_heartbeat_age_s=notify_age,
    )
    return success_response(request=request, data=payload)
