from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import CheckResult, Monitor
from unistatus.persistence.repos import monitors as monitors_repo
from unistatus.services.alerts.evaluator import evaluate_alerts
from unistatus.services.monitors.checkers import (
    CheckOutcome,
    check_dns,
    check_http,
    check_ssl,
    check_tcp,
    evaluate_heartbeat,
    heartbeat_settings,
)
from unistatus.services.monitors.status import apply_to_monitor


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _check_heartbeat(session: AsyncSession, monitor: Monitor, now: datetime) -> CheckOutcome:
    latest = await monitors_repo.get_latest_ping(session, monitor.id)
    expected, grace = heartbeat_settings(monitor)
    return evaluate_heartbeat(
        last_ping_status=latest.status if latest else None,
        last_ping_at=latest.created_at if latest else None,
        last_ping_duration_ms=latest.duration_ms if latest else None,
        expected_interval_s=expected,
        grace_period_s=grace,
        now=now,
    )


async def execute_check(session: AsyncSession, monitor: Monitor, *, now: datetime | None = None) -> CheckOutcome:
    # Route to the protocol checker; unexpected exceptions become `error` outcomes.
    current = now or _utc_now()
    try:
        if monitor.type in {"http", "https"}:
            return await check_http(monitor)
        if monitor.type == "tcp":
            return await check_tcp(monitor)
        if monitor.type == "dns":
            return await check_dns(monitor)
        if monitor.type == "ssl":
            return await check_ssl(monitor, now=current)
        if monitor.type == "heartbeat":
            return await _check_heartbeat(session, monitor, current)
    except Exception as exc:  # noqa: BLE001 - checker bugs surface as error results, not worker crashes.
        logger.exception("check_execution_failed monitor_id=%s type=%s", monitor.id, monitor.type)
        return CheckOutcome(status="error", error_message=str(exc) or exc.__class__.__name__, error_code="CHECK_ERROR")
    return CheckOutcome(
        status="error",
        error_message=f"Unsupported monitor type: {monitor.type}",
        error_code="UNSUPPORTED_MONITOR_TYPE",
    )


async def record_outcome(
    session: AsyncSession,
    *,
    monitor: Monitor,
    region: str,
    outcome: CheckOutcome,
    probe_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Persist a check result, fold it into the monitor status and evaluate alerts.

    Shared by the shared check fleet and private probe submissions so both
    paths apply identical transition and alerting semantics.
    """
    current = now or _utc_now()
    result = CheckResult(
        id=uuid4().hex,
        monitor_id=monitor.id,
        region=region,
        status=outcome.status,
        response_time_ms=outcome.response_time_ms,
        status_code=outcome.status_code,
        error_message=outcome.error_message,
        error_code=outcome.error_code,
        headers_json=outcome.headers,
        certificate_info=outcome.certificate_info,
        metadata_json=outcome.metadata or None,
        probe_id=probe_id,
        created_at=current,
    )
    session.add(result)
    previous_status = monitor.status
    transition = apply_to_monitor(monitor, outcome.status)
    monitor.last_checked_at = current
    await session.commit()

    if transition.changed:
        logger.info(
            "monitor_status_changed monitor_id=%s from=%s to=%s",
            monitor.id,
            previous_status,
            monitor.status,
        )

    alerts = await evaluate_alerts(
        session,
        monitor_id=monitor.id,
        organization_id=monitor.organization_id,
        check_result_id=result.id,
        check_status=outcome.status,
        error_message=outcome.error_message,
        response_time_ms=outcome.response_time_ms,
        status_code=outcome.status_code,
        now=current,
    )
    return {
        "monitor_id": monitor.id,
        "check_result_id": result.id,
        "region": region,
        "status": outcome.status,
        "monitor_status": monitor.status,
        "status_changed": transition.changed,
        "alerts_triggered": alerts["triggered"],
        "alerts_resolved": alerts["resolved"],
    }


async def run_monitor_check(
    session: AsyncSession,
    *,
    monitor_id: str,
    region: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    monitor = await monitors_repo.get_monitor(session, monitor_id)
    if monitor is None:
        logger.info("check_skipped_missing monitor_id=%s", monitor_id)
        return {"monitor_id": monitor_id, "skipped": "missing"}
    if monitor.paused:
        return {"monitor_id": monitor_id, "skipped": "paused"}
    outcome = await execute_check(session, monitor, now=now)
    summary = await record_outcome(session, monitor=monitor, region=region, outcome=outcome, now=now)
    return summary
