"""Alert-policy evaluation after each stored check result.

Conditions are evaluated against the monitor's recent check history; any
single satisfied condition triggers. Triggered alerts are deduplicated per
policy and monitor by the policy cooldown, and recoveries resolve the open
alert once enough consecutive successes are observed.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.core.config import get_settings
from unistatus.domain.models import AlertHistory, AlertPolicy, Monitor, OncallRotation
from unistatus.persistence.repos import alerts as alerts_repo
from unistatus.persistence.repos import check_results as check_results_repo
from unistatus.services.alerts.oncall import current_oncall_member
from unistatus.services.monitors.status import alert_severity, alert_status_label, is_failure
from unistatus.services.notifications.dispatch import enqueue_notification


logger = logging.getLogger(__name__)

DEFAULT_CONDITIONS = {"consecutiveFailures": 2}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def consecutive_failures_met(recent_statuses: list[str], required: int) -> bool:
    # The latest `required` results must exist and all be failures.
    if required <= 0 or len(recent_statuses) < required:
        return False
    return all(is_failure(status) for status in recent_statuses[:required])


def failures_in_window_met(window_statuses: list[str], required: int) -> bool:
    if required <= 0:
        return False
    return sum(1 for status in window_statuses if is_failure(status)) >= required


def degraded_duration_met(window_statuses: list[str], *, current_status: str) -> bool:
    if current_status != "degraded" or not window_statuses:
        return False
    return all(status == "degraded" for status in window_statuses)


def recovery_met(recent_statuses: list[str], required: int) -> bool:
    required = max(1, required)
    if len(recent_statuses) < required:
        return False
    return all(status == "success" for status in recent_statuses[:required])


async def conditions_met(
    session: AsyncSession,
    *,
    monitor_id: str,
    conditions: dict[str, Any],
    check_status: str,
    now: datetime,
) -> bool:
    consecutive = int(conditions.get("consecutiveFailures") or 0)
    if consecutive > 0:
        recent = await check_results_repo.recent_statuses(session, monitor_id=monitor_id, limit=consecutive)
        if consecutive_failures_met(recent, consecutive):
            return True

    window = conditions.get("failuresInWindow") or {}
    window_count = int(window.get("count") or 0)
    window_minutes = int(window.get("windowMinutes") or 0)
    if window_count > 0 and window_minutes > 0:
        statuses = await check_results_repo.statuses_since(
            session, monitor_id=monitor_id, since=now - timedelta(minutes=window_minutes)
        )
        if failures_in_window_met(statuses, window_count):
            return True

    degraded_minutes = int(conditions.get("degradedDuration") or 0)
    if degraded_minutes > 0 and check_status == "degraded":
        statuses = await check_results_repo.statuses_since(
            session, monitor_id=monitor_id, since=now - timedelta(minutes=degraded_minutes)
        )
        if degraded_duration_met(statuses, current_status=check_status):
            return True
    return False


def build_alert_data(
    *,
    alert: AlertHistory,
    monitor: Monitor,
    check_status: str,
    error_message: str | None,
    response_time_ms: int | None,
    status_code: int | None,
    now: datetime,
) -> dict[str, Any]:
    base_url = get_settings().app_base_url.rstrip("/")
    return {
        "alertHistoryId": alert.id,
        "monitorId": monitor.id,
        "monitorName": monitor.name,
        "monitorUrl": monitor.url,
        "status": alert_status_label(check_status),
        "severity": alert_severity(check_status),
        "message": error_message,
        "responseTime": response_time_ms,
        "statusCode": status_code,
        "dashboardUrl": f"{base_url}/monitors/{monitor.id}",
        "timestamp": now.isoformat(),
    }


async def _queue_policy_notifications(
    session: AsyncSession,
    *,
    policy: AlertPolicy,
    alert: AlertHistory,
    alert_data: dict[str, Any],
    page_oncall: bool,
) -> int:
    # Fan out to every enabled channel listed on the policy plus the on-call member.
    queued = 0
    channels = await alerts_repo.list_enabled_channels_by_ids(
        session,
        organization_id=policy.organization_id,
        channel_ids=list(policy.channels_json or []),
    )
    for channel in channels:
        await enqueue_notification(
            session=session,
            alert_history_id=alert.id,
            channel_id=channel.id,
            alert_data=alert_data,
        )
        queued += 1
    if page_oncall and policy.oncall_rotation_id:
        rotation = await session.get(OncallRotation, policy.oncall_rotation_id)
        if rotation is not None and rotation.organization_id == policy.organization_id:
            member = await current_oncall_member(session, rotation, now=_utc_now())
            if member is not None:
                await enqueue_notification(
                    session=session,
                    alert_history_id=alert.id,
                    channel_id=None,
                    alert_data=alert_data,
                    recipient=member.email,
                )
                queued += 1
    return queued


async def _trigger(
    session: AsyncSession,
    *,
    policy: AlertPolicy,
    monitor: Monitor,
    check_result_id: str | None,
    check_status: str,
    error_message: str | None,
    response_time_ms: int | None,
    status_code: int | None,
    now: datetime,
) -> AlertHistory | None:
    cooldown_since = now - timedelta(minutes=max(0, int(policy.cooldown_minutes or 0)))
    recent = await alerts_repo.get_recent_alert(
        session, policy_id=policy.id, monitor_id=monitor.id, since=cooldown_since
    )
    if recent is not None:
        logger.info("alert_cooldown policy_id=%s monitor_id=%s", policy.id, monitor.id)
        return None

    alert = AlertHistory(
        id=uuid4().hex,
        organization_id=monitor.organization_id,
        monitor_id=monitor.id,
        policy_id=policy.id,
        status="triggered",
        triggered_at=now,
        metadata_json={
            "checkResultId": check_result_id,
            "errorMessage": error_message,
            "severity": alert_severity(check_status),
        },
    )
    session.add(alert)
    await session.commit()
    logger.info("alert_triggered alert_id=%s policy_id=%s monitor_id=%s", alert.id, policy.id, monitor.id)

    alert_data = build_alert_data(
        alert=alert,
        monitor=monitor,
        check_status=check_status,
        error_message=error_message,
        response_time_ms=response_time_ms,
        status_code=status_code,
        now=now,
    )
    await _queue_policy_notifications(session, policy=policy, alert=alert, alert_data=alert_data, page_oncall=True)
    return alert


async def _recover(
    session: AsyncSession,
    *,
    policy: AlertPolicy,
    monitor: Monitor,
    response_time_ms: int | None,
    status_code: int | None,
    now: datetime,
) -> AlertHistory | None:
    open_alert = await alerts_repo.get_open_alert(session, policy_id=policy.id, monitor_id=monitor.id)
    if open_alert is None:
        return None
    required = int((policy.conditions_json or {}).get("consecutiveSuccesses") or 1)
    recent = await check_results_repo.recent_statuses(session, monitor_id=monitor.id, limit=max(1, required))
    if not recovery_met(recent, required):
        return None

    open_alert.status = "resolved"
    open_alert.resolved_at = now
    open_alert.resolved_by = "system"
    await session.commit()
    logger.info("alert_resolved alert_id=%s policy_id=%s monitor_id=%s", open_alert.id, policy.id, monitor.id)

    alert_data = build_alert_data(
        alert=open_alert,
        monitor=monitor,
        check_status="success",
        error_message=None,
        response_time_ms=response_time_ms,
        status_code=status_code,
        now=now,
    )
    await _queue_policy_notifications(
        session, policy=policy, alert=open_alert, alert_data=alert_data, page_oncall=False
    )
    return open_alert


async def evaluate_alerts(
    session: AsyncSession,
    *,
    monitor_id: str,
    organization_id: str,
    check_result_id: str | None,
    check_status: str,
    error_message: str | None = None,
    response_time_ms: int | None = None,
    status_code: int | None = None,
    now: datetime | None = None,
) -> dict[str, list[str]]:
    """Evaluate every enabled policy linked to the monitor.

    Returns the ids of alerts triggered and resolved. Failures are logged per
    policy and never propagate to the check runner.
    """
    current = now or _utc_now()
    outcome: dict[str, list[str]] = {"triggered": [], "resolved": []}
    monitor = await session.get(Monitor, monitor_id)
    if monitor is None or monitor.organization_id != organization_id:
        return outcome
    try:
        policies = await alerts_repo.list_enabled_policies_for_monitor(session, monitor_id)
    except Exception:  # noqa: BLE001 - alert evaluation must never fail the check pipeline.
        logger.exception("alert_policy_lookup_failed monitor_id=%s", monitor_id)
        return outcome

    policy_ids = [policy.id for policy in policies if policy.organization_id == organization_id]
    for policy_id in policy_ids:
        # Reload per policy; a rollback after a failed policy expires loaded rows.
        policy = await session.get(AlertPolicy, policy_id)
        monitor = await session.get(Monitor, monitor_id)
        if policy is None or monitor is None:
            continue
        try:
            if is_failure(check_status) or check_status == "degraded":
                conditions = policy.conditions_json or DEFAULT_CONDITIONS
                if not await conditions_met(
                    session,
                    monitor_id=monitor_id,
                    conditions=conditions,
                    check_status=check_status,
                    now=current,
                ):
                    continue
                alert = await _trigger(
                    session,
                    policy=policy,
                    monitor=monitor,
                    check_result_id=check_result_id,
                    check_status=check_status,
                    error_message=error_message,
                    response_time_ms=response_time_ms,
                    status_code=status_code,
                    now=current,
                )
                if alert is not None:
                    outcome["triggered"].append(alert.id)
            elif check_status == "success":
                resolved = await _recover(
                    session,
                    policy=policy,
                    monitor=monitor,
                    response_time_ms=response_time_ms,
                    status_code=status_code,
                    now=current,
                )
                if resolved is not None:
                    outcome["resolved"].append(resolved.id)
        except Exception:  # noqa: BLE001 - one broken policy must not block the others.
            logger.exception("alert_evaluation_failed policy_id=%s monitor_id=%s", policy_id, monitor_id)
            await session.rollback()
    return outcome
