from __future__ import annotations

from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
import hashlib
import logging
from typing import Any
from uuid import uuid4

import aiosmtplib
import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.core.config import get_settings
from unistatus.core.errors import NotificationDeliveryError
from unistatus.domain.models import AlertChannel, NotificationLog
from unistatus.services.notifications.channels import NotificationRequest, build_notification
from unistatus.services.queue import enqueue_job


logger = logging.getLogger(__name__)

SEND_ALERT_NOTIFICATION = "send_alert_notification"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def retry_backoff_ms(*, job_id: str, attempt_no: int) -> int:
    # Use exponential backoff with deterministic jitter to keep tests reproducible and avoid stampedes.
    settings = get_settings()
    base = max(1, int(settings.notify_backoff_ms))
    cap = max(base, int(settings.notify_backoff_max_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    digest = hashlib.sha256(f"{job_id}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % 251
    return min(cap, backoff + jitter)


async def _send_http(request: NotificationRequest) -> int:
    timeout_s = max(0.2, get_settings().notify_timeout_ms / 1000.0)
    try:
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            response = await client.request(
                request.method,
                request.url or "",
                content=request.body,
                headers=request.headers,
            )
    except httpx.HTTPError as exc:
        raise NotificationDeliveryError(f"Request failed: {exc}") from exc
    if response.status_code >= 400:
        raise NotificationDeliveryError(
            f"Receiver rejected notification delivery ({response.status_code})",
            status_code=int(response.status_code),
        )
    return int(response.status_code)


def build_email_message(*, to: list[str], subject: str, html_body: str, text_body: str | None = None) -> MIMEMultipart:
    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = get_settings().smtp_from
    message["To"] = ", ".join(to)
    if text_body:
        message.attach(MIMEText(text_body, "plain"))
    message.attach(MIMEText(html_body, "html"))
    return message


async def send_email(*, to: list[str], subject: str, html_body: str, text_body: str | None = None) -> None:
    # Relay through the configured SMTP server; transport errors surface as delivery errors.
    if not to:
        raise NotificationDeliveryError("Email notification has no recipients")
    settings = get_settings()
    message = build_email_message(to=to, subject=subject, html_body=html_body, text_body=text_body)
    try:
        await aiosmtplib.send(
            message,
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username or None,
            password=settings.smtp_password or None,
            use_tls=settings.smtp_use_tls,
            timeout=max(0.2, settings.notify_timeout_ms / 1000.0),
        )
    except (aiosmtplib.SMTPException, OSError) as exc:
        raise NotificationDeliveryError(f"SMTP delivery failed: {exc}") from exc


async def deliver_notification(request: NotificationRequest) -> int | None:
    """Send one prepared notification and return the receiver status code.

    Email deliveries return ``None`` because SMTP has no HTTP-style status.
    Raises ``NotificationDeliveryError`` on any transport or receiver failure.
    """
    if request.kind == "email":
        await send_email(
            to=request.to,
            subject=request.subject or "",
            html_body=request.html_body or "",
            text_body=request.text_body,
        )
        return None
    return await _send_http(request)


async def write_notification_log(
    session: AsyncSession,
    *,
    alert_history_id: str,
    channel_id: str | None,
    success: bool,
    error_message: str | None = None,
    response_code: int | None = None,
    retry_count: int = 0,
) -> NotificationLog:
    row = NotificationLog(
        id=uuid4().hex,
        alert_history_id=alert_history_id,
        channel_id=channel_id,
        success=success,
        error_message=error_message,
        response_code=response_code,
        retry_count=retry_count,
        sent_at=_utc_now(),
    )
    session.add(row)
    await session.commit()
    return row


async def process_alert_notification(
    *,
    session: AsyncSession,
    alert_history_id: str,
    channel_id: str | None,
    alert_data: dict[str, Any],
    recipient: str | None = None,
    attempt: int = 1,
    final: bool = True,
) -> str:
    """Deliver one alert notification and log the outcome.

    A log row is written on success and on the final failed attempt only.
    Non-final failures re-raise ``NotificationDeliveryError`` so the worker
    can schedule a retry.
    """
    if channel_id is not None:
        channel = await session.get(AlertChannel, channel_id)
        if channel is None or not channel.enabled:
            logger.info("notification_skipped channel_id=%s alert_id=%s", channel_id, alert_history_id)
            return "skipped"
        channel_type, config = channel.type, dict(channel.config_json or {})
    elif recipient:
        # Direct on-call pages go out as email without a configured channel.
        channel_type, config = "email", {"email": recipient}
    else:
        return "skipped"

    try:
        request = build_notification(channel_type, config, alert_data)
        response_code = await deliver_notification(request)
    except (NotificationDeliveryError, ValueError, KeyError) as exc:
        status_code = exc.status_code if isinstance(exc, NotificationDeliveryError) else None
        if not final and isinstance(exc, NotificationDeliveryError):
            logger.warning(
                "notification_retry channel_id=%s alert_id=%s attempt=%s error=%s",
                channel_id,
                alert_history_id,
                attempt,
                exc,
            )
            raise
        logger.error(
            "notification_failed channel_id=%s alert_id=%s attempt=%s error=%s",
            channel_id,
            alert_history_id,
            attempt,
            exc,
        )
        await write_notification_log(
            session,
            alert_history_id=alert_history_id,
            channel_id=channel_id,
            success=False,
            error_message=str(exc),
            response_code=status_code,
            retry_count=max(0, attempt - 1),
        )
        return "failed"

    await write_notification_log(
        session,
        alert_history_id=alert_history_id,
        channel_id=channel_id,
        success=True,
        response_code=response_code,
        retry_count=max(0, attempt - 1),
    )
    return "delivered"


async def enqueue_notification(
    *,
    session: AsyncSession,
    alert_history_id: str,
    channel_id: str | None,
    alert_data: dict[str, Any],
    recipient: str | None = None,
) -> str:
    # Inline mode delivers immediately so tests and single-process installs need no worker.
    if get_settings().check_execution_mode == "inline":
        return await process_alert_notification(
            session=session,
            alert_history_id=alert_history_id,
            channel_id=channel_id,
            alert_data=alert_data,
            recipient=recipient,
        )
    queued = await enqueue_job(
        SEND_ALERT_NOTIFICATION,
        alert_history_id,
        channel_id,
        alert_data,
        recipient,
        queue_name=get_settings().notify_queue_name,
    )
    if not queued:
        logger.error("notification_enqueue_dropped channel_id=%s alert_id=%s", channel_id, alert_history_id)
        return "dropped"
    return "queued"


async def send_test_notification(channel: AlertChannel) -> dict[str, Any]:
    # Deliver a synthetic alert so operators can verify channel wiring without a real outage.
    settings = get_settings()
    alert_data = {
        "alertHistoryId": f"test-{uuid4().hex[:8]}",
        "monitorId": None,
        "monitorName": "Test Monitor",
        "monitorUrl": "https://example.com",
        "status": "down",
        "severity": "critical",
        "message": f"This is a test notification from channel '{channel.name}'.",
        "responseTime": 1234,
        "statusCode": 500,
        "dashboardUrl": settings.app_base_url,
        "timestamp": _utc_now().isoformat(),
    }
    try:
        request = build_notification(channel.type, dict(channel.config_json or {}), alert_data)
        response_code = await deliver_notification(request)
    except (NotificationDeliveryError, ValueError, KeyError) as exc:
        return {
            "success": False,
            "error": str(exc),
            "response_code": exc.status_code if isinstance(exc, NotificationDeliveryError) else None,
        }
    return {"success": True, "error": None, "response_code": response_code}
