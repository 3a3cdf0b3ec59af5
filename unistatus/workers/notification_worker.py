from __future__ import annotations

import asyncio
import logging
from typing import Any

from arq import Retry
from arq.connections import RedisSettings

from unistatus.core.config import get_settings
from unistatus.core.errors import NotificationDeliveryError
from unistatus.core.logging import configure_logging
from unistatus.persistence.db import SessionLocal
from unistatus.services.coordination import NOTIFY_WORKER_HEARTBEAT_KEY, set_heartbeat
from unistatus.services.notifications.dispatch import process_alert_notification, retry_backoff_ms
from unistatus.services.notifications.subscribers import deliver_subscriber_email


logger = logging.getLogger(__name__)


async def send_alert_notification(
    ctx,
    alert_history_id: str,
    channel_id: str | None,
    alert_data: dict[str, Any],
    recipient: str | None = None,
) -> str:
    # Transient failures go back to arq with backoff until the last allowed try.
    attempt = int(ctx.get("job_try", 1))
    final = attempt >= max(1, int(get_settings().notify_max_attempts))
    try:
        async with SessionLocal() as session:
            return await process_alert_notification(
                session=session,
                alert_history_id=alert_history_id,
                channel_id=channel_id,
                alert_data=alert_data,
                recipient=recipient,
                attempt=attempt,
                final=final,
            )
    except NotificationDeliveryError as exc:
        job_id = str(ctx.get("job_id") or alert_history_id)
        defer_s = retry_backoff_ms(job_id=job_id, attempt_no=attempt) / 1000.0
        raise Retry(defer=defer_s) from exc


async def send_subscriber_email(ctx, to: str, message: dict[str, str]) -> str:
    attempt = int(ctx.get("job_try", 1))
    try:
        await deliver_subscriber_email(to, message)
    except NotificationDeliveryError as exc:
        if attempt >= max(1, int(get_settings().notify_max_attempts)):
            logger.error("subscriber_email_failed subject=%s attempt=%s error=%s", message.get("subject"), attempt, exc)
            return "failed"
        job_id = str(ctx.get("job_id") or to)
        raise Retry(defer=retry_backoff_ms(job_id=job_id, attempt_no=attempt) / 1000.0) from exc
    return "delivered"


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        await set_heartbeat(NOTIFY_WORKER_HEARTBEAT_KEY)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_queue_name
    max_tries = max(1, int(settings.notify_max_attempts))
    functions = [send_alert_notification, send_subscriber_email]
    on_startup = _startup
    on_shutdown = _shutdown
