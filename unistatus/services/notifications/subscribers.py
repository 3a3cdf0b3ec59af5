"""Status page subscriber emails.

Subscribers get a verification link on sign-up and, once verified, an email
for every incident opened or updated on a monitor their page shows and for
every maintenance window that starts on one. Every email carries the
unsubscribe link.
"""

from __future__ import annotations

from datetime import datetime
import html
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.core.config import get_settings
from unistatus.core.errors import NotificationDeliveryError
from unistatus.domain.models import Incident, MaintenanceWindow, StatusPage, Subscriber
from unistatus.persistence.repos import incidents as incidents_repo
from unistatus.persistence.repos import status_pages as status_pages_repo
from unistatus.services.maintenance import window_is_active
from unistatus.services.notifications.dispatch import send_email
from unistatus.services.queue import enqueue_job
from unistatus.services.status_pages import merge_page_settings


logger = logging.getLogger(__name__)

SEND_SUBSCRIBER_EMAIL = "send_subscriber_email"


def status_page_url(slug: str) -> str:
    return f"{get_settings().app_base_url.rstrip('/')}/status/{slug}"


def verification_url(slug: str, token: str) -> str:
    return f"{status_page_url(slug)}/verify?token={token}"


def unsubscribe_url(slug: str, token: str) -> str:
    return f"{status_page_url(slug)}/unsubscribe?token={token}"


def _message(subject: str, heading: str, paragraphs: list[str], links: list[tuple[str, str]]) -> dict[str, str]:
    # Plain dicts so the message survives the arq round trip unchanged.
    html_body = (
        "<html><body>"
        f"<h2>{html.escape(heading)}</h2>"
        + "".join(f"<p>{html.escape(text)}</p>" for text in paragraphs)
        + "".join(f'<p><a href="{html.escape(url)}">{html.escape(label)}</a></p>' for label, url in links)
        + "</body></html>"
    )
    text_body = "\n\n".join([heading, *paragraphs, *[f"{label}: {url}" for label, url in links]])
    return {"subject": subject, "html_body": html_body, "text_body": text_body}


def build_verification_email(*, page_name: str, slug: str, verification_token: str) -> dict[str, str]:
    return _message(
        f"[{page_name}] Confirm your subscription",
        f"Confirm your subscription to {page_name}",
        ["You asked to receive incident and maintenance updates. Confirm to start receiving them."],
        [("Confirm subscription", verification_url(slug, verification_token))],
    )


def build_incident_email(
    *, page_name: str, slug: str, unsubscribe_token: str, incident: dict[str, Any]
) -> dict[str, str]:
    severity = str(incident.get("severity") or "")
    prefix = f"[{severity.upper()}] " if severity in {"major", "critical"} else ""
    status = str(incident.get("status") or "")
    paragraphs = [f"Status: {status}", f"Severity: {severity}"]
    if incident.get("message"):
        paragraphs.append(str(incident["message"]))
    return _message(
        f"[{page_name}] {prefix}Incident Update: {incident['title']}",
        str(incident["title"]),
        paragraphs,
        [("View status page", status_page_url(slug)), ("Unsubscribe", unsubscribe_url(slug, unsubscribe_token))],
    )


def build_maintenance_email(
    *, page_name: str, slug: str, unsubscribe_token: str, window: dict[str, Any]
) -> dict[str, str]:
    paragraphs = [f"Scheduled from {window['starts_at']} to {window['ends_at']}."]
    if window.get("description"):
        paragraphs.append(str(window["description"]))
    return _message(
        f"[{page_name}] Scheduled Maintenance Started: {window['name']}",
        f"Started: {window['name']}",
        paragraphs,
        [("View status page", status_page_url(slug)), ("Unsubscribe", unsubscribe_url(slug, unsubscribe_token))],
    )


async def deliver_subscriber_email(to: str, message: dict[str, str]) -> None:
    await send_email(
        to=[to],
        subject=message["subject"],
        html_body=message["html_body"],
        text_body=message.get("text_body"),
    )


async def enqueue_subscriber_email(to: str, message: dict[str, str]) -> str:
    settings = get_settings()
    if settings.check_execution_mode == "inline":
        try:
            await deliver_subscriber_email(to, message)
        except NotificationDeliveryError as exc:
            logger.error("subscriber_email_failed subject=%s error=%s", message["subject"], exc)
            return "failed"
        return "delivered"
    queued = await enqueue_job(SEND_SUBSCRIBER_EMAIL, to, message, queue_name=settings.notify_queue_name)
    if not queued:
        logger.error("subscriber_email_enqueue_dropped subject=%s", message["subject"])
        return "dropped"
    return "queued"


async def send_verification_email(page: StatusPage, subscriber: Subscriber) -> str:
    if subscriber.verified or not subscriber.verification_token:
        return "skipped"
    message = build_verification_email(
        page_name=page.name, slug=page.slug, verification_token=subscriber.verification_token
    )
    return await enqueue_subscriber_email(subscriber.email, message)


async def _notify(
    session: AsyncSession,
    *,
    organization_id: str,
    monitor_ids: list[str],
    build,
) -> int:
    sent = 0
    rows = await status_pages_repo.list_verified_subscribers_for_monitors(
        session, organization_id=organization_id, monitor_ids=monitor_ids
    )
    for page, subscriber in rows:
        if not merge_page_settings(page.settings_json).get("subscriptions"):
            continue
        message = build(page_name=page.name, slug=page.slug, unsubscribe_token=subscriber.unsubscribe_token)
        await enqueue_subscriber_email(subscriber.email, message)
        sent += 1
    return sent


async def notify_incident_subscribers(
    session: AsyncSession, incident: Incident, *, status: str, message: str | None
) -> int:
    payload = {"title": incident.title, "status": status, "severity": incident.severity, "message": message}

    def build(**kwargs) -> dict[str, str]:
        return build_incident_email(incident=payload, **kwargs)

    return await _notify(
        session,
        organization_id=incident.organization_id,
        monitor_ids=list(incident.affected_monitors_json or []),
        build=build,
    )


async def notify_maintenance_started(session: AsyncSession, window: MaintenanceWindow) -> int:
    payload = {
        "name": window.name,
        "description": window.description,
        "starts_at": window.starts_at.isoformat(),
        "ends_at": window.ends_at.isoformat(),
    }

    def build(**kwargs) -> dict[str, str]:
        return build_maintenance_email(window=payload, **kwargs)

    return await _notify(
        session,
        organization_id=window.organization_id,
        monitor_ids=list(window.affected_monitors_json or []),
        build=build,
    )


async def run_maintenance_start_cycle(session: AsyncSession, *, previous: datetime, now: datetime) -> int:
    # Windows (or recurring occurrences) that were idle at ``previous`` and are running at ``now``.
    notified = 0
    for window in await incidents_repo.list_candidate_windows(session, now=now):
        if window_is_active(window, now) and not window_is_active(window, previous):
            notified += await notify_maintenance_started(session, window)
    return notified
