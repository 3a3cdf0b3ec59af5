from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hmac
import re
import secrets
from typing import Any
from uuid import uuid4

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import Incident, StatusPage, Subscriber
from unistatus.persistence.repos import check_results as check_results_repo
from unistatus.persistence.repos import incidents as incidents_repo
from unistatus.persistence.repos import status_pages as status_pages_repo
from unistatus.services.maintenance import window_is_active


SLUG_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{1,61}[a-z0-9])$")
PASSWORD_HEADER = "X-Status-Page-Password"
PBKDF2_ITERATIONS = 390000
DEFAULT_UPTIME_DAYS = 45
MAX_UPTIME_DAYS = 90
DEFAULT_PAGE_SETTINGS: dict[str, Any] = {
    "showUptimePercentage": True,
    "showResponseTime": True,
    "showIncidentHistory": True,
    "uptimeDays": DEFAULT_UPTIME_DAYS,
    "subscriptions": False,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_slug(slug: str) -> str:
    normalized = slug.strip().lower()
    if not SLUG_PATTERN.match(normalized):
        raise ValueError("slug must be 3-63 characters of lowercase letters, digits and hyphens")
    return normalized


def merge_page_settings(settings: dict[str, Any] | None) -> dict[str, Any]:
    merged = {**DEFAULT_PAGE_SETTINGS, **(settings or {})}
    merged["uptimeDays"] = max(1, min(MAX_UPTIME_DAYS, int(merged.get("uptimeDays") or DEFAULT_UPTIME_DAYS)))
    return merged


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(raw: str) -> bytes:
    return base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))


def _derive(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    return kdf.derive(password.encode("utf-8"))


def hash_page_password(password: str, *, iterations: int = PBKDF2_ITERATIONS) -> str:
    # Encoded as pbkdf2_sha256$iterations$salt$hash so the cost can change later.
    salt = secrets.token_bytes(16)
    digest = _derive(password, salt, iterations)
    return f"pbkdf2_sha256${iterations}${_b64encode(salt)}${_b64encode(digest)}"


def verify_page_password(password: str | None, encoded: str | None) -> bool:
    if encoded is None:
        return True
    if not password:
        return False
    try:
        algorithm, iterations, salt_b64, digest_b64 = encoded.split("$")
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    expected = _b64decode(digest_b64)
    actual = _derive(password, _b64decode(salt_b64), int(iterations))
    return hmac.compare_digest(expected, actual)


def compute_overall_status(component_statuses: list[str], *, under_maintenance: bool = False) -> str:
    """Summarize component statuses into the page-level status.

    Paused and pending components count as operational. A majority of down
    components is a major outage; any single one is a partial outage.
    """
    if not component_statuses:
        return "operational"
    down = sum(1 for status in component_statuses if status == "down")
    if down:
        return "major_outage" if down > len(component_statuses) / 2 else "partial_outage"
    if any(status == "degraded" for status in component_statuses):
        return "degraded_performance"
    if under_maintenance:
        return "under_maintenance"
    return "operational"


def _incident_payload(incident: Incident, updates: list[Any]) -> dict[str, Any]:
    return {
        "id": incident.id,
        "title": incident.title,
        "status": incident.status,
        "severity": incident.severity,
        "message": incident.message,
        "affected_monitors": list(incident.affected_monitors_json or []),
        "started_at": incident.started_at,
        "resolved_at": incident.resolved_at,
        "updates": [
            {"status": update.status, "message": update.message, "created_at": update.created_at}
            for update in updates
        ],
    }


@dataclass
class UptimeTally:
    up: int = 0
    total: int = 0
    response_ms_sum: float = 0.0
    response_count: int = 0

    def add(self, up: int, total: int, response_ms_sum: float, response_count: int) -> None:
        self.up += up
        self.total += total
        self.response_ms_sum += response_ms_sum
        self.response_count += response_count

    @property
    def uptime_percentage(self) -> float | None:
        return round(self.up / self.total * 100.0, 3) if self.total else None

    @property
    def avg_response_time_ms(self) -> float | None:
        return round(self.response_ms_sum / self.response_count, 1) if self.response_count else None


async def uptime_tallies(
    session: AsyncSession, monitor_ids: list[str], *, since: datetime
) -> dict[str, UptimeTally]:
    """Count uptime since ``since`` from daily rollups plus raw results.

    Raw results fill in everything after a monitor's last rolled-up day, so
    today's checks and monitors that have never been rolled up still count.
    Response times are weighted by check count.
    """
    tallies = {monitor_id: UptimeTally() for monitor_id in monitor_ids}
    daily = await check_results_repo.daily_uptime(session, monitor_ids=monitor_ids, since=since)
    cutoffs: dict[str, datetime] = {}
    for monitor_id in monitor_ids:
        row = daily.get(monitor_id)
        if row is None or row[4] is None:
            cutoffs[monitor_id] = since
            continue
        up, total, ms_sum, timed_count, last_date = row
        tallies[monitor_id].add(up, total, ms_sum, timed_count)
        cutoffs[monitor_id] = max(since, last_date + timedelta(days=1))
    for monitor_id, counts in (await check_results_repo.raw_uptime(session, cutoffs=cutoffs)).items():
        tallies[monitor_id].add(*counts)
    return tallies


async def build_public_page(
    session: AsyncSession, page: StatusPage, *, now: datetime | None = None
) -> dict[str, Any]:
    # Assemble the unauthenticated view; internal monitor fields never leave this function.
    current = now or _utc_now()
    settings = merge_page_settings(page.settings_json)
    links = await status_pages_repo.list_page_monitors(session, page.id)
    groups = await status_pages_repo.list_groups(session, page.id)
    monitor_ids = [monitor.id for _, monitor in links]
    uptime = await uptime_tallies(session, monitor_ids, since=current - timedelta(days=settings["uptimeDays"]))

    windows = await incidents_repo.list_candidate_windows(session, now=current, organization_id=page.organization_id)
    upcoming = await incidents_repo.list_upcoming_windows(
        session, organization_id=page.organization_id, now=current
    )
    linked = set(monitor_ids)
    active_windows = [
        window
        for window in windows
        if window_is_active(window, current) and linked & set(window.affected_monitors_json or [])
    ]
    maintenance_ids = {item for window in active_windows for item in (window.affected_monitors_json or [])}

    components = []
    for link, monitor in links:
        tally = uptime[monitor.id]
        status = "maintenance" if monitor.id in maintenance_ids and monitor.status not in {"down", "degraded"} else monitor.status
        component: dict[str, Any] = {
            "id": monitor.id,
            "name": link.display_name or monitor.name,
            "description": link.description,
            "status": status,
            "group_id": link.group_id,
            "order": link.display_order,
        }
        if settings["showUptimePercentage"]:
            component["uptime_percentage"] = tally.uptime_percentage
        if settings["showResponseTime"] and link.show_response_time:
            component["avg_response_time_ms"] = tally.avg_response_time_ms
        components.append(component)

    incidents = []
    for incident in await incidents_repo.list_unresolved_incidents(session, organization_id=page.organization_id):
        if linked & set(incident.affected_monitors_json or []):
            incidents.append(_incident_payload(incident, await incidents_repo.list_updates(session, incident.id)))

    def _window_payload(window) -> dict[str, Any]:
        return {
            "id": window.id,
            "name": window.name,
            "description": window.description,
            "starts_at": window.starts_at,
            "ends_at": window.ends_at,
            "affected_monitors": [item for item in (window.affected_monitors_json or []) if item in linked],
        }

    return {
        "page": {
            "name": page.name,
            "slug": page.slug,
            "logo": page.logo,
            "favicon": page.favicon,
            "theme": page.theme_json or {},
            "header_text": settings.get("headerText"),
            "footer_text": settings.get("footerText"),
            "support_url": settings.get("supportUrl"),
            "subscriptions": bool(settings.get("subscriptions")),
        },
        "overall_status": compute_overall_status(
            [monitor.status for _, monitor in links], under_maintenance=bool(maintenance_ids)
        ),
        "components": components,
        "groups": [
            {"id": group.id, "name": group.name, "description": group.description, "order": group.display_order, "collapsed": group.collapsed}
            for group in groups
        ],
        "incidents": incidents,
        "maintenance": {
            "active": [_window_payload(window) for window in active_windows],
            "upcoming": [
                _window_payload(window)
                for window in upcoming
                if linked & set(window.affected_monitors_json or [])
            ],
        },
    }


async def subscribe(session: AsyncSession, *, page: StatusPage, email: str) -> tuple[Subscriber, bool]:
    # Idempotent per email; returns (subscriber, created).
    normalized = email.strip().lower()
    existing = await status_pages_repo.get_subscriber_by_email(session, page_id=page.id, email=normalized)
    if existing is not None:
        return existing, False
    subscriber = Subscriber(
        id=uuid4().hex,
        status_page_id=page.id,
        email=normalized,
        verified=False,
        verification_token=secrets.token_urlsafe(32),
        unsubscribe_token=secrets.token_urlsafe(32),
    )
    session.add(subscriber)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await status_pages_repo.get_subscriber_by_email(session, page_id=page.id, email=normalized)
        if existing is None:
            raise
        return existing, False
    await session.refresh(subscriber)
    return subscriber, True


async def verify_subscriber(session: AsyncSession, token: str) -> Subscriber | None:
    subscriber = await status_pages_repo.get_subscriber_by_token(session, column="verification", token=token)
    if subscriber is None:
        return None
    subscriber.verified = True
    subscriber.verification_token = None
    await session.commit()
    await session.refresh(subscriber)
    return subscriber


async def unsubscribe(session: AsyncSession, token: str) -> bool:
    subscriber = await status_pages_repo.get_subscriber_by_token(session, column="unsubscribe", token=token)
    if subscriber is None:
        return False
    await session.delete(subscriber)
    await session.commit()
    return True
