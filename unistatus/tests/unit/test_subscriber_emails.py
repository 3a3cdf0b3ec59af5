from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from unistatus.domain.models import MaintenanceWindow
from unistatus.services.notifications import subscribers as subscribers_service
from unistatus.services.notifications.subscribers import (
    build_incident_email,
    build_maintenance_email,
    build_verification_email,
)


def test_verification_email_links_to_the_confirmation_page() -> None:
    message = build_verification_email(page_name="Acme", slug="acme", verification_token="tok123")
    assert message["subject"] == "[Acme] Confirm your subscription"
    assert "http://localhost:3000/status/acme/verify?token=tok123" in message["text_body"]
    assert 'href="http://localhost:3000/status/acme/verify?token=tok123"' in message["html_body"]


def test_incident_email_flags_severity_and_carries_unsubscribe() -> None:
    message = build_incident_email(
        page_name="Acme",
        slug="acme",
        unsubscribe_token="bye",
        incident={"title": "API <down>", "status": "investigating", "severity": "critical", "message": "Looking"},
    )
    assert message["subject"] == "[Acme] [CRITICAL] Incident Update: API <down>"
    assert "API &lt;down&gt;" in message["html_body"]
    assert "/status/acme/unsubscribe?token=bye" in message["text_body"]
    minor = build_incident_email(
        page_name="Acme", slug="acme", unsubscribe_token="bye", incident={"title": "Blip", "severity": "minor"}
    )
    assert minor["subject"] == "[Acme] Incident Update: Blip"


def test_maintenance_email_subject() -> None:
    message = build_maintenance_email(
        page_name="Acme",
        slug="acme",
        unsubscribe_token="bye",
        window={"name": "DB upgrade", "description": None, "starts_at": "2026-06-01T02:00:00+00:00", "ends_at": "2026-06-01T03:00:00+00:00"},
    )
    assert message["subject"] == "[Acme] Scheduled Maintenance Started: DB upgrade"
    assert "Scheduled from 2026-06-01T02:00:00+00:00" in message["text_body"]


@pytest.mark.asyncio
async def test_maintenance_start_cycle_only_notifies_new_starts(monkeypatch) -> None:
    start = datetime(2026, 6, 1, 2, 0, tzinfo=timezone.utc)

    def _window(window_id: str, starts_at: datetime) -> MaintenanceWindow:
        return MaintenanceWindow(
            id=window_id,
            organization_id="org",
            name=window_id,
            affected_monitors_json=["mon"],
            starts_at=starts_at,
            ends_at=starts_at + timedelta(hours=1),
            timezone="UTC",
            recurrence_json={"type": "none"},
            active=True,
        )

    windows = [_window("starting", start), _window("running", start - timedelta(minutes=30))]
    notified: list[str] = []

    async def fake_candidates(_session, *, now, organization_id=None):
        return windows

    async def fake_notify(_session, window) -> int:
        notified.append(window.id)
        return 1

    monkeypatch.setattr(subscribers_service.incidents_repo, "list_candidate_windows", fake_candidates)
    monkeypatch.setattr(subscribers_service, "notify_maintenance_started", fake_notify)

    sent = await subscribers_service.run_maintenance_start_cycle(
        None, previous=start - timedelta(minutes=1), now=start + timedelta(minutes=1)
    )
    assert sent == 1
    assert notified == ["starting"]
