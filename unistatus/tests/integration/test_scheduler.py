from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from unistatus.apps.api.main import create_app
from unistatus.core.config import get_settings
from unistatus.domain.models import Monitor
from unistatus.persistence.db import SessionLocal
from unistatus.services.monitors import scheduler
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


async def _create_monitor(headers: dict[str, str]) -> str:
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post(
            "/v1/monitors",
            json={"name": "Checkout", "type": "https", "url": "https://checkout.example.com", "interval_seconds": 60},
            headers=headers,
        )
    assert created.status_code == 201
    return created.json()["data"]["id"]


async def _slot(monitor_id: str) -> tuple[datetime | None, datetime | None]:
    async with SessionLocal() as session:
        monitor = await session.get(Monitor, monitor_id)
        return monitor.next_check_at, monitor.last_checked_at


@pytest.mark.asyncio
async def test_failed_enqueue_restores_the_monitor_slot(monkeypatch) -> None:
    monkeypatch.setenv("CHECK_EXECUTION_MODE", "queue")
    get_settings.cache_clear()
    organization_id = f"org-sched-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    monitor_id = await _create_monitor(headers)
    before = await _slot(monitor_id)

    queued: list[tuple[str, str]] = []

    async def broken_queue(function, monitor, region, *, queue_name, job_id=None):
        if monitor == monitor_id:
            return False
        queued.append((monitor, region))
        return True

    monkeypatch.setattr(scheduler, "enqueue_job", broken_queue)
    now = datetime.now(timezone.utc) + timedelta(seconds=1)
    async with SessionLocal() as session:
        summary = await scheduler.schedule_due_checks(session, now=now)
    assert monitor_id not in {monitor for monitor, _region in queued}
    assert summary["requeued"] >= 1
    assert await _slot(monitor_id) == before

    async def healthy_queue(function, monitor, region, *, queue_name, job_id=None):
        return True

    monkeypatch.setattr(scheduler, "enqueue_job", healthy_queue)
    async with SessionLocal() as session:
        await scheduler.schedule_due_checks(session, now=now)
    next_check_at, last_checked_at = await _slot(monitor_id)
    assert next_check_at == now + timedelta(seconds=60)
    assert last_checked_at == now

    await cleanup_test_organization(organization_id)
