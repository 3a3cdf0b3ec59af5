from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from unistatus.apps.api.main import create_app
from unistatus.domain.models import Monitor
from unistatus.persistence.db import SessionLocal
from unistatus.services.monitors.checkers import CheckOutcome
from unistatus.services.monitors.runner import record_outcome
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


async def _record(monitor_id: str, status: str, at: datetime) -> dict:
    async with SessionLocal() as session:
        monitor = await session.get(Monitor, monitor_id)
        return await record_outcome(
            session,
            monitor=monitor,
            region="uk",
            outcome=CheckOutcome(status=status, response_time_ms=120, status_code=500 if status == "failure" else 200),
            now=at,
        )


@pytest.mark.asyncio
async def test_policy_triggers_after_consecutive_failures_and_recovers() -> None:
    organization_id = f"org-alert-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        monitor = await client.post(
            "/v1/monitors", json={"name": "API", "type": "https", "url": "https://api.example.com"}, headers=headers
        )
        monitor_id = monitor.json()["data"]["id"]
        policy = await client.post(
            "/v1/alert-policies",
            json={"name": "Page on two failures", "conditions": {"consecutiveFailures": 2}, "cooldown_minutes": 15},
            headers=headers,
        )
        assert policy.status_code == 201
        policy_id = policy.json()["data"]["id"]
        nulled = await client.patch(f"/v1/alert-policies/{policy_id}", json={"cooldown_minutes": None}, headers=headers)
        assert nulled.status_code == 422
        assert nulled.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
        linked = await client.put(f"/v1/monitors/{monitor_id}/policies/{policy_id}", headers=headers)
        assert linked.status_code == 204
        policies = await client.get(f"/v1/monitors/{monitor_id}/policies", headers=headers)
        assert policies.json()["data"] == [policy_id]

        start = datetime.now(timezone.utc) - timedelta(minutes=5)
        first = await _record(monitor_id, "failure", start)
        assert first["alerts_triggered"] == []
        assert first["monitor_status"] == "down"
        second = await _record(monitor_id, "failure", start + timedelta(minutes=1))
        assert len(second["alerts_triggered"]) == 1
        alert_id = second["alerts_triggered"][0]

        listed = await client.get(f"/v1/alerts?monitor_id={monitor_id}&status=triggered", headers=headers)
        assert [row["id"] for row in listed.json()["data"]] == [alert_id]

        acknowledged = await client.post(f"/v1/alerts/{alert_id}/acknowledge", headers=headers)
        assert acknowledged.status_code == 200
        assert acknowledged.json()["data"]["status"] == "acknowledged"
        again = await client.post(f"/v1/alerts/{alert_id}/acknowledge", headers=headers)
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "ALERT_NOT_TRIGGERED"

        # Failures inside the cooldown window do not raise a second alert.
        third = await _record(monitor_id, "failure", start + timedelta(minutes=2))
        assert third["alerts_triggered"] == []

        recovered = await _record(monitor_id, "success", start + timedelta(minutes=3))
        assert recovered["alerts_resolved"] == [alert_id]
        assert recovered["monitor_status"] == "active"

        fetched = await client.get(f"/v1/alerts/{alert_id}", headers=headers)
        assert fetched.json()["data"]["status"] == "resolved"
        assert fetched.json()["data"]["resolved_by"] == "system"

        bad_filter = await client.get("/v1/alerts?status=exploded", headers=headers)
        assert bad_filter.status_code == 422
        assert bad_filter.json()["error"]["code"] == "INVALID_ALERT_STATUS"

    await cleanup_test_organization(organization_id)
