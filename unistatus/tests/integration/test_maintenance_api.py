from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from unistatus.apps.api.main import create_app
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


@pytest.mark.asyncio
async def test_maintenance_window_lifecycle() -> None:
    organization_id = f"org-maint-{uuid4().hex[:12]}"
    _raw, headers, member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="member")
    _raw, viewer_headers, _viewer_id, _viewer_key = await create_test_api_key(
        organization_id=organization_id, role="viewer"
    )
    now = datetime.now(timezone.utc)
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        monitor = await client.post(
            "/v1/monitors",
            json={"name": "Database", "type": "https", "url": "https://db.example.com"},
            headers=headers,
        )
        assert monitor.status_code == 201
        monitor_id = monitor.json()["data"]["id"]

        unknown = await client.post(
            "/v1/maintenance-windows",
            json={
                "name": "Upgrade",
                "affected_monitors": ["missing"],
                "starts_at": now.isoformat(),
                "ends_at": (now + timedelta(hours=1)).isoformat(),
            },
            headers=headers,
        )
        assert unknown.status_code == 422
        assert unknown.json()["error"]["code"] == "UNKNOWN_MONITOR"

        inverted = await client.post(
            "/v1/maintenance-windows",
            json={"name": "Upgrade", "starts_at": now.isoformat(), "ends_at": (now - timedelta(hours=1)).isoformat()},
            headers=headers,
        )
        assert inverted.status_code == 422
        assert inverted.json()["error"]["code"] == "INVALID_WINDOW"

        bad_days = await client.post(
            "/v1/maintenance-windows",
            json={
                "name": "Weekly",
                "starts_at": now.isoformat(),
                "ends_at": (now + timedelta(hours=1)).isoformat(),
                "recurrence": {"type": "weekly", "daysOfWeek": [7]},
            },
            headers=headers,
        )
        assert bad_days.status_code == 422
        assert bad_days.json()["error"]["code"] == "INVALID_RECURRENCE"

        created = await client.post(
            "/v1/maintenance-windows",
            json={
                "name": "Upgrade",
                "affected_monitors": [monitor_id, monitor_id],
                "starts_at": (now - timedelta(minutes=10)).isoformat(),
                "ends_at": (now + timedelta(hours=1)).isoformat(),
            },
            headers=headers,
        )
        assert created.status_code == 201
        window = created.json()["data"]
        assert window["affected_monitors"] == [monitor_id]
        assert window["recurrence"]["type"] == "none"
        assert window["in_progress"] is True
        assert window["created_by"] == member_id
        window_id = window["id"]

        listed = await client.get("/v1/maintenance-windows", headers=viewer_headers)
        assert listed.status_code == 200
        assert [row["id"] for row in listed.json()["data"]] == [window_id]

        denied = await client.patch(
            f"/v1/maintenance-windows/{window_id}", json={"name": "Nope"}, headers=viewer_headers
        )
        assert denied.status_code == 403

        paused = await client.patch(
            f"/v1/maintenance-windows/{window_id}",
            json={"active": False, "description": "Postponed"},
            headers=headers,
        )
        assert paused.status_code == 200
        assert paused.json()["data"]["active"] is False
        assert paused.json()["data"]["in_progress"] is False
        assert paused.json()["data"]["description"] == "Postponed"

        shrunk = await client.patch(
            f"/v1/maintenance-windows/{window_id}",
            json={"ends_at": (now - timedelta(hours=1)).isoformat()},
            headers=headers,
        )
        assert shrunk.status_code == 422

        deleted = await client.delete(f"/v1/maintenance-windows/{window_id}", headers=headers)
        assert deleted.status_code == 204
        missing = await client.get(f"/v1/maintenance-windows/{window_id}", headers=headers)
        assert missing.status_code == 404

    await cleanup_test_organization(organization_id)
