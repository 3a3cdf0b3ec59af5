from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from unistatus.apps.api.main import create_app
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


@pytest.mark.asyncio
async def test_incident_timeline_and_public_visibility() -> None:
    organization_id = f"org-inc-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        monitor = await client.post(
            "/v1/monitors", json={"name": "Checkout", "type": "https", "url": "https://shop.example.com"}, headers=headers
        )
        monitor_id = monitor.json()["data"]["id"]
        page = await client.post(
            "/v1/status-pages", json={"name": "Shop", "slug": f"shop-{uuid4().hex[:8]}", "published": True}, headers=headers
        )
        page_data = page.json()["data"]
        await client.post(f"/v1/status-pages/{page_data['id']}/monitors", json={"monitor_id": monitor_id}, headers=headers)

        unknown = await client.post(
            "/v1/incidents", json={"title": "Ghost", "affected_monitors": ["missing-monitor"]}, headers=headers
        )
        assert unknown.status_code == 422
        assert unknown.json()["error"]["code"] == "UNKNOWN_MONITOR"
        assert unknown.json()["error"]["details"]["monitor_ids"] == ["missing-monitor"]

        opened = await client.post(
            "/v1/incidents",
            json={
                "title": "Checkout errors",
                "severity": "major",
                "message": "Investigating elevated 5xx on checkout",
                "affected_monitors": [monitor_id],
            },
            headers=headers,
        )
        assert opened.status_code == 201
        incident = opened.json()["data"]
        assert incident["status"] == "investigating"
        assert incident["resolved_at"] is None
        assert [item["message"] for item in incident["updates"]] == ["Investigating elevated 5xx on checkout"]

        public = await client.get(f"/v1/public/status-pages/{page_data['slug']}")
        assert [item["title"] for item in public.json()["data"]["incidents"]] == ["Checkout errors"]

        update = await client.post(
            f"/v1/incidents/{incident['id']}/updates",
            json={"status": "identified", "message": "Payment provider timeouts"},
            headers=headers,
        )
        assert update.status_code == 201
        resolved = await client.post(
            f"/v1/incidents/{incident['id']}/updates",
            json={"status": "resolved", "message": "Provider recovered"},
            headers=headers,
        )
        assert resolved.status_code == 201

        fetched = await client.get(f"/v1/incidents/{incident['id']}", headers=headers)
        assert fetched.status_code == 200
        body = fetched.json()["data"]
        assert body["status"] == "resolved"
        assert body["resolved_at"] is not None
        assert len(body["updates"]) == 3

        after = await client.get(f"/v1/public/status-pages/{page_data['slug']}")
        assert after.json()["data"]["incidents"] == []

        bad_status = await client.post(
            f"/v1/incidents/{incident['id']}/updates", json={"status": "panicking", "message": "x"}, headers=headers
        )
        assert bad_status.status_code == 422

    await cleanup_test_organization(organization_id)
