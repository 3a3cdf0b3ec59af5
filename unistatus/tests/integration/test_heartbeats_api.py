from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from unistatus.apps.api.main import create_app
from unistatus.domain.models import HeartbeatPing
from unistatus.persistence.db import SessionLocal
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


@pytest.mark.asyncio
async def test_heartbeat_ping_records_by_token() -> None:
    organization_id = f"org-hb-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="member")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post(
            "/v1/monitors",
            json={"name": "Nightly export", "type": "heartbeat", "config": {"heartbeat": {"expectedInterval": 3600}}},
            headers=headers,
        )
        assert created.status_code == 201
        monitor = created.json()["data"]
        token = monitor["heartbeat_token"]

        # No credentials: the path token is the only authentication.
        started = await client.get(f"/v1/heartbeats/{token}?status=start")
        assert started.status_code == 200
        assert started.json()["data"]["status"] == "start"

        completed = await client.post(f"/v1/heartbeats/{token}?duration_ms=1200&exit_code=0")
        assert completed.status_code == 200
        payload = completed.json()["data"]
        assert payload["monitor_id"] == monitor["id"]
        assert payload["status"] == "complete"
        assert payload["ping_id"]

        bad_status = await client.get(f"/v1/heartbeats/{token}?status=bogus")
        assert bad_status.status_code == 422

        paused = await client.post(f"/v1/monitors/{monitor['id']}/pause", headers=headers)
        assert paused.status_code == 200
        rejected = await client.get(f"/v1/heartbeats/{token}")
        assert rejected.status_code == 409
        assert rejected.json()["error"]["code"] == "MONITOR_PAUSED"

    async with SessionLocal() as session:
        pings = (
            await session.execute(select(HeartbeatPing).where(HeartbeatPing.monitor_id == monitor["id"]))
        ).scalars().all()
    assert sorted(ping.status for ping in pings) == ["complete", "start"]
    assert {ping.duration_ms for ping in pings} == {None, 1200}

    await cleanup_test_organization(organization_id)


@pytest.mark.asyncio
async def test_heartbeat_unknown_token_is_not_found() -> None:
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post(f"/v1/heartbeats/{uuid4().hex}")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"
