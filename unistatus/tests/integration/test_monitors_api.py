from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from unistatus.apps.api.main import create_app
from unistatus.domain.models import OrganizationFeatureOverride
from unistatus.persistence.db import SessionLocal
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


def _http_monitor(**overrides) -> dict:
    body = {"name": "Homepage", "type": "https", "url": "https://example.com", "interval_seconds": 60}
    body.update(overrides)
    return body


@pytest.mark.asyncio
async def test_monitor_crud_lifecycle() -> None:
    organization_id = f"org-mon-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post("/v1/monitors", json=_http_monitor(), headers=headers)
        assert created.status_code == 201
        body = created.json()
        monitor = body["data"]
        assert body["meta"]["request_id"]
        assert monitor["status"] == "pending"
        assert monitor["paused"] is False
        assert monitor["regions"] == ["uk"]
        assert monitor["heartbeat_token"] is None
        monitor_id = monitor["id"]

        listed = await client.get("/v1/monitors", headers=headers)
        assert listed.status_code == 200
        assert [row["id"] for row in listed.json()["data"]] == [monitor_id]

        patched = await client.patch(
            f"/v1/monitors/{monitor_id}", json={"name": "Homepage EU", "method": "head"}, headers=headers
        )
        assert patched.status_code == 200
        assert patched.json()["data"]["name"] == "Homepage EU"
        assert patched.json()["data"]["method"] == "HEAD"

        # Required fields cannot be nulled out; nullable ones can.
        for field in ("name", "interval_seconds", "timeout_ms", "regions", "down_after_count"):
            nulled = await client.patch(f"/v1/monitors/{monitor_id}", json={field: None}, headers=headers)
            assert nulled.status_code == 422, field
            assert nulled.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
        cleared = await client.patch(f"/v1/monitors/{monitor_id}", json={"description": None}, headers=headers)
        assert cleared.status_code == 200
        assert cleared.json()["data"]["description"] is None
        assert cleared.json()["data"]["name"] == "Homepage EU"

        paused = await client.post(f"/v1/monitors/{monitor_id}/pause", headers=headers)
        assert paused.status_code == 200
        assert paused.json()["data"]["paused"] is True

        check = await client.post(f"/v1/monitors/{monitor_id}/check", headers=headers)
        assert check.status_code == 409
        assert check.json()["error"]["code"] == "MONITOR_PAUSED"

        resumed = await client.post(f"/v1/monitors/{monitor_id}/resume", headers=headers)
        assert resumed.status_code == 200
        assert resumed.json()["data"]["paused"] is False

        uptime = await client.get(f"/v1/monitors/{monitor_id}/uptime", headers=headers)
        assert uptime.status_code == 200

        deleted = await client.delete(f"/v1/monitors/{monitor_id}", headers=headers)
        assert deleted.status_code == 204
        missing = await client.get(f"/v1/monitors/{monitor_id}", headers=headers)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "NOT_FOUND"

    await cleanup_test_organization(organization_id)


@pytest.mark.asyncio
async def test_monitor_create_validates_type_and_url() -> None:
    organization_id = f"org-mon-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="member")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        bad_type = await client.post("/v1/monitors", json=_http_monitor(type="ftp"), headers=headers)
        assert bad_type.status_code == 422
        assert bad_type.json()["error"]["code"] == "UNSUPPORTED_MONITOR_TYPE"

        no_url = await client.post("/v1/monitors", json=_http_monitor(url=None), headers=headers)
        assert no_url.status_code == 422
        assert no_url.json()["error"]["code"] == "URL_REQUIRED"

        short_interval = await client.post("/v1/monitors", json=_http_monitor(interval_seconds=5), headers=headers)
        assert short_interval.status_code == 422
        assert short_interval.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

        heartbeat = await client.post(
            "/v1/monitors", json={"name": "Nightly backup", "type": "heartbeat"}, headers=headers
        )
        assert heartbeat.status_code == 201
        assert heartbeat.json()["data"]["heartbeat_token"]

    await cleanup_test_organization(organization_id)


@pytest.mark.asyncio
async def test_monitor_plan_limit_and_role_gate() -> None:
    organization_id = f"org-mon-{uuid4().hex[:12]}"
    _raw, admin_headers, _member_id, _key_id = await create_test_api_key(
        organization_id=organization_id, role="admin"
    )
    _raw, viewer_headers, _viewer_id, _viewer_key = await create_test_api_key(
        organization_id=organization_id, role="viewer"
    )
    async with SessionLocal() as session:
        session.add(
            OrganizationFeatureOverride(
                organization_id=organization_id,
                feature_key="limit.monitors",
                enabled=True,
                config_json={"limit": 1},
            )
        )
        await session.commit()

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        forbidden = await client.post("/v1/monitors", json=_http_monitor(), headers=viewer_headers)
        assert forbidden.status_code == 403

        regions = await client.post(
            "/v1/monitors", json=_http_monitor(regions=["uk", "us-east"]), headers=admin_headers
        )
        assert regions.status_code == 403
        assert regions.json()["error"]["details"]["resource"] == "regions"

        first = await client.post("/v1/monitors", json=_http_monitor(), headers=admin_headers)
        assert first.status_code == 201

        second = await client.post("/v1/monitors", json=_http_monitor(name="API"), headers=admin_headers)
        assert second.status_code == 403
        error = second.json()["error"]
        assert error["code"] == "PLAN_LIMIT_REACHED"
        assert error["details"]["resource"] == "monitors"
        assert error["details"]["limit"] == 1
        assert error["details"]["current"] == 1

    await cleanup_test_organization(organization_id)


@pytest.mark.asyncio
async def test_monitors_are_scoped_to_the_calling_organization() -> None:
    owner_org = f"org-mon-{uuid4().hex[:12]}"
    other_org = f"org-mon-{uuid4().hex[:12]}"
    _raw, owner_headers, _m1, _k1 = await create_test_api_key(organization_id=owner_org, role="owner")
    _raw, other_headers, _m2, _k2 = await create_test_api_key(organization_id=other_org, role="owner")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post("/v1/monitors", json=_http_monitor(), headers=owner_headers)
        monitor_id = created.json()["data"]["id"]
        cross = await client.get(f"/v1/monitors/{monitor_id}", headers=other_headers)
        assert cross.status_code == 404
        unauthenticated = await client.get("/v1/monitors")
        assert unauthenticated.status_code == 401

    await cleanup_test_organization(owner_org)
    await cleanup_test_organization(other_org)
