from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from unistatus.apps.api.main import create_app
from unistatus.domain.models import OrganizationFeatureOverride
from unistatus.persistence.db import SessionLocal
from unistatus.services.entitlements import FEATURE_AUDIT_LOGS
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


async def _enable_audit_logs(organization_id: str) -> None:
    async with SessionLocal() as session:
        session.add(
            OrganizationFeatureOverride(
                organization_id=organization_id,
                feature_key=FEATURE_AUDIT_LOGS,
                enabled=True,
                config_json=None,
            )
        )
        await session.commit()


@pytest.mark.asyncio
async def test_audit_events_require_the_audit_feature() -> None:
    organization_id = f"org-audit-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/audit/events", headers=headers)
    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "FEATURE_NOT_ENABLED"
    assert error["details"]["feature_key"] == FEATURE_AUDIT_LOGS

    await cleanup_test_organization(organization_id)


@pytest.mark.asyncio
async def test_mutations_are_audited_and_filterable() -> None:
    organization_id = f"org-audit-{uuid4().hex[:12]}"
    _raw, headers, _member_id, key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    _raw, member_headers, _other_member, _other_key = await create_test_api_key(
        organization_id=organization_id, role="member"
    )
    await _enable_audit_logs(organization_id)
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post(
            "/v1/monitors",
            json={"name": "Billing API", "type": "https", "url": "https://billing.example.com"},
            headers={**headers, "X-Request-Id": "req-audit-1"},
        )
        monitor_id = created.json()["data"]["id"]

        listed = await client.get("/v1/audit/events?event_type=monitor.created", headers=headers)
        assert listed.status_code == 200
        events = listed.json()["data"]
        assert len(events) == 1
        event = events[0]
        assert event["resource_id"] == monitor_id
        assert event["actor_id"] == key_id
        assert event["actor_role"] == "admin"
        assert event["request_id"] == "req-audit-1"
        assert event["metadata_json"]["name"] == "Billing API"

        single = await client.get(f"/v1/audit/events/{event['id']}", headers=headers)
        assert single.status_code == 200
        assert single.json()["data"]["event_type"] == "monitor.created"

        # Audit access is admin-only even with the feature enabled.
        forbidden = await client.get("/v1/audit/events", headers=member_headers)
        assert forbidden.status_code == 403

    await cleanup_test_organization(organization_id)
