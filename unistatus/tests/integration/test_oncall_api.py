from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from unistatus.apps.api.main import create_app
from unistatus.domain.models import OrganizationFeatureOverride
from unistatus.persistence.db import SessionLocal
from unistatus.services.entitlements import FEATURE_ONCALL
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


async def _enable_oncall(organization_id: str) -> None:
    async with SessionLocal() as session:
        session.add(
            OrganizationFeatureOverride(
                organization_id=organization_id,
                feature_key=FEATURE_ONCALL,
                enabled=True,
                config_json=None,
            )
        )
        await session.commit()


@pytest.mark.asyncio
async def test_oncall_requires_the_feature() -> None:
    organization_id = f"org-oncall-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/v1/oncall/rotations", headers=headers)
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FEATURE_NOT_ENABLED"

    await cleanup_test_organization(organization_id)


@pytest.mark.asyncio
async def test_rotation_lifecycle_with_override() -> None:
    organization_id = f"org-oncall-{uuid4().hex[:12]}"
    _raw, headers, admin_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    _raw, viewer_headers, viewer_id, _viewer_key = await create_test_api_key(
        organization_id=organization_id, role="viewer", email="viewer@example.com"
    )
    await _enable_oncall(organization_id)
    now = datetime.now(timezone.utc)
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        bad_member = await client.post(
            "/v1/oncall/rotations",
            json={"name": "Primary", "rotation_start": now.isoformat(), "participants": ["nobody"]},
            headers=headers,
        )
        assert bad_member.status_code == 422
        assert bad_member.json()["error"]["code"] == "INVALID_MEMBER"

        bad_zone = await client.post(
            "/v1/oncall/rotations",
            json={"name": "Primary", "rotation_start": now.isoformat(), "timezone": "Mars/Olympus"},
            headers=headers,
        )
        assert bad_zone.status_code == 422
        assert bad_zone.json()["error"]["code"] == "INVALID_TIMEZONE"

        created = await client.post(
            "/v1/oncall/rotations",
            json={
                "name": "Primary",
                "rotation_start": (now - timedelta(minutes=5)).isoformat(),
                "shift_duration_minutes": 1440,
                "participants": [admin_id],
            },
            headers=headers,
        )
        assert created.status_code == 201
        rotation = created.json()["data"]
        assert rotation["participants"] == [admin_id]
        assert rotation["overrides"] == []
        rotation_id = rotation["id"]

        # Viewers can read, not write.
        listed = await client.get("/v1/oncall/rotations", headers=viewer_headers)
        assert listed.status_code == 200
        assert [row["id"] for row in listed.json()["data"]] == [rotation_id]
        denied = await client.post(
            "/v1/oncall/rotations",
            json={"name": "Shadow", "rotation_start": now.isoformat()},
            headers=viewer_headers,
        )
        assert denied.status_code == 403

        current = await client.get(f"/v1/oncall/rotations/{rotation_id}/current", headers=viewer_headers)
        assert current.status_code == 200
        assert current.json()["data"]["member_id"] == admin_id

        patched = await client.patch(
            f"/v1/oncall/rotations/{rotation_id}",
            json={"name": "Primary EU", "participants": [admin_id, viewer_id]},
            headers=headers,
        )
        assert patched.status_code == 200
        assert patched.json()["data"]["name"] == "Primary EU"
        assert patched.json()["data"]["participants"] == [admin_id, viewer_id]

        inverted = await client.post(
            f"/v1/oncall/rotations/{rotation_id}/overrides",
            json={"member_id": viewer_id, "start_at": now.isoformat(), "end_at": now.isoformat()},
            headers=headers,
        )
        assert inverted.status_code == 422

        override = await client.post(
            f"/v1/oncall/rotations/{rotation_id}/overrides",
            json={
                "member_id": viewer_id,
                "start_at": (now - timedelta(minutes=1)).isoformat(),
                "end_at": (now + timedelta(hours=1)).isoformat(),
                "reason": "swap",
            },
            headers=headers,
        )
        assert override.status_code == 201
        override_id = override.json()["data"]["id"]

        current = await client.get(f"/v1/oncall/rotations/{rotation_id}/current", headers=headers)
        assert current.json()["data"]["member_id"] == viewer_id
        assert current.json()["data"]["email"] == "viewer@example.com"

        fetched = await client.get(f"/v1/oncall/rotations/{rotation_id}", headers=headers)
        assert [row["id"] for row in fetched.json()["data"]["overrides"]] == [override_id]

        removed = await client.delete(f"/v1/oncall/rotations/{rotation_id}/overrides/{override_id}", headers=headers)
        assert removed.status_code == 204
        current = await client.get(f"/v1/oncall/rotations/{rotation_id}/current", headers=headers)
        assert current.json()["data"]["member_id"] == admin_id

        deleted = await client.delete(f"/v1/oncall/rotations/{rotation_id}", headers=headers)
        assert deleted.status_code == 204
        missing = await client.get(f"/v1/oncall/rotations/{rotation_id}", headers=headers)
        assert missing.status_code == 404

    await cleanup_test_organization(organization_id)
