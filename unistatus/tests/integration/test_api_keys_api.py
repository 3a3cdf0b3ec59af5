from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from unistatus.apps.api.main import create_app
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


@pytest.mark.asyncio
async def test_admin_creates_lists_and_revokes_keys() -> None:
    organization_id = f"org-keys-{uuid4().hex[:12]}"
    _raw, headers, admin_id, admin_key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    _raw, member_headers, member_id, _member_key = await create_test_api_key(
        organization_id=organization_id, role="member"
    )
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post("/v1/api-keys", json={"name": "ci", "member_id": member_id}, headers=headers)
        assert created.status_code == 201
        key = created.json()["data"]
        assert key["member_id"] == member_id
        assert key["role"] == "member"
        assert key["is_active"] is True
        raw_key = key["api_key"]
        assert raw_key.startswith("usk_")
        assert key["key_prefix"] == raw_key[:12]

        own = await client.post("/v1/api-keys", json={"name": "mine"}, headers=headers)
        assert own.json()["data"]["member_id"] == admin_id

        unknown = await client.post("/v1/api-keys", json={"member_id": "nobody"}, headers=headers)
        assert unknown.status_code == 404

        issued_headers = {"Authorization": f"Bearer {raw_key}"}
        usable = await client.get("/v1/monitors", headers=issued_headers)
        assert usable.status_code == 200

        listed = await client.get("/v1/api-keys", headers=headers)
        assert listed.status_code == 200
        rows = listed.json()["data"]
        assert {row["key_id"] for row in rows} >= {key["key_id"], admin_key_id}
        # The raw secret is only returned on creation.
        assert all("api_key" not in row for row in rows)

        # Members cannot manage keys.
        forbidden = await client.get("/v1/api-keys", headers=member_headers)
        assert forbidden.status_code == 403

        revoked = await client.delete(f"/v1/api-keys/{key['key_id']}", headers=headers)
        assert revoked.status_code == 200
        assert revoked.json()["data"]["is_active"] is False
        assert revoked.json()["data"]["revoked_at"] is not None

        rejected = await client.get("/v1/monitors", headers=issued_headers)
        assert rejected.status_code == 401
        assert rejected.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

        reactivated = await client.patch(f"/v1/api-keys/{key['key_id']}", json={"active": True}, headers=headers)
        assert reactivated.status_code == 200
        assert reactivated.json()["data"]["is_active"] is True

        missing = await client.delete(f"/v1/api-keys/{uuid4().hex}", headers=headers)
        assert missing.status_code == 404

    await cleanup_test_organization(organization_id)
