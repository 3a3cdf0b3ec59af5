from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from unistatus.apps.api.main import create_app
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


@pytest.mark.asyncio
async def test_last_owner_cannot_be_demoted_disabled_or_removed() -> None:
    organization_id = f"org-owner-{uuid4().hex[:12]}"
    _raw, headers, owner_id, _key_id = await create_test_api_key(organization_id=organization_id, role="owner")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        demoted = await client.patch(f"/v1/organization/members/{owner_id}", json={"role": "admin"}, headers=headers)
        assert demoted.status_code == 409
        assert demoted.json()["error"]["code"] == "LAST_OWNER"

        disabled = await client.patch(
            f"/v1/organization/members/{owner_id}", json={"status": "disabled"}, headers=headers
        )
        assert disabled.status_code == 409
        assert disabled.json()["error"]["code"] == "LAST_OWNER"

        removed = await client.delete(f"/v1/organization/members/{owner_id}", headers=headers)
        assert removed.status_code == 409
        assert removed.json()["error"]["code"] == "LAST_OWNER"

        # A second active owner lifts the guard.
        second = await client.post(
            "/v1/organization/members", json={"email": "Second@Example.com", "role": "owner"}, headers=headers
        )
        assert second.status_code == 201
        assert second.json()["data"]["email"] == "second@example.com"

        duplicate = await client.post(
            "/v1/organization/members", json={"email": "second@example.com"}, headers=headers
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "MEMBER_EXISTS"

        demoted = await client.patch(f"/v1/organization/members/{owner_id}", json={"role": "admin"}, headers=headers)
        assert demoted.status_code == 200
        assert demoted.json()["data"]["role"] == "admin"

    await cleanup_test_organization(organization_id)


@pytest.mark.asyncio
async def test_admins_cannot_grant_or_revoke_owner() -> None:
    organization_id = f"org-owner-{uuid4().hex[:12]}"
    _raw, _owner_headers, owner_id, _owner_key = await create_test_api_key(
        organization_id=organization_id, role="owner"
    )
    _raw, headers, _admin_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        granted = await client.post(
            "/v1/organization/members", json={"email": "boss@example.com", "role": "owner"}, headers=headers
        )
        assert granted.status_code == 403

        revoked = await client.patch(f"/v1/organization/members/{owner_id}", json={"role": "member"}, headers=headers)
        assert revoked.status_code == 403

        invalid = await client.post(
            "/v1/organization/members", json={"email": "x@example.com", "role": "superuser"}, headers=headers
        )
        assert invalid.status_code == 422
        assert invalid.json()["error"]["code"] == "INVALID_ROLE"

    await cleanup_test_organization(organization_id)
