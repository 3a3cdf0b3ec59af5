from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from unistatus.apps.api.main import create_app
from unistatus.core.config import get_settings
from unistatus.services.licensing import build_license_payload, generate_license_keypair, sign_license_payload
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


@pytest.fixture(scope="module")
def keypair() -> tuple[str, str]:
    return generate_license_keypair()


@pytest.fixture
def signing_key(monkeypatch, keypair) -> str:
    private_pem, public_pem = keypair
    monkeypatch.setenv("LICENSE_PUBLIC_KEY_PEM", public_pem)
    get_settings.cache_clear()
    return private_pem


@pytest.mark.asyncio
async def test_activation_upgrades_entitlements(signing_key) -> None:
    organization_id = f"org-lic-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="owner")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        missing = await client.post("/v1/license/validate", headers=headers)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "LICENSE_NOT_FOUND"

        free = await client.get("/v1/license", headers=headers)
        assert free.status_code == 200
        assert free.json()["data"]["plan"] == "free"
        assert free.json()["data"]["entitlements"]["limit.monitors"]["config"] == {"limit": 10}

        key = sign_license_payload(
            build_license_payload(plan="pro", email="billing@example.com", name="Example Ltd", organization_id=organization_id),
            signing_key,
        )
        activated = await client.post("/v1/license/activate", json={"key": key}, headers=headers)
        assert activated.status_code == 200
        summary = activated.json()["data"]
        assert summary["plan"] == "pro"
        assert summary["status"] == "active"
        assert summary["licensee_email"] == "billing@example.com"
        assert summary["entitlements"]["limit.monitors"]["config"] == {"limit": 100}
        assert summary["entitlements"]["feature.oncall"]["enabled"] is True

        validated = await client.post("/v1/license/validate", headers=headers)
        assert validated.status_code == 200
        assert validated.json()["data"]["last_validation_result"] == "success"

        deactivated = await client.post("/v1/license/deactivate", headers=headers)
        assert deactivated.status_code == 200
        lapsed = deactivated.json()["data"]
        assert lapsed["status"] == "revoked"
        assert lapsed["grace_period_status"] == "active"
        # Grace period keeps paid limits until it ends.
        assert lapsed["entitlements"]["limit.monitors"]["config"] == {"limit": 100}

        history = await client.get("/v1/license/validations", headers=headers)
        assert history.status_code == 200
        kinds = sorted(item["validation_type"] for item in history.json()["data"])
        assert "activation" in kinds
        assert "deactivation" in kinds

    await cleanup_test_organization(organization_id)


@pytest.mark.asyncio
async def test_activation_rejects_foreign_and_forged_keys(signing_key) -> None:
    organization_id = f"org-lic-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        foreign = sign_license_payload(
            build_license_payload(plan="enterprise", email="x@example.com", name="Other", organization_id="org-other"),
            signing_key,
        )
        mismatch = await client.post("/v1/license/activate", json={"key": foreign}, headers=headers)
        assert mismatch.status_code == 403
        assert mismatch.json()["error"]["code"] == "LICENSE_ORG_MISMATCH"

        forged = await client.post("/v1/license/activate", json={"key": "bm90LWEta2V5.c2lnbmF0dXJl"}, headers=headers)
        assert forged.status_code == 422
        assert forged.json()["error"]["code"] == "INVALID_SIGNATURE"

        still_free = await client.get("/v1/license", headers=headers)
        assert still_free.json()["data"]["plan"] == "free"

    await cleanup_test_organization(organization_id)


@pytest.mark.asyncio
async def test_activation_without_public_key_is_unavailable(monkeypatch) -> None:
    monkeypatch.delenv("LICENSE_PUBLIC_KEY_PEM", raising=False)
    get_settings.cache_clear()
    organization_id = f"org-lic-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.post("/v1/license/activate", json={"key": "payload.signature"}, headers=headers)
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "MISSING_PUBLIC_KEY"

    await cleanup_test_organization(organization_id)
