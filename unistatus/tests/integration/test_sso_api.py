from __future__ import annotations

from urllib.parse import parse_qs, urlparse
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from unistatus.apps.api.main import create_app
from unistatus.apps.api.routes import sso as sso_routes
from unistatus.domain.models import OrganizationDomain, OrganizationFeatureOverride
from unistatus.persistence.db import SessionLocal
from unistatus.services.auth.oidc import OidcTokenResponse
from unistatus.services.entitlements import FEATURE_SSO
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


async def _enable_sso(organization_id: str) -> None:
    async with SessionLocal() as session:
        session.add(
            OrganizationFeatureOverride(
                organization_id=organization_id,
                feature_key=FEATURE_SSO,
                enabled=True,
                config_json=None,
            )
        )
        await session.commit()


async def _claim_domain(organization_id: str, domain: str, provider_id: str) -> None:
    async with SessionLocal() as session:
        session.add(
            OrganizationDomain(
                id=uuid4().hex,
                organization_id=organization_id,
                domain=domain,
                verified=True,
                verification_token=uuid4().hex,
                auto_join_enabled=False,
                sso_provider_id=provider_id,
                sso_required=True,
            )
        )
        await session.commit()


def _fake_identity_provider(monkeypatch, claims: dict) -> None:
    async def fake_exchange(*, provider, code, redirect_uri, code_verifier):
        assert code == "auth-code"
        assert redirect_uri.endswith(f"/v1/auth/sso/oidc/{provider.id}/callback")
        assert code_verifier
        return OidcTokenResponse(id_token="id-token", access_token=None, token_type="Bearer", expires_in=3600)

    async def fake_validate(*, provider, token, nonce, clock_skew_seconds):
        assert token == "id-token"
        return {**claims, "nonce": nonce}

    monkeypatch.setattr(sso_routes, "exchange_code_for_tokens", fake_exchange)
    monkeypatch.setattr(sso_routes, "validate_id_token", fake_validate)


async def _start(client: AsyncClient, provider_id: str) -> str:
    started = await client.get(f"/v1/auth/sso/oidc/{provider_id}/start")
    assert started.status_code == 200
    query = parse_qs(urlparse(started.json()["data"]["authorize_url"]).query)
    assert query["code_challenge_method"] == ["S256"]
    return query["state"][0]


@pytest.mark.asyncio
async def test_discover_and_oidc_login_provisions_mapped_member(monkeypatch) -> None:
    organization_id = f"org-sso-{uuid4().hex[:12]}"
    domain = f"{uuid4().hex[:10]}.example.org"
    _raw, headers, _admin_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    await _enable_sso(organization_id)
    app = create_app()
    transport = ASGITransport(app=app)
    # The callback URL must be HTTPS outside dev bypass.
    async with AsyncClient(transport=transport, base_url="https://test") as client:
        created = await client.post(
            "/v1/auth/sso/providers",
            json={
                "name": "Okta",
                "issuer": "https://idp.example.org",
                "client_id": "client-1",
                "client_secret_ref": "OKTA_SECRET",
                "auth_url": "https://idp.example.org/authorize",
                "token_url": "https://idp.example.org/token",
                "jwks_url": "https://idp.example.org/keys",
                "enabled": True,
                "group_role_mapping": {
                    "enabled": True,
                    "groupsClaim": "groups",
                    "mappings": [{"group": "sre", "role": "admin"}, {"group": "eng-*", "role": "member"}],
                    "defaultRole": "viewer",
                },
            },
            headers=headers,
        )
        assert created.status_code == 201
        provider_id = created.json()["data"]["id"]
        await _claim_domain(organization_id, domain, provider_id)

        found = await client.get("/v1/auth/sso/discover", params={"email": f"Ana@{domain.upper()}"})
        assert found.status_code == 200
        assert found.json()["data"] == {
            "sso_required": True,
            "provider_id": provider_id,
            "organization_id": organization_id,
        }
        unknown = await client.get("/v1/auth/sso/discover", params={"email": "ana@unclaimed.example.net"})
        assert unknown.json()["data"]["sso_required"] is False
        assert unknown.json()["data"]["provider_id"] is None

        _fake_identity_provider(
            monkeypatch, {"sub": "idp-ana", "email": f"ana@{domain}", "name": "Ana", "groups": ["sre"]}
        )
        state = await _start(client, provider_id)
        login = await client.get(
            f"/v1/auth/sso/oidc/{provider_id}/callback", params={"code": "auth-code", "state": state}
        )
        assert login.status_code == 200
        session = login.json()["data"]
        assert session["organization_id"] == organization_id
        assert session["role"] == "admin"
        assert session["session_token"]

        # State is single use.
        replayed = await client.get(
            f"/v1/auth/sso/oidc/{provider_id}/callback", params={"code": "auth-code", "state": state}
        )
        assert replayed.status_code == 400
        assert replayed.json()["error"]["code"] == "SSO_INVALID_STATE"

        members = await client.get(
            "/v1/organization/members", headers={"Authorization": f"Bearer {session['session_token']}"}
        )
        assert members.status_code == 200
        provisioned = [row for row in members.json()["data"] if row["id"] == session["member_id"]]
        assert provisioned[0]["external_subject"] == "idp-ana"
        assert provisioned[0]["display_name"] == "Ana"

        # Unverified domains are never provisioned.
        _fake_identity_provider(
            monkeypatch, {"sub": "idp-eve", "email": "eve@unclaimed.example.net", "groups": ["sre"]}
        )
        state = await _start(client, provider_id)
        denied = await client.get(
            f"/v1/auth/sso/oidc/{provider_id}/callback", params={"code": "auth-code", "state": state}
        )
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "SSO_PROVISIONING_DENIED"

    await cleanup_test_organization(organization_id)
