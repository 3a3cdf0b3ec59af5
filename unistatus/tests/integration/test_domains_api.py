from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from unistatus.apps.api.main import create_app
from unistatus.services.auth import domains as domains_service
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


@pytest.mark.asyncio
async def test_domain_claim_and_txt_verification(monkeypatch) -> None:
    organization_id = f"org-dom-{uuid4().hex[:12]}"
    other_org = f"org-dom-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    _raw, other_headers, _other_member, _other_key = await create_test_api_key(organization_id=other_org, role="admin")
    domain = f"corp-{uuid4().hex[:8]}.example.com"
    published: dict[str, list[str]] = {}
    lookups: list[tuple[str, str]] = []

    async def fake_resolve(name: str, record_type: str, **_kwargs) -> list[str]:
        lookups.append((name, record_type))
        return published.get(name, [])

    monkeypatch.setattr(domains_service, "resolve_records", fake_resolve)

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        created = await client.post("/v1/domains", json={"domain": f"  {domain.upper()} "}, headers=headers)
        assert created.status_code == 201
        row = created.json()["data"]
        assert row["domain"] == domain
        assert row["verified"] is False
        instructions = row["verification"]
        assert instructions["type"] == "TXT"
        assert instructions["name"] == f"_unistatus.{domain}"

        # Domains are claimed once across all organizations.
        claimed = await client.post("/v1/domains", json={"domain": domain}, headers=other_headers)
        assert claimed.status_code == 409
        assert claimed.json()["error"]["code"] == "DOMAIN_ALREADY_REGISTERED"

        missing = await client.post(f"/v1/domains/{row['id']}/verify", headers=headers)
        assert missing.status_code == 422
        assert missing.json()["error"]["code"] == "DNS_RECORD_NOT_FOUND"

        published[instructions["name"]] = ['"unistatus-verify=wrong"']
        mismatch = await client.post(f"/v1/domains/{row['id']}/verify", headers=headers)
        assert mismatch.status_code == 422
        assert mismatch.json()["error"]["code"] == "VERIFICATION_FAILED"
        assert mismatch.json()["error"]["details"]["found"] == ["unistatus-verify=wrong"]

        published[instructions["name"]] = ["v=spf1 -all", f'"{instructions["value"]}"']
        verified = await client.post(f"/v1/domains/{row['id']}/verify", headers=headers)
        assert verified.status_code == 200
        assert verified.json()["data"]["verified"] is True
        assert verified.json()["data"]["verified_at"] is not None

        lookups.clear()
        again = await client.post(f"/v1/domains/{row['id']}/verify", headers=headers)
        assert again.status_code == 200
        assert lookups == []

        invalid = await client.post("/v1/domains", json={"domain": "not a domain"}, headers=headers)
        assert invalid.status_code == 422
        assert invalid.json()["error"]["code"] == "INVALID_DOMAIN"

    await cleanup_test_organization(organization_id)
    await cleanup_test_organization(other_org)
