from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from unistatus.domain.models import SsoProvider
from unistatus.services.auth import oidc


def _make_provider(**overrides) -> SsoProvider:
    values = {
        "id": "prov_1",
        "organization_id": "org_1",
        "type": "oidc",
        "name": "Test",
        "issuer": "https://issuer.example",
        "client_id": "client_123",
        "client_secret_ref": "OIDC_SECRET",
        "auth_url": "https://issuer.example/auth",
        "token_url": "https://issuer.example/token",
        "jwks_url": "https://issuer.example/jwks",
        "scopes_json": ["openid", "email"],
        "enabled": True,
        "group_role_mapping": {
            "enabled": True,
            "mappings": [{"group": "admins", "role": "admin"}],
            "defaultRole": "viewer",
        },
    }
    values.update(overrides)
    return SsoProvider(**values)


def _generate_jwks() -> tuple[object, dict]:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk["kid"] = "test-kid"
    return private_key, {"keys": [jwk]}


def _token(private_key, provider: SsoProvider, **claims) -> str:
    now = datetime.now(timezone.utc)
    body = {
        "sub": "user-1",
        "iss": provider.issuer,
        "aud": provider.client_id,
        "exp": int((now + timedelta(minutes=5)).timestamp()),
        "nonce": "nonce-1",
    }
    body.update(claims)
    return jwt.encode(body, private_key, algorithm="RS256", headers={"kid": "test-kid"})


@pytest.fixture
def signing(monkeypatch):
    private_key, jwks = _generate_jwks()

    async def _fake_fetch(_jwks_url: str) -> dict:
        return jwks

    monkeypatch.setattr(oidc, "_fetch_jwks", _fake_fetch)
    return private_key


@pytest.mark.asyncio
async def test_id_token_validation_pass(signing) -> None:
    # Accept tokens with valid issuer, audience, exp, and nonce.
    provider = _make_provider()
    decoded = await oidc.validate_id_token(
        provider=provider, token=_token(signing, provider), nonce="nonce-1", clock_skew_seconds=0
    )
    assert decoded["sub"] == "user-1"


@pytest.mark.asyncio
async def test_id_token_rejects_bad_issuer(signing) -> None:
    provider = _make_provider()
    with pytest.raises(jwt.InvalidIssuerError):
        await oidc.validate_id_token(
            provider=provider,
            token=_token(signing, provider, iss="https://wrong.example"),
            nonce="nonce-1",
            clock_skew_seconds=0,
        )


@pytest.mark.asyncio
async def test_id_token_rejects_nonce_mismatch(signing) -> None:
    provider = _make_provider()
    with pytest.raises(ValueError):
        await oidc.validate_id_token(
            provider=provider, token=_token(signing, provider), nonce="other", clock_skew_seconds=0
        )


@pytest.mark.asyncio
async def test_id_token_rejects_expired(signing) -> None:
    provider = _make_provider()
    expired = int((datetime.now(timezone.utc) - timedelta(minutes=10)).timestamp())
    with pytest.raises(jwt.ExpiredSignatureError):
        await oidc.validate_id_token(
            provider=provider, token=_token(signing, provider, exp=expired), nonce="nonce-1", clock_skew_seconds=60
        )


def test_pkce_challenge_is_s256() -> None:
    # RFC 7636 appendix B test vector.
    verifier = "dBjftJeZ4CVP-mJ0tAPBZx8eDV8vSWCgz1lY5A3e4V0"
    assert oidc.build_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_mapped_role_reads_access_token_groups() -> None:
    provider = _make_provider()
    claims = oidc.extract_claims({"sub": "user-1", "email": "a@example.com"})
    access_token = jwt.encode({"groups": ["admins"]}, "k" * 32, algorithm="HS256")
    assert oidc.mapped_role_for_login(provider, claims) == "viewer"
    assert oidc.mapped_role_for_login(provider, claims, access_token=access_token) == "admin"

    # A disabled table assigns no login role, not even its default.
    disabled = _make_provider(
        group_role_mapping={"enabled": False, "mappings": [{"group": "admins", "role": "admin"}], "defaultRole": "viewer"}
    )
    assert oidc.mapped_role_for_login(disabled, claims, access_token=access_token) is None



@pytest.mark.asyncio
async def test_state_is_single_use(monkeypatch) -> None:
    async def _no_redis():
        return None

    monkeypatch.setattr(oidc, "get_redis", _no_redis)
    await oidc.store_state(state="s1", payload={"provider_id": "prov_1"}, ttl_seconds=60)
    assert (await oidc.pop_state("s1"))["provider_id"] == "prov_1"
    assert await oidc.pop_state("s1") is None
    await oidc.store_nonce(nonce="n1", ttl_seconds=60)
    assert await oidc.pop_nonce("n1") is True
    assert await oidc.pop_nonce("n1") is False
