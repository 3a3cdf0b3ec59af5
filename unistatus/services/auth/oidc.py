from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import asyncio
import base64
import hashlib
import json
import logging
import os
import secrets
import time
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse
from uuid import uuid4

import httpx
import jwt
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.core.config import get_settings
from unistatus.domain.models import OrganizationDomain, OrganizationMember, SsoProvider
from unistatus.services.auth.group_mapping import (
    compute_login_role,
    decode_unverified_jwt_payload,
    extract_groups,
    resolve_role_from_groups,
)
from unistatus.services.coordination import get_redis


logger = logging.getLogger(__name__)

_ALLOWED_ALGS = {"RS256", "RS384", "RS512", "ES256", "ES384", "ES512"}

_STATE_PREFIX = "unistatus:sso:state:"
_NONCE_PREFIX = "unistatus:sso:nonce:"
_state_cache: dict[str, tuple[float, dict[str, Any]]] = {}
_nonce_cache: dict[str, float] = {}
_cache_lock = asyncio.Lock()


@dataclass(frozen=True)
class OidcClaims:
    subject: str
    email: str | None
    name: str | None
    groups: list[str]
    raw: dict[str, Any]


@dataclass(frozen=True)
class OidcTokenResponse:
    id_token: str
    access_token: str | None
    token_type: str | None
    expires_in: int | None


class ProvisioningDenied(Exception):
    # Signal the login cannot create a member for this organization.
    pass


class MemberDisabled(Exception):
    # Signal the matched member is disabled and cannot login.
    pass


def _utc_now() -> datetime:
    # Keep OIDC timestamps aligned to UTC for token validation.
    return datetime.now(timezone.utc)


def _base64url_encode(raw: bytes) -> str:
    # Produce base64url strings without padding for PKCE.
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("utf-8")


def generate_state() -> str:
    return _base64url_encode(secrets.token_bytes(32))


def generate_nonce() -> str:
    return _base64url_encode(secrets.token_bytes(32))


def generate_pkce_verifier() -> str:
    return _base64url_encode(secrets.token_bytes(32))


def build_code_challenge(verifier: str) -> str:
    # Hash PKCE verifier to generate the S256 code challenge.
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return _base64url_encode(digest)


def build_authorize_url(
    *,
    provider: SsoProvider,
    redirect_uri: str,
    state: str,
    nonce: str,
    code_challenge: str,
) -> str:
    scopes = provider.scopes_json or ["openid", "email", "profile"]
    query = {
        "response_type": "code",
        "client_id": provider.client_id,
        "redirect_uri": redirect_uri,
        "scope": " ".join(scopes),
        "state": state,
        "nonce": nonce,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{provider.auth_url}?{urlencode(query)}"


def append_query_params(url: str, params: dict[str, str]) -> str:
    # Safely append query params to redirect URLs without clobbering existing data.
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query))
    query.update(params)
    return urlunparse(parsed._replace(query=urlencode(query)))


async def store_state(*, state: str, payload: dict[str, Any], ttl_seconds: int) -> None:
    # Persist OIDC state in Redis with TTL, falling back to in-memory when Redis is down.
    try:
        redis = await get_redis()
        if redis is not None:
            await redis.setex(f"{_STATE_PREFIX}{state}", ttl_seconds, json.dumps(payload))
            return
    except Exception:  # noqa: BLE001 - fall back to process memory
        logger.warning("oidc_state_redis_failed", exc_info=True)
    async with _cache_lock:
        _state_cache[state] = (time.time() + ttl_seconds, payload)


async def pop_state(state: str) -> dict[str, Any] | None:
    # Fetch and delete state payload to enforce single use.
    async with _cache_lock:
        entry = _state_cache.pop(state, None)
    if entry is not None:
        expires_at, payload = entry
        return payload if expires_at > time.time() else None
    try:
        redis = await get_redis()
        if redis is None:
            return None
        raw = await redis.get(f"{_STATE_PREFIX}{state}")
        if raw is None:
            return None
        await redis.delete(f"{_STATE_PREFIX}{state}")
    except Exception:  # noqa: BLE001 - unknown state is treated as invalid
        logger.warning("oidc_state_lookup_failed", exc_info=True)
        return None
    return json.loads(raw)


async def store_nonce(*, nonce: str, ttl_seconds: int) -> None:
    try:
        redis = await get_redis()
        if redis is not None:
            await redis.setex(f"{_NONCE_PREFIX}{nonce}", ttl_seconds, "1")
            return
    except Exception:  # noqa: BLE001 - fall back to process memory
        logger.warning("oidc_nonce_redis_failed", exc_info=True)
    async with _cache_lock:
        _nonce_cache[nonce] = time.time() + ttl_seconds


async def pop_nonce(nonce: str) -> bool:
    # Enforce one-time use of nonces to guard against token replay.
    async with _cache_lock:
        expires_at = _nonce_cache.pop(nonce, None)
    if expires_at is not None:
        return expires_at > time.time()
    try:
        redis = await get_redis()
        if redis is None:
            return False
        exists = await redis.get(f"{_NONCE_PREFIX}{nonce}")
        if exists is None:
            return False
        await redis.delete(f"{_NONCE_PREFIX}{nonce}")
    except Exception:  # noqa: BLE001 - unknown nonce is treated as replay
        logger.warning("oidc_nonce_lookup_failed", exc_info=True)
        return False
    return True


def extract_claims(claims: dict[str, Any], *, groups_claim: str | None = None) -> OidcClaims:
    # Normalize identity claims for downstream provisioning and role mapping.
    subject = claims.get("sub") or claims.get("nameid")
    if not subject:
        raise ValueError("ID token missing subject")
    email = claims.get("email") or claims.get("upn") or claims.get("preferred_username")
    name = claims.get("name")
    if not name:
        given = claims.get("given_name")
        family = claims.get("family_name")
        if given or family:
            name = " ".join([part for part in [given, family] if part])
    return OidcClaims(
        subject=str(subject),
        email=str(email).lower() if email else None,
        name=name,
        groups=extract_groups(claims, groups_claim),
        raw=claims,
    )


def resolve_client_secret(client_secret_ref: str) -> str:
    # Secret references name environment variables; plaintext never lives in the database.
    env_secret = os.getenv(client_secret_ref)
    if env_secret:
        return env_secret
    raise ValueError("Client secret reference not found")


async def exchange_code_for_tokens(
    *,
    provider: SsoProvider,
    code: str,
    redirect_uri: str,
    code_verifier: str,
) -> OidcTokenResponse:
    payload = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": provider.client_id,
        "client_secret": resolve_client_secret(provider.client_secret_ref),
        "code_verifier": code_verifier,
    }
    timeout = get_settings().notify_timeout_ms / 1000
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.post(provider.token_url, data=payload)
    if response.status_code >= 400:
        logger.warning("oidc_token_exchange_failed status=%s", response.status_code)
        raise ValueError("Token exchange failed")
    body = response.json()
    id_token = body.get("id_token")
    if not id_token:
        raise ValueError("Token exchange response missing id_token")
    return OidcTokenResponse(
        id_token=id_token,
        access_token=body.get("access_token"),
        token_type=body.get("token_type"),
        expires_in=body.get("expires_in"),
    )


async def _fetch_jwks(jwks_url: str) -> dict[str, Any]:
    timeout = get_settings().notify_timeout_ms / 1000
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(jwks_url)
    response.raise_for_status()
    return response.json()


def _select_jwk(jwks: dict[str, Any], kid: str | None) -> dict[str, Any]:
    keys = jwks.get("keys") or []
    if kid:
        for key in keys:
            if key.get("kid") == kid:
                return key
    if len(keys) == 1:
        return keys[0]
    raise ValueError("No matching JWK for token")


def _jwk_to_key(jwk: dict[str, Any], alg: str) -> Any:
    # Convert a JWK payload into a cryptography key for PyJWT.
    payload = json.dumps(jwk)
    if alg.startswith("RS"):
        return jwt.algorithms.RSAAlgorithm.from_jwk(payload)
    if alg.startswith("ES"):
        return jwt.algorithms.ECAlgorithm.from_jwk(payload)
    raise ValueError("Unsupported JWT algorithm")


async def validate_id_token(
    *,
    provider: SsoProvider,
    token: str,
    nonce: str,
    clock_skew_seconds: int,
) -> dict[str, Any]:
    # Validate the ID token signature and core claims.
    header = jwt.get_unverified_header(token)
    alg = header.get("alg")
    if not alg or alg not in _ALLOWED_ALGS:
        raise ValueError("Unsupported token algorithm")
    jwks = await _fetch_jwks(provider.jwks_url)
    key = _jwk_to_key(_select_jwk(jwks, header.get("kid")), alg)
    claims = jwt.decode(
        token,
        key,
        algorithms=[alg],
        audience=provider.client_id,
        issuer=provider.issuer,
        leeway=clock_skew_seconds,
    )
    if claims.get("nonce") != nonce:
        raise ValueError("Nonce mismatch")
    return claims


def mapped_role_for_login(
    provider: SsoProvider, claims: OidcClaims, *, access_token: str | None = None
) -> str | None:
    # Some IdPs only put groups in the access token; read it when the ID token has none.
    config = provider.group_role_mapping or {}
    if not config.get("enabled"):
        return None
    groups = list(claims.groups)
    if not groups and access_token:
        access_claims = decode_unverified_jwt_payload(access_token) or {}
        groups = extract_groups(access_claims, config.get("groupsClaim"))
    return resolve_role_from_groups(groups, config)


async def _verified_domain_for_email(
    session: AsyncSession, *, organization_id: str, email: str | None
) -> OrganizationDomain | None:
    if not email or "@" not in email:
        return None
    domain = email.rsplit("@", 1)[1].lower()
    result = await session.execute(
        select(OrganizationDomain).where(
            OrganizationDomain.organization_id == organization_id,
            OrganizationDomain.domain == domain,
            OrganizationDomain.verified.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def ensure_member(
    *,
    session: AsyncSession,
    provider: SsoProvider,
    claims: OidcClaims,
    mapped_role: str | None,
) -> tuple[OrganizationMember, bool]:
    """Find or provision the member for an SSO login and apply the login role.

    Lookup is by IdP subject first, then by email. New members are only
    provisioned when their email domain is verified for the organization and
    either auto-join is enabled or the provider mapped a role.
    """
    organization_id = provider.organization_id
    member = (
        await session.execute(
            select(OrganizationMember).where(
                OrganizationMember.organization_id == organization_id,
                OrganizationMember.external_subject == claims.subject,
            )
        )
    ).scalar_one_or_none()
    if member is None and claims.email:
        member = (
            await session.execute(
                select(OrganizationMember).where(
                    OrganizationMember.organization_id == organization_id,
                    func.lower(OrganizationMember.email) == claims.email,
                )
            )
        ).scalar_one_or_none()

    now = _utc_now()
    sync_on_login = bool((provider.group_role_mapping or {}).get("syncOnLogin"))
    if member is None:
        domain = await _verified_domain_for_email(session, organization_id=organization_id, email=claims.email)
        if domain is None:
            raise ProvisioningDenied("Email domain is not verified for this organization")
        if domain.auto_join_enabled:
            base_role = mapped_role or domain.auto_join_role or "member"
        elif mapped_role:
            base_role = mapped_role
        else:
            raise ProvisioningDenied("Auto-join is disabled and no role mapping matched")
        member = OrganizationMember(
            id=uuid4().hex,
            organization_id=organization_id,
            email=claims.email or f"{claims.subject}@sso.invalid",
            display_name=claims.name,
            external_subject=claims.subject,
            role=compute_login_role(None, base_role, sync_on_login),
            status="active",
            last_login_at=now,
        )
        session.add(member)
        return member, True

    if member.status != "active":
        raise MemberDisabled()
    member.role = compute_login_role(member.role, mapped_role, sync_on_login)
    member.external_subject = member.external_subject or claims.subject
    member.display_name = claims.name or member.display_name
    member.last_login_at = now
    return member, False
