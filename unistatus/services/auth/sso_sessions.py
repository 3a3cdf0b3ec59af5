from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import secrets
from uuid import uuid4

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import OrganizationMember, SsoSession
from unistatus.services.auth.api_keys import normalize_role


TOKEN_PREFIX = "usss_"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_sso_session_token(raw_token: str) -> bool:
    # Distinguish SSO sessions from API keys to route auth logic safely.
    return raw_token.startswith(TOKEN_PREFIX)


def hash_sso_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_sso_token() -> tuple[str, str, str, str]:
    token_id = uuid4().hex
    secret = secrets.token_urlsafe(32)
    raw_token = f"{TOKEN_PREFIX}{token_id}_{secret}"
    return token_id, raw_token, raw_token[:12], hash_sso_token(raw_token)


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def create_sso_session(
    *,
    session: AsyncSession,
    organization_id: str,
    member_id: str,
    provider_id: str | None,
    ttl_hours: int | None,
) -> tuple[str, SsoSession]:
    # Persist a hashed SSO session token for subsequent API authentication.
    token_id, raw_token, token_prefix, token_hash = generate_sso_token()
    now = _utc_now()
    row = SsoSession(
        id=token_id,
        organization_id=organization_id,
        member_id=member_id,
        provider_id=provider_id,
        token_prefix=token_prefix,
        token_hash=token_hash,
        created_at=now,
        expires_at=None if ttl_hours is None else now + timedelta(hours=ttl_hours),
    )
    session.add(row)
    await session.flush()
    return raw_token, row


async def resolve_sso_session(
    *,
    session: AsyncSession,
    raw_token: str,
) -> tuple[SsoSession, OrganizationMember]:
    # Validate the session token and return the member for authorization.
    result = await session.execute(
        select(SsoSession, OrganizationMember)
        .join(OrganizationMember, OrganizationMember.id == SsoSession.member_id)
        .where(SsoSession.token_hash == hash_sso_token(raw_token))
    )
    row = result.first()
    if row is None:
        raise _unauthorized("Invalid session token")
    sso_session, member = row
    now = _utc_now()
    if sso_session.revoked_at is not None:
        raise _unauthorized("Session token revoked")
    if sso_session.expires_at is not None and sso_session.expires_at <= now:
        raise _unauthorized("Session token expired")
    if member.status != "active":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Member is disabled"},
        )
    member.role = normalize_role(member.role)
    await session.execute(
        update(SsoSession).where(SsoSession.id == sso_session.id).values(last_seen_at=now)
    )
    return sso_session, member
