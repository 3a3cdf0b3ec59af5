from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncGenerator
import asyncio
import time

from fastapi import Depends, HTTPException, Query, Request, status
from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.core.config import get_settings
from unistatus.domain.models import ApiKey, OrganizationMember
from unistatus.persistence.db import SessionLocal, get_session
from unistatus.services.audit import get_request_context, record_event
from unistatus.services.auth.api_keys import hash_api_key, normalize_role, role_allows
from unistatus.services.auth.sso_sessions import is_sso_session_token, resolve_sso_session
from unistatus.services.entitlements import require_feature


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Capture the authenticated identity used for organization scoping and RBAC.
    subject_id: str
    organization_id: str
    role: str
    api_key_id: str
    auth_method: str = "api_key"
    subject_type: str = "member"


class Pagination(BaseModel):
    offset: int
    limit: int


def pagination(
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
) -> Pagination:
    return Pagination(offset=offset, limit=limit)


_auth_cache: dict[str, tuple[float, Principal]] = {}
_auth_cache_lock = asyncio.Lock()


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _extract_error_code(exc: HTTPException) -> str | None:
    detail = exc.detail
    if isinstance(detail, dict):
        return detail.get("code")
    return None


def _request_metadata(request: Request) -> dict[str, str]:
    # Include minimal request context for traceability without sensitive headers.
    return {"path": request.url.path, "method": request.method}


async def _audit_auth(
    *,
    db: AsyncSession,
    request: Request,
    organization_id: str | None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None,
    outcome: str,
    event_type: str | None = None,
    metadata: dict[str, object] | None = None,
    error: HTTPException | None = None,
) -> None:
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        organization_id=organization_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type or f"auth.access.{outcome}",
        outcome=outcome,
        resource_type="auth",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={**_request_metadata(request), **(metadata or {})},
        error_code=_extract_error_code(error) if error is not None else None,
        commit=True,
        best_effort=True,
    )


async def _get_cached_principal(key_hash: str, ttl_s: int) -> Principal | None:
    # Cache principals briefly to reduce auth DB load between requests.
    if ttl_s <= 0:
        return None
    now = time.time()
    async with _auth_cache_lock:
        entry = _auth_cache.get(key_hash)
        if not entry:
            return None
        expires_at, principal = entry
        if expires_at <= now:
            _auth_cache.pop(key_hash, None)
            return None
        return principal


async def _set_cached_principal(key_hash: str, principal: Principal, ttl_s: int) -> None:
    if ttl_s <= 0:
        return
    async with _auth_cache_lock:
        _auth_cache[key_hash] = (time.time() + ttl_s, principal)


def clear_auth_cache() -> None:
    # Revocations and role changes drop cached principals immediately.
    _auth_cache.clear()


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Allow organization headers only when explicitly enabled for local dev.
    organization_id = request.headers.get("X-Organization-Id")
    if not organization_id:
        raise _auth_error("X-Organization-Id header is required in dev bypass mode")
    role_header = request.headers.get("X-Role", "admin")
    try:
        role = normalize_role(role_header)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(
        subject_id=f"dev-{organization_id}",
        organization_id=organization_id,
        role=role,
        api_key_id="dev-bypass",
        auth_method="dev_bypass",
    )


async def _touch_last_used(api_key_id: str) -> None:
    # Update last_used_at outside the request transaction.
    async with SessionLocal() as session:
        try:
            await session.execute(update(ApiKey).where(ApiKey.id == api_key_id).values(last_used_at=func.now()))
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    header_value = request.headers.get(settings.auth_api_key_header)
    try:
        bearer_token = _parse_bearer_token(header_value)
    except HTTPException as exc:
        await _audit_auth(
            db=db, request=request, organization_id=None, actor_type="anonymous",
            actor_id=None, actor_role=None, outcome="failure", error=exc,
        )
        raise

    if not settings.auth_enabled or not bearer_token:
        if settings.auth_dev_bypass:
            principal = _principal_from_dev_headers(request)
            await _audit_auth(
                db=db, request=request, organization_id=principal.organization_id, actor_type="system",
                actor_id=principal.subject_id, actor_role=principal.role, outcome="success",
                metadata={"auth_mode": "dev_bypass"},
            )
            return principal
        if not settings.auth_enabled:
            exc = _auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")
        else:
            exc = _auth_error("Missing API key")
        await _audit_auth(
            db=db, request=request, organization_id=None, actor_type="anonymous",
            actor_id=None, actor_role=None, outcome="failure", error=exc,
        )
        raise exc

    if is_sso_session_token(bearer_token):
        # Validate SSO sessions before falling back to API key auth.
        try:
            sso_session, member = await resolve_sso_session(session=db, raw_token=bearer_token)
        except HTTPException as exc:
            await _audit_auth(
                db=db, request=request, organization_id=None, actor_type="sso_session",
                actor_id=None, actor_role=None, outcome="failure",
                metadata={"auth_mode": "sso_session"}, error=exc,
            )
            raise
        principal = Principal(
            subject_id=member.id,
            organization_id=member.organization_id,
            role=member.role,
            api_key_id=sso_session.id,
            auth_method="sso_session",
        )
        await _audit_auth(
            db=db, request=request, organization_id=principal.organization_id, actor_type="sso_session",
            actor_id=sso_session.id, actor_role=principal.role, outcome="success",
            metadata={"auth_mode": "sso_session"},
        )
        return principal

    key_hash = hash_api_key(bearer_token)
    cached = await _get_cached_principal(key_hash, settings.auth_cache_ttl_s)
    if cached:
        await _audit_auth(
            db=db, request=request, organization_id=cached.organization_id, actor_type="api_key",
            actor_id=cached.api_key_id, actor_role=cached.role, outcome="success",
            metadata={"auth_cache": True},
        )
        return cached

    try:
        result = await db.execute(
            select(ApiKey, OrganizationMember)
            .join(OrganizationMember, ApiKey.member_id == OrganizationMember.id)
            .where(ApiKey.key_hash == key_hash)
        )
    except SQLAlchemyError as exc:
        error = HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        )
        await _audit_auth(
            db=db, request=request, organization_id=None, actor_type="system",
            actor_id=None, actor_role=None, outcome="failure", error=error,
        )
        raise error from exc

    row = result.first()
    if row is None:
        error = _auth_error("Invalid API key")
        await _audit_auth(
            db=db, request=request, organization_id=None, actor_type="anonymous",
            actor_id=None, actor_role=None, outcome="failure", error=error,
        )
        raise error
    api_key, member = row
    if api_key.revoked_at is not None or member.status != "active":
        error = _auth_error("API key is revoked or inactive")
        await _audit_auth(
            db=db, request=request, organization_id=api_key.organization_id, actor_type="api_key",
            actor_id=api_key.id, actor_role=member.role, outcome="failure",
            metadata={"member_id": member.id}, error=error,
        )
        raise error
    if api_key.expires_at is not None and api_key.expires_at <= datetime.now(timezone.utc):
        # Expiry is audited separately from revocation.
        error = _auth_error("API key expired")
        await _audit_auth(
            db=db, request=request, organization_id=api_key.organization_id, actor_type="api_key",
            actor_id=api_key.id, actor_role=member.role, outcome="failure",
            event_type="auth.api_key.expired", metadata={"member_id": member.id}, error=error,
        )
        raise error
    if api_key.organization_id != member.organization_id:
        error = _forbidden_error("Organization mismatch for API key")
        await _audit_auth(
            db=db, request=request, organization_id=api_key.organization_id, actor_type="api_key",
            actor_id=api_key.id, actor_role=member.role, outcome="failure",
            metadata={"member_id": member.id}, error=error,
        )
        raise error

    try:
        role = normalize_role(member.role)
    except ValueError as exc:
        error = _forbidden_error(str(exc))
        await _audit_auth(
            db=db, request=request, organization_id=member.organization_id, actor_type="api_key",
            actor_id=api_key.id, actor_role=member.role, outcome="failure",
            metadata={"member_id": member.id}, error=error,
        )
        raise error from exc

    principal = Principal(
        subject_id=member.id,
        organization_id=member.organization_id,
        role=role,
        api_key_id=api_key.id,
        auth_method="api_key",
    )
    await _set_cached_principal(key_hash, principal, settings.auth_cache_ttl_s)
    asyncio.create_task(_touch_last_used(api_key.id))
    await _audit_auth(
        db=db, request=request, organization_id=principal.organization_id, actor_type="api_key",
        actor_id=principal.api_key_id, actor_role=principal.role, outcome="success",
        metadata={"member_id": principal.subject_id},
    )
    return principal


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            request_ctx = get_request_context(request)
            await record_event(
                session=db,
                organization_id=principal.organization_id,
                actor_type=principal.auth_method,
                actor_id=principal.api_key_id,
                actor_role=principal.role,
                event_type="rbac.forbidden",
                outcome="failure",
                resource_type="rbac",
                request_id=request_ctx["request_id"],
                ip_address=request_ctx["ip_address"],
                user_agent=request_ctx["user_agent"],
                metadata={**_request_metadata(request), "required_role": minimum_role},
                error_code="AUTH_FORBIDDEN",
                commit=True,
                best_effort=True,
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def require_feature_access(feature_key: str, minimum_role: str = "viewer"):
    # Combine RBAC with an entitlement gate for licensed features.
    async def _dependency(
        principal: Principal = Depends(require_role(minimum_role)),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        await require_feature(session=db, organization_id=principal.organization_id, feature_key=feature_key)
        return principal

    return _dependency
