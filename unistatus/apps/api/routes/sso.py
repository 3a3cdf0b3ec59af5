from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from urllib.parse import urlparse
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.apps.api.deps import Principal, get_db, require_feature_access
from unistatus.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from unistatus.apps.api.response import SuccessEnvelope, success_response
from unistatus.core.config import get_settings
from unistatus.domain.models import SsoProvider
from unistatus.services.audit import get_request_context, record_event, record_request_event
from unistatus.services.auth.api_keys import ROLE_ORDER
from unistatus.services.auth.domains import find_sso_domain
from unistatus.services.auth.oidc import (
    MemberDisabled,
    ProvisioningDenied,
    append_query_params,
    build_authorize_url,
    build_code_challenge,
    ensure_member,
    exchange_code_for_tokens,
    extract_claims,
    generate_nonce,
    generate_pkce_verifier,
    generate_state,
    mapped_role_for_login,
    pop_nonce,
    pop_state,
    store_nonce,
    store_state,
    validate_id_token,
)
from unistatus.services.auth.sso_sessions import create_sso_session
from unistatus.services.entitlements import FEATURE_SSO, require_feature


router = APIRouter(prefix="/auth/sso", tags=["sso"], responses=DEFAULT_ERROR_RESPONSES)


class RoleMapping(BaseModel):
    group: str = Field(min_length=1)
    role: str


class GroupRoleMapping(BaseModel):
    enabled: bool = False
    groupsClaim: str | None = None
    mappings: list[RoleMapping] = Field(default_factory=list)
    defaultRole: str | None = None
    syncOnLogin: bool = False


class SsoProviderCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    type: Literal["oidc"] = "oidc"
    issuer: str
    client_id: str
    client_secret_ref: str = Field(min_length=1, max_length=200)
    auth_url: str
    token_url: str
    jwks_url: str
    scopes: list[str] | None = None
    enabled: bool = False
    group_role_mapping: GroupRoleMapping | None = None


class SsoProviderPatchRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    issuer: str | None = None
    client_id: str | None = None
    client_secret_ref: str | None = Field(default=None, min_length=1, max_length=200)
    auth_url: str | None = None
    token_url: str | None = None
    jwks_url: str | None = None
    scopes: list[str] | None = None
    enabled: bool | None = None
    group_role_mapping: GroupRoleMapping | None = None


class SsoProviderResponse(BaseModel):
    id: str
    name: str
    type: str
    issuer: str
    client_id: str
    client_secret_ref: str
    auth_url: str
    token_url: str
    jwks_url: str
    scopes: list[str] | None
    enabled: bool
    group_role_mapping: dict[str, Any] | None
    created_at: datetime


class SsoStartResponse(BaseModel):
    authorize_url: str


class SsoLoginResponse(BaseModel):
    organization_id: str
    provider_id: str
    member_id: str
    role: str
    session_token: str
    expires_at: str | None


class SsoDiscoverResponse(BaseModel):
    sso_required: bool
    provider_id: str | None
    organization_id: str | None


def _sso_disabled() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "SSO_DISABLED", "message": "SSO is disabled"},
    )


def _provider_not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "SSO_PROVIDER_NOT_FOUND", "message": "SSO provider not found"},
    )


def _invalid_state() -> HTTPException:
    # Fail closed when state or nonce validation fails.
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"code": "SSO_INVALID_STATE", "message": "Invalid or expired state"},
    )


def _validate_mapping(mapping: GroupRoleMapping | None) -> dict[str, Any] | None:
    if mapping is None:
        return None
    roles = [item.role for item in mapping.mappings]
    if mapping.defaultRole:
        roles.append(mapping.defaultRole)
    invalid = sorted({role for role in roles if role not in ROLE_ORDER or role == "owner"})
    if invalid:
        raise HTTPException(
            status_code=422,
            detail={"code": "INVALID_ROLE_MAPPING", "message": "Mapped roles must be admin, member or viewer", "roles": invalid},
        )
    return mapping.model_dump()


def _provider_payload(provider: SsoProvider) -> SsoProviderResponse:
    return SsoProviderResponse(
        id=provider.id,
        name=provider.name,
        type=provider.type,
        issuer=provider.issuer,
        client_id=provider.client_id,
        client_secret_ref=provider.client_secret_ref,
        auth_url=provider.auth_url,
        token_url=provider.token_url,
        jwks_url=provider.jwks_url,
        scopes=provider.scopes_json,
        enabled=provider.enabled,
        group_role_mapping=provider.group_role_mapping,
        created_at=provider.created_at,
    )


def _validate_return_to(return_to: str, settings) -> None:
    # Enforce allowed redirect hosts and HTTPS outside dev.
    parsed = urlparse(return_to)
    if not parsed.scheme or not parsed.netloc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "Invalid redirect URI"},
        )
    if not settings.auth_dev_bypass and parsed.scheme != "https":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "HTTPS redirect URIs are required"},
        )
    allowed_hosts = [host.strip() for host in settings.sso_allowed_redirect_hosts.split(",") if host.strip()]
    if allowed_hosts and parsed.hostname not in allowed_hosts:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "Redirect host not allowed"},
        )


async def _load_provider(db: AsyncSession, provider_id: str, principal: Principal) -> SsoProvider:
    provider = await db.get(SsoProvider, provider_id)
    if provider is None or provider.organization_id != principal.organization_id:
        raise _provider_not_found()
    return provider


async def _load_login_provider(db: AsyncSession, provider_id: str) -> SsoProvider:
    if not get_settings().sso_enabled:
        raise _sso_disabled()
    provider = await db.get(SsoProvider, provider_id)
    if provider is None or not provider.enabled or provider.type != "oidc":
        raise _provider_not_found()
    return provider


async def _audit_login_failure(
    db: AsyncSession,
    request_ctx: dict[str, Any],
    *,
    organization_id: str | None,
    provider_id: str,
    reason: str,
    error_code: str | None = None,
) -> None:
    await record_event(
        session=db,
        organization_id=organization_id,
        actor_type="anonymous",
        actor_id=None,
        actor_role=None,
        event_type="auth.sso.login.failure",
        outcome="failure",
        resource_type="sso_provider",
        resource_id=provider_id,
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={"reason": reason},
        error_code=error_code,
        commit=True,
        best_effort=True,
    )


@router.get(
    "/providers",
    response_model=SuccessEnvelope[list[SsoProviderResponse]] | list[SsoProviderResponse],
)
async def list_providers(
    request: Request,
    principal: Principal = Depends(require_feature_access(FEATURE_SSO, "admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await db.execute(
        select(SsoProvider)
        .where(SsoProvider.organization_id == principal.organization_id)
        .order_by(SsoProvider.name, SsoProvider.id)
    )
    return success_response(request=request, data=[_provider_payload(row) for row in result.scalars().all()])


@router.post(
    "/providers",
    status_code=201,
    response_model=SuccessEnvelope[SsoProviderResponse] | SsoProviderResponse,
)
async def create_provider(
    payload: SsoProviderCreateRequest,
    request: Request,
    principal: Principal = Depends(require_feature_access(FEATURE_SSO, "admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    provider = SsoProvider(
        id=uuid4().hex,
        organization_id=principal.organization_id,
        name=payload.name,
        type=payload.type,
        issuer=payload.issuer,
        client_id=payload.client_id,
        client_secret_ref=payload.client_secret_ref,
        auth_url=payload.auth_url,
        token_url=payload.token_url,
        jwks_url=payload.jwks_url,
        scopes_json=payload.scopes,
        enabled=payload.enabled,
        group_role_mapping=_validate_mapping(payload.group_role_mapping),
    )
    db.add(provider)
    try:
        await db.commit()
        await db.refresh(provider)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while creating SSO provider") from exc
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="sso.provider.created",
        resource_type="sso_provider",
        resource_id=provider.id,
        metadata={"issuer": provider.issuer},
    )
    return success_response(request=request, data=_provider_payload(provider))


@router.get(
    "/providers/{provider_id}",
    response_model=SuccessEnvelope[SsoProviderResponse] | SsoProviderResponse,
)
async def get_provider(
    provider_id: str,
    request: Request,
    principal: Principal = Depends(require_feature_access(FEATURE_SSO, "admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    provider = await _load_provider(db, provider_id, principal)
    return success_response(request=request, data=_provider_payload(provider))


@router.patch(
    "/providers/{provider_id}",
    response_model=SuccessEnvelope[SsoProviderResponse] | SsoProviderResponse,
)
async def patch_provider(
    provider_id: str,
    payload: SsoProviderPatchRequest,
    request: Request,
    principal: Principal = Depends(require_feature_access(FEATURE_SSO, "admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    provider = await _load_provider(db, provider_id, principal)
    changes = payload.model_dump(exclude_unset=True)
    for field in ("name", "issuer", "client_id", "client_secret_ref", "auth_url", "token_url", "jwks_url", "enabled"):
        if changes.get(field) is not None:
            setattr(provider, field, changes[field])
    if "scopes" in changes:
        provider.scopes_json = payload.scopes
    if "group_role_mapping" in changes:
        provider.group_role_mapping = _validate_mapping(payload.group_role_mapping)
    try:
        await db.commit()
        await db.refresh(provider)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while updating SSO provider") from exc
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="sso.provider.updated",
        resource_type="sso_provider",
        resource_id=provider.id,
        metadata={"fields": sorted(changes.keys())},
    )
    return success_response(request=request, data=_provider_payload(provider))


@router.delete("/providers/{provider_id}", status_code=204)
async def delete_provider(
    provider_id: str,
    request: Request,
    principal: Principal = Depends(require_feature_access(FEATURE_SSO, "admin")),
    db: AsyncSession = Depends(get_db),
) -> None:
    provider = await _load_provider(db, provider_id, principal)
    await db.delete(provider)
    await db.commit()
    await record_request_event(
        session=db,
        request=request,
        principal=principal,
        event_type="sso.provider.deleted",
        resource_type="sso_provider",
        resource_id=provider_id,
    )
    return None


@router.get("/discover", response_model=SuccessEnvelope[SsoDiscoverResponse] | SsoDiscoverResponse)
async def discover(
    request: Request,
    email: str = Query(min_length=3, max_length=320),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Login screens call this before asking for credentials.
    domain = await find_sso_domain(db, email)
    if domain is None:
        data = SsoDiscoverResponse(sso_required=False, provider_id=None, organization_id=None)
    else:
        data = SsoDiscoverResponse(
            sso_required=domain.sso_required,
            provider_id=domain.sso_provider_id,
            organization_id=domain.organization_id,
        )
    return success_response(request=request, data=data)


@router.get(
    "/oidc/{provider_id}/start",
    response_model=SuccessEnvelope[SsoStartResponse] | SsoStartResponse,
)
async def oidc_start(
    request: Request,
    provider_id: str,
    return_to: str | None = Query(default=None),
    response_mode: Literal["json", "redirect"] = Query(default="json"),
    db: AsyncSession = Depends(get_db),
):
    settings = get_settings()
    provider = await _load_login_provider(db, provider_id)
    await require_feature(session=db, organization_id=provider.organization_id, feature_key=FEATURE_SSO)
    if return_to:
        _validate_return_to(return_to, settings)

    redirect_uri = str(request.url_for("oidc_callback", provider_id=provider_id))
    if not settings.auth_dev_bypass and not redirect_uri.startswith("https://"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "HTTPS callback URLs are required"},
        )

    state = generate_state()
    nonce = generate_nonce()
    pkce_verifier = generate_pkce_verifier()
    await store_state(
        state=state,
        payload={
            "organization_id": provider.organization_id,
            "provider_id": provider.id,
            "nonce": nonce,
            "pkce_verifier": pkce_verifier,
            "redirect_uri": redirect_uri,
            "return_to": return_to,
            "response_mode": response_mode,
        },
        ttl_seconds=settings.sso_state_ttl_seconds,
    )
    await store_nonce(nonce=nonce, ttl_seconds=settings.sso_state_ttl_seconds)

    authorize_url = build_authorize_url(
        provider=provider,
        redirect_uri=redirect_uri,
        state=state,
        nonce=nonce,
        code_challenge=build_code_challenge(pkce_verifier),
    )
    if response_mode == "redirect":
        return RedirectResponse(authorize_url)
    return success_response(request=request, data=SsoStartResponse(authorize_url=authorize_url))


@router.get(
    "/oidc/{provider_id}/callback",
    response_model=SuccessEnvelope[SsoLoginResponse] | SsoLoginResponse,
    name="oidc_callback",
)
async def oidc_callback(
    request: Request,
    provider_id: str,
    code: str = Query(...),
    state: str = Query(...),
    db: AsyncSession = Depends(get_db),
):
    settings = get_settings()
    provider = await _load_login_provider(db, provider_id)
    # Cache provider fields; rollbacks expire the ORM instance.
    organization_id = provider.organization_id
    request_ctx = get_request_context(request)

    try:
        state_payload = await pop_state(state)
        if not state_payload or state_payload.get("provider_id") != provider_id:
            raise _invalid_state()
        if not await pop_nonce(state_payload.get("nonce")):
            raise _invalid_state()
        await require_feature(session=db, organization_id=organization_id, feature_key=FEATURE_SSO)
    except HTTPException as exc:
        await _audit_login_failure(
            db,
            request_ctx,
            organization_id=None,
            provider_id=provider_id,
            reason="state_or_entitlement_invalid",
            error_code=exc.detail.get("code") if isinstance(exc.detail, dict) else None,
        )
        raise

    try:
        token_response = await exchange_code_for_tokens(
            provider=provider,
            code=code,
            redirect_uri=state_payload.get("redirect_uri"),
            code_verifier=state_payload.get("pkce_verifier"),
        )
    except Exception as exc:
        await _audit_login_failure(
            db,
            request_ctx,
            organization_id=None,
            provider_id=provider_id,
            reason="token_exchange_failed",
            error_code="SSO_TOKEN_EXCHANGE_FAILED",
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "SSO_TOKEN_EXCHANGE_FAILED", "message": "Token exchange failed"},
        ) from exc

    mapping = provider.group_role_mapping or {}
    try:
        claims_payload = await validate_id_token(
            provider=provider,
            token=token_response.id_token,
            nonce=state_payload.get("nonce"),
            clock_skew_seconds=settings.sso_clock_skew_seconds,
        )
        claims = extract_claims(claims_payload, groups_claim=mapping.get("groupsClaim"))
    except Exception as exc:
        await _audit_login_failure(
            db,
            request_ctx,
            organization_id=None,
            provider_id=provider_id,
            reason="id_token_invalid",
            error_code="SSO_ID_TOKEN_INVALID",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "SSO_ID_TOKEN_INVALID", "message": "ID token invalid"},
        ) from exc

    mapped_role = mapped_role_for_login(provider, claims, access_token=token_response.access_token)
    try:
        member, created = await ensure_member(session=db, provider=provider, claims=claims, mapped_role=mapped_role)
        await db.flush()
        session_token, session_row = await create_sso_session(
            session=db,
            organization_id=organization_id,
            member_id=member.id,
            provider_id=provider_id,
            ttl_hours=settings.sso_session_ttl_hours,
        )
        await db.commit()
    except ProvisioningDenied as exc:
        await db.rollback()
        await _audit_login_failure(
            db,
            request_ctx,
            organization_id=organization_id,
            provider_id=provider_id,
            reason="provisioning_denied",
            error_code="SSO_PROVISIONING_DENIED",
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "SSO_PROVISIONING_DENIED", "message": str(exc)},
        ) from exc
    except MemberDisabled as exc:
        await db.rollback()
        await _audit_login_failure(
            db,
            request_ctx,
            organization_id=organization_id,
            provider_id=provider_id,
            reason="member_disabled",
            error_code="AUTH_FORBIDDEN",
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Member is disabled"},
        ) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        await _audit_login_failure(
            db,
            request_ctx,
            organization_id=organization_id,
            provider_id=provider_id,
            reason="db_error",
            error_code="INTERNAL_ERROR",
        )
        raise HTTPException(status_code=500, detail="Database error") from exc

    await record_event(
        session=db,
        organization_id=organization_id,
        actor_type="member",
        actor_id=member.id,
        actor_role=member.role,
        event_type="auth.sso.login.success",
        outcome="success",
        resource_type="sso_session",
        resource_id=session_row.id,
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={"provider_id": provider_id, "provisioned": created, "mapped_role": mapped_role},
        commit=True,
        best_effort=True,
    )

    payload = SsoLoginResponse(
        organization_id=organization_id,
        provider_id=provider_id,
        member_id=member.id,
        role=member.role,
        session_token=session_token,
        expires_at=session_row.expires_at.isoformat() if session_row.expires_at else None,
    )
    return_to = state_payload.get("return_to")
    if return_to and state_payload.get("response_mode") == "redirect":
        return RedirectResponse(
            append_query_params(
                return_to,
                {"token": session_token, "organization_id": organization_id, "provider_id": provider_id},
            )
        )
    return success_response(request=request, data=payload)
