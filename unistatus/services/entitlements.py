from __future__ import annotations

from dataclasses import dataclass
import asyncio
import logging
import time
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import OrganizationFeatureOverride
from unistatus.services.licensing import (
    DEFAULT_FREE_ENTITLEMENTS,
    FLAG_FEATURES,
    LIMIT_FEATURES,
    UNLIMITED,
    get_license,
    license_grants_entitlements,
)


logger = logging.getLogger(__name__)

ENTITLEMENT_CACHE_TTL_S = 30

FEATURE_AUDIT_LOGS = "feature.auditLogs"
FEATURE_SSO = "feature.sso"
FEATURE_ONCALL = "feature.oncall"
FEATURE_MULTI_REGION = "feature.multiRegion"

LIMIT_MONITORS = "monitors"
LIMIT_STATUS_PAGES = "statusPages"
LIMIT_TEAM_MEMBERS = "teamMembers"
LIMIT_REGIONS = "regions"


@dataclass(frozen=True)
class FeatureEntitlement:
    # Capture feature flags plus optional configuration payloads.
    enabled: bool
    config: dict[str, Any] | None = None


_entitlement_cache: dict[str, tuple[float, dict[str, FeatureEntitlement]]] = {}
_entitlement_cache_lock = asyncio.Lock()


def _feature_not_enabled_error(feature_key: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "code": "FEATURE_NOT_ENABLED",
            "message": "Feature not enabled for organization license",
            "feature_key": feature_key,
        },
    )


def features_to_entitlements(features: dict[str, Any]) -> dict[str, FeatureEntitlement]:
    # Limits become limit.<name> entries; everything else is a feature.<name> flag.
    entitlements: dict[str, FeatureEntitlement] = {}
    for name in LIMIT_FEATURES:
        raw = features.get(name, DEFAULT_FREE_ENTITLEMENTS[name])
        entitlements[f"limit.{name}"] = FeatureEntitlement(True, {"limit": int(raw)})
    for name in FLAG_FEATURES:
        entitlements[f"feature.{name}"] = FeatureEntitlement(bool(features.get(name, False)), None)
    return entitlements


async def get_effective_entitlements(
    session: AsyncSession,
    organization_id: str,
) -> dict[str, FeatureEntitlement]:
    # Return effective entitlements with a short-lived cache to reduce DB load.
    now = time.time()
    cached = _entitlement_cache.get(organization_id)
    if cached and cached[0] > now:
        return cached[1]

    entitlements = await _compute_entitlements(session, organization_id)
    async with _entitlement_cache_lock:
        _entitlement_cache[organization_id] = (now + ENTITLEMENT_CACHE_TTL_S, entitlements)
    return entitlements


def invalidate_entitlements_cache(organization_id: str) -> None:
    # Drop cached entitlements after license/override updates.
    _entitlement_cache.pop(organization_id, None)


def reset_entitlements_cache() -> None:
    _entitlement_cache.clear()


async def require_feature(
    *,
    session: AsyncSession,
    organization_id: str,
    feature_key: str,
) -> None:
    entitlements = await get_effective_entitlements(session, organization_id)
    entitlement = entitlements.get(feature_key, FeatureEntitlement(False, None))
    if not entitlement.enabled:
        raise _feature_not_enabled_error(feature_key)


async def get_resource_limit(session: AsyncSession, organization_id: str, resource: str) -> int:
    entitlements = await get_effective_entitlements(session, organization_id)
    entitlement = entitlements.get(f"limit.{resource}")
    if entitlement is None or not entitlement.enabled:
        return 0
    return int((entitlement.config or {}).get("limit", 0))


async def enforce_resource_limit(
    *,
    session: AsyncSession,
    organization_id: str,
    resource: str,
    current_count: int,
    requested: int = 1,
) -> None:
    # Block creation once the organization would exceed its licensed allowance.
    limit = await get_resource_limit(session, organization_id, resource)
    if limit == UNLIMITED:
        return
    if current_count + requested > limit:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "code": "PLAN_LIMIT_REACHED",
                "message": f"License limit reached for {resource}",
                "resource": resource,
                "limit": limit,
                "current": current_count,
            },
        )


async def _compute_entitlements(session: AsyncSession, organization_id: str) -> dict[str, FeatureEntitlement]:
    features: dict[str, Any] = dict(DEFAULT_FREE_ENTITLEMENTS)
    license_row = await get_license(session, organization_id)
    if license_row is not None and license_grants_entitlements(license_row):
        features.update(license_row.entitlements_json or {})
    elif license_row is not None:
        logger.info(
            "license_not_granting organization_id=%s status=%s grace=%s",
            organization_id,
            license_row.status,
            license_row.grace_period_status,
        )
    entitlements = features_to_entitlements(features)

    for override in await _load_overrides(session, organization_id):
        current = entitlements.get(override.feature_key, FeatureEntitlement(False, None))
        enabled = current.enabled if override.enabled is None else bool(override.enabled)
        config = current.config if override.config_json is None else override.config_json
        entitlements[override.feature_key] = FeatureEntitlement(enabled=enabled, config=config)
    return entitlements


async def _load_overrides(session: AsyncSession, organization_id: str) -> list[OrganizationFeatureOverride]:
    result = await session.execute(
        select(OrganizationFeatureOverride).where(OrganizationFeatureOverride.organization_id == organization_id)
    )
    return list(result.scalars().all())
