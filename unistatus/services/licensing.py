"""Offline license keys, license lifecycle and grace periods.

A license key is ``<base64url(payload JSON)>.<base64url(signature)>`` where the
signature is RSA PKCS#1 v1.5 with SHA-256 over the ASCII payload segment.
Keys are verified locally against the configured public key; nothing here
talks to a licensing server.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
import math
from typing import Any
from uuid import uuid4

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.core.config import get_settings
from unistatus.core.errors import LicenseError
from unistatus.domain.models import License, LicenseValidation


logger = logging.getLogger(__name__)

UNLIMITED = -1
# Tolerate small clock drift between the key issuer and this deployment.
_IAT_SKEW_SECONDS = 300

LIMIT_FEATURES = ("monitors", "statusPages", "teamMembers", "regions")
FLAG_FEATURES = (
    "auditLogs",
    "sso",
    "oncall",
    "customRoles",
    "slo",
    "reports",
    "multiRegion",
)

DEFAULT_FREE_ENTITLEMENTS: dict[str, Any] = {
    "monitors": 10,
    "statusPages": 2,
    "teamMembers": UNLIMITED,
    "regions": 1,
    "auditLogs": False,
    "sso": False,
    "oncall": False,
    "customRoles": False,
    "slo": False,
    "reports": False,
    "multiRegion": False,
}

DEFAULT_PLAN_FEATURES: dict[str, dict[str, Any]] = {
    "pro": {
        "monitors": 100,
        "statusPages": 10,
        "teamMembers": 25,
        "regions": 3,
        "auditLogs": False,
        "sso": False,
        "oncall": True,
        "customRoles": False,
        "slo": False,
        "reports": True,
        "multiRegion": False,
    },
    "enterprise": {
        "monitors": UNLIMITED,
        "statusPages": UNLIMITED,
        "teamMembers": UNLIMITED,
        "regions": UNLIMITED,
        "auditLogs": True,
        "sso": True,
        "oncall": True,
        "customRoles": True,
        "slo": True,
        "reports": True,
        "multiRegion": True,
    },
}

_REQUIRED_PAYLOAD_FIELDS = ("lid", "plan", "iat", "email", "name")


@dataclass(frozen=True)
class LicenseVerification:
    valid: bool
    payload: dict[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _failure(code: str, message: str) -> LicenseVerification:
    return LicenseVerification(valid=False, error=message, error_code=code)


def verify_license_key(
    key: str,
    public_key_pem: str | None,
    *,
    now: datetime | None = None,
) -> LicenseVerification:
    # Verify signature first so unsigned payloads are never parsed into entitlements.
    if not public_key_pem:
        return _failure("MISSING_PUBLIC_KEY", "License public key is not configured")
    parts = key.strip().split(".")
    if len(parts) != 2 or not all(parts):
        return _failure("INVALID_FORMAT", "License key must have payload and signature segments")
    payload_segment, signature_segment = parts
    try:
        signature = _b64url_decode(signature_segment)
        payload_bytes = _b64url_decode(payload_segment)
    except (ValueError, UnicodeEncodeError):
        return _failure("INVALID_FORMAT", "License key segments are not valid base64url")

    try:
        public_key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
    except ValueError:
        return _failure("MISSING_PUBLIC_KEY", "License public key is not a valid PEM key")
    if not isinstance(public_key, rsa.RSAPublicKey):
        return _failure("MISSING_PUBLIC_KEY", "License public key must be an RSA key")
    try:
        public_key.verify(signature, payload_bytes, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return _failure("INVALID_SIGNATURE", "License signature verification failed")

    try:
        payload = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return _failure("PARSE_ERROR", "License payload is not valid JSON")
    if not isinstance(payload, dict) or any(field not in payload for field in _REQUIRED_PAYLOAD_FIELDS):
        return _failure("PARSE_ERROR", "License payload is missing required fields")
    if payload["plan"] not in DEFAULT_PLAN_FEATURES:
        return _failure("PARSE_ERROR", f"Unknown license plan: {payload['plan']}")

    current = int((now or _utc_now()).timestamp())
    if int(payload["iat"]) > current + _IAT_SKEW_SECONDS:
        return _failure("NOT_YET_VALID", "License is not yet valid")
    expires = payload.get("exp")
    if expires is not None and int(expires) < current:
        return _failure("EXPIRED", "License has expired")
    return LicenseVerification(valid=True, payload=payload)


def sign_license_payload(payload: dict[str, Any], private_key_pem: str) -> str:
    # Serialize deterministically so identical payloads produce identical keys.
    private_key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise LicenseError("License signing key must be an RSA key", code="INVALID_SIGNING_KEY")
    body = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    # The signature covers the JSON text, not its base64url segment.
    payload_segment = _b64url_encode(body)
    signature = private_key.sign(body, padding.PKCS1v15(), hashes.SHA256())
    return f"{payload_segment}.{_b64url_encode(signature)}"


def generate_license_keypair() -> tuple[str, str]:
    # Return (private_pem, public_pem) for issuing tooling and tests.
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("utf-8")
    return private_pem, public_pem


def build_license_payload(
    *,
    plan: str,
    email: str,
    name: str,
    organization_id: str | None = None,
    valid_days: int | None = 365,
    features: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    issued = now or _utc_now()
    return {
        "lid": f"lic_{uuid4().hex[:16]}",
        "oid": organization_id,
        "plan": plan,
        "features": features or dict(DEFAULT_PLAN_FEATURES[plan]),
        "iat": int(issued.timestamp()),
        "exp": None if valid_days is None else int((issued + timedelta(days=valid_days)).timestamp()),
        "email": email,
        "name": name,
        "version": 1,
    }


def entitlements_from_payload(payload: dict[str, Any]) -> dict[str, Any]:
    # Plan defaults fill any features the issuer left out of the key.
    merged = dict(DEFAULT_PLAN_FEATURES[payload["plan"]])
    for name, value in (payload.get("features") or {}).items():
        if name in LIMIT_FEATURES or name in FLAG_FEATURES:
            merged[name] = value
    return merged


def days_until_expiry(expires_at: datetime | None, *, now: datetime | None = None) -> int | None:
    if expires_at is None:
        return None
    remaining = (expires_at - (now or _utc_now())).total_seconds() / 86400
    return max(0, math.floor(remaining))


def is_expiring_soon(
    expires_at: datetime | None, *, now: datetime | None = None, threshold_days: int | None = None
) -> bool:
    days = days_until_expiry(expires_at, now=now)
    if days is None:
        return False
    threshold = threshold_days if threshold_days is not None else get_settings().license_expiring_soon_days
    return days <= threshold


def license_grants_entitlements(license_row: License, *, now: datetime | None = None) -> bool:
    # Active licenses, or lapsed ones still inside their grace period, keep paid entitlements.
    current = now or _utc_now()
    if license_row.status == "active":
        return license_row.expires_at is None or license_row.expires_at > current
    return (
        license_row.grace_period_status == "active"
        and license_row.grace_period_ends_at is not None
        and license_row.grace_period_ends_at > current
    )


def hash_license_key(key: str) -> str:
    return hashlib.sha256(key.strip().encode("utf-8")).hexdigest()


async def get_license(session: AsyncSession, organization_id: str) -> License | None:
    result = await session.execute(select(License).where(License.organization_id == organization_id))
    return result.scalar_one_or_none()


async def record_validation(
    session: AsyncSession,
    *,
    license_row: License,
    validation_type: str,
    success: bool,
    error_code: str | None = None,
    error_message: str | None = None,
    now: datetime | None = None,
) -> LicenseValidation:
    current = now or _utc_now()
    row = LicenseValidation(
        id=uuid4().hex,
        license_id=license_row.id,
        validation_type=validation_type,
        success=success,
        error_code=error_code,
        error_message=error_message,
        validated_at=current,
    )
    session.add(row)
    license_row.last_validated_at = current
    license_row.last_validation_result = "success" if success else (error_code or "failure")
    if success:
        license_row.validation_failure_count = 0
    else:
        license_row.validation_failure_count = int(license_row.validation_failure_count or 0) + 1
    return row


def _start_grace_period(license_row: License, now: datetime) -> None:
    if license_row.grace_period_status == "active":
        return
    days = get_settings().license_grace_period_days
    license_row.grace_period_status = "active"
    license_row.grace_period_started_at = now
    license_row.grace_period_ends_at = now + timedelta(days=days)


async def activate_license(
    session: AsyncSession,
    *,
    organization_id: str,
    key: str,
    now: datetime | None = None,
) -> License:
    """Verify a key and bind it to the organization, replacing any previous license.

    Raises ``LicenseError`` with the verification error code; the caller commits.
    """
    current = now or _utc_now()
    verification = verify_license_key(key, get_settings().license_public_key_pem, now=current)
    if not verification.valid or verification.payload is None:
        raise LicenseError(verification.error or "Invalid license", code=verification.error_code or "INVALID")
    payload = verification.payload
    bound_org = payload.get("oid")
    if bound_org and bound_org != organization_id:
        raise LicenseError("License is bound to a different organization", code="LICENSE_ORG_MISMATCH")

    expires_at = None if payload.get("exp") is None else datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
    license_row = await get_license(session, organization_id)
    if license_row is None:
        license_row = License(id=uuid4().hex, organization_id=organization_id)
        session.add(license_row)
    license_row.license_id = str(payload["lid"])
    license_row.plan = str(payload["plan"])
    license_row.status = "active"
    license_row.key_hash = hash_license_key(key)
    license_row.valid_from = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
    license_row.expires_at = expires_at
    license_row.entitlements_json = entitlements_from_payload(payload)
    license_row.licensee_email = payload.get("email")
    license_row.licensee_name = payload.get("name")
    license_row.grace_period_status = "none"
    license_row.grace_period_started_at = None
    license_row.grace_period_ends_at = None
    await session.flush()
    await record_validation(session, license_row=license_row, validation_type="activation", success=True, now=current)
    return license_row


async def validate_license(
    session: AsyncSession,
    *,
    organization_id: str,
    now: datetime | None = None,
) -> License | None:
    # Re-check the stored license; a lapsed expiry moves it into its grace period.
    current = now or _utc_now()
    license_row = await get_license(session, organization_id)
    if license_row is None:
        return None
    if license_row.status == "active" and license_row.expires_at is not None and license_row.expires_at <= current:
        license_row.status = "expired"
        _start_grace_period(license_row, current)
        await record_validation(
            session,
            license_row=license_row,
            validation_type="manual",
            success=False,
            error_code="EXPIRED",
            error_message="License has expired",
            now=current,
        )
        return license_row
    if license_row.status != "active":
        await record_validation(
            session,
            license_row=license_row,
            validation_type="manual",
            success=False,
            error_code=license_row.status.upper(),
            error_message=f"License is {license_row.status}",
            now=current,
        )
        return license_row
    await record_validation(session, license_row=license_row, validation_type="manual", success=True, now=current)
    return license_row


async def deactivate_license(
    session: AsyncSession,
    *,
    organization_id: str,
    now: datetime | None = None,
) -> License | None:
    current = now or _utc_now()
    license_row = await get_license(session, organization_id)
    if license_row is None:
        return None
    license_row.status = "revoked"
    _start_grace_period(license_row, current)
    await record_validation(
        session,
        license_row=license_row,
        validation_type="deactivation",
        success=True,
        now=current,
    )
    return license_row


async def list_validations(
    session: AsyncSession, *, license_id: str, offset: int = 0, limit: int = 50
) -> list[LicenseValidation]:
    result = await session.execute(
        select(LicenseValidation)
        .where(LicenseValidation.license_id == license_id)
        .order_by(LicenseValidation.validated_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def run_license_grace_cycle(session: AsyncSession, *, now: datetime | None = None) -> dict[str, int]:
    # Expire lapsed licenses into grace and close grace periods that have run out.
    current = now or _utc_now()
    expired = 0
    downgraded = 0
    result = await session.execute(
        select(License).where(
            License.status == "active",
            License.expires_at.is_not(None),
            License.expires_at <= current,
        )
    )
    for license_row in result.scalars().all():
        license_row.status = "expired"
        _start_grace_period(license_row, current)
        expired += 1
    result = await session.execute(
        select(License).where(
            License.grace_period_status == "active",
            License.grace_period_ends_at <= current,
        )
    )
    for license_row in result.scalars().all():
        license_row.grace_period_status = "expired"
        downgraded += 1
        logger.info(
            "license_grace_period_ended organization_id=%s license_id=%s",
            license_row.organization_id,
            license_row.license_id,
        )
    await session.commit()
    return {"expired": expired, "downgraded": downgraded}
