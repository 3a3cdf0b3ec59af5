from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
import json

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
import pytest

from unistatus.domain.models import License
from unistatus.services.licensing import (
    UNLIMITED,
    build_license_payload,
    days_until_expiry,
    entitlements_from_payload,
    generate_license_keypair,
    is_expiring_soon,
    license_grants_entitlements,
    sign_license_payload,
    verify_license_key,
)


@pytest.fixture(scope="module")
def keypair() -> tuple[str, str]:
    return generate_license_keypair()


NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def test_signed_key_verifies(keypair) -> None:
    private_pem, public_pem = keypair
    payload = build_license_payload(plan="pro", email="ops@example.com", name="Example", now=NOW)
    key = sign_license_payload(payload, private_pem)
    result = verify_license_key(key, public_pem, now=NOW + timedelta(days=1))
    assert result.valid is True
    assert result.payload["lid"] == payload["lid"]
    assert result.payload["plan"] == "pro"


def _segment(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def test_key_signed_over_json_text_by_external_issuer(keypair) -> None:
    private_pem, public_pem = keypair
    private_key = serialization.load_pem_private_key(private_pem.encode("utf-8"), password=None)
    payload = build_license_payload(plan="enterprise", email="ops@example.com", name="Example", now=NOW)
    # Issuers serialize in insertion order without sorting keys.
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    signature = private_key.sign(body, padding.PKCS1v15(), hashes.SHA256())
    key = f"{_segment(body)}.{_segment(signature)}"
    result = verify_license_key(key, public_pem, now=NOW)
    assert result.valid is True
    assert result.payload["plan"] == "enterprise"

    # A signature over the base64url segment instead of the JSON text is not accepted.
    segment_signature = private_key.sign(_segment(body).encode("ascii"), padding.PKCS1v15(), hashes.SHA256())
    wrong = f"{_segment(body)}.{_segment(segment_signature)}"
    assert verify_license_key(wrong, public_pem, now=NOW).error_code == "INVALID_SIGNATURE"


def test_tampered_payload_fails_signature(keypair) -> None:
    private_pem, public_pem = keypair
    key = sign_license_payload(build_license_payload(plan="pro", email="a@b.c", name="A", now=NOW), private_pem)
    forged = sign_license_payload(build_license_payload(plan="enterprise", email="a@b.c", name="A", now=NOW), private_pem)
    mixed = f"{forged.split('.')[0]}.{key.split('.')[1]}"
    result = verify_license_key(mixed, public_pem, now=NOW)
    assert result.valid is False
    assert result.error_code == "INVALID_SIGNATURE"


def test_other_keypair_rejected(keypair) -> None:
    private_pem, _ = keypair
    _, other_public = generate_license_keypair()
    key = sign_license_payload(build_license_payload(plan="pro", email="a@b.c", name="A", now=NOW), private_pem)
    assert verify_license_key(key, other_public, now=NOW).error_code == "INVALID_SIGNATURE"


def test_expired_and_future_keys(keypair) -> None:
    private_pem, public_pem = keypair
    expired = sign_license_payload(
        build_license_payload(plan="pro", email="a@b.c", name="A", valid_days=10, now=NOW), private_pem
    )
    assert verify_license_key(expired, public_pem, now=NOW + timedelta(days=11)).error_code == "EXPIRED"
    future = sign_license_payload(
        build_license_payload(plan="pro", email="a@b.c", name="A", now=NOW + timedelta(days=2)), private_pem
    )
    assert verify_license_key(future, public_pem, now=NOW).error_code == "NOT_YET_VALID"


def test_perpetual_key_never_expires(keypair) -> None:
    private_pem, public_pem = keypair
    payload = build_license_payload(plan="enterprise", email="a@b.c", name="A", valid_days=None, now=NOW)
    assert payload["exp"] is None
    key = sign_license_payload(payload, private_pem)
    assert verify_license_key(key, public_pem, now=NOW + timedelta(days=3650)).valid is True


@pytest.mark.parametrize("bad_key", ["", "onlyonesegment", "a.b.c", "!!!.???"])
def test_malformed_keys(keypair, bad_key: str) -> None:
    _, public_pem = keypair
    result = verify_license_key(bad_key, public_pem, now=NOW)
    assert result.valid is False
    assert result.error_code in {"INVALID_FORMAT", "INVALID_SIGNATURE"}


def test_missing_public_key() -> None:
    assert verify_license_key("a.b", None).error_code == "MISSING_PUBLIC_KEY"


def test_entitlements_merge_plan_defaults() -> None:
    merged = entitlements_from_payload({"plan": "pro", "features": {"monitors": 250, "unknown": True}})
    assert merged["monitors"] == 250
    assert merged["statusPages"] == 10
    assert "unknown" not in merged
    assert entitlements_from_payload({"plan": "enterprise"})["monitors"] == UNLIMITED


def test_expiry_helpers() -> None:
    assert days_until_expiry(None, now=NOW) is None
    assert days_until_expiry(NOW + timedelta(days=5, hours=3), now=NOW) == 5
    assert days_until_expiry(NOW - timedelta(days=1), now=NOW) == 0
    assert is_expiring_soon(NOW + timedelta(days=5), now=NOW, threshold_days=14) is True
    assert is_expiring_soon(NOW + timedelta(days=30), now=NOW, threshold_days=14) is False


def test_grace_period_keeps_entitlements_until_it_ends() -> None:
    row = License(
        status="expired",
        grace_period_status="active",
        grace_period_ends_at=NOW + timedelta(days=3),
        expires_at=NOW - timedelta(days=1),
    )
    assert license_grants_entitlements(row, now=NOW) is True
    assert license_grants_entitlements(row, now=NOW + timedelta(days=4)) is False
    active = License(status="active", grace_period_status="none", expires_at=None)
    assert license_grants_entitlements(active, now=NOW) is True
