from __future__ import annotations

from fastapi import HTTPException
import pytest

from unistatus.services.auth.api_keys import generate_api_key, hash_api_key, normalize_role, role_allows
from unistatus.services.organizations import ensure_can_assign_role, slugify


def test_normalize_role() -> None:
    assert normalize_role(" Admin ") == "admin"
    with pytest.raises(ValueError):
        normalize_role("superuser")


@pytest.mark.parametrize(
    ("role", "minimum", "allowed"),
    [
        ("owner", "admin", True),
        ("admin", "admin", True),
        ("member", "admin", False),
        ("viewer", "member", False),
        ("unknown", "viewer", False),
    ],
)
def test_role_ordering(role: str, minimum: str, allowed: bool) -> None:
    assert role_allows(role=role, minimum_role=minimum) is allowed


def test_generated_keys_hash_deterministically() -> None:
    key_id, raw_key, prefix, key_hash = generate_api_key()
    assert raw_key.startswith(f"usk_{key_id}_")
    assert raw_key.startswith(prefix)
    assert hash_api_key(raw_key) == key_hash
    assert generate_api_key()[1] != raw_key


def test_only_owners_touch_owner_role() -> None:
    ensure_can_assign_role(actor_role="owner", current_role="member", new_role="owner")
    ensure_can_assign_role(actor_role="admin", current_role="viewer", new_role="member")
    with pytest.raises(HTTPException) as exc:
        ensure_can_assign_role(actor_role="admin", current_role="member", new_role="owner")
    assert exc.value.status_code == 403
    with pytest.raises(HTTPException):
        ensure_can_assign_role(actor_role="admin", current_role="owner", new_role="admin")


def test_slugify() -> None:
    assert slugify("Acme Corp, Inc.") == "acme-corp-inc"
    assert slugify("!!!") == "organization"
