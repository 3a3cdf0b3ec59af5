from __future__ import annotations

import base64
import json

import pytest

from unistatus.services.auth.group_mapping import (
    compute_login_role,
    decode_unverified_jwt_payload,
    extract_groups,
    group_matches,
    resolve_role_from_groups,
)


MAPPING = {
    "enabled": True,
    "groupsClaim": "memberOf",
    "mappings": [
        {"group": "platform-admins", "role": "admin"},
        {"group": "eng-*", "role": "member"},
    ],
    "defaultRole": "viewer",
    "syncOnLogin": True,
}


def test_extract_groups_prefers_custom_claim() -> None:
    claims = {"memberOf": ["eng-core"], "groups": ["ignored"]}
    assert extract_groups(claims, "memberOf") == ["eng-core"]


def test_extract_groups_falls_back_to_standard_claims() -> None:
    assert extract_groups({"cognito:groups": ["ops"]}) == ["ops"]
    assert extract_groups({"_claim_names": {"groups": "src1"}, "wids": ["w1"]}) == ["w1"]
    assert extract_groups({"email": "x@example.com"}) == []


def test_string_claims_are_a_single_group() -> None:
    assert extract_groups({"roles": "a, b"}) == ["a, b"]
    assert extract_groups({"memberOf": "eng-core"}, "memberOf") == ["eng-core"]
    # An empty list still ends the search.
    assert extract_groups({"groups": [], "roles": ["admin"]}) == []


@pytest.mark.parametrize(
    ("pattern", "group", "expected"),
    [
        ("*", "anything", True),
        ("eng-*", "ENG-core", True),
        ("eng-*", "sales", False),
        ("Platform-Admins", "platform-admins", True),
    ],
)
def test_group_matches(pattern: str, group: str, expected: bool) -> None:
    assert group_matches(pattern, group) is expected


def test_first_matching_mapping_wins() -> None:
    assert resolve_role_from_groups(["eng-core", "platform-admins"], MAPPING) == "admin"
    assert resolve_role_from_groups(["eng-web"], MAPPING) == "member"
    assert resolve_role_from_groups(["sales"], MAPPING) == "viewer"
    catch_all = {"enabled": True, "mappings": [{"group": "*", "role": "member"}]}
    assert resolve_role_from_groups([], catch_all) == "member"


def test_disabled_or_empty_mapping_uses_default_role() -> None:
    assert resolve_role_from_groups(["platform-admins"], {**MAPPING, "enabled": False}) == "viewer"
    assert resolve_role_from_groups(["platform-admins"], {**MAPPING, "mappings": []}) == "viewer"
    assert resolve_role_from_groups(["platform-admins"], {"enabled": False}) is None
    assert resolve_role_from_groups(["platform-admins"], None) is None


def test_login_role_preserves_owner_and_respects_sync() -> None:
    assert compute_login_role(None, None, True) == "member"
    assert compute_login_role(None, "admin", False) == "admin"
    assert compute_login_role("owner", "viewer", True) == "owner"
    assert compute_login_role("member", "admin", True) == "admin"
    assert compute_login_role("member", "admin", False) == "member"


def test_decode_unverified_payload() -> None:
    payload = base64.urlsafe_b64encode(json.dumps({"groups": ["x"]}).encode()).decode().rstrip("=")
    assert decode_unverified_jwt_payload(f"h.{payload}.s") == {"groups": ["x"]}
    assert decode_unverified_jwt_payload("not-a-jwt") is None
    assert decode_unverified_jwt_payload(None) is None
