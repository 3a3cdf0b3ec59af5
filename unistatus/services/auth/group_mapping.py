"""Map identity-provider group claims onto organization roles.

Providers disagree on where groups live in a token: Okta and Auth0 use
``groups``, Azure AD uses ``roles`` or ``wids``, Cognito uses
``cognito:groups``. ``extract_groups`` reads the first of them that holds a
list or a single string, and ``resolve_role_from_groups`` applies the
provider's ordered mapping table.
"""

from __future__ import annotations

import base64
import json
from typing import Any

from unistatus.services.auth.api_keys import normalize_role


STANDARD_GROUP_CLAIMS = (
    "groups",
    "roles",
    "group",
    "role",
    "_claim_names",
    "wids",
    "cognito:groups",
    "custom:groups",
)
DEFAULT_LOGIN_ROLE = "member"


def _claim_values(value: Any) -> list[str] | None:
    # A string claim is one group name, commas included.
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return None


def extract_groups(claims: dict[str, Any], custom_claim: str | None = None) -> list[str]:
    # The configured claim wins; otherwise the first standard claim holding a list or string.
    if custom_claim:
        values = _claim_values(claims.get(custom_claim))
        if values is not None:
            return values
    for claim in STANDARD_GROUP_CLAIMS:
        values = _claim_values(claims.get(claim))
        if values is not None:
            return values
    return []


def group_matches(pattern: str, group: str) -> bool:
    pattern = pattern.strip()
    if pattern == "*":
        return True
    if pattern.endswith("*"):
        return group.lower().startswith(pattern[:-1].lower())
    return group.lower() == pattern.lower()


def _default_role(config: dict[str, Any]) -> str | None:
    default_role = config.get("defaultRole")
    return normalize_role(str(default_role)) if default_role else None


def resolve_role_from_groups(groups: list[str], config: dict[str, Any] | None) -> str | None:
    """Return the role of the first mapping that matches any group.

    Mappings are evaluated in configured order, so more specific patterns
    should be listed first. Falls back to ``defaultRole`` when nothing
    matches, and also when the table is disabled or empty. Callers decide
    whether a disabled table applies at all.
    """
    if not config:
        return None
    mappings = config.get("mappings") or []
    if not config.get("enabled") or not mappings:
        return _default_role(config)
    for mapping in mappings:
        pattern = str(mapping.get("group") or "")
        role = mapping.get("role")
        if not pattern or not role:
            continue
        if pattern.strip() == "*" or any(group_matches(pattern, group) for group in groups):
            return normalize_role(str(role))
    return _default_role(config)


def decode_unverified_jwt_payload(token: str | None) -> dict[str, Any] | None:
    # Only for reading claims from tokens that were already validated upstream.
    if not token:
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1]
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
        payload = json.loads(raw.decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


def compute_login_role(existing_role: str | None, mapped_role: str | None, sync_on_login: bool) -> str:
    if existing_role is None:
        return mapped_role or DEFAULT_LOGIN_ROLE
    if existing_role == "owner":
        return existing_role
    if sync_on_login and mapped_role:
        return mapped_role
    return existing_role
