from __future__ import annotations

import pytest

from unistatus.services.auth.domains import (
    TOKEN_PREFIX,
    generate_verification_token,
    match_verification_token,
    normalize_domain,
    record_name,
)


def test_normalize_domain() -> None:
    assert normalize_domain(" HTTPS://Example.COM/path ") == "example.com"
    assert normalize_domain("status.example.co.uk.") == "status.example.co.uk"
    for bad in ("localhost", "-bad.example.com", "exa mple.com", ""):
        with pytest.raises(ValueError):
            normalize_domain(bad)


def test_verification_record_and_token() -> None:
    token = generate_verification_token()
    assert token.startswith(TOKEN_PREFIX)
    assert record_name("example.com") == "_unistatus.example.com"


def test_match_verification_token() -> None:
    assert match_verification_token(['"unistatus-verify=abc"', "other"], "unistatus-verify=abc").verified is True
    missing = match_verification_token([], "unistatus-verify=abc")
    assert missing.error_code == "DNS_RECORD_NOT_FOUND"
    mismatch = match_verification_token(["unistatus-verify=zzz"], "unistatus-verify=abc")
    assert mismatch.error_code == "VERIFICATION_FAILED"
    assert mismatch.found_records == ("unistatus-verify=zzz",)
