from __future__ import annotations

from unistatus.services.audit import sanitize_metadata


def test_audit_redacts_tokens_and_secrets() -> None:
    # Redact token and secret fields in audit metadata.
    payload = {
        "id_token": "secret-token",
        "client_secret": "super-secret",
        "password": "hunter2",
        "config": {"routingKey": "pd-key", "signingKey": "whsec", "webhookUrl": "https://hooks.test"},
        "items": [{"api_key": "usk_1"}],
        "safe": "value",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["id_token"] == "[REDACTED]"
    assert sanitized["client_secret"] == "[REDACTED]"
    assert sanitized["password"] == "[REDACTED]"
    assert sanitized["config"]["routingKey"] == "[REDACTED]"
    assert sanitized["config"]["signingKey"] == "[REDACTED]"
    assert sanitized["config"]["webhookUrl"] == "https://hooks.test"
    assert sanitized["items"][0]["api_key"] == "[REDACTED]"
    assert sanitized["safe"] == "value"
