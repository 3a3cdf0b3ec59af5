from __future__ import annotations

import json

import pytest

from unistatus.core.config import get_settings
from unistatus.services.notifications.channels import (
    PAGERDUTY_EVENTS_URL,
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    build_notification,
    compute_signature,
    validate_channel_config,
)
from unistatus.services.notifications.dispatch import retry_backoff_ms


ALERT = {
    "alertHistoryId": "ah_1",
    "monitorId": "mon_1",
    "monitorName": "API",
    "monitorUrl": "https://api.example.com/health",
    "status": "down",
    "severity": "critical",
    "message": "Unexpected status code 503",
    "responseTime": 812,
    "statusCode": 503,
    "dashboardUrl": "http://localhost:3000/monitors/mon_1",
    "timestamp": "2026-06-01T10:00:00+00:00",
}


def test_slack_payload_has_header_and_fields() -> None:
    request = build_notification("slack", {"webhookUrl": "https://hooks.slack.test/x"}, ALERT)
    body = json.loads(request.body)
    assert request.url == "https://hooks.slack.test/x"
    assert body["text"] == "API is down"
    assert body["blocks"][0]["type"] == "header"
    assert any(block["type"] == "actions" for block in body["blocks"])


def test_pagerduty_trigger_and_resolve_share_dedup_key() -> None:
    trigger = json.loads(build_notification("pagerduty", {"routingKey": "rk"}, ALERT).body)
    resolve = json.loads(
        build_notification("pagerduty", {"routingKey": "rk"}, {**ALERT, "status": "recovered"}).body
    )
    assert trigger["event_action"] == "trigger"
    assert trigger["payload"]["severity"] == "critical"
    assert resolve["event_action"] == "resolve"
    assert "payload" not in resolve
    assert trigger["dedup_key"] == resolve["dedup_key"]
    assert build_notification("pagerduty", {"routingKey": "rk"}, ALERT).url == PAGERDUTY_EVENTS_URL


def test_webhook_signature_matches_body() -> None:
    request = build_notification(
        "webhook",
        {"url": "https://receiver.test/hook", "signingKey": "s3cret", "headers": {"X-Env": "prod"}},
        ALERT,
    )
    timestamp = request.headers[TIMESTAMP_HEADER]
    assert request.headers[SIGNATURE_HEADER] == compute_signature(secret="s3cret", timestamp=timestamp, body=request.body)
    assert request.headers["X-Env"] == "prod"
    assert json.loads(request.body)["alertId"] == "ah_1"


def test_ntfy_uses_priority_headers() -> None:
    request = build_notification("ntfy", {"topic": "alerts"}, ALERT)
    assert request.url == "https://ntfy.sh/alerts"
    assert request.headers["Priority"] == "urgent"
    assert b"Status code: 503" in request.body


def test_email_escapes_html() -> None:
    request = build_notification("email", {"email": "ops@example.com"}, {**ALERT, "message": "<script>"})
    assert request.kind == "email"
    assert request.to == ["ops@example.com"]
    assert request.subject == "[Alert] API is down"
    assert "&lt;script&gt;" in request.html_body


def test_relay_channels_reuse_webhook_body() -> None:
    request = build_notification("sms", {"url": "https://sms-bridge.test/send"}, ALERT)
    assert json.loads(request.body)["monitorName"] == "API"


@pytest.mark.parametrize(
    ("channel_type", "config"),
    [
        ("slack", {}),
        ("webhook", {"url": "ftp://nope"}),
        ("carrier-pigeon", {"url": "https://x"}),
    ],
)
def test_invalid_channel_config(channel_type: str, config: dict) -> None:
    with pytest.raises(ValueError):
        validate_channel_config(channel_type, config)


def test_backoff_grows_and_is_capped(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_BACKOFF_MS", "1000")
    monkeypatch.setenv("NOTIFY_BACKOFF_MAX_MS", "5000")
    get_settings.cache_clear()
    first = retry_backoff_ms(job_id="job", attempt_no=1)
    third = retry_backoff_ms(job_id="job", attempt_no=3)
    assert 1000 <= first < 1251
    assert 4000 <= third <= 5000
    assert retry_backoff_ms(job_id="job", attempt_no=10) == 5000
    assert retry_backoff_ms(job_id="job", attempt_no=3) == third
