"""Channel-specific notification payloads.

``build_notification`` turns one alert event into a transport-ready
``NotificationRequest``. Builders are pure: no I/O happens here, which keeps
payload shapes easy to test and lets the dispatcher own retries and logging.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import hmac
import html
import json
from typing import Any


CHANNEL_TYPES = (
    "email",
    "slack",
    "discord",
    "teams",
    "google_chat",
    "pagerduty",
    "webhook",
    "ntfy",
    "sms",
    "irc",
    "twitter",
)

_REQUIRED_CONFIG: dict[str, tuple[str, ...]] = {
    "email": ("email",),
    "slack": ("webhookUrl",),
    "discord": ("webhookUrl",),
    "teams": ("webhookUrl",),
    "google_chat": ("webhookUrl",),
    "pagerduty": ("routingKey",),
    "webhook": ("url",),
    "ntfy": ("topic",),
    "sms": ("url",),
    "irc": ("url",),
    "twitter": ("url",),
}

PAGERDUTY_EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"
DEFAULT_NTFY_SERVER = "https://ntfy.sh"
SIGNATURE_HEADER = "X-UniStatus-Signature"
TIMESTAMP_HEADER = "X-UniStatus-Timestamp"

_STATUS_COLORS = {"down": "#dc2626", "degraded": "#f59e0b", "recovered": "#16a34a"}
_STATUS_EMOJI = {"down": ":red_circle:", "degraded": ":large_yellow_circle:", "recovered": ":large_green_circle:"}
_NTFY_PRIORITY = {"down": "urgent", "degraded": "high", "recovered": "default"}
_NTFY_TAGS = {"down": "rotating_light", "degraded": "warning", "recovered": "white_check_mark"}


@dataclass
class NotificationRequest:
    kind: str
    url: str | None = None
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    to: list[str] = field(default_factory=list)
    subject: str | None = None
    html_body: str | None = None
    text_body: str | None = None


def validate_channel_config(channel_type: str, config: dict[str, Any]) -> None:
    # Raise ValueError with a client-facing message for unknown types or missing fields.
    if channel_type not in _REQUIRED_CONFIG:
        raise ValueError(f"Unsupported channel type: {channel_type}")
    missing = [key for key in _REQUIRED_CONFIG[channel_type] if not config.get(key)]
    if missing:
        raise ValueError(f"{channel_type} channel requires: {', '.join(missing)}")
    for key in ("webhookUrl", "url", "server"):
        value = config.get(key)
        if value and not str(value).startswith(("http://", "https://")):
            raise ValueError(f"{key} must start with http:// or https://")


def serialize_payload(payload: dict[str, Any]) -> bytes:
    # Deterministic bytes so signatures verify identically on the receiver side.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_signature(*, secret: str, timestamp: str, body: bytes) -> str:
    mac = hmac.new(secret.encode("utf-8"), timestamp.encode("utf-8") + b"." + body, hashlib.sha256)
    return f"sha256={mac.hexdigest()}"


def _title(alert: dict[str, Any]) -> str:
    status = alert.get("status", "down")
    name = alert.get("monitorName") or "Monitor"
    if status == "recovered":
        return f"{name} has recovered"
    return f"{name} is {status}"


def _details(alert: dict[str, Any]) -> list[tuple[str, str]]:
    rows = [("Status", str(alert.get("status", "")).upper()), ("Severity", str(alert.get("severity") or "-"))]
    if alert.get("monitorUrl"):
        rows.append(("URL", str(alert["monitorUrl"])))
    if alert.get("responseTime") is not None:
        rows.append(("Response time", f"{alert['responseTime']}ms"))
    if alert.get("statusCode") is not None:
        rows.append(("Status code", str(alert["statusCode"])))
    if alert.get("message"):
        rows.append(("Message", str(alert["message"])))
    return rows


def _json_request(url: str, payload: dict[str, Any], headers: dict[str, str] | None = None) -> NotificationRequest:
    return NotificationRequest(
        kind="http",
        url=url,
        headers={"Content-Type": "application/json", **(headers or {})},
        body=serialize_payload(payload),
    )


def _slack(config: dict[str, Any], alert: dict[str, Any]) -> NotificationRequest:
    status = alert.get("status", "down")
    blocks: list[dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": f"{_STATUS_EMOJI.get(status, '')} {_title(alert)}".strip()}},
        {
            "type": "section",
            "fields": [{"type": "mrkdwn", "text": f"*{label}:*\n{value}"} for label, value in _details(alert)],
        },
    ]
    if alert.get("dashboardUrl"):
        blocks.append(
            {
                "type": "actions",
                "elements": [
                    {"type": "button", "text": {"type": "plain_text", "text": "View monitor"}, "url": alert["dashboardUrl"]}
                ],
            }
        )
    blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": f"Detected at: {alert.get('timestamp')}"}]})
    return _json_request(config["webhookUrl"], {"text": _title(alert), "blocks": blocks})


def _discord(config: dict[str, Any], alert: dict[str, Any]) -> NotificationRequest:
    color = int(_STATUS_COLORS.get(alert.get("status", "down"), "#6b7280").lstrip("#"), 16)
    embed = {
        "title": _title(alert),
        "url": alert.get("dashboardUrl"),
        "color": color,
        "fields": [{"name": label, "value": value, "inline": label != "Message"} for label, value in _details(alert)],
        "timestamp": alert.get("timestamp"),
    }
    return _json_request(config["webhookUrl"], {"content": _title(alert), "embeds": [embed]})


def _teams(config: dict[str, Any], alert: dict[str, Any]) -> NotificationRequest:
    card: dict[str, Any] = {
        "@type": "MessageCard",
        "@context": "https://schema.org/extensions",
        "summary": _title(alert),
        "themeColor": _STATUS_COLORS.get(alert.get("status", "down"), "#6b7280").lstrip("#"),
        "title": _title(alert),
        "sections": [{"facts": [{"name": label, "value": value} for label, value in _details(alert)]}],
    }
    if alert.get("dashboardUrl"):
        card["potentialAction"] = [
            {"@type": "OpenUri", "name": "View monitor", "targets": [{"os": "default", "uri": alert["dashboardUrl"]}]}
        ]
    return _json_request(config["webhookUrl"], card)


def _google_chat(config: dict[str, Any], alert: dict[str, Any]) -> NotificationRequest:
    lines = [f"*{_title(alert)}*"] + [f"{label}: {value}" for label, value in _details(alert)]
    if alert.get("dashboardUrl"):
        lines.append(alert["dashboardUrl"])
    return _json_request(config["webhookUrl"], {"text": "\n".join(lines)})


def _pagerduty(config: dict[str, Any], alert: dict[str, Any]) -> NotificationRequest:
    status = alert.get("status", "down")
    payload: dict[str, Any] = {
        "routing_key": config["routingKey"],
        "event_action": "resolve" if status == "recovered" else "trigger",
        "dedup_key": f"monitor-{alert.get('alertHistoryId')}",
    }
    if status != "recovered":
        payload["payload"] = {
            "summary": _title(alert),
            "source": alert.get("monitorUrl") or alert.get("monitorName") or "unistatus",
            "severity": "warning" if status == "degraded" else "critical",
            "timestamp": alert.get("timestamp"),
            "custom_details": {label: value for label, value in _details(alert)},
        }
        if alert.get("dashboardUrl"):
            payload["links"] = [{"href": alert["dashboardUrl"], "text": "View monitor"}]
    return _json_request(PAGERDUTY_EVENTS_URL, payload)


def _ntfy(config: dict[str, Any], alert: dict[str, Any]) -> NotificationRequest:
    status = alert.get("status", "down")
    server = str(config.get("server") or DEFAULT_NTFY_SERVER).rstrip("/")
    headers = {
        "Title": _title(alert),
        "Priority": _NTFY_PRIORITY.get(status, "default"),
        "Tags": _NTFY_TAGS.get(status, "bell"),
        "Content-Type": "text/plain; charset=utf-8",
    }
    if alert.get("dashboardUrl"):
        headers["Click"] = alert["dashboardUrl"]
    body = "\n".join(f"{label}: {value}" for label, value in _details(alert))
    return NotificationRequest(kind="http", url=f"{server}/{config['topic']}", headers=headers, body=body.encode("utf-8"))


def _webhook(config: dict[str, Any], alert: dict[str, Any]) -> NotificationRequest:
    payload = {
        "alertId": alert.get("alertHistoryId"),
        "monitorId": alert.get("monitorId"),
        "monitorName": alert.get("monitorName"),
        "monitorUrl": alert.get("monitorUrl"),
        "status": alert.get("status"),
        "severity": alert.get("severity"),
        "message": alert.get("message"),
        "responseTime": alert.get("responseTime"),
        "statusCode": alert.get("statusCode"),
        "dashboardUrl": alert.get("dashboardUrl"),
        "timestamp": alert.get("timestamp"),
    }
    body = serialize_payload(payload)
    headers = {"Content-Type": "application/json", **{str(k): str(v) for k, v in (config.get("headers") or {}).items()}}
    signing_key = config.get("signingKey")
    if signing_key:
        timestamp = str(int(datetime.now(timezone.utc).timestamp()))
        headers[TIMESTAMP_HEADER] = timestamp
        headers[SIGNATURE_HEADER] = compute_signature(secret=signing_key, timestamp=timestamp, body=body)
    return NotificationRequest(
        kind="http",
        url=config["url"],
        method=str(config.get("method") or "POST").upper(),
        headers=headers,
        body=body,
    )


def _email(config: dict[str, Any], alert: dict[str, Any]) -> NotificationRequest:
    status = alert.get("status", "down")
    label = "Recovered" if status == "recovered" else "Alert"
    subject = f"[{label}] {alert.get('monitorName') or 'Monitor'} is {status}"
    rows = "".join(
        f"<tr><td><strong>{html.escape(name)}</strong></td><td>{html.escape(value)}</td></tr>"
        for name, value in _details(alert)
    )
    link = ""
    if alert.get("dashboardUrl"):
        link = f'<p><a href="{html.escape(alert["dashboardUrl"])}">View monitor</a></p>'
    html_body = (
        "<html><body>"
        f'<h2 style="color:{_STATUS_COLORS.get(status, "#111827")}">{html.escape(_title(alert))}</h2>'
        f"<table>{rows}</table>{link}"
        f"<p>Detected at: {html.escape(str(alert.get('timestamp') or ''))}</p>"
        "</body></html>"
    )
    text_body = "\n".join([_title(alert)] + [f"{name}: {value}" for name, value in _details(alert)])
    recipients = config["email"] if isinstance(config["email"], list) else [config["email"]]
    return NotificationRequest(kind="email", to=[str(item) for item in recipients], subject=subject, html_body=html_body, text_body=text_body)


_BUILDERS = {
    "email": _email,
    "slack": _slack,
    "discord": _discord,
    "teams": _teams,
    "google_chat": _google_chat,
    "pagerduty": _pagerduty,
    "webhook": _webhook,
    "ntfy": _ntfy,
    # Relay channels post the generic webhook body to a bridge service.
    "sms": _webhook,
    "irc": _webhook,
    "twitter": _webhook,
}


def build_notification(channel_type: str, config: dict[str, Any], alert: dict[str, Any]) -> NotificationRequest:
    builder = _BUILDERS.get(channel_type)
    if builder is None:
        raise ValueError(f"Unsupported channel type: {channel_type}")
    return builder(config, alert)
