"""Protocol checkers that turn a monitor definition into a ``CheckOutcome``.

Checkers never raise for target-side problems: timeouts, refused connections,
bad certificates and failed assertions all come back as outcomes. Only
programming errors escape, and the runner converts those to ``error``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import re
import ssl
import time
from typing import Any
from urllib.parse import urlsplit

import httpx

from unistatus.core.config import get_settings
from unistatus.core.errors import DomainVerificationError
from unistatus.services.dns import resolve_records


DEFAULT_GRACE_PERIOD_S = 60
DEFAULT_SSL_WARNING_DAYS = 30
DEFAULT_SSL_ERROR_DAYS = 7


@dataclass
class CheckOutcome:
    status: str
    response_time_ms: int | None = None
    status_code: int | None = None
    error_message: str | None = None
    error_code: str | None = None
    headers: dict[str, str] | None = None
    certificate_info: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _elapsed_ms(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))


def _timeout_s(monitor) -> float:
    timeout_ms = monitor.timeout_ms or get_settings().check_default_timeout_ms
    return max(0.1, timeout_ms / 1000.0)


def _config_section(monitor, name: str) -> dict[str, Any]:
    config = monitor.config_json or {}
    section = config.get(name)
    return section if isinstance(section, dict) else {}


def _status_code_allowed(status_code: int, expected: list[int] | None) -> bool:
    if expected:
        return status_code in {int(code) for code in expected}
    return 200 <= status_code < 400


def evaluate_http_assertions(
    *,
    status_code: int,
    headers: dict[str, str],
    body: str,
    response_time_ms: int,
    assertions: dict[str, Any] | None,
    degraded_threshold_ms: int | None,
) -> tuple[str, str | None, str | None]:
    # Returns (status, error_message, error_code); first failing assertion wins.
    assertions = assertions or {}
    if not _status_code_allowed(status_code, assertions.get("statusCode")):
        return "failure", f"Unexpected status code {status_code}", "STATUS_CODE_MISMATCH"

    lowered = {key.lower(): value for key, value in headers.items()}
    for name, expected in (assertions.get("headers") or {}).items():
        actual = lowered.get(str(name).lower())
        if actual is None:
            return "failure", f"Missing header {name}", "HEADER_MISSING"
        if str(expected) != actual:
            return "failure", f"Header {name} was {actual!r}, expected {expected!r}", "HEADER_MISMATCH"

    body_rules = assertions.get("body") or {}
    contains = body_rules.get("contains")
    if contains and contains not in body:
        return "failure", f"Body does not contain {contains!r}", "BODY_MISMATCH"
    not_contains = body_rules.get("notContains")
    if not_contains and not_contains in body:
        return "failure", f"Body contains {not_contains!r}", "BODY_MISMATCH"
    pattern = body_rules.get("regex")
    if pattern:
        try:
            matched = re.search(pattern, body) is not None
        except re.error:
            return "error", f"Invalid body regex {pattern!r}", "INVALID_ASSERTION"
        if not matched:
            return "failure", f"Body does not match {pattern!r}", "BODY_MISMATCH"

    threshold = degraded_threshold_ms or assertions.get("responseTime")
    if threshold and response_time_ms > int(threshold):
        return "degraded", f"Response time {response_time_ms}ms exceeded {int(threshold)}ms", "SLOW_RESPONSE"
    return "success", None, None


async def check_http(monitor, *, client: httpx.AsyncClient | None = None) -> CheckOutcome:
    settings = get_settings()
    headers = {"User-Agent": settings.check_user_agent, **(monitor.headers_json or {})}
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=_timeout_s(monitor), follow_redirects=True)
    started = time.monotonic()
    try:
        response = await http.request(
            (monitor.method or "GET").upper(),
            monitor.url,
            headers=headers,
            content=monitor.body if monitor.body else None,
        )
    except httpx.TimeoutException:
        return CheckOutcome(
            status="timeout",
            response_time_ms=_elapsed_ms(started),
            error_message=f"Request timed out after {monitor.timeout_ms}ms",
            error_code="TIMEOUT",
        )
    except httpx.HTTPError as exc:
        return CheckOutcome(
            status="error",
            response_time_ms=_elapsed_ms(started),
            error_message=str(exc) or exc.__class__.__name__,
            error_code="CONNECTION_ERROR",
        )
    finally:
        if owns_client:
            await http.aclose()

    response_time_ms = _elapsed_ms(started)
    response_headers = dict(response.headers)
    status, message, code = evaluate_http_assertions(
        status_code=response.status_code,
        headers=response_headers,
        body=response.text,
        response_time_ms=response_time_ms,
        assertions=monitor.assertions_json,
        degraded_threshold_ms=monitor.degraded_threshold_ms,
    )
    return CheckOutcome(
        status=status,
        response_time_ms=response_time_ms,
        status_code=response.status_code,
        error_message=message,
        error_code=code,
        headers=response_headers,
        metadata={"final_url": str(response.url), "http_version": response.http_version},
    )


def parse_host_port(url: str, default_port: int | None = None) -> tuple[str, int | None]:
    # Accept bare host:port as well as scheme URLs.
    target = url if "://" in url else f"tcp://{url}"
    parts = urlsplit(target)
    return parts.hostname or "", parts.port or default_port


async def check_tcp(monitor) -> CheckOutcome:
    configured_port = _config_section(monitor, "tcp").get("port")
    host, port = parse_host_port(monitor.url or "", int(configured_port) if configured_port else None)
    if not host or not port:
        return CheckOutcome(status="error", error_message="TCP monitor needs a host and port", error_code="INVALID_TARGET")
    started = time.monotonic()
    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=_timeout_s(monitor))
    except asyncio.TimeoutError:
        return CheckOutcome(
            status="timeout",
            response_time_ms=_elapsed_ms(started),
            error_message=f"Connection to {host}:{port} timed out",
            error_code="TIMEOUT",
        )
    except OSError as exc:
        return CheckOutcome(
            status="failure",
            response_time_ms=_elapsed_ms(started),
            error_message=str(exc),
            error_code="CONNECTION_REFUSED",
        )
    response_time_ms = _elapsed_ms(started)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    threshold = monitor.degraded_threshold_ms
    status = "degraded" if threshold and response_time_ms > threshold else "success"
    return CheckOutcome(status=status, response_time_ms=response_time_ms, metadata={"host": host, "port": port})


async def check_dns(monitor, *, client: httpx.AsyncClient | None = None) -> CheckOutcome:
    section = _config_section(monitor, "dns")
    record_type = str(section.get("recordType") or "A").upper()
    raw = monitor.url or ""
    name = urlsplit(raw).hostname if "://" in raw else raw.strip().rstrip(".")
    if not name:
        return CheckOutcome(status="error", error_message="DNS monitor needs a hostname", error_code="INVALID_TARGET")
    started = time.monotonic()
    try:
        answers = await resolve_records(name, record_type, timeout_s=_timeout_s(monitor), client=client)
    except DomainVerificationError as exc:
        return CheckOutcome(
            status="error", response_time_ms=_elapsed_ms(started), error_message=str(exc), error_code="RESOLVER_ERROR"
        )
    response_time_ms = _elapsed_ms(started)
    metadata = {"record_type": record_type, "answers": answers}
    if not answers:
        return CheckOutcome(
            status="failure",
            response_time_ms=response_time_ms,
            error_message=f"No {record_type} records for {name}",
            error_code="NO_RECORDS",
            metadata=metadata,
        )
    expected = section.get("expectedValue")
    if expected and str(expected) not in answers:
        return CheckOutcome(
            status="failure",
            response_time_ms=response_time_ms,
            error_message=f"Expected {expected!r} in {record_type} answers",
            error_code="DNS_MISMATCH",
            metadata=metadata,
        )
    threshold = monitor.degraded_threshold_ms
    status = "degraded" if threshold and response_time_ms > threshold else "success"
    return CheckOutcome(status=status, response_time_ms=response_time_ms, metadata=metadata)


def classify_certificate(
    not_after: datetime,
    *,
    now: datetime,
    warning_days: int = DEFAULT_SSL_WARNING_DAYS,
    error_days: int = DEFAULT_SSL_ERROR_DAYS,
) -> tuple[str, int]:
    days_remaining = int((not_after - now).total_seconds() // 86400)
    if days_remaining < error_days:
        return "failure", days_remaining
    if days_remaining < warning_days:
        return "degraded", days_remaining
    return "success", days_remaining


def _flatten_name(name: Any) -> dict[str, str]:
    # Peer cert names are tuples of RDN tuples: ((("commonName", "x"),), ...).
    flattened: dict[str, str] = {}
    for rdn in name or ():
        for key, value in rdn:
            flattened[key] = value
    return flattened


async def check_ssl(monitor, *, now: datetime | None = None) -> CheckOutcome:
    section = _config_section(monitor, "ssl")
    host, port = parse_host_port(monitor.url or "", 443)
    if not host:
        return CheckOutcome(status="error", error_message="SSL monitor needs a hostname", error_code="INVALID_TARGET")
    context = ssl.create_default_context()
    started = time.monotonic()
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port, ssl=context, server_hostname=host),
            timeout=_timeout_s(monitor),
        )
    except asyncio.TimeoutError:
        return CheckOutcome(
            status="timeout", response_time_ms=_elapsed_ms(started), error_message="TLS handshake timed out", error_code="TIMEOUT"
        )
    except ssl.SSLCertVerificationError as exc:
        return CheckOutcome(
            status="failure",
            response_time_ms=_elapsed_ms(started),
            error_message=exc.verify_message or str(exc),
            error_code="CERT_INVALID",
        )
    except (ssl.SSLError, OSError) as exc:
        return CheckOutcome(
            status="error", response_time_ms=_elapsed_ms(started), error_message=str(exc), error_code="TLS_ERROR"
        )
    response_time_ms = _elapsed_ms(started)
    peer_cert = writer.get_extra_info("peercert") or {}
    writer.close()
    try:
        await writer.wait_closed()
    except (ssl.SSLError, OSError):
        pass

    not_after_raw = peer_cert.get("notAfter")
    if not not_after_raw:
        return CheckOutcome(
            status="error", response_time_ms=response_time_ms, error_message="Peer certificate missing", error_code="TLS_ERROR"
        )
    not_after = datetime.fromtimestamp(ssl.cert_time_to_seconds(not_after_raw), tz=timezone.utc)
    status, days_remaining = classify_certificate(
        not_after,
        now=now or datetime.now(timezone.utc),
        warning_days=int(section.get("expiryWarningDays") or DEFAULT_SSL_WARNING_DAYS),
        error_days=int(section.get("expiryErrorDays") or DEFAULT_SSL_ERROR_DAYS),
    )
    certificate_info = {
        "issuer": _flatten_name(peer_cert.get("issuer")),
        "subject": _flatten_name(peer_cert.get("subject")),
        "valid_to": not_after.isoformat(),
        "days_remaining": days_remaining,
    }
    message = None
    code = None
    if status != "success":
        message = f"Certificate expires in {days_remaining} days"
        code = "CERT_EXPIRING"
    return CheckOutcome(
        status=status,
        response_time_ms=response_time_ms,
        error_message=message,
        error_code=code,
        certificate_info=certificate_info,
    )


def evaluate_heartbeat(
    *,
    last_ping_status: str | None,
    last_ping_at: datetime | None,
    last_ping_duration_ms: int | None,
    expected_interval_s: int,
    grace_period_s: int,
    now: datetime,
) -> CheckOutcome:
    if last_ping_at is None:
        return CheckOutcome(status="failure", error_message="No heartbeat pings received", error_code="NO_PINGS")
    elapsed_s = (now - last_ping_at).total_seconds()
    metadata = {"last_ping_at": last_ping_at.isoformat(), "elapsed_s": int(elapsed_s)}
    if elapsed_s > expected_interval_s + grace_period_s:
        return CheckOutcome(
            status="failure",
            error_message=f"Heartbeat overdue by {int(elapsed_s - expected_interval_s)}s",
            error_code="OVERDUE",
            metadata=metadata,
        )
    if elapsed_s > expected_interval_s:
        return CheckOutcome(
            status="degraded",
            error_message="Heartbeat late, inside grace period",
            error_code="LATE",
            metadata=metadata,
        )
    if last_ping_status == "fail":
        return CheckOutcome(
            status="failure",
            response_time_ms=last_ping_duration_ms,
            error_message="Job reported failure",
            error_code="JOB_FAILED",
            metadata=metadata,
        )
    return CheckOutcome(status="success", response_time_ms=last_ping_duration_ms, metadata=metadata)


def heartbeat_settings(monitor) -> tuple[int, int]:
    # Returns (expected_interval_s, grace_period_s) falling back to the monitor interval.
    section = _config_section(monitor, "heartbeat")
    expected = int(section.get("expectedInterval") or monitor.interval_seconds or 60)
    grace = int(section.get("gracePeriod") if section.get("gracePeriod") is not None else DEFAULT_GRACE_PERIOD_S)
    return expected, grace
