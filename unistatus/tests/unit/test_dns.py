from __future__ import annotations

import httpx
import pytest

from unistatus.core.errors import DomainVerificationError
from unistatus.domain.models import Monitor
from unistatus.services.dns import resolve_records
from unistatus.services.monitors.checkers import check_dns


def _answer(payload: dict):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=payload)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_txt_records_are_unquoted_and_joined() -> None:
    payload = {"Status": 0, "Answer": [{"type": 16, "data": '"unistatus-verify=" "abc"'}]}
    async with _answer(payload) as client:
        assert await resolve_records("_unistatus.example.com", "TXT", client=client) == ["unistatus-verify=abc"]


@pytest.mark.asyncio
async def test_nxdomain_returns_empty() -> None:
    async with _answer({"Status": 3}) as client:
        assert await resolve_records("missing.example.com", "A", client=client) == []


@pytest.mark.asyncio
async def test_all_resolvers_down_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(DomainVerificationError):
            await resolve_records("example.com", "A", client=client)


@pytest.mark.asyncio
async def test_dns_monitor_expected_value() -> None:
    monitor = Monitor(
        id="mon_dns",
        type="dns",
        url="example.com",
        timeout_ms=2000,
        degraded_threshold_ms=None,
        config_json={"dns": {"recordType": "A", "expectedValue": "93.184.216.34"}},
    )
    async with _answer({"Status": 0, "Answer": [{"type": 1, "data": "93.184.216.34"}]}) as client:
        assert (await check_dns(monitor, client=client)).status == "success"
    async with _answer({"Status": 0, "Answer": [{"type": 1, "data": "10.0.0.1"}]}) as client:
        outcome = await check_dns(monitor, client=client)
    assert outcome.status == "failure"
    assert outcome.error_code == "DNS_MISMATCH"
