from __future__ import annotations

import pytest

from unistatus.domain.models import Monitor, Probe, ProbeAssignment
from unistatus.services import probes as probes_service


class _Session:
    def __init__(self) -> None:
        self.added: list = []

    def add(self, row) -> None:
        self.added.append(row)


def _monitor() -> Monitor:
    return Monitor(
        id="mon_api",
        type="https",
        url="https://api.internal",
        method="GET",
        timeout_ms=5000,
        degraded_threshold_ms=None,
    )


def _assigned(monkeypatch, rows: list[tuple[ProbeAssignment, Probe]]) -> None:
    async def fake_assignments(_session, _monitor_id):
        return rows

    monkeypatch.setattr(probes_service.probes_repo, "list_monitor_assignments", fake_assignments)


@pytest.mark.asyncio
async def test_offline_exclusive_probe_falls_back_to_fleet(monkeypatch) -> None:
    _assigned(
        monkeypatch,
        [(ProbeAssignment(probe_id="p1", exclusive=True), Probe(id="p1", status="offline"))],
    )
    session = _Session()
    assert await probes_service.dispatch_to_probes(session, _monitor()) == (0, False)
    assert session.added == []


@pytest.mark.asyncio
async def test_active_exclusive_probe_is_the_only_target(monkeypatch) -> None:
    _assigned(
        monkeypatch,
        [
            (ProbeAssignment(probe_id="p2", exclusive=False), Probe(id="p2", status="active")),
            (ProbeAssignment(probe_id="p1", exclusive=True), Probe(id="p1", status="active")),
        ],
    )
    session = _Session()
    assert await probes_service.dispatch_to_probes(session, _monitor()) == (1, True)
    assert [job.probe_id for job in session.added] == ["p1"]
    assert session.added[0].job_data["url"] == "https://api.internal"


@pytest.mark.asyncio
async def test_shared_assignments_fan_out_to_active_probes(monkeypatch) -> None:
    _assigned(
        monkeypatch,
        [
            (ProbeAssignment(probe_id="p1", exclusive=False), Probe(id="p1", status="active")),
            (ProbeAssignment(probe_id="p2", exclusive=False), Probe(id="p2", status="active")),
            (ProbeAssignment(probe_id="p3", exclusive=True), Probe(id="p3", status="disabled")),
        ],
    )
    session = _Session()
    assert await probes_service.dispatch_to_probes(session, _monitor()) == (2, False)
    assert [job.probe_id for job in session.added] == ["p1", "p2"]
