from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from unistatus.apps.api.main import create_app
from unistatus.domain.models import CheckResult, Monitor, ProbePendingJob
from unistatus.persistence.db import SessionLocal
from unistatus.services.probes import dispatch_to_probes
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


async def _dispatch(monitor_id: str) -> tuple[int, bool]:
    # Stand in for the scheduler's probe fan-out.
    async with SessionLocal() as session:
        monitor = await session.get(Monitor, monitor_id)
        dispatched, exclusive = await dispatch_to_probes(session, monitor)
        await session.commit()
    return dispatched, exclusive


@pytest.mark.asyncio
async def test_probe_claims_job_and_reports_result() -> None:
    organization_id = f"org-probe-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        monitor = await client.post(
            "/v1/monitors",
            json={"name": "Intranet", "type": "http", "url": "http://intranet.local/health"},
            headers=headers,
        )
        monitor_id = monitor.json()["data"]["id"]

        registered = await client.post(
            "/v1/probes", json={"name": "dc-1", "region": "on-prem"}, headers=headers
        )
        assert registered.status_code == 201
        probe = registered.json()["data"]["probe"]
        agent_headers = {"Authorization": f"Bearer {registered.json()['data']['token']}"}
        assert registered.json()["data"]["token"].startswith("usp_")

        assigned = await client.post(
            f"/v1/probes/{probe['id']}/assignments",
            json={"monitor_id": monitor_id, "exclusive": True},
            headers=headers,
        )
        assert assigned.status_code == 201
        duplicate = await client.post(
            f"/v1/probes/{probe['id']}/assignments", json={"monitor_id": monitor_id}, headers=headers
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["code"] == "ASSIGNMENT_EXISTS"

        # Probes only receive work once they have checked in.
        assert await _dispatch(monitor_id) == (0, False)

        heartbeat = await client.post(
            "/v1/agent/heartbeat",
            json={"version": "1.4.0", "hostname": "dc-1.internal", "metrics": {"cpu": 0.2}},
            headers=agent_headers,
        )
        assert heartbeat.status_code == 200
        assert heartbeat.json()["data"] == {"probe_id": probe["id"], "status": "active"}

        assert await _dispatch(monitor_id) == (1, True)

        polled = await client.get("/v1/agent/jobs?limit=5", headers=agent_headers)
        assert polled.status_code == 200
        jobs = polled.json()["data"]["jobs"]
        assert len(jobs) == 1
        job = jobs[0]
        assert job["monitor_id"] == monitor_id
        assert job["job_data"]["url"] == "http://intranet.local/health"

        empty = await client.get("/v1/agent/jobs", headers=agent_headers)
        assert empty.json()["data"]["jobs"] == []

        invalid = await client.post(
            f"/v1/agent/jobs/{job['id']}/result", json={"status": "sideways"}, headers=agent_headers
        )
        assert invalid.status_code == 422
        assert invalid.json()["error"]["code"] == "INVALID_CHECK_STATUS"

        submitted = await client.post(
            f"/v1/agent/jobs/{job['id']}/result",
            json={"status": "failure", "status_code": 503, "response_time_ms": 87, "error_message": "HTTP 503"},
            headers=agent_headers,
        )
        assert submitted.status_code == 200
        summary = submitted.json()["data"]
        assert summary["job_id"] == job["id"]
        assert summary["recorded"] is True
        assert summary["region"] == "on-prem"
        assert summary["monitor_status"] == "down"

        replay = await client.post(
            f"/v1/agent/jobs/{job['id']}/result", json={"status": "success"}, headers=agent_headers
        )
        assert replay.status_code == 409
        assert replay.json()["error"]["code"] == "PROBE_JOB_NOT_CLAIMED"

        unknown = await client.post(
            f"/v1/agent/jobs/{uuid4().hex}/result", json={"status": "success"}, headers=agent_headers
        )
        assert unknown.status_code == 404
        assert unknown.json()["error"]["code"] == "PROBE_JOB_NOT_FOUND"

    async with SessionLocal() as session:
        results = (
            await session.execute(select(CheckResult).where(CheckResult.monitor_id == monitor_id))
        ).scalars().all()
        job_row = await session.get(ProbePendingJob, job["id"])
    assert [(row.probe_id, row.status, row.status_code) for row in results] == [(probe["id"], "failure", 503)]
    assert job_row.status == "completed"

    await cleanup_test_organization(organization_id)


@pytest.mark.asyncio
async def test_agent_rejects_bad_and_disabled_tokens() -> None:
    organization_id = f"org-probe-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        missing = await client.post("/v1/agent/heartbeat", json={})
        assert missing.status_code == 401
        assert missing.json()["error"]["code"] == "PROBE_UNAUTHORIZED"

        forged = await client.get("/v1/agent/jobs", headers={"Authorization": "Bearer usp_forged"})
        assert forged.status_code == 401

        # Organization API keys are not probe tokens.
        api_key = await client.get("/v1/agent/jobs", headers=headers)
        assert api_key.status_code == 401

        registered = await client.post("/v1/probes", json={"name": "edge-2"}, headers=headers)
        probe_id = registered.json()["data"]["probe"]["id"]
        agent_headers = {"Authorization": f"Bearer {registered.json()['data']['token']}"}
        disabled = await client.post(f"/v1/probes/{probe_id}/disable", headers=headers)
        assert disabled.status_code == 200
        assert disabled.json()["data"]["status"] == "disabled"

        rejected = await client.post("/v1/agent/heartbeat", json={}, headers=agent_headers)
        assert rejected.status_code == 403
        assert rejected.json()["error"]["code"] == "PROBE_DISABLED"

    await cleanup_test_organization(organization_id)
