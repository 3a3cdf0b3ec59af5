from __future__ import annotations

import re
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select, update

from unistatus.apps.api.main import create_app
from unistatus.core.config import get_settings
from unistatus.domain.models import CheckResult, Monitor, Subscriber
from unistatus.persistence.db import SessionLocal
from unistatus.services.notifications import subscribers as subscribers_service
from unistatus.tests.utils.auth import cleanup_test_organization, create_test_api_key


async def _seed_page(client: AsyncClient, headers: dict[str, str], **overrides) -> tuple[dict, dict]:
    monitor = await client.post(
        "/v1/monitors",
        json={"name": "api-internal-7", "type": "https", "url": "https://api.example.com/health"},
        headers=headers,
    )
    assert monitor.status_code == 201
    body = {"name": "Acme Status", "slug": f"acme-{uuid4().hex[:8]}", "published": True}
    body.update(overrides)
    page = await client.post("/v1/status-pages", json=body, headers=headers)
    assert page.status_code == 201
    return page.json()["data"], monitor.json()["data"]


@pytest.mark.asyncio
async def test_public_page_renders_linked_components() -> None:
    organization_id = f"org-page-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        page, monitor = await _seed_page(client, headers)
        group = await client.post(f"/v1/status-pages/{page['id']}/groups", json={"name": "Core"}, headers=headers)
        assert group.status_code == 201
        linked = await client.post(
            f"/v1/status-pages/{page['id']}/monitors",
            json={"monitor_id": monitor["id"], "display_name": "Public API", "group_id": group.json()["data"]["id"]},
            headers=headers,
        )
        assert linked.status_code == 201
        duplicate = await client.post(
            f"/v1/status-pages/{page['id']}/monitors", json={"monitor_id": monitor["id"]}, headers=headers
        )
        assert duplicate.status_code == 409

        async with SessionLocal() as session:
            await session.execute(update(Monitor).where(Monitor.id == monitor["id"]).values(status="down"))
            # Checks from today have not been rolled up yet and still count.
            for status, response_ms in (("success", 100), ("success", 300), ("failure", None), ("success", 200)):
                session.add(
                    CheckResult(
                        id=uuid4().hex,
                        monitor_id=monitor["id"],
                        region="uk",
                        status=status,
                        response_time_ms=response_ms,
                    )
                )
            await session.commit()

        public = await client.get(f"/v1/public/status-pages/{page['slug']}")
        assert public.status_code == 200
        view = public.json()["data"]
        assert view["page"]["name"] == "Acme Status"
        assert view["overall_status"] == "major_outage"
        assert [component["name"] for component in view["components"]] == ["Public API"]
        assert view["components"][0]["status"] == "down"
        assert view["components"][0]["uptime_percentage"] == 75.0
        assert view["components"][0]["avg_response_time_ms"] == 200.0
        assert "url" not in view["components"][0]
        assert [item["name"] for item in view["groups"]] == ["Core"]
        assert view["maintenance"] == {"active": [], "upcoming": []}
        # The internal monitor name never appears in the public payload.
        assert "api-internal-7" not in public.text

    await cleanup_test_organization(organization_id)


@pytest.mark.asyncio
async def test_unpublished_and_password_protected_pages() -> None:
    organization_id = f"org-page-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        draft, _monitor = await _seed_page(client, headers, published=False)
        hidden = await client.get(f"/v1/public/status-pages/{draft['slug']}")
        assert hidden.status_code == 404

        protected = await client.put(
            f"/v1/status-pages/{draft['id']}/password", json={"password": "hunter22"}, headers=headers
        )
        assert protected.status_code == 200
        assert protected.json()["data"]["password_protected"] is True
        published = await client.patch(f"/v1/status-pages/{draft['id']}", json={"published": True}, headers=headers)
        assert published.status_code == 200

        missing = await client.get(f"/v1/public/status-pages/{draft['slug']}")
        assert missing.status_code == 401
        assert missing.json()["error"]["code"] == "STATUS_PAGE_PASSWORD_REQUIRED"
        wrong = await client.get(
            f"/v1/public/status-pages/{draft['slug']}", headers={"X-Status-Page-Password": "nope"}
        )
        assert wrong.status_code == 401
        allowed = await client.get(
            f"/v1/public/status-pages/{draft['slug']}", headers={"X-Status-Page-Password": "hunter22"}
        )
        assert allowed.status_code == 200

        bad_slug = await client.post(
            "/v1/status-pages", json={"name": "Bad", "slug": "Not A Slug!"}, headers=headers
        )
        assert bad_slug.status_code == 422
        assert bad_slug.json()["error"]["code"] == "INVALID_SLUG"

    await cleanup_test_organization(organization_id)


@pytest.mark.asyncio
async def test_subscriber_verify_and_unsubscribe_flow(monkeypatch) -> None:
    monkeypatch.setenv("CHECK_EXECUTION_MODE", "inline")
    get_settings.cache_clear()
    outbox: list[dict] = []

    async def fake_send_email(*, to, subject, html_body, text_body=None) -> None:
        outbox.append({"to": to, "subject": subject, "text": text_body})

    monkeypatch.setattr(subscribers_service, "send_email", fake_send_email)

    organization_id = f"org-page-{uuid4().hex[:12]}"
    _raw, headers, _member_id, _key_id = await create_test_api_key(organization_id=organization_id, role="admin")
    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        closed, _monitor = await _seed_page(client, headers)
        disabled = await client.post(
            f"/v1/public/status-pages/{closed['slug']}/subscribe", json={"email": "a@example.com"}
        )
        assert disabled.status_code == 403
        assert disabled.json()["error"]["code"] == "SUBSCRIPTIONS_DISABLED"
        assert outbox == []

        page, monitor = await _seed_page(client, headers, settings={"subscriptions": True})
        await client.post(f"/v1/status-pages/{page['id']}/monitors", json={"monitor_id": monitor["id"]}, headers=headers)
        subscribed = await client.post(
            f"/v1/public/status-pages/{page['slug']}/subscribe", json={"email": "Ops@Example.com"}
        )
        assert subscribed.status_code == 202
        assert subscribed.json()["data"] == {"subscribed": True, "verified": False}
        again = await client.post(f"/v1/public/status-pages/{page['slug']}/subscribe", json={"email": "ops@example.com"})
        assert again.status_code == 202

        async with SessionLocal() as session:
            rows = (
                await session.execute(select(Subscriber).where(Subscriber.status_page_id == page["id"]))
            ).scalars().all()
        assert len(rows) == 1
        assert rows[0].email == "ops@example.com"

        # Each unverified sign-up mails the confirmation link.
        assert [mail["to"] for mail in outbox] == [["ops@example.com"], ["ops@example.com"]]
        verify_token = re.search(r"/verify\?token=(\S+)", outbox[-1]["text"]).group(1)
        assert verify_token == rows[0].verification_token

        unknown = await client.post("/v1/public/subscribers/verify?token=not-a-token")
        assert unknown.status_code == 404
        assert unknown.json()["error"]["code"] == "INVALID_TOKEN"

        verified = await client.post(f"/v1/public/subscribers/verify?token={verify_token}")
        assert verified.status_code == 200
        listed = await client.get(f"/v1/status-pages/{page['id']}/subscribers", headers=headers)
        assert listed.status_code == 200
        assert [item["verified"] for item in listed.json()["data"]] == [True]

        outbox.clear()
        opened = await client.post(
            "/v1/incidents",
            json={"title": "API latency", "severity": "major", "message": "Investigating", "affected_monitors": [monitor["id"]]},
            headers=headers,
        )
        assert opened.status_code == 201
        assert len(outbox) == 1
        assert outbox[0]["to"] == ["ops@example.com"]
        assert "Incident Update: API latency" in outbox[0]["subject"]
        unsubscribe_token = re.search(r"/unsubscribe\?token=(\S+)", outbox[0]["text"]).group(1)
        assert unsubscribe_token == rows[0].unsubscribe_token

        removed = await client.post(f"/v1/public/subscribers/unsubscribe?token={unsubscribe_token}")
        assert removed.status_code == 200
        replay = await client.post(f"/v1/public/subscribers/unsubscribe?token={unsubscribe_token}")
        assert replay.status_code == 404

        outbox.clear()
        await client.post(
            f"/v1/incidents/{opened.json()['data']['id']}/updates",
            json={"status": "resolved", "message": "Recovered"},
            headers=headers,
        )
        assert outbox == []

    await cleanup_test_organization(organization_id)
