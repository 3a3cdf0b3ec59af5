from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from unistatus.services import status_pages as status_pages_service
from unistatus.services.status_pages import (
    compute_overall_status,
    hash_page_password,
    merge_page_settings,
    validate_slug,
    verify_page_password,
)


@pytest.mark.parametrize(
    ("statuses", "maintenance", "expected"),
    [
        ([], False, "operational"),
        (["active", "paused", "pending"], False, "operational"),
        (["active", "degraded"], False, "degraded_performance"),
        (["active", "active", "down"], False, "partial_outage"),
        (["down", "down", "active"], False, "major_outage"),
        (["down", "active"], False, "partial_outage"),
        (["active"], True, "under_maintenance"),
        (["degraded"], True, "degraded_performance"),
    ],
)
def test_overall_status(statuses: list[str], maintenance: bool, expected: str) -> None:
    assert compute_overall_status(statuses, under_maintenance=maintenance) == expected


def test_slug_validation() -> None:
    assert validate_slug(" Acme-Status ") == "acme-status"
    for bad in ("ab", "-acme", "acme-", "acme status", "a" * 64):
        with pytest.raises(ValueError):
            validate_slug(bad)


def test_page_password_round_trip() -> None:
    encoded = hash_page_password("hunter2", iterations=1000)
    assert encoded.startswith("pbkdf2_sha256$1000$")
    assert verify_page_password("hunter2", encoded) is True
    assert verify_page_password("wrong", encoded) is False
    assert verify_page_password(None, encoded) is False


def test_public_page_without_password() -> None:
    assert verify_page_password(None, None) is True
    assert verify_page_password("anything", None) is True


def test_settings_merge_clamps_uptime_days() -> None:
    merged = merge_page_settings({"uptimeDays": 365, "subscriptions": True})
    assert merged["uptimeDays"] == 90
    assert merged["subscriptions"] is True
    assert merged["showResponseTime"] is True
    assert merge_page_settings(None)["uptimeDays"] == 45


@pytest.mark.asyncio
async def test_uptime_counts_results_newer_than_the_last_rollup(monkeypatch) -> None:
    now = datetime(2026, 6, 10, 15, 0, tzinfo=timezone.utc)
    since = now - timedelta(days=45)
    yesterday = datetime(2026, 6, 9, tzinfo=timezone.utc)
    seen_cutoffs: dict[str, datetime] = {}

    async def fake_daily(_session, *, monitor_ids, since):
        # Two rolled-up days: 100 checks at 100ms and 300 checks at 300ms.
        return {"mon_old": (396, 400, 100 * 100.0 + 300 * 300.0, 400, yesterday)}

    async def fake_raw(_session, *, cutoffs):
        seen_cutoffs.update(cutoffs)
        return {"mon_old": (9, 10, 2000.0, 10), "mon_new": (3, 4, 600.0, 3)}

    monkeypatch.setattr(status_pages_service.check_results_repo, "daily_uptime", fake_daily)
    monkeypatch.setattr(status_pages_service.check_results_repo, "raw_uptime", fake_raw)

    tallies = await status_pages_service.uptime_tallies(None, ["mon_old", "mon_new", "mon_idle"], since=since)

    assert seen_cutoffs == {
        "mon_old": yesterday + timedelta(days=1),
        "mon_new": since,
        "mon_idle": since,
    }
    assert tallies["mon_old"].total == 410
    assert tallies["mon_old"].uptime_percentage == round(405 / 410 * 100.0, 3)
    # Weighted by check count, not a mean of daily means.
    assert tallies["mon_old"].avg_response_time_ms == round((10000 + 90000 + 2000) / 410, 1)
    assert tallies["mon_new"].uptime_percentage == 75.0
    assert tallies["mon_new"].avg_response_time_ms == 200.0
    assert tallies["mon_idle"].uptime_percentage is None
    assert tallies["mon_idle"].avg_response_time_ms is None
