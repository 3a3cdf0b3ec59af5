from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from unistatus.services.monitors.aggregation import floor_day, floor_hour, percentile, summarize


@dataclass
class _Result:
    status: str
    response_time_ms: int | None


def test_nearest_rank_percentile() -> None:
    values = list(range(1, 101))
    assert percentile(values, 50) == 50
    assert percentile(values, 99) == 99
    assert percentile([7], 95) == 7
    assert percentile([], 50) is None


def test_summary_counts_degraded_as_up() -> None:
    results = [
        _Result("success", 100),
        _Result("success", 200),
        _Result("degraded", 900),
        _Result("timeout", None),
    ]
    stats = summarize(results)
    assert stats["total_count"] == 4
    assert stats["success_count"] == 2
    assert stats["degraded_count"] == 1
    assert stats["failure_count"] == 1
    assert stats["uptime_percentage"] == 75.0
    assert stats["min_response_time_ms"] == 100
    assert stats["max_response_time_ms"] == 900
    assert stats["avg_response_time_ms"] == 400.0
    assert stats["p50_response_time_ms"] == 200


def test_empty_summary() -> None:
    stats = summarize([])
    assert stats["total_count"] == 0
    assert stats["uptime_percentage"] is None
    assert stats["p99_response_time_ms"] is None


def test_bucket_floors_are_utc() -> None:
    value = datetime(2026, 6, 1, 13, 47, 12, tzinfo=timezone.utc)
    assert floor_hour(value) == datetime(2026, 6, 1, 13, tzinfo=timezone.utc)
    assert floor_day(value) == datetime(2026, 6, 1, tzinfo=timezone.utc)
