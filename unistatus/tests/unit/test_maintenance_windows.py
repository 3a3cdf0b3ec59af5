from __future__ import annotations

from datetime import datetime, timezone

from unistatus.services.maintenance import is_window_active


UTC = timezone.utc


def _active(now: datetime, **kwargs) -> bool:
    params = {
        "starts_at": datetime(2026, 3, 2, 22, 0, tzinfo=UTC),
        "ends_at": datetime(2026, 3, 2, 23, 0, tzinfo=UTC),
        "recurrence": {"type": "none"},
        "timezone_name": "UTC",
        "active": True,
    }
    params.update(kwargs)
    return is_window_active(now=now, **params)


def test_one_off_window_covers_its_range() -> None:
    assert _active(datetime(2026, 3, 2, 22, 30, tzinfo=UTC)) is True
    assert _active(datetime(2026, 3, 2, 21, 59, tzinfo=UTC)) is False
    assert _active(datetime(2026, 3, 2, 23, 1, tzinfo=UTC)) is False


def test_inactive_window_never_matches() -> None:
    assert _active(datetime(2026, 3, 2, 22, 30, tzinfo=UTC), active=False) is False


def test_daily_recurrence_repeats_time_of_day() -> None:
    daily = {"type": "daily", "interval": 1}
    assert _active(datetime(2026, 3, 5, 22, 15, tzinfo=UTC), recurrence=daily) is True
    assert _active(datetime(2026, 3, 5, 12, 0, tzinfo=UTC), recurrence=daily) is False


def test_daily_interval_skips_days() -> None:
    every_other = {"type": "daily", "interval": 2}
    assert _active(datetime(2026, 3, 4, 22, 15, tzinfo=UTC), recurrence=every_other) is True
    assert _active(datetime(2026, 3, 3, 22, 15, tzinfo=UTC), recurrence=every_other) is False


def test_weekly_recurrence_uses_days_of_week() -> None:
    # 2026-03-02 is a Monday (weekday 0); Wednesday is 2.
    weekly = {"type": "weekly", "daysOfWeek": [0, 2]}
    assert _active(datetime(2026, 3, 4, 22, 30, tzinfo=UTC), recurrence=weekly) is True
    assert _active(datetime(2026, 3, 3, 22, 30, tzinfo=UTC), recurrence=weekly) is False


def test_recurrence_end_date_stops_occurrences() -> None:
    daily = {"type": "daily", "endDate": "2026-03-04T00:00:00Z"}
    assert _active(datetime(2026, 3, 3, 22, 30, tzinfo=UTC), recurrence=daily) is True
    assert _active(datetime(2026, 3, 5, 22, 30, tzinfo=UTC), recurrence=daily) is False


def test_window_spanning_midnight_runs_into_next_day() -> None:
    daily = {"type": "daily"}
    kwargs = {
        "starts_at": datetime(2026, 3, 2, 23, 30, tzinfo=UTC),
        "ends_at": datetime(2026, 3, 3, 0, 30, tzinfo=UTC),
        "recurrence": daily,
    }
    assert _active(datetime(2026, 3, 6, 0, 15, tzinfo=UTC), **kwargs) is True
    assert _active(datetime(2026, 3, 6, 0, 45, tzinfo=UTC), **kwargs) is False


def test_recurrence_evaluated_in_window_timezone() -> None:
    # 09:00-10:00 Europe/London; summer time shifts the UTC instant by an hour.
    kwargs = {
        "starts_at": datetime(2026, 1, 5, 9, 0, tzinfo=UTC),
        "ends_at": datetime(2026, 1, 5, 10, 0, tzinfo=UTC),
        "recurrence": {"type": "daily"},
        "timezone_name": "Europe/London",
    }
    assert _active(datetime(2026, 7, 1, 8, 30, tzinfo=UTC), **kwargs) is True
    assert _active(datetime(2026, 7, 1, 9, 30, tzinfo=UTC), **kwargs) is False
