from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
import logging
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.persistence.repos import incidents as incidents_repo


logger = logging.getLogger(__name__)

RECURRENCE_TYPES = ("none", "daily", "weekly", "monthly")


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("maintenance_unknown_timezone timezone=%s", name)
        return ZoneInfo("UTC")


def _parse_end_date(raw: Any, tz: ZoneInfo) -> datetime | None:
    if not raw:
        return None
    if isinstance(raw, datetime):
        parsed = raw
    else:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def _day_matches(day: date, first_day: date, recurrence: dict[str, Any]) -> bool:
    kind = recurrence.get("type", "none")
    interval = max(1, int(recurrence.get("interval") or 1))
    offset_days = (day - first_day).days
    if offset_days < 0:
        return False
    if kind == "daily":
        return offset_days % interval == 0
    if kind == "weekly":
        days_of_week = recurrence.get("daysOfWeek") or [first_day.weekday()]
        return day.weekday() in {int(item) for item in days_of_week} and (offset_days // 7) % interval == 0
    if kind == "monthly":
        day_of_month = int(recurrence.get("dayOfMonth") or first_day.day)
        months = (day.year - first_day.year) * 12 + day.month - first_day.month
        return day.day == day_of_month and months % interval == 0
    return False


def is_window_active(
    *,
    starts_at: datetime,
    ends_at: datetime,
    recurrence: dict[str, Any] | None,
    timezone_name: str | None,
    now: datetime,
    active: bool = True,
) -> bool:
    """Return whether a maintenance window covers ``now``.

    One-off windows cover ``[starts_at, ends_at]``. Recurring windows repeat the
    same local time-of-day span on every matching day, evaluated in the window's
    timezone, from ``starts_at`` until the optional ``endDate``.
    """
    if not active or now < starts_at:
        return False
    recurrence = recurrence or {"type": "none"}
    kind = recurrence.get("type", "none")
    if kind == "none":
        return now <= ends_at

    tz = _zone(timezone_name)
    end_date = _parse_end_date(recurrence.get("endDate"), tz)
    if end_date is not None and now > end_date:
        return False
    duration = ends_at - starts_at
    if duration <= timedelta(0):
        return False
    local_start = starts_at.astimezone(tz)
    local_now = now.astimezone(tz)
    # Occurrences that began on earlier days can still be running for long windows.
    for back in range(duration.days + 2):
        day = local_now.date() - timedelta(days=back)
        if not _day_matches(day, local_start.date(), recurrence):
            continue
        occurrence_start = datetime.combine(day, local_start.timetz()).replace(tzinfo=tz)
        if occurrence_start <= local_now < occurrence_start + duration:
            return True
    return False


def window_is_active(window, now: datetime) -> bool:
    return is_window_active(
        starts_at=window.starts_at,
        ends_at=window.ends_at,
        recurrence=window.recurrence_json,
        timezone_name=window.timezone,
        now=now,
        active=bool(window.active),
    )


async def active_maintenance_monitor_ids(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    organization_id: str | None = None,
) -> set[str]:
    # Collect monitors covered by any window active right now.
    current = now or datetime.now(timezone.utc)
    windows = await incidents_repo.list_candidate_windows(session, now=current, organization_id=organization_id)
    monitor_ids: set[str] = set()
    for window in windows:
        if window_is_active(window, current):
            monitor_ids.update(window.affected_monitors_json or [])
    return monitor_ids
