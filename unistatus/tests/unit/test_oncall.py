from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from unistatus.services.alerts.oncall import resolve_current_oncall


@dataclass
class _Override:
    member_id: str
    start_at: datetime
    end_at: datetime


START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def test_rotation_cycles_participants_by_shift() -> None:
    participants = ["alice", "bob", "carol"]
    kwargs = dict(rotation_start=START, shift_duration_minutes=60, participants=participants, overrides=[])
    assert resolve_current_oncall(now=START, **kwargs) == "alice"
    assert resolve_current_oncall(now=START + timedelta(minutes=59), **kwargs) == "alice"
    assert resolve_current_oncall(now=START + timedelta(hours=1), **kwargs) == "bob"
    assert resolve_current_oncall(now=START + timedelta(hours=3, minutes=5), **kwargs) == "alice"


def test_override_wins_inside_its_window() -> None:
    override = _Override("dave", START + timedelta(minutes=30), START + timedelta(minutes=90))
    kwargs = dict(rotation_start=START, shift_duration_minutes=60, participants=["alice", "bob"], overrides=[override])
    assert resolve_current_oncall(now=START + timedelta(minutes=45), **kwargs) == "dave"
    assert resolve_current_oncall(now=START + timedelta(minutes=100), **kwargs) == "bob"


def test_no_one_on_call_before_start_or_without_participants() -> None:
    assert (
        resolve_current_oncall(
            rotation_start=START,
            shift_duration_minutes=60,
            participants=["alice"],
            overrides=[],
            now=START - timedelta(minutes=1),
        )
        is None
    )
    assert (
        resolve_current_oncall(
            rotation_start=START, shift_duration_minutes=60, participants=[], overrides=[], now=START
        )
        is None
    )
