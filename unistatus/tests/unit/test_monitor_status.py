from __future__ import annotations

import pytest

from unistatus.services.monitors.status import (
    MonitorState,
    alert_severity,
    alert_status_label,
    apply_check_outcome,
)


def _fold(state: MonitorState, statuses: list[str]) -> MonitorState:
    for status in statuses:
        state = apply_check_outcome(state, status).state
    return state


def test_new_monitor_settles_active_on_first_success() -> None:
    transition = apply_check_outcome(MonitorState(status="pending"), "success")
    assert transition.state.status == "active"
    assert transition.changed is True


def test_down_requires_consecutive_failures_up_to_threshold() -> None:
    state = MonitorState(status="active", down_after_count=3)
    state = _fold(state, ["failure", "timeout"])
    assert state.status == "active"
    assert state.consecutive_failure_count == 2
    transition = apply_check_outcome(state, "error")
    assert transition.state.status == "down"
    assert transition.changed is True


def test_success_resets_both_counters() -> None:
    state = MonitorState(status="active", down_after_count=3, consecutive_failure_count=2)
    state = apply_check_outcome(state, "success").state
    assert state.consecutive_failure_count == 0
    assert state.consecutive_degraded_count == 0
    # The streak restarts after a success.
    state = _fold(state, ["failure", "failure"])
    assert state.status == "active"


def test_degraded_breaks_failure_streak() -> None:
    state = MonitorState(status="active", down_after_count=2)
    state = _fold(state, ["failure", "degraded", "failure"])
    assert state.status == "degraded"
    assert state.consecutive_failure_count == 1


def test_degraded_threshold() -> None:
    state = MonitorState(status="active", degraded_after_count=2)
    first = apply_check_outcome(state, "degraded")
    assert first.state.status == "active"
    assert first.changed is False
    second = apply_check_outcome(first.state, "degraded")
    assert second.state.status == "degraded"
    assert second.changed is True


def test_below_threshold_keeps_previous_down_status() -> None:
    state = MonitorState(status="down", degraded_after_count=3, consecutive_failure_count=4)
    state = apply_check_outcome(state, "degraded").state
    assert state.status == "down"
    assert state.consecutive_failure_count == 0


def test_paused_monitor_ignores_results() -> None:
    state = MonitorState(status="paused", paused=True)
    transition = apply_check_outcome(state, "failure")
    assert transition.state == state
    assert transition.changed is False


def test_unknown_status_rejected() -> None:
    with pytest.raises(ValueError):
        apply_check_outcome(MonitorState(status="active"), "bogus")


@pytest.mark.parametrize(
    ("check_status", "severity", "label"),
    [
        ("success", "minor", "recovered"),
        ("degraded", "major", "degraded"),
        ("failure", "critical", "down"),
        ("timeout", "critical", "down"),
        ("error", "critical", "down"),
    ],
)
def test_alert_severity_and_label(check_status: str, severity: str, label: str) -> None:
    assert alert_severity(check_status) == severity
    assert alert_status_label(check_status) == label
