from __future__ import annotations

from dataclasses import dataclass


MONITOR_TYPES = ("http", "https", "dns", "ssl", "tcp", "heartbeat")
URL_REQUIRED_TYPES = ("http", "https", "dns", "ssl", "tcp")
CHECK_STATUSES = ("success", "degraded", "failure", "timeout", "error")
FAILURE_STATUSES = frozenset({"failure", "timeout", "error"})


@dataclass(frozen=True)
class MonitorState:
    status: str
    consecutive_degraded_count: int = 0
    consecutive_failure_count: int = 0
    degraded_after_count: int = 1
    down_after_count: int = 1
    paused: bool = False


@dataclass(frozen=True)
class Transition:
    state: MonitorState
    changed: bool


def is_failure(check_status: str) -> bool:
    return check_status in FAILURE_STATUSES


def _carry_status(previous: str) -> str:
    # Below threshold the monitor keeps its last settled status; new monitors settle as active.
    return "active" if previous in {"pending", "paused"} else previous


def apply_check_outcome(state: MonitorState, check_status: str) -> Transition:
    """Fold one check status into the monitor state.

    Degraded and down are only entered once the matching consecutive counter
    reaches its threshold. A single success clears both counters.
    """
    if state.paused:
        return Transition(state=state, changed=False)

    if check_status == "success":
        next_state = MonitorState(
            status="active",
            consecutive_degraded_count=0,
            consecutive_failure_count=0,
            degraded_after_count=state.degraded_after_count,
            down_after_count=state.down_after_count,
        )
    elif check_status == "degraded":
        degraded_count = state.consecutive_degraded_count + 1
        threshold = max(1, state.degraded_after_count)
        next_state = MonitorState(
            status="degraded" if degraded_count >= threshold else _carry_status(state.status),
            consecutive_degraded_count=degraded_count,
            consecutive_failure_count=0,
            degraded_after_count=state.degraded_after_count,
            down_after_count=state.down_after_count,
        )
    elif is_failure(check_status):
        failure_count = state.consecutive_failure_count + 1
        threshold = max(1, state.down_after_count)
        next_state = MonitorState(
            status="down" if failure_count >= threshold else _carry_status(state.status),
            consecutive_degraded_count=0,
            consecutive_failure_count=failure_count,
            degraded_after_count=state.degraded_after_count,
            down_after_count=state.down_after_count,
        )
    else:
        raise ValueError(f"Unsupported check status: {check_status}")

    return Transition(state=next_state, changed=next_state.status != state.status)


def state_of(monitor) -> MonitorState:
    return MonitorState(
        status=monitor.status,
        consecutive_degraded_count=int(monitor.consecutive_degraded_count or 0),
        consecutive_failure_count=int(monitor.consecutive_failure_count or 0),
        degraded_after_count=int(monitor.degraded_after_count or 1),
        down_after_count=int(monitor.down_after_count or 1),
        paused=bool(monitor.paused),
    )


def apply_to_monitor(monitor, check_status: str) -> Transition:
    # Mutate the ORM row in place; the caller owns the commit.
    transition = apply_check_outcome(state_of(monitor), check_status)
    monitor.status = transition.state.status
    monitor.consecutive_degraded_count = transition.state.consecutive_degraded_count
    monitor.consecutive_failure_count = transition.state.consecutive_failure_count
    return transition


def alert_severity(check_status: str) -> str:
    if check_status == "degraded":
        return "major"
    if is_failure(check_status):
        return "critical"
    return "minor"


def alert_status_label(check_status: str) -> str:
    if check_status == "success":
        return "recovered"
    if check_status == "degraded":
        return "degraded"
    return "down"
