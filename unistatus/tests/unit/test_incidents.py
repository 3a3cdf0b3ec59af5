from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from unistatus.domain.models import Incident
from unistatus.services.incidents import apply_status


def test_resolving_stamps_resolved_at_once() -> None:
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    incident = Incident(status="investigating", resolved_at=None)
    apply_status(incident, "resolved", now=now)
    assert incident.resolved_at == now
    apply_status(incident, "resolved", now=now + timedelta(hours=1))
    assert incident.resolved_at == now


def test_reopening_clears_resolved_at() -> None:
    incident = Incident(status="resolved", resolved_at=datetime(2026, 6, 1, tzinfo=timezone.utc))
    apply_status(incident, "monitoring", now=datetime(2026, 6, 2, tzinfo=timezone.utc))
    assert incident.status == "monitoring"
    assert incident.resolved_at is None


def test_unknown_status_rejected() -> None:
    with pytest.raises(ValueError):
        apply_status(Incident(status="investigating"), "closed", now=datetime.now(timezone.utc))
