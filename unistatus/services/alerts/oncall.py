from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import OncallRotation, OrganizationMember
from unistatus.persistence.repos import alerts as alerts_repo


def resolve_current_oncall(
    *,
    rotation_start: datetime,
    shift_duration_minutes: int,
    participants: list[str],
    overrides: Iterable,
    now: datetime,
) -> str | None:
    """Return the member id on call at ``now``.

    An override covering ``now`` wins over the rotation. Otherwise shifts
    advance through ``participants`` in order starting at ``rotation_start``.
    """
    for override in overrides:
        if override.start_at <= now <= override.end_at:
            return override.member_id
    if not participants or now < rotation_start:
        return None
    shift_seconds = max(1, int(shift_duration_minutes)) * 60
    elapsed = (now - rotation_start).total_seconds()
    index = int(elapsed // shift_seconds) % len(participants)
    return participants[index]


async def current_oncall_member_id(
    session: AsyncSession, rotation: OncallRotation, *, now: datetime | None = None
) -> str | None:
    if not rotation.active:
        return None
    overrides = await alerts_repo.list_overrides(session, rotation.id)
    return resolve_current_oncall(
        rotation_start=rotation.rotation_start,
        shift_duration_minutes=rotation.shift_duration_minutes,
        participants=list(rotation.participants_json or []),
        overrides=overrides,
        now=now or datetime.now(timezone.utc),
    )


async def current_oncall_member(
    session: AsyncSession, rotation: OncallRotation, *, now: datetime | None = None
) -> OrganizationMember | None:
    # Members from another organization or disabled members are never paged.
    member_id = await current_oncall_member_id(session, rotation, now=now)
    if member_id is None:
        return None
    member = await session.get(OrganizationMember, member_id)
    if member is None or member.organization_id != rotation.organization_id or member.status != "active":
        return None
    return member
