from __future__ import annotations

import re

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import OrganizationMember


MEMBER_STATUSES = ("active", "disabled")
_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    slug = _SLUG_STRIP.sub("-", name.strip().lower()).strip("-")
    return slug or "organization"


async def list_members(
    session: AsyncSession, *, organization_id: str, offset: int = 0, limit: int = 50
) -> list[OrganizationMember]:
    result = await session.execute(
        select(OrganizationMember)
        .where(OrganizationMember.organization_id == organization_id)
        .order_by(OrganizationMember.created_at, OrganizationMember.id)
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_member_for_org(
    session: AsyncSession, member_id: str, organization_id: str
) -> OrganizationMember | None:
    result = await session.execute(
        select(OrganizationMember).where(
            OrganizationMember.id == member_id, OrganizationMember.organization_id == organization_id
        )
    )
    return result.scalar_one_or_none()


async def count_members(session: AsyncSession, *, organization_id: str, active_only: bool = True) -> int:
    stmt = select(func.count()).select_from(OrganizationMember).where(
        OrganizationMember.organization_id == organization_id
    )
    if active_only:
        stmt = stmt.where(OrganizationMember.status == "active")
    return int((await session.execute(stmt)).scalar_one())


async def count_active_owners(session: AsyncSession, *, organization_id: str) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(OrganizationMember)
        .where(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.role == "owner",
            OrganizationMember.status == "active",
        )
    )
    return int(result.scalar_one())


async def ensure_not_last_owner(session: AsyncSession, member: OrganizationMember) -> None:
    # Call before demoting, disabling or removing a member.
    if member.role != "owner" or member.status != "active":
        return
    if await count_active_owners(session, organization_id=member.organization_id) <= 1:
        raise HTTPException(
            status_code=409,
            detail={"code": "LAST_OWNER", "message": "Organization must keep at least one active owner"},
        )


def ensure_can_assign_role(*, actor_role: str, current_role: str | None, new_role: str) -> None:
    # Only owners may grant or revoke the owner role.
    if actor_role == "owner":
        return
    if new_role == "owner" or current_role == "owner":
        raise HTTPException(
            status_code=403,
            detail={"code": "AUTH_FORBIDDEN", "message": "Only owners may grant or revoke the owner role"},
        )
