from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import (
    Monitor,
    StatusPage,
    StatusPageGroup,
    StatusPageMonitor,
    Subscriber,
)


async def get_page_for_org(session: AsyncSession, page_id: str, organization_id: str) -> StatusPage | None:
    result = await session.execute(
        select(StatusPage).where(StatusPage.id == page_id, StatusPage.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def get_page_by_slug(session: AsyncSession, slug: str) -> StatusPage | None:
    result = await session.execute(select(StatusPage).where(StatusPage.slug == slug))
    return result.scalar_one_or_none()


async def list_pages(
    session: AsyncSession, *, organization_id: str, offset: int = 0, limit: int = 50
) -> list[StatusPage]:
    result = await session.execute(
        select(StatusPage)
        .where(StatusPage.organization_id == organization_id)
        .order_by(StatusPage.created_at, StatusPage.id)
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_pages(session: AsyncSession, *, organization_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(StatusPage).where(StatusPage.organization_id == organization_id)
    )
    return int(result.scalar_one())


async def list_page_monitors(
    session: AsyncSession, page_id: str
) -> list[tuple[StatusPageMonitor, Monitor]]:
    result = await session.execute(
        select(StatusPageMonitor, Monitor)
        .join(Monitor, Monitor.id == StatusPageMonitor.monitor_id)
        .where(StatusPageMonitor.status_page_id == page_id)
        .order_by(StatusPageMonitor.display_order, StatusPageMonitor.created_at)
    )
    return [(row[0], row[1]) for row in result.all()]


async def get_page_monitor(
    session: AsyncSession, *, page_id: str, monitor_id: str
) -> StatusPageMonitor | None:
    result = await session.execute(
        select(StatusPageMonitor).where(
            StatusPageMonitor.status_page_id == page_id, StatusPageMonitor.monitor_id == monitor_id
        )
    )
    return result.scalar_one_or_none()


async def list_groups(session: AsyncSession, page_id: str) -> list[StatusPageGroup]:
    result = await session.execute(
        select(StatusPageGroup)
        .where(StatusPageGroup.status_page_id == page_id)
        .order_by(StatusPageGroup.display_order, StatusPageGroup.created_at)
    )
    return list(result.scalars().all())


async def get_group(session: AsyncSession, *, page_id: str, group_id: str) -> StatusPageGroup | None:
    result = await session.execute(
        select(StatusPageGroup).where(
            StatusPageGroup.status_page_id == page_id, StatusPageGroup.id == group_id
        )
    )
    return result.scalar_one_or_none()


async def list_subscribers(
    session: AsyncSession, page_id: str, *, offset: int = 0, limit: int = 50
) -> list[Subscriber]:
    result = await session.execute(
        select(Subscriber)
        .where(Subscriber.status_page_id == page_id)
        .order_by(Subscriber.created_at, Subscriber.id)
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_subscriber_by_email(session: AsyncSession, *, page_id: str, email: str) -> Subscriber | None:
    result = await session.execute(
        select(Subscriber).where(Subscriber.status_page_id == page_id, Subscriber.email == email)
    )
    return result.scalar_one_or_none()


async def get_subscriber_by_token(session: AsyncSession, *, column: str, token: str) -> Subscriber | None:
    field = Subscriber.verification_token if column == "verification" else Subscriber.unsubscribe_token
    result = await session.execute(select(Subscriber).where(field == token))
    return result.scalar_one_or_none()


async def list_verified_subscribers_for_monitors(
    session: AsyncSession, *, organization_id: str, monitor_ids: list[str]
) -> list[tuple[StatusPage, Subscriber]]:
    # Verified subscribers of published pages that link any of the monitors.
    if not monitor_ids:
        return []
    linked_pages = select(StatusPageMonitor.status_page_id).where(StatusPageMonitor.monitor_id.in_(monitor_ids))
    result = await session.execute(
        select(StatusPage, Subscriber)
        .join(Subscriber, Subscriber.status_page_id == StatusPage.id)
        .where(
            StatusPage.organization_id == organization_id,
            StatusPage.published.is_(True),
            StatusPage.id.in_(linked_pages),
            Subscriber.verified.is_(True),
        )
        .order_by(StatusPage.id, Subscriber.created_at, Subscriber.id)
    )
    return [(row[0], row[1]) for row in result.all()]
