from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from unistatus.domain.models import (
    AlertChannel,
    AlertHistory,
    AlertPolicy,
    MonitorAlertPolicy,
    NotificationLog,
    OncallOverride,
    OncallRotation,
)


async def get_channel_for_org(
    session: AsyncSession, channel_id: str, organization_id: str
) -> AlertChannel | None:
    result = await session.execute(
        select(AlertChannel).where(
            AlertChannel.id == channel_id, AlertChannel.organization_id == organization_id
        )
    )
    return result.scalar_one_or_none()


async def list_channels(
    session: AsyncSession, *, organization_id: str, offset: int = 0, limit: int = 50
) -> list[AlertChannel]:
    result = await session.execute(
        select(AlertChannel)
        .where(AlertChannel.organization_id == organization_id)
        .order_by(AlertChannel.created_at, AlertChannel.id)
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_enabled_channels_by_ids(
    session: AsyncSession, *, organization_id: str, channel_ids: list[str]
) -> list[AlertChannel]:
    # Only channels owned by the policy organization are eligible for delivery.
    if not channel_ids:
        return []
    result = await session.execute(
        select(AlertChannel).where(
            AlertChannel.organization_id == organization_id,
            AlertChannel.id.in_(channel_ids),
            AlertChannel.enabled.is_(True),
        )
    )
    return list(result.scalars().all())


async def get_policy_for_org(
    session: AsyncSession, policy_id: str, organization_id: str
) -> AlertPolicy | None:
    result = await session.execute(
        select(AlertPolicy).where(AlertPolicy.id == policy_id, AlertPolicy.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def list_policies(
    session: AsyncSession, *, organization_id: str, offset: int = 0, limit: int = 50
) -> list[AlertPolicy]:
    result = await session.execute(
        select(AlertPolicy)
        .where(AlertPolicy.organization_id == organization_id)
        .order_by(AlertPolicy.created_at, AlertPolicy.id)
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_enabled_policies_for_monitor(session: AsyncSession, monitor_id: str) -> list[AlertPolicy]:
    result = await session.execute(
        select(AlertPolicy)
        .join(MonitorAlertPolicy, MonitorAlertPolicy.policy_id == AlertPolicy.id)
        .where(MonitorAlertPolicy.monitor_id == monitor_id, AlertPolicy.enabled.is_(True))
        .order_by(AlertPolicy.created_at)
    )
    return list(result.scalars().all())


async def list_policy_monitor_ids(session: AsyncSession, policy_id: str) -> list[str]:
    result = await session.execute(
        select(MonitorAlertPolicy.monitor_id).where(MonitorAlertPolicy.policy_id == policy_id)
    )
    return [row[0] for row in result.all()]


async def get_policy_link(
    session: AsyncSession, *, monitor_id: str, policy_id: str
) -> MonitorAlertPolicy | None:
    result = await session.execute(
        select(MonitorAlertPolicy).where(
            MonitorAlertPolicy.monitor_id == monitor_id, MonitorAlertPolicy.policy_id == policy_id
        )
    )
    return result.scalar_one_or_none()


async def get_recent_alert(
    session: AsyncSession, *, policy_id: str, monitor_id: str, since: datetime
) -> AlertHistory | None:
    # Any alert triggered after `since` puts the policy in cooldown for this monitor.
    result = await session.execute(
        select(AlertHistory)
        .where(
            AlertHistory.policy_id == policy_id,
            AlertHistory.monitor_id == monitor_id,
            AlertHistory.triggered_at >= since,
        )
        .order_by(AlertHistory.triggered_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_open_alert(session: AsyncSession, *, policy_id: str, monitor_id: str) -> AlertHistory | None:
    result = await session.execute(
        select(AlertHistory)
        .where(
            AlertHistory.policy_id == policy_id,
            AlertHistory.monitor_id == monitor_id,
            AlertHistory.status.in_(("triggered", "acknowledged")),
        )
        .order_by(AlertHistory.triggered_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_alert_for_org(
    session: AsyncSession, alert_id: str, organization_id: str
) -> AlertHistory | None:
    result = await session.execute(
        select(AlertHistory).where(AlertHistory.id == alert_id, AlertHistory.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def list_alerts(
    session: AsyncSession,
    *,
    organization_id: str,
    status: str | None = None,
    monitor_id: str | None = None,
    policy_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AlertHistory]:
    stmt = select(AlertHistory).where(AlertHistory.organization_id == organization_id)
    if status:
        stmt = stmt.where(AlertHistory.status == status)
    if monitor_id:
        stmt = stmt.where(AlertHistory.monitor_id == monitor_id)
    if policy_id:
        stmt = stmt.where(AlertHistory.policy_id == policy_id)
    stmt = stmt.order_by(AlertHistory.triggered_at.desc(), AlertHistory.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_notification_logs(session: AsyncSession, alert_history_id: str) -> list[NotificationLog]:
    result = await session.execute(
        select(NotificationLog)
        .where(NotificationLog.alert_history_id == alert_history_id)
        .order_by(NotificationLog.sent_at.desc())
    )
    return list(result.scalars().all())


async def get_rotation_for_org(
    session: AsyncSession, rotation_id: str, organization_id: str
) -> OncallRotation | None:
    result = await session.execute(
        select(OncallRotation).where(
            OncallRotation.id == rotation_id, OncallRotation.organization_id == organization_id
        )
    )
    return result.scalar_one_or_none()


async def list_rotations(
    session: AsyncSession, *, organization_id: str, offset: int = 0, limit: int = 50
) -> list[OncallRotation]:
    result = await session.execute(
        select(OncallRotation)
        .where(OncallRotation.organization_id == organization_id)
        .order_by(OncallRotation.created_at, OncallRotation.id)
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_overrides(session: AsyncSession, rotation_id: str) -> list[OncallOverride]:
    result = await session.execute(
        select(OncallOverride)
        .where(OncallOverride.rotation_id == rotation_id)
        .order_by(OncallOverride.start_at)
    )
    return list(result.scalars().all())
