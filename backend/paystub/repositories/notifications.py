"""Notification and Escalation repository."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paystub.core.constants import NotificationStatus
from paystub.db.models.escalation import Escalation
from paystub.db.models.notification import Notification


async def create_notification(
    db: AsyncSession,
    *,
    organization_id: int,
    work_record_id: int,
    user_id: int,
    channel: str,
    notification_type: str,
) -> Notification:
    notification = Notification(
        organization_id=organization_id,
        work_record_id=work_record_id,
        user_id=user_id,
        channel=channel,
        notification_type=notification_type,
        status=NotificationStatus.QUEUED,
    )
    db.add(notification)
    await db.flush()
    return notification


async def update_notification(db: AsyncSession, notification: Notification, **fields: Any) -> Notification:
    for key, value in fields.items():
        setattr(notification, key, value)
    await db.flush()
    return notification


async def list_notifications(db: AsyncSession, work_record_id: int) -> list[Notification]:
    stmt = (
        select(Notification)
        .where(Notification.work_record_id == work_record_id)
        .order_by(Notification.id)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_escalation(db: AsyncSession, work_record_id: int) -> Escalation | None:
    stmt = select(Escalation).where(Escalation.work_record_id == work_record_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def create_escalation(
    db: AsyncSession,
    *,
    work_record_id: int,
    reason: str,
    context: dict[str, Any],
    recipients_notified: int,
) -> Escalation:
    escalation = Escalation(
        work_record_id=work_record_id,
        reason=reason,
        context=context,
        recipients_notified=recipients_notified,
    )
    db.add(escalation)
    await db.flush()
    return escalation
