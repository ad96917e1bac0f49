"""
Notification Service — クエリハンドラ
"""

from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import notifications


def _iso(value):
    return value.isoformat() if value else None


def notification_dict(row) -> dict:
    return {
        "id": str(row.id),
        "user_id": row.user_id,
        "recipient": row.recipient,
        "channel": row.channel,
        "subject": row.subject,
        "body": row.body,
        "template_data": row.template_data,
        "status": row.status,
        "failure_reason": row.failure_reason,
        "event_type": row.event_type,
        "created_at": _iso(row.created_at),
        "sent_at": _iso(row.sent_at),
        "updated_at": _iso(row.updated_at),
    }


async def get_notification(session: AsyncSession, notification_id: UUID) -> dict | None:
    result = await session.execute(
        select(notifications).where(notifications.c.id == notification_id)
    )
    row = result.fetchone()
    return notification_dict(row) if row else None


async def list_notifications_by_user(session: AsyncSession, user_id: str) -> list[dict]:
    """ユーザーの通知一覧（新しい順）"""
    result = await session.execute(
        select(notifications)
        .where(notifications.c.user_id == user_id)
        .order_by(notifications.c.created_at.desc())
    )
    return [notification_dict(row) for row in result.fetchall()]


async def list_notifications_by_status(session: AsyncSession, status: str) -> list[dict]:
    result = await session.execute(
        select(notifications)
        .where(notifications.c.status == status)
        .order_by(notifications.c.created_at.desc())
    )
    return [notification_dict(row) for row in result.fetchall()]


async def count_unread(session: AsyncSession, user_id: str) -> int:
    """未読数 = 送信済み (SENT) の通知数。既読管理は持たない。"""
    result = await session.execute(
        select(func.count())
        .select_from(notifications)
        .where(notifications.c.user_id == user_id, notifications.c.status == "SENT")
    )
    return result.scalar_one()
