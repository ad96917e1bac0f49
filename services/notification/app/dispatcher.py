"""
Notification Service — 通知の送信と記録

  1. PENDING で記録してコミット
  2. チャネル経由で送信
  3. SENT / FAILED（理由付き）に更新してコミット

source_event_id（エンベロープの eventId）が渡された場合は重複配信を検出する:
  既存レコードが SENT        → 再送しない
  既存レコードが PENDING/FAILED → 同じレコードで再送を試みる
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .channels import ChannelError, ChannelRegistry, NotificationChannel, OutboundMessage
from .queries import get_notification, notification_dict
from .schema import notifications

logger = logging.getLogger(__name__)


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


async def _find_by_source_event(session: AsyncSession, source_event_id: str):
    result = await session.execute(
        select(notifications).where(notifications.c.source_event_id == source_event_id)
    )
    return result.fetchone()


async def _record_pending(
    session: AsyncSession,
    user_id: str,
    recipient: str,
    channel: NotificationChannel,
    subject: str,
    body: str,
    template_data: dict | None,
    event_type: str | None,
    source_event_id: str | None,
) -> UUID:
    notification_id = uuid4()
    now = datetime.now(timezone.utc)
    await session.execute(
        insert(notifications).values(
            id=notification_id,
            user_id=user_id,
            recipient=recipient,
            channel=channel.value,
            subject=subject,
            body=body,
            template_data=template_data,
            status=NotificationStatus.PENDING.value,
            event_type=event_type,
            source_event_id=source_event_id,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()
    return notification_id


async def send_notification(
    session: AsyncSession,
    channels: ChannelRegistry,
    user_id: str,
    recipient: str,
    channel: NotificationChannel,
    subject: str,
    body: str,
    template_data: dict | None = None,
    *,
    event_type: str | None = None,
    source_event_id: str | None = None,
) -> dict:
    """通知を記録して送信し、最終状態のレコードを返す。"""
    notification_id = None
    if source_event_id:
        existing = await _find_by_source_event(session, source_event_id)
        if existing is not None:
            if existing.status == NotificationStatus.SENT.value:
                logger.info(
                    "Event %s already notified (notification %s); skipping",
                    source_event_id, existing.id,
                )
                return notification_dict(existing)
            notification_id = existing.id
            logger.info(
                "Retrying %s notification %s for event %s",
                existing.status, notification_id, source_event_id,
            )

    if notification_id is None:
        try:
            notification_id = await _record_pending(
                session, user_id, recipient, channel, subject, body,
                template_data, event_type, source_event_id,
            )
        except IntegrityError:
            if not source_event_id:
                raise
            # 同じイベントを別のメッセージが処理中
            await session.rollback()
            existing = await _find_by_source_event(session, source_event_id)
            logger.info(
                "Event %s is already being notified (notification %s)",
                source_event_id, existing.id,
            )
            return notification_dict(existing)

    message = OutboundMessage(recipient=recipient, subject=subject, body=body)
    failure_reason = None
    try:
        await channels.get(channel).send(message)
    except ChannelError as e:
        failure_reason = str(e)
        logger.warning("Notification %s to %s failed: %s", notification_id, recipient, e)
    except Exception as e:
        failure_reason = f"Unexpected channel error: {e}"
        logger.exception("Notification %s to %s raised", notification_id, recipient)

    now = datetime.now(timezone.utc)
    if failure_reason is None:
        values = {"status": NotificationStatus.SENT.value, "sent_at": now, "failure_reason": None}
        logger.info("Notification %s sent via %s to %s", notification_id, channel.value, recipient)
    else:
        values = {"status": NotificationStatus.FAILED.value, "failure_reason": failure_reason}
    await session.execute(
        update(notifications)
        .where(notifications.c.id == notification_id)
        .values(**values, updated_at=now)
    )
    await session.commit()
    return await get_notification(session, notification_id)
