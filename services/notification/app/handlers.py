"""
Notification Service — イベントハンドラ

受信したエンベロープを通知リクエストに変換して送信する。

  order.created                       → "Order Confirmation" メール
  payment.processed (COMPLETED)       → "Payment Successful" メール
  payment.processed (それ以外)         → "Payment Failed" メール
  order.status.changed / order.cancelled / payment.refunded
                                      → 通知なし（ログのみで ack）

エンベロープの値が欠けている・パースできない場合は MalformedEvent を送出し、
そのメッセージだけが dead-letter に退避される。
"""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from services.shared import envelope

from .channels import ChannelRegistry, NotificationChannel
from .dispatcher import send_notification

logger = logging.getLogger(__name__)

DEFAULT_EMAIL_TEMPLATE = "user{user_id}@example.com"


def recipient_for(user_id: str, email_template: str = DEFAULT_EMAIL_TEMPLATE) -> str:
    """エンベロープには宛先がないため、ユーザー ID からメールアドレスを導出する。"""
    return email_template.format(user_id=user_id)


async def handle_event(
    session: AsyncSession,
    channels: ChannelRegistry,
    routing_key: str,
    fields: dict[str, str],
    email_template: str = DEFAULT_EMAIL_TEMPLATE,
) -> dict | None:
    """ルーティングキーに応じたハンドラを呼び出す。通知しないイベントは None を返す。"""
    handler = {
        envelope.ORDER_CREATED: _notify_order_created,
        envelope.PAYMENT_PROCESSED: _notify_payment_processed,
    }.get(routing_key)
    if handler is None:
        logger.info(
            "No notification for %s (event %s, order %s)",
            routing_key, fields.get("eventId"), fields.get("orderId"),
        )
        return None

    event_id = envelope.optional(fields, "eventId")
    if event_id is None:
        logger.warning(
            "%s for order %s has no eventId; duplicate delivery cannot be detected",
            routing_key, fields.get("orderId"),
        )
    return await handler(session, channels, fields, event_id, email_template)


async def _notify_order_created(
    session: AsyncSession,
    channels: ChannelRegistry,
    fields: dict[str, str],
    event_id: str | None,
    email_template: str,
) -> dict:
    order_id = envelope.parse_uuid(fields, "orderId")
    user_id = envelope.require(fields, "userId")
    total_amount = envelope.parse_decimal(fields, "totalAmount")
    occurred_at = envelope.parse_timestamp(fields)

    return await send_notification(
        session, channels,
        user_id=user_id,
        recipient=recipient_for(user_id, email_template),
        channel=NotificationChannel.EMAIL,
        subject="Order Confirmation",
        body=f"Your order #{order_id} has been confirmed and is being processed.",
        template_data={
            "orderId": str(order_id),
            "totalAmount": format(total_amount, "f"),
            "status": envelope.optional(fields, "status"),
            "timestamp": occurred_at.isoformat(),
        },
        event_type=fields.get("eventType"),
        source_event_id=event_id,
    )


async def _notify_payment_processed(
    session: AsyncSession,
    channels: ChannelRegistry,
    fields: dict[str, str],
    event_id: str | None,
    email_template: str,
) -> dict:
    order_id = envelope.parse_uuid(fields, "orderId")
    user_id = envelope.require(fields, "userId")
    status = envelope.require(fields, "status")
    amount = envelope.parse_decimal(fields, "amount")
    occurred_at = envelope.parse_timestamp(fields)

    if status == "COMPLETED":
        subject = "Payment Successful"
        body = f"Your payment for order #{order_id} has been processed successfully."
    else:
        subject = "Payment Failed"
        body = f"Your payment for order #{order_id} failed. Please try again."

    return await send_notification(
        session, channels,
        user_id=user_id,
        recipient=recipient_for(user_id, email_template),
        channel=NotificationChannel.EMAIL,
        subject=subject,
        body=body,
        template_data={
            "orderId": str(order_id),
            "paymentId": envelope.optional(fields, "paymentId"),
            "amount": format(amount, "f"),
            "status": status,
            "paymentReference": envelope.optional(fields, "paymentReference"),
            "timestamp": occurred_at.isoformat(),
        },
        event_type=fields.get("eventType"),
        source_event_id=event_id,
    )
