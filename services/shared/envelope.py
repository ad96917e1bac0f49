"""
Shared — イベントエンベロープとルーティング契約

3 サービス間で唯一永続化される「API」。
ルーティングキーとフィールド名は変更してはならない。

  order.exchange   ── order.created / order.status.changed / order.cancelled
  payment.exchange ── payment.processed / payment.refunded

エンベロープは固定スキーマではなくフラットな key/value マップで、
送信前にすべての値を文字列化する（日時は ISO-8601、Decimal はテキスト表現）。
コンシューマは防御的にパースし、不正なフィールドは MalformedEvent として
そのメッセージだけを失敗させる。
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from uuid import UUID, uuid4

from .errors import MalformedEvent

# ── Exchanges / Routing keys ─────────────────────

ORDER_EXCHANGE = "order.exchange"
PAYMENT_EXCHANGE = "payment.exchange"

ORDER_CREATED = "order.created"
ORDER_STATUS_CHANGED = "order.status.changed"
ORDER_CANCELLED = "order.cancelled"
PAYMENT_PROCESSED = "payment.processed"
PAYMENT_REFUNDED = "payment.refunded"

BINDINGS: dict[str, tuple[str, ...]] = {
    ORDER_EXCHANGE: (ORDER_CREATED, ORDER_STATUS_CHANGED, ORDER_CANCELLED),
    PAYMENT_EXCHANGE: (PAYMENT_PROCESSED, PAYMENT_REFUNDED),
}

EVENT_TYPES: dict[str, str] = {
    ORDER_CREATED: "ORDER_CREATED",
    ORDER_STATUS_CHANGED: "ORDER_STATUS_CHANGED",
    ORDER_CANCELLED: "ORDER_CANCELLED",
    PAYMENT_PROCESSED: "PAYMENT_PROCESSED",
    PAYMENT_REFUNDED: "PAYMENT_REFUNDED",
}


def exchange_for(routing_key: str) -> str:
    """ルーティングキーが属する exchange を返す。"""
    for exchange, keys in BINDINGS.items():
        if routing_key in keys:
            return exchange
    raise ValueError(f"Unknown routing key: {routing_key}")


def stream_name(exchange: str, routing_key: str) -> str:
    """(exchange, routing key) に対応する Redis Stream 名"""
    return f"{exchange}:{routing_key}"


def queue_name(routing_key: str) -> str:
    """ルーティングキーにバインドされた永続キュー名（= consumer group 名）"""
    return f"{routing_key}.queue"


# ── エンコード ───────────────────────────────────


def stringify(value) -> str | None:
    """エンベロープに載せるため値を文字列化する。None はフィールドごと省略する。"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build(routing_key: str, **fields) -> dict[str, str]:
    """
    エンベロープを組み立てる。

    eventId は冪等性キーとして毎回新しく採番する。
    同じエンベロープが再配信された場合は同じ eventId が届く。
    """
    envelope = {"eventId": str(uuid4()), "eventType": EVENT_TYPES[routing_key]}
    for key, value in fields.items():
        text = stringify(value)
        if text is not None:
            envelope[key] = text
    return envelope


def order_created(order_id, user_id, total_amount, status, timestamp) -> dict[str, str]:
    return build(
        ORDER_CREATED,
        orderId=order_id,
        userId=user_id,
        totalAmount=total_amount,
        status=status,
        timestamp=timestamp,
    )


def order_status_changed(order_id, user_id, old_status, new_status, timestamp) -> dict[str, str]:
    return build(
        ORDER_STATUS_CHANGED,
        orderId=order_id,
        userId=user_id,
        oldStatus=old_status,
        newStatus=new_status,
        timestamp=timestamp,
    )


def order_cancelled(order_id, user_id, total_amount, timestamp) -> dict[str, str]:
    return build(
        ORDER_CANCELLED,
        orderId=order_id,
        userId=user_id,
        totalAmount=total_amount,
        timestamp=timestamp,
    )


def payment_processed(
    payment_id, order_id, user_id, amount, status, payment_reference, timestamp
) -> dict[str, str]:
    return build(
        PAYMENT_PROCESSED,
        paymentId=payment_id,
        orderId=order_id,
        userId=user_id,
        amount=amount,
        status=status,
        paymentReference=payment_reference,
        timestamp=timestamp,
    )


def payment_refunded(
    payment_id, order_id, user_id, amount, payment_reference, timestamp
) -> dict[str, str]:
    return build(
        PAYMENT_REFUNDED,
        paymentId=payment_id,
        orderId=order_id,
        userId=user_id,
        amount=amount,
        paymentReference=payment_reference,
        timestamp=timestamp,
    )


# ── デコード（防御的パース） ─────────────────────


def require(fields: dict, name: str) -> str:
    value = fields.get(name)
    if value is None or not str(value).strip():
        raise MalformedEvent(f"Missing field: {name}")
    return str(value)


def optional(fields: dict, name: str) -> str | None:
    value = fields.get(name)
    if value is None or not str(value).strip():
        return None
    return str(value)


def parse_uuid(fields: dict, name: str) -> UUID:
    raw = require(fields, name)
    try:
        return UUID(raw)
    except ValueError as e:
        raise MalformedEvent(f"Invalid UUID in {name}: {raw!r}") from e


def parse_decimal(fields: dict, name: str) -> Decimal:
    raw = require(fields, name)
    try:
        value = Decimal(raw)
    except InvalidOperation as e:
        raise MalformedEvent(f"Invalid decimal in {name}: {raw!r}") from e
    if not value.is_finite():
        raise MalformedEvent(f"Invalid decimal in {name}: {raw!r}")
    return value


def parse_timestamp(fields: dict, name: str = "timestamp") -> datetime:
    raw = require(fields, name)
    try:
        return datetime.fromisoformat(raw)
    except ValueError as e:
        raise MalformedEvent(f"Invalid timestamp in {name}: {raw!r}") from e
