"""
Order Service — 注文集約 (Order Aggregate)

Event Sourcing では集約の状態を直接保存しない。
イベントをリプレイして現在の状態を復元する。

apply_xxx メソッド: 各イベントを適用して状態を変更する
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from services.shared.errors import InvalidTransition

from .events import OrderCancelled, OrderCreated, OrderItemSnapshot, OrderStatusChanged


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


TERMINAL_STATUSES = frozenset(
    {OrderStatus.CANCELLED, OrderStatus.DELIVERED, OrderStatus.REFUNDED}
)
CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})

# 前進方向の遷移（キャンセルは cancel_order 専用）
FORWARD_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
}


def is_forward_transition(old: OrderStatus, new: OrderStatus) -> bool:
    return new in FORWARD_TRANSITIONS.get(old, frozenset())


def is_forced_transition(old: OrderStatus, new: OrderStatus) -> bool:
    """force 指定時の遷移規則。前進以外も許すが、終端ステータスからは戻さない。"""
    return is_forward_transition(old, new) or old not in TERMINAL_STATUSES


class OrderAggregate:
    """
    注文集約 — イベントから現在の状態を再構築する。

    状態遷移:
        PENDING → CONFIRMED → PROCESSING → SHIPPED → DELIVERED (→ REFUNDED)
        PENDING / CONFIRMED → CANCELLED  (補償: 在庫を戻す)

    update_status は既定では無条件に上書きする。遷移規則は呼び出し側が
    allowed として渡し、行ロック取得後に判定される。
    """

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.user_id: str = ""
        self.items: list[OrderItemSnapshot] = []
        self.total_amount: Decimal = Decimal("0.00")
        self.shipping_address: str = ""
        self.billing_address: str | None = None
        self.payment_method: str | None = None
        self.status: OrderStatus | None = None
        self.created_at: datetime | None = None
        self.updated_at: datetime | None = None
        self.version: int = 0

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, event: OrderCreated) -> None:
        self.id = event.order_id
        self.user_id = event.user_id
        self.items = list(event.items)
        self.total_amount = event.total_amount
        self.shipping_address = event.shipping_address
        self.billing_address = event.billing_address
        self.payment_method = event.payment_method
        self.status = OrderStatus.PENDING
        self.created_at = event.timestamp
        self.updated_at = event.timestamp

    def apply_order_status_changed(self, event: OrderStatusChanged) -> None:
        self.status = OrderStatus(event.new_status)
        self.updated_at = event.timestamp

    def apply_order_cancelled(self, event: OrderCancelled) -> None:
        self.status = OrderStatus.CANCELLED
        self.updated_at = event.timestamp

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderCreated": (OrderCreated, self.apply_order_created),
            "OrderStatusChanged": (OrderStatusChanged, self.apply_order_status_changed),
            "OrderCancelled": (OrderCancelled, self.apply_order_cancelled),
        }.get(event_type)
        if handler:
            model, apply = handler
            apply(model.model_validate(event_data))

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg

    # ── 不変条件 ─────────────────────────────────────

    @property
    def computed_total(self) -> Decimal:
        return sum((item.subtotal for item in self.items), Decimal("0.00"))

    def ensure_cancellable(self) -> None:
        if self.status not in CANCELLABLE_STATUSES:
            raise InvalidTransition(self.status.value, "cancel order")
