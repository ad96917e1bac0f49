"""
Payment Service — 支払い集約 (Payment Aggregate)

イベントをリプレイして支払いの現在の状態を復元する。
金額は PaymentInitiated で一度だけ設定され、以後変わらない。
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from .events import PaymentCompleted, PaymentFailed, PaymentInitiated, PaymentRefunded


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class PaymentAggregate:
    """
    支払い集約

    状態遷移:
        PROCESSING → COMPLETED → REFUNDED
        PROCESSING → FAILED
    """

    def __init__(self) -> None:
        self.id: UUID | None = None
        self.order_id: UUID | None = None
        self.user_id: str = ""
        self.amount: Decimal = Decimal("0.00")
        self.payment_method: str = ""
        self.status: PaymentStatus = PaymentStatus.PENDING
        self.payment_reference: str | None = None
        self.failure_reason: str | None = None
        self.created_at: datetime | None = None
        self.updated_at: datetime | None = None
        self.version: int = 0

    def apply_payment_initiated(self, event: PaymentInitiated) -> None:
        self.id = event.payment_id
        self.order_id = event.order_id
        self.user_id = event.user_id
        self.amount = event.amount
        self.payment_method = event.payment_method
        self.status = PaymentStatus.PROCESSING
        self.created_at = event.timestamp
        self.updated_at = event.timestamp

    def apply_payment_completed(self, event: PaymentCompleted) -> None:
        self.status = PaymentStatus.COMPLETED
        self.payment_reference = event.payment_reference
        self.updated_at = event.timestamp

    def apply_payment_failed(self, event: PaymentFailed) -> None:
        self.status = PaymentStatus.FAILED
        self.failure_reason = event.failure_reason
        self.updated_at = event.timestamp

    def apply_payment_refunded(self, event: PaymentRefunded) -> None:
        self.status = PaymentStatus.REFUNDED
        self.updated_at = event.timestamp

    def apply_event(self, event_type: str, event_data: dict) -> None:
        handler = {
            "PaymentInitiated": (PaymentInitiated, self.apply_payment_initiated),
            "PaymentCompleted": (PaymentCompleted, self.apply_payment_completed),
            "PaymentFailed": (PaymentFailed, self.apply_payment_failed),
            "PaymentRefunded": (PaymentRefunded, self.apply_payment_refunded),
        }.get(event_type)
        if handler:
            model, apply = handler
            apply(model.model_validate(event_data))

    @classmethod
    def from_events(cls, events: list[dict]) -> "PaymentAggregate":
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg
