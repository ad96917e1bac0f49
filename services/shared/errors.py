"""
Shared — エラー分類 (Error Taxonomy)

3 サービス共通のドメイン例外。
同期ワークフローの失敗は呼び出し元へそのまま送出し、イベントは発行しない。
HTTP ステータスへの変換は各サービスの main.py が担当する。
"""


class ChoreographyError(Exception):
    """すべてのドメイン例外の基底クラス"""


# ── NotFound ─────────────────────────────────────


class NotFound(ChoreographyError):
    """対象の集約が存在しない"""


class OrderNotFound(NotFound):
    def __init__(self, order_id) -> None:
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class PaymentNotFound(NotFound):
    def __init__(self, payment_id) -> None:
        super().__init__(f"Payment not found: {payment_id}")
        self.payment_id = payment_id


class NotificationNotFound(NotFound):
    def __init__(self, notification_id) -> None:
        super().__init__(f"Notification not found: {notification_id}")
        self.notification_id = notification_id


# ── 状態遷移 ─────────────────────────────────────


class InvalidTransition(ChoreographyError):
    """現在のステータスでは許可されない操作"""

    def __init__(self, current_status: str, operation: str) -> None:
        super().__init__(
            f"Cannot {operation} in current status: {current_status}"
        )
        self.current_status = current_status
        self.operation = operation


class InvalidState(InvalidTransition):
    """支払いが操作に必要なステータスにない（例: COMPLETED 以外の返金）"""


class DuplicatePayment(ChoreographyError):
    """同一注文に対する二重支払い（冪等性ガード）"""

    def __init__(self, order_id) -> None:
        super().__init__(f"Payment already exists for order: {order_id}")
        self.order_id = order_id


# ── 外部依存 ─────────────────────────────────────


class InventoryUnavailable(ChoreographyError):
    """在庫チェックで利用不可と判定された"""

    def __init__(self, product_id, quantity: int) -> None:
        super().__init__(
            f"Product not available: {product_id} (quantity={quantity})"
        )
        self.product_id = product_id
        self.quantity = quantity


class DownstreamUnavailable(ChoreographyError):
    """在庫サービスや決済処理の呼び出しが失敗・タイムアウトした"""


class RefundFailed(ChoreographyError):
    """返金決済が失敗した（ステータスは変更されない）"""


# ── コンシューマ側 ───────────────────────────────


class MalformedEvent(ChoreographyError):
    """イベントエンベロープをデコードできない（メッセージ単位で処理）"""


# ── HTTP ステータス対応 ──────────────────────────

_HTTP_STATUS: list[tuple[type[ChoreographyError], int]] = [
    (NotFound, 404),
    (InventoryUnavailable, 409),
    (DuplicatePayment, 409),
    (InvalidTransition, 409),
    (RefundFailed, 502),
    (DownstreamUnavailable, 503),
]


def status_code_for(exc: ChoreographyError) -> int:
    for error_type, status_code in _HTTP_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400
