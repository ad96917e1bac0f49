"""
Order Service — イベント定義

イベントストアに記録するドメインイベント。
過去形で命名し、不変(immutable)として扱う。
ブローカーに流すエンベロープ (shared/envelope.py) とは別物で、
こちらはサービス内部の履歴に使う。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel


class OrderItemSnapshot(BaseModel):
    """注文時点の明細（価格は在庫サービスから取得した正の値）"""
    product_id: str
    product_name: str
    unit_price: Decimal
    quantity: int
    subtotal: Decimal


class OrderCreated(BaseModel):
    """注文が作成された"""
    order_id: UUID
    user_id: str
    items: list[OrderItemSnapshot]
    total_amount: Decimal
    shipping_address: str
    billing_address: str | None = None
    payment_method: str | None = None
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが変更された"""
    order_id: UUID
    old_status: str
    new_status: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされた（在庫の戻しは stock_intents に記録）"""
    order_id: UUID
    previous_status: str
    timestamp: datetime
