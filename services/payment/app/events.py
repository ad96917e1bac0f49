"""
Payment Service — イベント定義

支払い 1 件のライフサイクルを表すイベント。
カード情報はイベントに含めない。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel


class PaymentInitiated(BaseModel):
    """支払いを受け付け、決済処理を開始した（PROCESSING）"""
    payment_id: UUID
    order_id: UUID
    user_id: str
    amount: Decimal
    payment_method: str
    timestamp: datetime


class PaymentCompleted(BaseModel):
    """決済が成功した"""
    payment_id: UUID
    payment_reference: str
    timestamp: datetime


class PaymentFailed(BaseModel):
    """決済が失敗した（タイムアウトを含む）"""
    payment_id: UUID
    failure_reason: str
    timestamp: datetime


class PaymentRefunded(BaseModel):
    """返金が完了した"""
    payment_id: UUID
    timestamp: datetime
