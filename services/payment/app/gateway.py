"""
Payment Service — 決済ゲートウェイ (Settlement Gateway)

決済処理を差し替え可能なインターフェースとして切り出す。

  SimulatedSettlementGateway : 遅延とランダムな成否で決済を模擬する
                               （乱数生成器を注入できるのでテストで決定的になる）
  HttpSettlementGateway      : 外部の決済プロセッサを HTTP で呼び出す

タイムアウトは「結果不明」ではなく「失敗」として扱う。
"""

import asyncio
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID, uuid4

import httpx


@dataclass(frozen=True)
class ChargeRequest:
    payment_id: UUID
    order_id: UUID
    user_id: str
    amount: Decimal
    payment_method: str
    card_details: dict | None = None


@dataclass(frozen=True)
class RefundRequest:
    payment_id: UUID
    order_id: UUID
    amount: Decimal
    payment_reference: str


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    reference: str | None = None
    failure_reason: str | None = None

    @classmethod
    def ok(cls, reference: str | None = None) -> "SettlementResult":
        return cls(success=True, reference=reference)

    @classmethod
    def failed(cls, reason: str) -> "SettlementResult":
        return cls(success=False, failure_reason=reason)


def generate_payment_reference() -> str:
    return f"PAY-{uuid4().hex[:12].upper()}"


class SettlementGateway(ABC):
    @abstractmethod
    async def charge(self, request: ChargeRequest) -> SettlementResult:
        ...

    @abstractmethod
    async def refund(self, request: RefundRequest) -> SettlementResult:
        ...


class SimulatedSettlementGateway(SettlementGateway):
    """決済 約 1 秒・成功率 90%、返金 約 0.5 秒・成功率 95% を模擬する。"""

    def __init__(
        self,
        success_rate: float = 0.9,
        refund_success_rate: float = 0.95,
        charge_latency: float = 1.0,
        refund_latency: float = 0.5,
        rng: random.Random | None = None,
    ) -> None:
        self.success_rate = success_rate
        self.refund_success_rate = refund_success_rate
        self.charge_latency = charge_latency
        self.refund_latency = refund_latency
        self.rng = rng or random.Random()

    async def charge(self, request: ChargeRequest) -> SettlementResult:
        await asyncio.sleep(self.charge_latency)
        if self.rng.random() < self.success_rate:
            return SettlementResult.ok(generate_payment_reference())
        return SettlementResult.failed("Payment processing failed")

    async def refund(self, request: RefundRequest) -> SettlementResult:
        await asyncio.sleep(self.refund_latency)
        if self.rng.random() < self.refund_success_rate:
            return SettlementResult.ok(request.payment_reference)
        return SettlementResult.failed("Refund processing failed")


class HttpSettlementGateway(SettlementGateway):
    """
    外部決済プロセッサのクライアント

      POST /charges  → {"status": "succeeded", "reference": "..."}
                       {"status": "failed", "reason": "..."}
      POST /refunds  → 同上
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict) -> SettlementResult:
        try:
            resp = await self._client.post(path, json=payload)
        except httpx.TimeoutException:
            return SettlementResult.failed("Settlement timed out")
        except httpx.HTTPError as e:
            return SettlementResult.failed(f"Settlement unavailable: {e}")

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if resp.is_success and body.get("status") == "succeeded":
            return SettlementResult.ok(body.get("reference"))
        reason = body.get("reason") or f"Settlement declined (HTTP {resp.status_code})"
        return SettlementResult.failed(reason)

    async def charge(self, request: ChargeRequest) -> SettlementResult:
        return await self._post(
            "/charges",
            {
                "paymentId": str(request.payment_id),
                "orderId": str(request.order_id),
                "amount": str(request.amount),
                "method": request.payment_method,
                "card": request.card_details,
            },
        )

    async def refund(self, request: RefundRequest) -> SettlementResult:
        return await self._post(
            "/refunds",
            {
                "paymentId": str(request.payment_id),
                "paymentReference": request.payment_reference,
                "amount": str(request.amount),
            },
        )
