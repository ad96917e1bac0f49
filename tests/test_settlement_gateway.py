"""
Tests for the settlement gateways.
"""
import json
import re
from decimal import Decimal
from uuid import uuid4

import httpx

from services.payment.app.gateway import (
    ChargeRequest,
    HttpSettlementGateway,
    RefundRequest,
    SimulatedSettlementGateway,
    generate_payment_reference,
)


class FixedRandom:
    def __init__(self, value: float) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


def _charge() -> ChargeRequest:
    return ChargeRequest(
        payment_id=uuid4(),
        order_id=uuid4(),
        user_id="42",
        amount=Decimal("27.50"),
        payment_method="CREDIT_CARD",
    )


def _refund() -> RefundRequest:
    return RefundRequest(
        payment_id=uuid4(), order_id=uuid4(), amount=Decimal("27.50"), payment_reference="PAY-1"
    )


def test_payment_reference_format() -> None:
    assert re.fullmatch(r"PAY-[0-9A-F]{12}", generate_payment_reference())


class TestSimulatedSettlementGateway:
    async def test_charge_succeeds_below_success_rate(self) -> None:
        gateway = SimulatedSettlementGateway(charge_latency=0, rng=FixedRandom(0.89))
        result = await gateway.charge(_charge())
        assert result.success
        assert result.reference.startswith("PAY-")

    async def test_charge_fails_at_success_rate(self) -> None:
        gateway = SimulatedSettlementGateway(charge_latency=0, rng=FixedRandom(0.9))
        result = await gateway.charge(_charge())
        assert not result.success
        assert result.failure_reason == "Payment processing failed"

    async def test_refund_uses_its_own_rate(self) -> None:
        gateway = SimulatedSettlementGateway(refund_latency=0, rng=FixedRandom(0.93))
        assert (await gateway.refund(_refund())).success
        gateway = SimulatedSettlementGateway(refund_latency=0, rng=FixedRandom(0.96))
        assert not (await gateway.refund(_refund())).success


class TestHttpSettlementGateway:
    async def test_successful_charge(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"status": "succeeded", "reference": "ch_123"})

        gateway = HttpSettlementGateway("http://settlement", transport=httpx.MockTransport(handler))
        request = _charge()
        result = await gateway.charge(request)
        await gateway.aclose()

        assert result.success and result.reference == "ch_123"
        path, body = seen[0]
        assert path == "/charges"
        assert body["amount"] == "27.50"
        assert body["orderId"] == str(request.order_id)

    async def test_declined_charge_carries_reason(self) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(402, json={"status": "failed", "reason": "Card declined"})
        )
        gateway = HttpSettlementGateway("http://settlement", transport=transport)
        result = await gateway.charge(_charge())
        await gateway.aclose()

        assert not result.success
        assert result.failure_reason == "Card declined"

    async def test_timeout_is_a_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        gateway = HttpSettlementGateway("http://settlement", transport=httpx.MockTransport(handler))
        result = await gateway.refund(_refund())
        await gateway.aclose()

        assert not result.success
        assert result.failure_reason == "Settlement timed out"

    async def test_unparseable_response_is_a_failure(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="<html>oops"))
        gateway = HttpSettlementGateway("http://settlement", transport=transport)
        result = await gateway.charge(_charge())
        await gateway.aclose()

        assert not result.success
        assert result.failure_reason == "Settlement declined (HTTP 500)"
