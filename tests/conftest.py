"""
Pytest configuration and fixtures.

サービスごとに独立した SQLite (aiosqlite) データベースを使い、
Redis Streams・在庫サービス・決済ゲートウェイ・通知チャネルは
テスト内のフェイクに置き換える。
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import itertools
from collections.abc import AsyncGenerator
from decimal import Decimal
from typing import Any

import httpx
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.notification.app import schema as notification_schema
from services.notification.app.channels import (
    ChannelAdapter,
    ChannelError,
    ChannelRegistry,
    NotificationChannel,
    OutboundMessage,
)
from services.order.app import schema as order_schema
from services.order.app.inventory_client import InventoryClient
from services.payment.app import schema as payment_schema
from services.payment.app.gateway import (
    ChargeRequest,
    RefundRequest,
    SettlementGateway,
    SettlementResult,
)
from services.shared.broker import EventPublisher
from services.shared.envelope import exchange_for, stream_name


# ── Redis Streams ────────────────────────────────


class FakeStreamRedis:
    """
    StreamConsumer / EventPublisher が使う Redis Streams コマンドだけを
    メモリ上で再現する。アイドル時間は advance() で進める。
    """

    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self.groups: dict[tuple[str, str], dict[str, Any]] = {}
        self.now_ms = 0
        self._ids = itertools.count(1)
        self.fail_xadd = False

    def advance(self, ms: int) -> None:
        self.now_ms += ms

    def entries(self, stream: str) -> list[dict[str, str]]:
        return [fields for _, fields in self.streams.get(stream, [])]

    def pending_ids(self, stream: str, group: str) -> list[str]:
        return list(self.groups[(stream, group)]["pending"])

    async def xadd(self, name, fields, id="*", maxlen=None, approximate=True, **kwargs):
        if self.fail_xadd:
            raise RedisConnectionError("Redis is down")
        message_id = f"{next(self._ids)}-0"
        self.streams.setdefault(name, []).append((message_id, dict(fields)))
        return message_id

    async def xgroup_create(self, name, groupname, id="$", mkstream=False, **kwargs):
        if (name, groupname) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        self.streams.setdefault(name, [])
        self.groups[(name, groupname)] = {"delivered": 0, "pending": {}}

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None, **kwargs):
        response = []
        for name in streams:
            group = self.groups[(name, groupname)]
            entries = self.streams.get(name, [])
            new = entries[group["delivered"]:]
            if count is not None:
                new = new[:count]
            if not new:
                continue
            group["delivered"] += len(new)
            for message_id, _ in new:
                group["pending"][message_id] = {
                    "consumer": consumername,
                    "delivered_at": self.now_ms,
                    "times_delivered": 1,
                }
            response.append([name, [(mid, dict(fields)) for mid, fields in new]])
        return response

    async def xack(self, name, groupname, *ids):
        pending = self.groups[(name, groupname)]["pending"]
        acked = 0
        for message_id in ids:
            if pending.pop(message_id, None) is not None:
                acked += 1
        return acked

    async def xpending_range(self, name, groupname, min, max, count, consumername=None, idle=None):
        pending = self.groups[(name, groupname)]["pending"]
        result = []
        for message_id, info in pending.items():
            idle_ms = self.now_ms - info["delivered_at"]
            if idle is not None and idle_ms < idle:
                continue
            result.append(
                {
                    "message_id": message_id,
                    "consumer": info["consumer"],
                    "time_since_delivered": idle_ms,
                    "times_delivered": info["times_delivered"],
                }
            )
        return result[:count]

    async def xclaim(self, name, groupname, consumername, min_idle_time, message_ids, **kwargs):
        pending = self.groups[(name, groupname)]["pending"]
        fields_by_id = dict(self.streams.get(name, []))
        claimed = []
        for message_id in message_ids:
            info = pending.get(message_id)
            if info is None or self.now_ms - info["delivered_at"] < min_idle_time:
                continue
            info["consumer"] = consumername
            info["delivered_at"] = self.now_ms
            info["times_delivered"] += 1
            claimed.append((message_id, fields_by_id.get(message_id)))
        return claimed


@pytest.fixture
def fake_redis() -> FakeStreamRedis:
    return FakeStreamRedis()


@pytest.fixture
def publisher(fake_redis: FakeStreamRedis) -> EventPublisher:
    return EventPublisher(fake_redis)


def published(fake_redis: FakeStreamRedis, routing_key: str) -> list[dict[str, str]]:
    """routing key に発行されたエンベロープ一覧"""
    return fake_redis.entries(stream_name(exchange_for(routing_key), routing_key))


# ── Database ─────────────────────────────────────


async def _session_factory(tmp_path, name: str, metadata: MetaData):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / name}.db")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def order_sessions(tmp_path) -> AsyncGenerator[async_sessionmaker, Any]:
    engine, factory = await _session_factory(tmp_path, "orders", order_schema.metadata)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def payment_sessions(tmp_path) -> AsyncGenerator[async_sessionmaker, Any]:
    engine, factory = await _session_factory(tmp_path, "payments", payment_schema.metadata)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def notification_sessions(tmp_path) -> AsyncGenerator[async_sessionmaker, Any]:
    engine, factory = await _session_factory(
        tmp_path, "notifications", notification_schema.metadata
    )
    yield factory
    await engine.dispose()


# ── Inventory (Product Service) ──────────────────


class FakeInventory:
    """在庫サービスの HTTP API を httpx.MockTransport で再現する。"""

    def __init__(self) -> None:
        self.products: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str, int | None]] = []
        self.down = False
        self.fail_stock_updates = False

    def add(self, product_id: str, name: str, price: str, stock: int) -> None:
        self.products[product_id] = {"name": name, "price": Decimal(price), "stock": stock}

    def stock_calls(self, method: str) -> list[tuple[str, int | None]]:
        return [(path, qty) for m, path, qty in self.calls if m == method and "/stock" in path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        raw_qty = request.url.params.get("quantity")
        quantity = int(raw_qty) if raw_qty is not None else None
        self.calls.append((request.method, path, quantity))
        if self.down:
            raise httpx.ConnectError("inventory is down", request=request)

        parts = path.strip("/").split("/")  # api / products / {id} / ...
        product = self.products.get(parts[2])
        if product is None:
            return httpx.Response(404, json={"error": "Product not found"})
        tail = parts[3:]

        if request.method == "GET" and tail == ["availability"]:
            return httpx.Response(200, json={"available": product["stock"] >= quantity})
        if request.method == "GET" and not tail:
            return httpx.Response(
                200, json={"id": parts[2], "name": product["name"], "price": str(product["price"])}
            )
        if self.fail_stock_updates:
            return httpx.Response(503, json={"error": "unavailable"})
        if request.method == "PUT" and tail == ["stock"]:
            product["stock"] -= quantity
            return httpx.Response(200, json={"stock": product["stock"]})
        if request.method == "POST" and tail == ["stock", "restore"]:
            product["stock"] += quantity
            return httpx.Response(200, json={"stock": product["stock"]})
        return httpx.Response(405)


@pytest.fixture
def fake_inventory() -> FakeInventory:
    inventory = FakeInventory()
    inventory.add("p-1", "Keyboard", "10.00", 5)
    inventory.add("p-2", "Mouse", "2.50", 10)
    return inventory


@pytest_asyncio.fixture
async def inventory(fake_inventory: FakeInventory) -> AsyncGenerator[InventoryClient, Any]:
    client = InventoryClient(
        "http://product-service", timeout=1.0, transport=httpx.MockTransport(fake_inventory)
    )
    yield client
    await client.aclose()


# ── Settlement ───────────────────────────────────


class FakeSettlementGateway(SettlementGateway):
    """結果を事前に指定できる決済ゲートウェイ"""

    def __init__(self) -> None:
        self.charge_result = SettlementResult.ok("PAY-TEST00000001")
        self.refund_result = SettlementResult.ok("PAY-TEST00000001")
        self.charges: list[ChargeRequest] = []
        self.refunds: list[RefundRequest] = []

    async def charge(self, request: ChargeRequest) -> SettlementResult:
        self.charges.append(request)
        return self.charge_result

    async def refund(self, request: RefundRequest) -> SettlementResult:
        self.refunds.append(request)
        return self.refund_result


@pytest.fixture
def settlement() -> FakeSettlementGateway:
    return FakeSettlementGateway()


# ── Notification channels ────────────────────────


class FakeChannel(ChannelAdapter):
    def __init__(self) -> None:
        self.sent: list[OutboundMessage] = []
        self.fail = False

    async def send(self, message: OutboundMessage) -> None:
        if self.fail:
            raise ChannelError("SMTP relay refused the message")
        self.sent.append(message)


@pytest.fixture
def email_channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def channels(email_channel: FakeChannel) -> ChannelRegistry:
    return ChannelRegistry({NotificationChannel.EMAIL: email_channel})
