"""
Order Service — FastAPI エントリーポイント

注文ライフサイクルを所有するサービス。
Command (POST/PUT/DELETE) と Query (GET) のエンドポイントを分離し、
状態変更はすべてイベントとして記録する。

  ┌────────┐   HTTP    ┌───────────────┐   HTTP   ┌──────────────────┐
  │ Client │ ────────▶ │ Order Service │ ───────▶ │ Product Service  │
  └────────┘           └──────┬────────┘          │ (在庫ゲートウェイ) │
                              │ order.exchange    └──────────────────┘
                              ▼
                        Redis Streams ──▶ Notification Service

呼び出し元の識別情報はエッジのゲートウェイが検証済みのヘッダー
(X-User-Id / X-User-Role) で渡される。ここでは再検証しない。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.shared.broker import EventPublisher
from services.shared.errors import ChoreographyError, status_code_for

from . import commands, compensation, queries, schema
from .aggregate import OrderStatus, is_forced_transition, is_forward_transition
from .inventory_client import InventoryClient

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
INVENTORY_SERVICE_URL = os.environ.get("INVENTORY_SERVICE_URL", "http://product-service:8080")
INVENTORY_TIMEOUT_SECONDS = float(os.environ.get("INVENTORY_TIMEOUT_SECONDS", "5"))
ORDER_INVENTORY_CONCURRENCY = int(os.environ.get("ORDER_INVENTORY_CONCURRENCY", "4"))
INTENT_RETRY_INTERVAL_SECONDS = float(os.environ.get("INTENT_RETRY_INTERVAL_SECONDS", "30"))
INTENT_MAX_ATTEMPTS = int(os.environ.get("INTENT_MAX_ATTEMPTS", "5"))

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
publisher: EventPublisher | None = None
inventory: InventoryClient | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にスキーマを作成し、在庫補償の再試行ループを開始する。"""
    global redis_pool, publisher, inventory
    async with engine.begin() as conn:
        await conn.run_sync(schema.metadata.create_all)

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    publisher = EventPublisher(redis_pool)
    inventory = InventoryClient(INVENTORY_SERVICE_URL, timeout=INVENTORY_TIMEOUT_SECONDS)

    shutdown_event = asyncio.Event()
    retrier_task = asyncio.create_task(
        compensation.run_intent_retrier(
            async_session, inventory, shutdown_event,
            interval=INTENT_RETRY_INTERVAL_SECONDS,
            max_attempts=INTENT_MAX_ATTEMPTS,
        )
    )
    yield
    shutdown_event.set()
    await retrier_task
    await inventory.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


@app.exception_handler(ChoreographyError)
async def choreography_error_handler(request: Request, exc: ChoreographyError):
    return JSONResponse(status_code=status_code_for(exc), content={"error": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


# ── Request Models ───────────────────────────────


class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)


class CreateOrderRequest(BaseModel):
    shipping_address: str
    billing_address: str | None = None
    payment_method: str | None = None
    items: list[OrderItemRequest] = Field(min_length=1)


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/api/orders", status_code=201)
async def cmd_create_order(req: CreateOrderRequest, x_user_id: str = Header()):
    """注文作成コマンド"""
    async with async_session() as session:
        agg = await commands.create_order(
            session, publisher, inventory,
            user_id=x_user_id,
            shipping_address=req.shipping_address,
            billing_address=req.billing_address,
            payment_method=req.payment_method,
            items=[commands.LineItem(i.product_id, i.quantity) for i in req.items],
            concurrency=ORDER_INVENTORY_CONCURRENCY,
            max_intent_attempts=INTENT_MAX_ATTEMPTS,
        )
        return await queries.get_order(session, agg.id)


@app.put("/api/orders/{order_id}/status")
async def cmd_update_status(order_id: UUID, status: OrderStatus, force: bool = False):
    """
    注文ステータス更新コマンド

    前進方向以外の遷移は force=true のときのみ許可し、終端ステータスからは戻さない。
    判定はコマンド内で行ロックを取った後に行う。
    キャンセルは在庫を戻す必要があるため DELETE /api/orders/{id} を使う。
    """
    if status == OrderStatus.CANCELLED:
        raise HTTPException(409, "Use DELETE /api/orders/{order_id} to cancel an order")
    allowed = is_forced_transition if force else is_forward_transition
    async with async_session() as session:
        agg = await commands.update_status(session, publisher, order_id, status, allowed=allowed)
        return await queries.get_order(session, agg.id)


@app.delete("/api/orders/{order_id}")
async def cmd_cancel_order(order_id: UUID):
    """注文キャンセルコマンド（補償: 在庫を戻す）"""
    async with async_session() as session:
        agg = await commands.cancel_order(
            session, publisher, inventory, order_id,
            max_intent_attempts=INTENT_MAX_ATTEMPTS,
        )
        return {"message": "Order cancelled successfully", "order_id": str(agg.id)}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/api/orders/intents")
async def query_stock_intents(status: str | None = None):
    """在庫補償の意図ログ（オペレーター向け）"""
    async with async_session() as session:
        return await queries.list_stock_intents(session, status)


@app.get("/api/orders/user/{user_id}")
async def query_orders_by_user(user_id: str):
    async with async_session() as session:
        return await queries.list_orders_by_user(session, user_id)


@app.get("/api/orders/status/{status}")
async def query_orders_by_status(status: OrderStatus):
    async with async_session() as session:
        return await queries.list_orders_by_status(session, status.value)


@app.get("/api/orders/{order_id}")
async def query_get_order(order_id: UUID):
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
