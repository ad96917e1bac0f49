"""
Payment Service — FastAPI エントリーポイント

注文ごとの支払いライフサイクルを所有するサービス。
支払いは注文作成から自動では連鎖せず、クライアントの別リクエストで開始する。
結果は payment.exchange に発行され、Notification Service が購読する。

決済ゲートウェイは SETTLEMENT_MODE で切り替える:
  simulated (既定) — 遅延とランダムな成否で模擬
  http             — SETTLEMENT_URL の決済プロセッサを呼び出す
"""

import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.shared.broker import EventPublisher
from services.shared.errors import ChoreographyError, status_code_for

from . import commands, queries, schema
from .aggregate import PaymentStatus
from .gateway import HttpSettlementGateway, SettlementGateway, SimulatedSettlementGateway

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
SETTLEMENT_MODE = os.environ.get("SETTLEMENT_MODE", "simulated")
SETTLEMENT_URL = os.environ.get("SETTLEMENT_URL", "")
SETTLEMENT_TIMEOUT_SECONDS = float(os.environ.get("SETTLEMENT_TIMEOUT_SECONDS", "10"))

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
publisher: EventPublisher | None = None
gateway: SettlementGateway | None = None


def build_gateway() -> SettlementGateway:
    if SETTLEMENT_MODE == "http":
        if not SETTLEMENT_URL:
            raise RuntimeError("SETTLEMENT_URL is required when SETTLEMENT_MODE=http")
        return HttpSettlementGateway(SETTLEMENT_URL, timeout=SETTLEMENT_TIMEOUT_SECONDS)
    if SETTLEMENT_MODE == "simulated":
        return SimulatedSettlementGateway()
    raise RuntimeError(f"Unknown SETTLEMENT_MODE: {SETTLEMENT_MODE}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, publisher, gateway
    async with engine.begin() as conn:
        await conn.run_sync(schema.metadata.create_all)

    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    publisher = EventPublisher(redis_pool)
    gateway = build_gateway()
    yield
    if isinstance(gateway, HttpSettlementGateway):
        await gateway.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Payment Service", lifespan=lifespan)


@app.exception_handler(ChoreographyError)
async def choreography_error_handler(request: Request, exc: ChoreographyError):
    return JSONResponse(status_code=status_code_for(exc), content={"error": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


# ── Request Models ───────────────────────────────


class ProcessPaymentRequest(BaseModel):
    order_id: UUID
    amount: Decimal = Field(gt=0)
    payment_method: str
    card_details: dict | None = None


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/api/payments/process", status_code=201)
async def cmd_process_payment(req: ProcessPaymentRequest, x_user_id: str = Header()):
    """支払い処理コマンド（同一注文への再送は 409）"""
    async with async_session() as session:
        agg = await commands.process_payment(
            session, publisher, gateway,
            order_id=req.order_id,
            user_id=x_user_id,
            amount=req.amount,
            payment_method=req.payment_method,
            card_details=req.card_details,
        )
        return await queries.get_payment(session, agg.id)


@app.post("/api/payments/{payment_id}/refund")
async def cmd_refund_payment(payment_id: UUID):
    """返金コマンド（COMPLETED のみ）"""
    async with async_session() as session:
        agg = await commands.refund_payment(session, publisher, gateway, payment_id)
        return await queries.get_payment(session, agg.id)


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/api/payments/order/{order_id}")
async def query_payment_by_order(order_id: UUID):
    async with async_session() as session:
        payment = await queries.get_payment_by_order(session, order_id)
        if not payment:
            raise HTTPException(404, "Payment not found")
        return payment


@app.get("/api/payments/user/{user_id}")
async def query_payments_by_user(user_id: str):
    async with async_session() as session:
        return await queries.list_payments_by_user(session, user_id)


@app.get("/api/payments/status/{status}")
async def query_payments_by_status(status: PaymentStatus):
    async with async_session() as session:
        return await queries.list_payments_by_status(session, status.value)


@app.get("/api/payments/{payment_id}")
async def query_get_payment(payment_id: UUID):
    async with async_session() as session:
        payment = await queries.get_payment(session, payment_id)
        if not payment:
            raise HTTPException(404, "Payment not found")
        return payment


@app.get("/health")
async def health():
    return {"status": "ok", "service": "payment-service"}
