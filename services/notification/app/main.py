"""
Notification Service — FastAPI エントリーポイント

注文・支払いイベントを Redis Streams で購読し、
バックグラウンドで通知を送信・記録する。
Order / Payment Service へエラーが伝播することはない（fire-and-forget）。

┌───────────────┐  order.exchange    ┌──────────────────────┐
│ Order Service │ ─────────────────▶ │                      │
└───────────────┘                    │ Notification Service │ ──▶ EMAIL / SMS / PUSH
┌─────────────────┐ payment.exchange │                      │
│ Payment Service │ ───────────────▶ │                      │
└─────────────────┘                  └──────────────────────┘
"""

import asyncio
import logging
import os
import socket
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.shared.errors import ChoreographyError, NotificationNotFound, status_code_for

from . import dispatcher, queries, schema
from .channels import (
    ChannelRegistry,
    EmailChannel,
    NotificationChannel,
    SimulatedPushChannel,
    SimulatedSmsChannel,
)
from .dispatcher import NotificationStatus
from .handlers import DEFAULT_EMAIL_TEMPLATE
from .subscriber import run_subscriber

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
SMTP_HOST = os.environ.get("SMTP_HOST", "localhost")
SMTP_PORT = int(os.environ.get("SMTP_PORT", "25"))
SMTP_FROM = os.environ.get("SMTP_FROM", "noreply@example.com")
NOTIFICATION_EMAIL_TEMPLATE = os.environ.get("NOTIFICATION_EMAIL_TEMPLATE", DEFAULT_EMAIL_TEMPLATE)
CONSUMER_NAME = os.environ.get("CONSUMER_NAME", f"notification-{socket.gethostname()}")
CONSUMER_CLAIM_IDLE_MS = int(os.environ.get("CONSUMER_CLAIM_IDLE_MS", "60000"))
CONSUMER_MAX_DELIVERIES = int(os.environ.get("CONSUMER_MAX_DELIVERIES", "5"))
CONSUMER_CONCURRENCY = int(os.environ.get("CONSUMER_CONCURRENCY", "4"))

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

channels = ChannelRegistry({
    NotificationChannel.EMAIL: EmailChannel(SMTP_HOST, SMTP_PORT, sender=SMTP_FROM),
    NotificationChannel.SMS: SimulatedSmsChannel(),
    NotificationChannel.PUSH: SimulatedPushChannel(),
})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時に Redis Streams のサブスクライバをバックグラウンドタスクとして開始する。"""
    async with engine.begin() as conn:
        await conn.run_sync(schema.metadata.create_all)

    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(
        run_subscriber(
            REDIS_URL, async_session, channels, shutdown_event,
            consumer_name=CONSUMER_NAME,
            email_template=NOTIFICATION_EMAIL_TEMPLATE,
            claim_idle_ms=CONSUMER_CLAIM_IDLE_MS,
            max_deliveries=CONSUMER_MAX_DELIVERIES,
            concurrency=CONSUMER_CONCURRENCY,
        )
    )
    yield
    shutdown_event.set()
    subscriber_task.cancel()
    try:
        await subscriber_task
    except asyncio.CancelledError:
        pass
    await engine.dispose()


app = FastAPI(title="Notification Service", lifespan=lifespan)


@app.exception_handler(ChoreographyError)
async def choreography_error_handler(request: Request, exc: ChoreographyError):
    return JSONResponse(status_code=status_code_for(exc), content={"error": str(exc)})


# ── Request Models ───────────────────────────────


class SendNotificationRequest(BaseModel):
    user_id: str
    recipient: str
    channel: NotificationChannel = NotificationChannel.EMAIL
    subject: str = Field(min_length=1)
    message: str = Field(min_length=1)
    template_data: dict | None = None


# ── Command Endpoints ────────────────────────────


@app.post("/api/notifications/send", status_code=201)
async def cmd_send_notification(req: SendNotificationRequest):
    """イベントを介さない直接送信"""
    async with async_session() as session:
        return await dispatcher.send_notification(
            session, channels,
            user_id=req.user_id,
            recipient=req.recipient,
            channel=req.channel,
            subject=req.subject,
            body=req.message,
            template_data=req.template_data,
        )


# ── Query Endpoints ──────────────────────────────


@app.get("/api/notifications/user/{user_id}/unread-count")
async def query_unread_count(user_id: str):
    async with async_session() as session:
        return {"user_id": user_id, "unread_count": await queries.count_unread(session, user_id)}


@app.get("/api/notifications/user/{user_id}")
async def query_notifications_by_user(user_id: str):
    async with async_session() as session:
        return await queries.list_notifications_by_user(session, user_id)


@app.get("/api/notifications/status/{status}")
async def query_notifications_by_status(status: NotificationStatus):
    async with async_session() as session:
        return await queries.list_notifications_by_status(session, status.value)


@app.get("/api/notifications/{notification_id}")
async def query_get_notification(notification_id: UUID):
    async with async_session() as session:
        notification = await queries.get_notification(session, notification_id)
        if not notification:
            raise NotificationNotFound(notification_id)
        return notification


@app.get("/health")
async def health():
    return {"status": "ok", "service": "notification-service"}
