"""
Notification Service — Redis Streams サブスクライバー

order.exchange / payment.exchange のすべてのキューを購読し、
受信したエンベロープを handlers.handle_event に渡す。

Pub/Sub と違い、サービスがダウンしている間のイベントはストリームに残り、
再起動後に消費される。ack はハンドラが完了した後にのみ行う。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker

from services.shared.broker import Handler, StreamConsumer
from services.shared.envelope import BINDINGS

from . import handlers
from .channels import ChannelRegistry

logger = logging.getLogger(__name__)

ROUTING_KEYS: tuple[str, ...] = tuple(key for keys in BINDINGS.values() for key in keys)


def make_handler(
    session_factory: async_sessionmaker,
    channels: ChannelRegistry,
    email_template: str = handlers.DEFAULT_EMAIL_TEMPLATE,
) -> Handler:
    """メッセージごとに新しいセッションを開いて処理するハンドラを作る。"""

    async def handle(routing_key: str, fields: dict[str, str]) -> None:
        async with session_factory() as session:
            await handlers.handle_event(session, channels, routing_key, fields, email_template)

    return handle


async def run_subscriber(
    redis_url: str,
    session_factory: async_sessionmaker,
    channels: ChannelRegistry,
    shutdown_event: asyncio.Event,
    *,
    consumer_name: str,
    email_template: str = handlers.DEFAULT_EMAIL_TEMPLATE,
    claim_idle_ms: int = 60_000,
    max_deliveries: int = 5,
    concurrency: int = 4,
) -> None:
    """shutdown_event がセットされるまで全キューを消費する。"""
    redis_conn = aioredis.from_url(redis_url, decode_responses=True)
    consumer = StreamConsumer(
        redis_conn,
        ROUTING_KEYS,
        make_handler(session_factory, channels, email_template),
        consumer_name,
        claim_idle_ms=claim_idle_ms,
        max_deliveries=max_deliveries,
        concurrency=concurrency,
    )
    logger.info("Subscribing to %s as %s", ", ".join(ROUTING_KEYS), consumer_name)
    try:
        await consumer.run(shutdown_event)
    finally:
        await redis_conn.aclose()
