"""
Shared — メッセージトランスポート (Redis Streams)

トピック exchange を Redis Streams で表現する:

  (exchange, routing key)  → 1 本のストリーム  "<exchange>:<routing key>"
  永続キュー               → ストリーム上の consumer group  "<routing key>.queue"
  publish                  → XADD
  配信（1 インスタンスのみ） → XREADGROUP
  ack                      → XACK
  再配信                   → 一定時間 ack されない pending を XCLAIM で回収

Redis Pub/Sub と違い、コンシューマがダウンしている間のメッセージも
ストリームに残り、ack されるまで pending として再配信対象になる
（at-least-once）。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

from .envelope import exchange_for, queue_name, stream_name
from .errors import MalformedEvent

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict[str, str]], Awaitable[None]]


class EventPublisher:
    """エンベロープを exchange / routing key に発行する。"""

    def __init__(self, redis: aioredis.Redis, maxlen: int | None = 100_000) -> None:
        self.redis = redis
        self.maxlen = maxlen

    async def publish(self, routing_key: str, envelope: dict[str, str]) -> str:
        exchange = exchange_for(routing_key)
        message_id = await self.redis.xadd(
            stream_name(exchange, routing_key),
            envelope,
            maxlen=self.maxlen,
            approximate=True,
        )
        logger.info(
            "Published %s to %s (%s, message %s)",
            envelope.get("eventType"), exchange, routing_key, message_id,
        )
        return message_id

    async def publish_committed(self, routing_key: str, envelope: dict[str, str]) -> bool:
        """
        コミット済みの状態変更に対するイベントを発行する。

        状態はすでに確定しているため、ブローカー障害でリクエスト自体を
        失敗させない（再試行されると注文が二重に作成される）。
        失敗はエラーログに残し False を返す。
        """
        try:
            await self.publish(routing_key, envelope)
        except RedisError:
            logger.exception(
                "Failed to publish %s for order %s; event is lost",
                routing_key, envelope.get("orderId"),
            )
            return False
        return True


class StreamConsumer:
    """
    バインドされた各キューを購読し、ハンドラを呼び出してから ack する。

    - 成功             → XACK
    - MalformedEvent   → dead-letter ストリームへ退避して XACK
    - その他の例外      → ack しない（claim_idle_ms 経過後に再配信）
    - 配信回数が max_deliveries に達したメッセージは dead-letter へ退避

    1 件の失敗でコンシューマプロセスが落ちることはない。
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        routing_keys: Iterable[str],
        handler: Handler,
        consumer_name: str,
        *,
        batch_size: int = 10,
        block_ms: int = 1000,
        claim_idle_ms: int = 60_000,
        max_deliveries: int = 5,
        concurrency: int = 4,
    ) -> None:
        self.redis = redis
        self.routing_keys = list(routing_keys)
        self.handler = handler
        self.consumer_name = consumer_name
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.claim_idle_ms = claim_idle_ms
        self.max_deliveries = max_deliveries
        self._semaphore = asyncio.Semaphore(concurrency)

    @staticmethod
    def _stream(routing_key: str) -> str:
        return stream_name(exchange_for(routing_key), routing_key)

    async def ensure_topology(self) -> None:
        """各ストリームに永続キュー (consumer group) を作成する。既存なら何もしない。"""
        for key in self.routing_keys:
            try:
                await self.redis.xgroup_create(
                    self._stream(key), queue_name(key), id="0", mkstream=True
                )
                logger.info("Bound queue %s to %s", queue_name(key), self._stream(key))
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """キューごとに独立したループで購読する（キュー間は並行に消費）。"""
        await self.ensure_topology()
        await asyncio.gather(
            *(self._consume_loop(key, shutdown_event) for key in self.routing_keys)
        )

    async def _consume_loop(self, routing_key: str, shutdown_event: asyncio.Event) -> None:
        logger.info("Consuming %s as %s", queue_name(routing_key), self.consumer_name)
        while not shutdown_event.is_set():
            try:
                await self.consume_once(routing_key, block_ms=self.block_ms)
            except RedisError:
                logger.exception("Broker error while consuming %s", queue_name(routing_key))
                await asyncio.sleep(1.0)

    async def consume_once(self, routing_key: str, block_ms: int | None = None) -> int:
        """
        1 回分のポーリング。

        1. 放置された pending を回収して再処理
        2. 新着メッセージを読み出して処理
        処理したメッセージ数を返す。
        """
        handled = await self._reclaim(routing_key)

        stream = self._stream(routing_key)
        response = await self.redis.xreadgroup(
            queue_name(routing_key),
            self.consumer_name,
            {stream: ">"},
            count=self.batch_size,
            block=block_ms,
        )
        for _stream, messages in response or []:
            await asyncio.gather(
                *(self._handle(routing_key, mid, fields) for mid, fields in messages)
            )
            handled += len(messages)
        return handled

    async def _reclaim(self, routing_key: str) -> int:
        """ack されずに claim_idle_ms 以上放置されたメッセージを引き取る。"""
        stream = self._stream(routing_key)
        group = queue_name(routing_key)
        pending = await self.redis.xpending_range(
            stream, group, min="-", max="+",
            count=self.batch_size, idle=self.claim_idle_ms,
        )
        handled = 0
        for entry in pending:
            claimed = await self.redis.xclaim(
                stream, group, self.consumer_name,
                self.claim_idle_ms, [entry["message_id"]],
            )
            for message_id, fields in claimed:
                if not fields:
                    # ストリームから trim 済み
                    await self.redis.xack(stream, group, message_id)
                    continue
                if entry["times_delivered"] >= self.max_deliveries:
                    await self._dead_letter(
                        routing_key, message_id, fields,
                        f"Exceeded {self.max_deliveries} deliveries",
                    )
                    await self.redis.xack(stream, group, message_id)
                    continue
                logger.info("Redelivering %s on %s", message_id, group)
                await self._handle(routing_key, message_id, fields)
                handled += 1
        return handled

    async def _handle(self, routing_key: str, message_id: str, fields: dict[str, str]) -> None:
        async with self._semaphore:
            try:
                await self.handler(routing_key, fields)
            except MalformedEvent as e:
                logger.warning("Malformed event %s on %s: %s", message_id, routing_key, e)
                await self._dead_letter(routing_key, message_id, fields, str(e))
            except Exception:
                logger.exception(
                    "Failed to handle %s on %s; left pending for redelivery",
                    message_id, routing_key,
                )
                return
            await self.redis.xack(self._stream(routing_key), queue_name(routing_key), message_id)

    async def _dead_letter(
        self, routing_key: str, message_id: str, fields: dict[str, str], reason: str
    ) -> None:
        await self.redis.xadd(
            f"{queue_name(routing_key)}.dead-letter",
            {
                **fields,
                "deadLetterReason": reason,
                "originalMessageId": message_id,
                "originalStream": self._stream(routing_key),
            },
        )
        logger.error("Dead-lettered %s from %s: %s", message_id, routing_key, reason)
