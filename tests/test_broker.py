"""
Tests for the Redis Streams publisher and consumer.
"""
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import FakeStreamRedis, published
from services.shared import envelope
from services.shared.broker import EventPublisher, StreamConsumer
from services.shared.errors import MalformedEvent

STREAM = "order.exchange:order.created"
QUEUE = "order.created.queue"
DEAD_LETTER = "order.created.queue.dead-letter"


def _order_created() -> dict[str, str]:
    return envelope.order_created(
        uuid4(), "42", Decimal("27.50"), "PENDING", datetime.now(timezone.utc)
    )


class RecordingHandler:
    def __init__(self, failures: list[Exception] | None = None) -> None:
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.failures = list(failures or [])

    async def __call__(self, routing_key: str, fields: dict[str, str]) -> None:
        self.calls.append((routing_key, fields))
        if self.failures:
            raise self.failures.pop(0)


def _consumer(redis: FakeStreamRedis, handler, **kwargs) -> StreamConsumer:
    kwargs.setdefault("claim_idle_ms", 1000)
    kwargs.setdefault("max_deliveries", 3)
    return StreamConsumer(redis, [envelope.ORDER_CREATED], handler, "notification-1", **kwargs)


class TestEventPublisher:
    async def test_publish_appends_to_the_bound_stream(
        self, fake_redis: FakeStreamRedis, publisher: EventPublisher
    ) -> None:
        fields = _order_created()
        await publisher.publish(envelope.ORDER_CREATED, fields)

        assert published(fake_redis, envelope.ORDER_CREATED) == [fields]

    async def test_publish_to_unknown_key_is_a_programming_error(
        self, publisher: EventPublisher
    ) -> None:
        with pytest.raises(ValueError):
            await publisher.publish("order.unknown", {"eventType": "X"})

    async def test_publish_committed_survives_broker_outage(
        self, fake_redis: FakeStreamRedis, publisher: EventPublisher
    ) -> None:
        fake_redis.fail_xadd = True
        assert await publisher.publish_committed(envelope.ORDER_CREATED, _order_created()) is False


class TestStreamConsumer:
    async def test_ensure_topology_is_idempotent(self, fake_redis: FakeStreamRedis) -> None:
        consumer = _consumer(fake_redis, RecordingHandler())
        await consumer.ensure_topology()
        await consumer.ensure_topology()

        assert (STREAM, QUEUE) in fake_redis.groups

    async def test_successful_message_is_acknowledged(
        self, fake_redis: FakeStreamRedis, publisher: EventPublisher
    ) -> None:
        handler = RecordingHandler()
        consumer = _consumer(fake_redis, handler)
        await consumer.ensure_topology()
        fields = _order_created()
        await publisher.publish(envelope.ORDER_CREATED, fields)

        assert await consumer.consume_once(envelope.ORDER_CREATED) == 1
        assert handler.calls == [(envelope.ORDER_CREATED, fields)]
        assert fake_redis.pending_ids(STREAM, QUEUE) == []

    async def test_malformed_event_is_dead_lettered_and_acknowledged(
        self, fake_redis: FakeStreamRedis, publisher: EventPublisher
    ) -> None:
        consumer = _consumer(fake_redis, RecordingHandler([MalformedEvent("Missing field: orderId")]))
        await consumer.ensure_topology()
        await publisher.publish(envelope.ORDER_CREATED, {"eventType": "ORDER_CREATED"})

        await consumer.consume_once(envelope.ORDER_CREATED)

        assert fake_redis.pending_ids(STREAM, QUEUE) == []
        [dead] = fake_redis.entries(DEAD_LETTER)
        assert dead["deadLetterReason"] == "Missing field: orderId"
        assert dead["originalStream"] == STREAM
        assert dead["eventType"] == "ORDER_CREATED"

    async def test_failed_message_stays_pending_and_is_redelivered(
        self, fake_redis: FakeStreamRedis, publisher: EventPublisher
    ) -> None:
        handler = RecordingHandler([RuntimeError("database is locked")])
        consumer = _consumer(fake_redis, handler)
        await consumer.ensure_topology()
        fields = _order_created()
        await publisher.publish(envelope.ORDER_CREATED, fields)

        await consumer.consume_once(envelope.ORDER_CREATED)
        assert len(fake_redis.pending_ids(STREAM, QUEUE)) == 1

        # まだアイドル時間に達していない
        await consumer.consume_once(envelope.ORDER_CREATED)
        assert len(handler.calls) == 1

        fake_redis.advance(1000)
        await consumer.consume_once(envelope.ORDER_CREATED)

        assert [f for _, f in handler.calls] == [fields, fields]
        assert fake_redis.pending_ids(STREAM, QUEUE) == []
        assert fake_redis.entries(DEAD_LETTER) == []

    async def test_message_is_dead_lettered_after_max_deliveries(
        self, fake_redis: FakeStreamRedis, publisher: EventPublisher
    ) -> None:
        handler = RecordingHandler([RuntimeError("boom")] * 10)
        consumer = _consumer(fake_redis, handler, max_deliveries=3)
        await consumer.ensure_topology()
        await publisher.publish(envelope.ORDER_CREATED, _order_created())

        await consumer.consume_once(envelope.ORDER_CREATED)
        for _ in range(3):
            fake_redis.advance(1000)
            await consumer.consume_once(envelope.ORDER_CREATED)

        assert len(handler.calls) == 3
        assert fake_redis.pending_ids(STREAM, QUEUE) == []
        [dead] = fake_redis.entries(DEAD_LETTER)
        assert dead["deadLetterReason"] == "Exceeded 3 deliveries"

    async def test_one_bad_message_does_not_block_the_batch(
        self, fake_redis: FakeStreamRedis, publisher: EventPublisher
    ) -> None:
        handler = RecordingHandler([RuntimeError("first fails")])
        consumer = _consumer(fake_redis, handler, concurrency=1)
        await consumer.ensure_topology()
        for _ in range(3):
            await publisher.publish(envelope.ORDER_CREATED, _order_created())

        assert await consumer.consume_once(envelope.ORDER_CREATED) == 3
        assert len(handler.calls) == 3
        assert len(fake_redis.pending_ids(STREAM, QUEUE)) == 1
