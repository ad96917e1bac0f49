"""
Order Service — コマンドハンドラ (CQRS の Write 側)

コマンドは状態を変更する操作で、イベントを生成してストアに保存する。
同時にリードモデル(Read Model)も更新し、1 トランザクションでコミットする。
コミット後に在庫の補償呼び出しを実行し、ブローカーへイベントを発行する。

同期ワークフローの失敗（NotFound / InvalidTransition / InventoryUnavailable /
DownstreamUnavailable）ではイベントを一切発行しない。
"""

import asyncio
import logging
from datetime import datetime, timezone
from collections.abc import Callable
from decimal import Decimal
from typing import NamedTuple
from uuid import UUID, uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared import envelope, event_store
from services.shared.broker import EventPublisher
from services.shared.errors import InvalidTransition, InventoryUnavailable, OrderNotFound

from . import compensation
from .aggregate import OrderAggregate, OrderStatus, is_forward_transition
from .events import OrderCancelled, OrderCreated, OrderItemSnapshot, OrderStatusChanged
from .inventory_client import InventoryClient
from .schema import event_store as event_store_table
from .schema import order_items, orders

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class LineItem(NamedTuple):
    product_id: str
    quantity: int


async def _price_items(
    inventory: InventoryClient,
    items: list[LineItem],
    concurrency: int,
) -> list[OrderItemSnapshot]:
    """
    明細ごとに在庫確認と正価の取得を並行実行する（同時実行数は concurrency まで）。

    最初の失敗で残りの呼び出しをキャンセルし、その例外を送出する。
    部分的な注文は作らない。
    """
    semaphore = asyncio.Semaphore(concurrency)

    async def price(item: LineItem) -> OrderItemSnapshot:
        async with semaphore:
            if not await inventory.check_availability(item.product_id, item.quantity):
                raise InventoryUnavailable(item.product_id, item.quantity)
            info = await inventory.get_product_info(item.product_id)
        unit_price = info.price.quantize(CENTS)
        return OrderItemSnapshot(
            product_id=item.product_id,
            product_name=info.name,
            unit_price=unit_price,
            quantity=item.quantity,
            subtotal=(unit_price * item.quantity).quantize(CENTS),
        )

    tasks = [asyncio.create_task(price(item)) for item in items]
    try:
        return list(await asyncio.gather(*tasks))
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def _load_for_update(session: AsyncSession, order_id: UUID) -> OrderAggregate:
    """リードモデルの行をロックし、イベントから集約を再構築する。"""
    row = (
        await session.execute(
            select(orders.c.id).where(orders.c.id == order_id).with_for_update()
        )
    ).fetchone()
    if row is None:
        raise OrderNotFound(order_id)
    events = await event_store.load_events(session, event_store_table, order_id)
    return OrderAggregate.from_events(events)


async def _execute_committed_intents(
    session: AsyncSession,
    inventory: InventoryClient,
    intent_ids: list[UUID],
    max_attempts: int,
) -> None:
    """
    コミット済みの意図を即時実行する。

    ここでの失敗は注文自体を失敗させない。意図は PENDING のまま残り、
    再試行ループが後で拾う。
    """
    try:
        await compensation.execute_intents(
            session, inventory, intent_ids=intent_ids, max_attempts=max_attempts
        )
    except Exception:
        await session.rollback()
        logger.exception("Stock intents %s left for the retrier", intent_ids)


async def create_order(
    session: AsyncSession,
    publisher: EventPublisher,
    inventory: InventoryClient,
    user_id: str,
    shipping_address: str,
    items: list[LineItem],
    billing_address: str | None = None,
    payment_method: str | None = None,
    concurrency: int = 4,
    max_intent_attempts: int = 5,
) -> OrderAggregate:
    """
    注文作成コマンド

    1. 全明細の在庫確認と正価取得（1 件でも不可なら全体を中止）
    2. OrderCreated イベントと RESERVE 意図を記録し、リードモデルを更新
    3. コミット後、在庫の引き当てをベストエフォートで実行
    4. order.created を発行
    """
    if not items:
        raise ValueError("Order must contain at least one item")
    for item in items:
        if item.quantity <= 0:
            raise ValueError(f"Quantity must be positive: {item.product_id}")

    snapshots = await _price_items(inventory, items, concurrency)
    total = sum((s.subtotal for s in snapshots), Decimal("0.00"))

    order_id = uuid4()
    now = datetime.now(timezone.utc)
    event = OrderCreated(
        order_id=order_id,
        user_id=user_id,
        items=snapshots,
        total_amount=total,
        shipping_address=shipping_address,
        billing_address=billing_address,
        payment_method=payment_method,
        timestamp=now,
    )

    # 1. イベントストアに追記
    version = await event_store.append_event(
        session, event_store_table, order_id, "Order", "OrderCreated",
        event.model_dump(mode="json"), 0,
    )

    # 2. リードモデルを更新 (CQRS: Write 側がリードモデルも更新)
    await session.execute(
        insert(orders).values(
            id=order_id,
            user_id=user_id,
            total_amount=total,
            shipping_address=shipping_address,
            billing_address=billing_address,
            payment_method=payment_method,
            status=OrderStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
    )
    await session.execute(
        insert(order_items),
        [{"order_id": order_id, **s.model_dump()} for s in snapshots],
    )

    # 3. 在庫引き当ての意図を同じトランザクションで記録
    intent_ids = await compensation.record_intents(
        session, order_id, compensation.RESERVE, snapshots
    )
    await session.commit()

    await _execute_committed_intents(session, inventory, intent_ids, max_intent_attempts)

    # 4. イベントを発行
    await publisher.publish_committed(
        envelope.ORDER_CREATED,
        envelope.order_created(order_id, user_id, total, OrderStatus.PENDING, now),
    )
    logger.info("Order created successfully with ID: %s (total=%s)", order_id, total)

    agg = OrderAggregate()
    agg.apply_order_created(event)
    agg.version = version
    return agg


async def update_status(
    session: AsyncSession,
    publisher: EventPublisher,
    order_id: UUID,
    new_status: OrderStatus,
    allowed: Callable[[OrderStatus, OrderStatus], bool] | None = None,
) -> OrderAggregate:
    """
    注文ステータス更新コマンド

    allowed を省略すると遷移の妥当性は検査せずに上書きする。
    指定した場合は行ロックを取った後の現在ステータスで判定し、
    許可されなければ InvalidTransition を送出する。
    """
    agg = await _load_for_update(session, order_id)
    old_status = agg.status
    if allowed is not None and not allowed(old_status, new_status):
        await session.rollback()
        raise InvalidTransition(old_status.value, f"change status to {new_status.value}")
    if not is_forward_transition(old_status, new_status):
        logger.warning(
            "Order %s non-forward transition %s -> %s",
            order_id, old_status.value, new_status.value,
        )

    now = datetime.now(timezone.utc)
    event = OrderStatusChanged(
        order_id=order_id,
        old_status=old_status.value,
        new_status=new_status.value,
        timestamp=now,
    )
    version = await event_store.append_event(
        session, event_store_table, order_id, "Order", "OrderStatusChanged",
        event.model_dump(mode="json"), agg.version,
    )
    await session.execute(
        update(orders)
        .where(orders.c.id == order_id)
        .values(status=new_status.value, updated_at=now)
    )
    await session.commit()

    await publisher.publish_committed(
        envelope.ORDER_STATUS_CHANGED,
        envelope.order_status_changed(order_id, agg.user_id, old_status, new_status, now),
    )
    logger.info("Order %s status changed from %s to %s", order_id, old_status.value, new_status.value)

    agg.apply_order_status_changed(event)
    agg.version = version
    return agg


async def cancel_order(
    session: AsyncSession,
    publisher: EventPublisher,
    inventory: InventoryClient,
    order_id: UUID,
    max_intent_attempts: int = 5,
) -> OrderAggregate:
    """
    注文キャンセルコマンド（補償トランザクション）

    PENDING / CONFIRMED のみキャンセル可能。
    明細ごとに在庫の戻し(RESTORE)を意図ログに記録し、コミット後に実行する。
    """
    agg = await _load_for_update(session, order_id)
    agg.ensure_cancellable()

    now = datetime.now(timezone.utc)
    event = OrderCancelled(
        order_id=order_id, previous_status=agg.status.value, timestamp=now
    )
    version = await event_store.append_event(
        session, event_store_table, order_id, "Order", "OrderCancelled",
        event.model_dump(mode="json"), agg.version,
    )
    await session.execute(
        update(orders)
        .where(orders.c.id == order_id)
        .values(status=OrderStatus.CANCELLED.value, updated_at=now)
    )
    intent_ids = await compensation.record_intents(
        session, order_id, compensation.RESTORE, agg.items
    )
    await session.commit()

    await _execute_committed_intents(session, inventory, intent_ids, max_intent_attempts)

    await publisher.publish_committed(
        envelope.ORDER_CANCELLED,
        envelope.order_cancelled(order_id, agg.user_id, agg.total_amount, now),
    )
    logger.info("Order %s cancelled successfully", order_id)

    agg.apply_order_cancelled(event)
    agg.version = version
    return agg
