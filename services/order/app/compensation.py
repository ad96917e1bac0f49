"""
Order Service — 在庫補償の意図ログ (Stock Intent Log)

在庫の引き当て(RESERVE)と戻し(RESTORE)は注文の状態変更とアトミックではない。
そこで「実行すべき呼び出し」を注文と同じトランザクションで stock_intents に
記録し、コミット後に実行する。

  PENDING ──成功──▶ DONE
     │
     └─失敗─▶ PENDING (attempts + 1) ──max_attempts 到達──▶ FAILED

失敗しても注文の作成・キャンセル自体は失敗させない（非致命的）。
失敗は警告ログに残し、バックグラウンドの再試行ループが拾う。
FAILED になった意図はオペレーターが在庫のずれを照合する対象となる。
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.shared.errors import DownstreamUnavailable

from .events import OrderItemSnapshot
from .inventory_client import InventoryClient
from .schema import stock_intents

logger = logging.getLogger(__name__)

RESERVE = "RESERVE"
RESTORE = "RESTORE"

PENDING = "PENDING"
DONE = "DONE"
FAILED = "FAILED"


async def record_intents(
    session: AsyncSession,
    order_id: UUID,
    action: str,
    items: list[OrderItemSnapshot],
) -> list[UUID]:
    """明細ごとに意図を記録する。コミットは呼び出し側のトランザクションで行う。"""
    now = datetime.now(timezone.utc)
    ids = [uuid4() for _ in items]
    if items:
        await session.execute(
            insert(stock_intents),
            [
                {
                    "id": intent_id,
                    "order_id": order_id,
                    "product_id": item.product_id,
                    "quantity": item.quantity,
                    "action": action,
                    "status": PENDING,
                    "attempts": 0,
                    "created_at": now,
                    "updated_at": now,
                }
                for intent_id, item in zip(ids, items)
            ],
        )
    return ids


async def execute_intents(
    session: AsyncSession,
    inventory: InventoryClient,
    *,
    intent_ids: list[UUID] | None = None,
    idle_for: timedelta | None = None,
    max_attempts: int = 5,
    limit: int = 100,
) -> int:
    """
    PENDING の意図を実行する。

    intent_ids を指定するとコミット直後の即時実行、
    idle_for を指定すると一定時間放置された意図の再試行になる。
    行ロック (SKIP LOCKED) で即時実行と再試行ループの二重実行を防ぐ。
    完了した件数を返す。
    """
    stmt = select(stock_intents).where(stock_intents.c.status == PENDING)
    if intent_ids is not None:
        if not intent_ids:
            return 0
        stmt = stmt.where(stock_intents.c.id.in_(intent_ids))
    if idle_for is not None:
        cutoff = datetime.now(timezone.utc) - idle_for
        stmt = stmt.where(stock_intents.c.updated_at <= cutoff)
    stmt = (
        stmt.order_by(stock_intents.c.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )

    rows = (await session.execute(stmt)).fetchall()
    done = 0
    for row in rows:
        call = inventory.reserve_stock if row.action == RESERVE else inventory.restore_stock
        now = datetime.now(timezone.utc)
        try:
            await call(row.product_id, row.quantity)
        except DownstreamUnavailable as e:
            attempts = row.attempts + 1
            status = FAILED if attempts >= max_attempts else PENDING
            await session.execute(
                update(stock_intents)
                .where(stock_intents.c.id == row.id)
                .values(attempts=attempts, status=status, last_error=str(e), updated_at=now)
            )
            if status == FAILED:
                logger.error(
                    "Stock %s gave up after %d attempts: order=%s product=%s quantity=%d; "
                    "inventory needs reconciliation",
                    row.action, attempts, row.order_id, row.product_id, row.quantity,
                )
            else:
                logger.warning(
                    "Stock %s failed (attempt %d): order=%s product=%s quantity=%d: %s",
                    row.action, attempts, row.order_id, row.product_id, row.quantity, e,
                )
            continue

        await session.execute(
            update(stock_intents)
            .where(stock_intents.c.id == row.id)
            .values(attempts=row.attempts + 1, status=DONE, last_error=None, updated_at=now)
        )
        done += 1

    await session.commit()
    return done


async def run_intent_retrier(
    session_factory: async_sessionmaker,
    inventory: InventoryClient,
    shutdown_event: asyncio.Event,
    interval: float = 30.0,
    max_attempts: int = 5,
) -> None:
    """shutdown_event がセットされるまで、放置された意図を定期的に再試行する。"""
    idle_for = timedelta(seconds=interval)
    logger.info("Stock intent retrier started (interval=%ss)", interval)
    while not shutdown_event.is_set():
        try:
            async with session_factory() as session:
                done = await execute_intents(
                    session, inventory, idle_for=idle_for, max_attempts=max_attempts
                )
            if done:
                logger.info("Retried %d stock intents", done)
        except Exception:
            logger.exception("Stock intent retry pass failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
