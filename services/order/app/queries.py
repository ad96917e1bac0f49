"""
Order Service — クエリハンドラ (CQRS の Read 側)

読み取りはイベントストアではなくリードモデルから行う。
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import order_items, orders, stock_intents


def _iso(value) -> str | None:
    return value.isoformat() if value else None


async def _items_by_order(session: AsyncSession, order_ids: list[UUID]) -> dict[UUID, list[dict]]:
    if not order_ids:
        return {}
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_(order_ids))
        .order_by(order_items.c.id)
    )
    grouped: dict[UUID, list[dict]] = {oid: [] for oid in order_ids}
    for row in result.fetchall():
        grouped[row.order_id].append(
            {
                "product_id": row.product_id,
                "product_name": row.product_name,
                "unit_price": str(row.unit_price),
                "quantity": row.quantity,
                "subtotal": str(row.subtotal),
            }
        )
    return grouped


def _order_dict(row, items: list[dict]) -> dict:
    return {
        "id": str(row.id),
        "user_id": row.user_id,
        "items": items,
        "total_amount": str(row.total_amount),
        "shipping_address": row.shipping_address,
        "billing_address": row.billing_address,
        "payment_method": row.payment_method,
        "status": row.status,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


async def _orders(session: AsyncSession, stmt) -> list[dict]:
    rows = (await session.execute(stmt)).fetchall()
    items = await _items_by_order(session, [row.id for row in rows])
    return [_order_dict(row, items[row.id]) for row in rows]


async def get_order(session: AsyncSession, order_id: UUID) -> dict | None:
    """リードモデルから注文を取得する。"""
    found = await _orders(session, select(orders).where(orders.c.id == order_id))
    return found[0] if found else None


async def list_orders_by_user(session: AsyncSession, user_id: str) -> list[dict]:
    """ユーザーの注文一覧（新しい順）"""
    return await _orders(
        session,
        select(orders)
        .where(orders.c.user_id == user_id)
        .order_by(orders.c.created_at.desc()),
    )


async def list_orders_by_status(session: AsyncSession, status: str) -> list[dict]:
    return await _orders(
        session,
        select(orders)
        .where(orders.c.status == status)
        .order_by(orders.c.created_at.desc()),
    )


async def list_stock_intents(session: AsyncSession, status: str | None = None) -> list[dict]:
    """在庫補償の意図一覧（在庫のずれを照合するオペレーター向け）"""
    stmt = select(stock_intents).order_by(stock_intents.c.created_at.desc())
    if status:
        stmt = stmt.where(stock_intents.c.status == status)
    result = await session.execute(stmt)
    return [
        {
            "id": str(row.id),
            "order_id": str(row.order_id),
            "product_id": row.product_id,
            "quantity": row.quantity,
            "action": row.action,
            "status": row.status,
            "attempts": row.attempts,
            "last_error": row.last_error,
            "created_at": _iso(row.created_at),
            "updated_at": _iso(row.updated_at),
        }
        for row in result.fetchall()
    ]
