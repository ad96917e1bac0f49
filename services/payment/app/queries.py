"""
Payment Service — クエリハンドラ (CQRS の Read 側)
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import payments


def _payment_dict(row) -> dict:
    return {
        "id": str(row.id),
        "order_id": str(row.order_id),
        "user_id": row.user_id,
        "amount": str(row.amount),
        "payment_method": row.payment_method,
        "status": row.status,
        "payment_reference": row.payment_reference,
        "failure_reason": row.failure_reason,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_payment(session: AsyncSession, payment_id: UUID) -> dict | None:
    row = (await session.execute(select(payments).where(payments.c.id == payment_id))).fetchone()
    return _payment_dict(row) if row else None


async def get_payment_by_order(session: AsyncSession, order_id: UUID) -> dict | None:
    row = (
        await session.execute(select(payments).where(payments.c.order_id == order_id))
    ).fetchone()
    return _payment_dict(row) if row else None


async def list_payments_by_user(session: AsyncSession, user_id: str) -> list[dict]:
    """ユーザーの支払い一覧（新しい順）"""
    result = await session.execute(
        select(payments)
        .where(payments.c.user_id == user_id)
        .order_by(payments.c.created_at.desc())
    )
    return [_payment_dict(row) for row in result.fetchall()]


async def list_payments_by_status(session: AsyncSession, status: str) -> list[dict]:
    result = await session.execute(
        select(payments)
        .where(payments.c.status == status)
        .order_by(payments.c.created_at.desc())
    )
    return [_payment_dict(row) for row in result.fetchall()]
