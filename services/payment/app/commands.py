"""
Payment Service — コマンドハンドラ (CQRS の Write 側)

process_payment:
  1. 同一注文の支払いが既にあれば DuplicatePayment（状態を一切変更しない）
  2. PROCESSING で記録（UNIQUE 制約が同時送信の競合を防ぐ）
  3. 決済ゲートウェイを呼び出す
  4. COMPLETED / FAILED を記録してコミットし、payment.processed を発行
  2〜4 は 1 トランザクション。途中で中断した場合はロールバックされ、
  同じ注文で再度支払いできる。

refund_payment:
  COMPLETED の支払いのみ返金可能。行ロックを保持したまま返金決済を行い、
  失敗した場合はロールバックして RefundFailed（ステータスは変わらない）。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared import envelope, event_store
from services.shared.broker import EventPublisher
from services.shared.errors import DuplicatePayment, InvalidState, PaymentNotFound, RefundFailed

from .aggregate import PaymentAggregate, PaymentStatus
from .events import PaymentCompleted, PaymentFailed, PaymentInitiated, PaymentRefunded
from .gateway import (
    ChargeRequest,
    RefundRequest,
    SettlementGateway,
    SettlementResult,
    generate_payment_reference,
)
from .schema import event_store as event_store_table
from .schema import payments

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


async def _load_for_update(session: AsyncSession, payment_id: UUID) -> PaymentAggregate:
    row = (
        await session.execute(
            select(payments.c.id).where(payments.c.id == payment_id).with_for_update()
        )
    ).fetchone()
    if row is None:
        raise PaymentNotFound(payment_id)
    events = await event_store.load_events(session, event_store_table, payment_id)
    return PaymentAggregate.from_events(events)


async def _settle(call, request) -> SettlementResult:
    """ゲートウェイの想定外の例外も「失敗」として扱い、結果不明の状態を残さない。"""
    try:
        return await call(request)
    except Exception as e:
        logger.exception("Settlement call raised for payment %s", request.payment_id)
        return SettlementResult.failed(f"Settlement error: {e}")


async def process_payment(
    session: AsyncSession,
    publisher: EventPublisher,
    gateway: SettlementGateway,
    order_id: UUID,
    user_id: str,
    amount: Decimal,
    payment_method: str,
    card_details: dict | None = None,
) -> PaymentAggregate:
    """支払い処理コマンド"""
    if amount <= 0:
        raise ValueError("Amount must be positive")
    amount = amount.quantize(CENTS)

    # 1. 冪等性ガード: 状態を変更する前に確認する
    existing = await session.execute(
        select(payments.c.id).where(payments.c.order_id == order_id)
    )
    if existing.fetchone() is not None:
        raise DuplicatePayment(order_id)

    payment_id = uuid4()
    now = datetime.now(timezone.utc)
    initiated = PaymentInitiated(
        payment_id=payment_id,
        order_id=order_id,
        user_id=user_id,
        amount=amount,
        payment_method=payment_method,
        timestamp=now,
    )
    agg = PaymentAggregate()
    try:
        # 2. PROCESSING で記録（未コミット。UNIQUE 制約が同時送信を直列化する）
        try:
            await session.execute(
                insert(payments).values(
                    id=payment_id,
                    order_id=order_id,
                    user_id=user_id,
                    amount=amount,
                    payment_method=payment_method,
                    status=PaymentStatus.PROCESSING.value,
                    created_at=now,
                    updated_at=now,
                )
            )
        except IntegrityError as e:
            raise DuplicatePayment(order_id) from e
        agg.version = await event_store.append_event(
            session, event_store_table, payment_id, "Payment", "PaymentInitiated",
            initiated.model_dump(mode="json"), 0,
        )
        agg.apply_payment_initiated(initiated)

        # 3. 決済
        result = await _settle(
            gateway.charge,
            ChargeRequest(
                payment_id=payment_id,
                order_id=order_id,
                user_id=user_id,
                amount=amount,
                payment_method=payment_method,
                card_details=card_details,
            ),
        )

        # 4. 最終状態を記録してコミット
        now = datetime.now(timezone.utc)
        if result.success:
            reference = result.reference or generate_payment_reference()
            event = PaymentCompleted(
                payment_id=payment_id, payment_reference=reference, timestamp=now
            )
            event_type, apply = "PaymentCompleted", agg.apply_payment_completed
            values = {"status": PaymentStatus.COMPLETED.value, "payment_reference": reference}
        else:
            event = PaymentFailed(
                payment_id=payment_id, failure_reason=result.failure_reason, timestamp=now
            )
            event_type, apply = "PaymentFailed", agg.apply_payment_failed
            values = {"status": PaymentStatus.FAILED.value, "failure_reason": result.failure_reason}

        agg.version = await event_store.append_event(
            session, event_store_table, payment_id, "Payment", event_type,
            event.model_dump(mode="json"), agg.version,
        )
        await session.execute(
            update(payments).where(payments.c.id == payment_id).values(**values, updated_at=now)
        )
        await session.commit()
    except BaseException:
        # キャンセルやシャットダウンを含め、途中で中断したら何も残さない
        await session.rollback()
        raise
    apply(event)

    if result.success:
        logger.info("Payment processed successfully for order: %s", order_id)
    else:
        logger.warning("Payment failed for order: %s (%s)", order_id, result.failure_reason)

    await publisher.publish_committed(
        envelope.PAYMENT_PROCESSED,
        envelope.payment_processed(
            payment_id, order_id, user_id, amount,
            agg.status, agg.payment_reference, now,
        ),
    )
    return agg


async def refund_payment(
    session: AsyncSession,
    publisher: EventPublisher,
    gateway: SettlementGateway,
    payment_id: UUID,
) -> PaymentAggregate:
    """返金コマンド"""
    agg = await _load_for_update(session, payment_id)
    if agg.status != PaymentStatus.COMPLETED:
        raise InvalidState(agg.status.value, "refund payment")

    # 返金決済の間も行ロックを保持する（最長 SETTLEMENT_TIMEOUT_SECONDS）。
    # その間、同じ支払いへの返金要求は待たされる。
    result = await _settle(
        gateway.refund,
        RefundRequest(
            payment_id=payment_id,
            order_id=agg.order_id,
            amount=agg.amount,
            payment_reference=agg.payment_reference,
        ),
    )
    if not result.success:
        await session.rollback()
        logger.warning("Refund failed for payment %s: %s", payment_id, result.failure_reason)
        raise RefundFailed(f"Refund processing failed: {result.failure_reason}")

    now = datetime.now(timezone.utc)
    event = PaymentRefunded(payment_id=payment_id, timestamp=now)
    agg.version = await event_store.append_event(
        session, event_store_table, payment_id, "Payment", "PaymentRefunded",
        event.model_dump(mode="json"), agg.version,
    )
    await session.execute(
        update(payments)
        .where(payments.c.id == payment_id)
        .values(status=PaymentStatus.REFUNDED.value, updated_at=now)
    )
    await session.commit()
    agg.apply_payment_refunded(event)

    await publisher.publish_committed(
        envelope.PAYMENT_REFUNDED,
        envelope.payment_refunded(
            payment_id, agg.order_id, agg.user_id, agg.amount, agg.payment_reference, now
        ),
    )
    logger.info("Payment refunded successfully for ID: %s", payment_id)
    return agg
