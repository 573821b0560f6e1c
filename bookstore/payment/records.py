"""
Payment Record — 支払い記録の永続化

1注文につき1レコード（payments.order_id は UNIQUE）。
キャプチャを呼ぶ前に capture_started_at を記録する。記録済みの支払いは
ゲートウェイが Captured / Failed を返すまで放棄として失敗させない。
Captured / Failed になったレコードは二度と書き換えない。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

import redis.asyncio as aioredis
from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import payments
from ..messaging import PAYMENT_CHANNEL, publish_event
from ..money import from_cents, to_cents
from .events import PaymentIntentCreated, PaymentStatusChanged
from .gateway import PaymentRecord, PaymentStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredPayment:
    id: str
    order_id: UUID
    amount_cents: int
    currency: str
    status: PaymentStatus
    token: str
    idempotency_key: str
    approval_url: str | None
    needs_reconcile: bool
    capture_started_at: datetime | None = None

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)

    @property
    def capture_key(self) -> str:
        """キャプチャ用の冪等キー。リトライや照合の後でも同じ値になる。"""
        return f"{self.idempotency_key}:capture"


def _to_stored(row) -> StoredPayment:
    return StoredPayment(
        id=row.id,
        order_id=row.order_id,
        amount_cents=row.amount_cents,
        currency=row.currency,
        status=PaymentStatus(row.status),
        token=row.token,
        idempotency_key=row.idempotency_key,
        approval_url=row.approval_url,
        needs_reconcile=row.needs_reconcile,
        capture_started_at=row.capture_started_at,
    )


async def create_payment(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: UUID,
    record: PaymentRecord,
    amount: Decimal,
    currency: str,
    idempotency_key: str,
) -> StoredPayment:
    now = datetime.now(timezone.utc)
    await session.execute(
        insert(payments).values(
            id=record.id,
            order_id=order_id,
            amount_cents=to_cents(amount),
            currency=currency,
            status=record.status.value,
            token=record.token,
            idempotency_key=idempotency_key,
            approval_url=record.approval_url,
            needs_reconcile=False,
            created_at=now,
            updated_at=now,
        )
    )
    await session.commit()
    await publish_event(
        redis,
        PAYMENT_CHANNEL,
        PaymentIntentCreated(
            payment_id=record.id,
            order_id=order_id,
            amount_cents=to_cents(amount),
            currency=currency,
            timestamp=now,
        ),
    )
    return await get_for_order(session, order_id)


async def get_for_order(session: AsyncSession, order_id: UUID) -> StoredPayment | None:
    result = await session.execute(
        select(payments).where(payments.c.order_id == order_id)
    )
    row = result.fetchone()
    return _to_stored(row) if row else None


async def apply_gateway_result(
    session: AsyncSession,
    redis: aioredis.Redis,
    payment: StoredPayment,
    record: PaymentRecord,
    *,
    unless_capture_started: bool = False,
) -> bool:
    """
    ゲートウェイの結果を記録する。

    Created のレコードだけを更新する（確定済みは不変）。更新した場合は True。
    unless_capture_started=True ならキャプチャ開始済みのレコードも更新しない
    （放棄チェックアウトの失敗処理が実行中のキャプチャを追い越さないように）。
    """
    if not record.status.is_final:
        return False

    now = datetime.now(timezone.utc)
    conditions = [
        payments.c.id == payment.id,
        payments.c.status == PaymentStatus.CREATED.value,
    ]
    if unless_capture_started:
        conditions.append(payments.c.capture_started_at.is_(None))
    result = await session.execute(
        update(payments)
        .where(*conditions)
        .values(status=record.status.value, needs_reconcile=False, updated_at=now)
    )
    if result.rowcount != 1:
        await session.rollback()
        logger.info("Payment %s not updated to %s", payment.id, record.status.value)
        return False
    await session.commit()

    await publish_event(
        redis,
        PAYMENT_CHANNEL,
        PaymentStatusChanged(
            payment_id=payment.id,
            order_id=payment.order_id,
            status=record.status.value,
            timestamp=now,
        ),
    )
    return True


async def mark_capture_started(session: AsyncSession, payment: StoredPayment) -> bool:
    """
    キャプチャ開始を記録する。支払いが既に確定していれば False。

    この更新と放棄時の失敗処理はどちらも status = Created を条件にするので、
    先に確定した方だけが効く。
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(payments)
        .where(
            payments.c.id == payment.id,
            payments.c.status == PaymentStatus.CREATED.value,
        )
        .values(
            capture_started_at=func.coalesce(payments.c.capture_started_at, now),
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        return False
    await session.commit()
    return True


async def mark_needs_reconcile(session: AsyncSession, payment: StoredPayment) -> None:
    await session.execute(
        update(payments)
        .where(
            payments.c.id == payment.id,
            payments.c.status == PaymentStatus.CREATED.value,
        )
        .values(needs_reconcile=True, updated_at=datetime.now(timezone.utc))
    )
    await session.commit()


async def list_needing_reconcile(session: AsyncSession) -> list[UUID]:
    result = await session.execute(
        select(payments.c.order_id).where(payments.c.needs_reconcile.is_(True))
    )
    return [row.order_id for row in result.fetchall()]
