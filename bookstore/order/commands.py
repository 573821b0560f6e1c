"""
Order Aggregate Store — コマンドハンドラ (Write 側)

注文の作成とステータス遷移を処理する。

ステータス遷移はガード付きの compare-and-set:
  UPDATE orders SET status = :to WHERE id = :id AND status = :from
遷移元が一致しなければ何も書き換えずに StaleStateError を返す。
タイムアウト起因の解放と遅れて届いたキャプチャ結果が競合しても、
どちらか一方しか遷移できない。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

import redis.asyncio as aioredis
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import order_lines, orders
from ..errors import OrderNotFound, StaleStateError, ValidationError
from ..messaging import ORDER_CHANNEL, publish_event
from ..money import to_cents
from .aggregate import (
    ALLOWED_TRANSITIONS,
    Order,
    OrderLine,
    OrderStatus,
    check_transition,
    validate_lines,
)
from .events import OrderCreated, OrderFailed, OrderLineSnapshot, OrderPaid
from .queries import get_order

logger = logging.getLogger(__name__)


async def create_pending(
    session: AsyncSession,
    redis: aioredis.Redis,
    user_id: str,
    checkout_id: UUID,
    lines: list[OrderLine],
    total_amount: Decimal,
    shipping_address: str,
    currency: str,
) -> Order:
    """
    注文作成コマンド

    1. 明細を検証（空・数量 0 以下は ValidationError）
    2. orders と order_lines を1トランザクションで INSERT
    3. OrderCreated を発行
    """
    validate_lines(lines)
    total_cents = to_cents(total_amount)
    if total_cents != sum(line.line_total_cents for line in lines):
        raise ValidationError(
            f"Total {total_amount} does not match the sum of line totals"
        )

    now = datetime.now(timezone.utc)
    order_id = uuid4()

    await session.execute(
        insert(orders).values(
            id=order_id,
            user_id=user_id,
            checkout_id=checkout_id,
            created_at=now,
            total_cents=total_cents,
            currency=currency,
            shipping_address=shipping_address,
            status=OrderStatus.PENDING.value,
            version=1,
            updated_at=now,
        )
    )
    await session.execute(
        insert(order_lines),
        [
            {
                "order_id": order_id,
                "line_no": line.line_no,
                "book_id": line.book_id,
                "quantity": line.quantity,
                "unit_price_cents": line.unit_price_cents,
            }
            for line in lines
        ],
    )
    await session.commit()

    logger.info("Created pending order %s for user %s", order_id, user_id)
    await publish_event(
        redis,
        ORDER_CHANNEL,
        OrderCreated(
            order_id=order_id,
            user_id=user_id,
            total_cents=total_cents,
            currency=currency,
            lines=[
                OrderLineSnapshot(
                    book_id=line.book_id,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                )
                for line in lines
            ],
            timestamp=now,
        ),
    )

    return Order(
        id=order_id,
        user_id=user_id,
        checkout_id=checkout_id,
        created_at=now,
        total_cents=total_cents,
        currency=currency,
        shipping_address=shipping_address,
        status=OrderStatus.PENDING,
        version=1,
        lines=list(lines),
    )


async def _current_status(session: AsyncSession, order_id: UUID) -> str:
    current = (
        await session.execute(select(orders.c.status).where(orders.c.id == order_id))
    ).scalar_one_or_none()
    if current is None:
        raise OrderNotFound(order_id)
    return current


async def transition_status(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: UUID,
    from_status: OrderStatus,
    to_status: OrderStatus,
    reason: str | None = None,
) -> Order:
    """
    ステータス遷移コマンド（ガード付き CAS）

    現在のステータスが from_status と違えば、遷移表に無い組み合わせでも
    StaleStateError。一致していて遷移表に無ければ何も書かずに IllegalTransition。
    """
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        current = await _current_status(session, order_id)
        if current != from_status.value:
            raise StaleStateError(order_id, from_status.value, current)
        check_transition(from_status, to_status)

    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(orders)
        .where(orders.c.id == order_id, orders.c.status == from_status.value)
        .values(
            status=to_status.value,
            status_reason=reason,
            version=orders.c.version + 1,
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        await session.rollback()
        current = await _current_status(session, order_id)
        raise StaleStateError(order_id, from_status.value, current)

    await session.commit()
    logger.info(
        "Order %s transitioned %s -> %s", order_id, from_status.value, to_status.value
    )

    if to_status is OrderStatus.PAID:
        event = OrderPaid(order_id=order_id, timestamp=now)
    else:
        event = OrderFailed(order_id=order_id, reason=reason or "", timestamp=now)
    await publish_event(redis, ORDER_CHANNEL, event)

    return await get_order(session, order_id)
