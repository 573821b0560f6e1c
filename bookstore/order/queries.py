"""
Order Aggregate Store — クエリハンドラ (Read 側)

明細は order_id で明示的に引く。本の情報は辿らない。
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import order_lines, orders
from ..errors import OrderNotFound
from .aggregate import Order, OrderLine, OrderStatus


def _to_order(row, lines: list[OrderLine]) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        checkout_id=row.checkout_id,
        created_at=row.created_at,
        total_cents=row.total_cents,
        currency=row.currency,
        shipping_address=row.shipping_address,
        status=OrderStatus(row.status),
        version=row.version,
        status_reason=row.status_reason,
        lines=lines,
    )


async def _load_lines(
    session: AsyncSession,
    order_ids: list[UUID],
) -> dict[UUID, list[OrderLine]]:
    result = await session.execute(
        select(order_lines)
        .where(order_lines.c.order_id.in_(order_ids))
        .order_by(order_lines.c.order_id, order_lines.c.line_no)
    )
    lines: dict[UUID, list[OrderLine]] = {order_id: [] for order_id in order_ids}
    for row in result.fetchall():
        lines[row.order_id].append(
            OrderLine(
                line_no=row.line_no,
                book_id=row.book_id,
                quantity=row.quantity,
                unit_price_cents=row.unit_price_cents,
            )
        )
    return lines


async def get_order(session: AsyncSession, order_id: UUID) -> Order:
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if not row:
        raise OrderNotFound(order_id)
    lines = await _load_lines(session, [order_id])
    return _to_order(row, lines[order_id])


async def list_orders(
    session: AsyncSession,
    user_id: str | None = None,
    status: OrderStatus | None = None,
) -> list[Order]:
    """注文一覧を新しい順に返す。ユーザー・ステータスで絞り込める。"""
    query = select(orders).order_by(orders.c.created_at.desc())
    if user_id is not None:
        query = query.where(orders.c.user_id == user_id)
    if status is not None:
        query = query.where(orders.c.status == status.value)
    rows = (await session.execute(query)).fetchall()
    if not rows:
        return []
    lines = await _load_lines(session, [row.id for row in rows])
    return [_to_order(row, lines[row.id]) for row in rows]


async def list_pending_before(session: AsyncSession, cutoff) -> list[UUID]:
    """
    cutoff より前に作成されて Pending のままの注文 ID（放棄チェックアウト候補）

    キャプチャ開始済みの注文も含む。照会で確定できれば確定させ、
    放棄としては扱わない (CheckoutOrchestrator.reconcile_order)。
    """
    result = await session.execute(
        select(orders.c.id).where(
            orders.c.status == OrderStatus.PENDING.value,
            orders.c.created_at < cutoff,
        )
    )
    return [row.id for row in result.fetchall()]


async def list_failed_since(session: AsyncSession, since) -> list[UUID]:
    result = await session.execute(
        select(orders.c.id).where(
            orders.c.status == OrderStatus.FAILED.value,
            orders.c.updated_at >= since,
        )
    )
    return [row.id for row in result.fetchall()]


def order_to_dict(order: Order) -> dict:
    return {
        "id": str(order.id),
        "user_id": order.user_id,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "total_amount": str(order.total_amount),
        "currency": order.currency,
        "shipping_address": order.shipping_address,
        "status": order.status.value,
        "status_reason": order.status_reason,
        "lines": [
            {
                "book_id": line.book_id,
                "quantity": line.quantity,
                "unit_price": str(line.unit_price),
            }
            for line in order.lines
        ],
    }
