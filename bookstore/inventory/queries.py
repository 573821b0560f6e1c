"""
Stock Ledger — クエリハンドラ (Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import books, stock_movements


async def get_stock(session: AsyncSession, book_id: int) -> dict | None:
    result = await session.execute(select(books).where(books.c.id == book_id))
    row = result.fetchone()
    if not row:
        return None
    return {
        "id": row.id,
        "title": row.title,
        "price_cents": row.price_cents,
        "available_quantity": row.available_quantity,
        "version": row.version,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_prices(session: AsyncSession, book_ids: list[int]) -> dict[int, int]:
    """カタログ価格（セント）を返す。注文明細のスナップショットに使う。"""
    result = await session.execute(
        select(books.c.id, books.c.price_cents).where(books.c.id.in_(book_ids))
    )
    return {row.id: row.price_cents for row in result.fetchall()}


async def list_movements(session: AsyncSession, book_id: int) -> list[dict]:
    """指定した本の台帳を時系列順に返す（監査用）。"""
    result = await session.execute(
        select(stock_movements)
        .where(stock_movements.c.book_id == book_id)
        .order_by(stock_movements.c.created_at, stock_movements.c.reservation_id)
    )
    return [
        {
            "reservation_id": row.reservation_id,
            "kind": row.kind,
            "book_id": row.book_id,
            "quantity": row.quantity,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]


async def movement_kinds(
    session: AsyncSession,
    reservation_ids: list[str],
) -> dict[str, set[str]]:
    """引き当て ID ごとに記録済みの種別 (reserve/release/commit) を返す。"""
    result = await session.execute(
        select(stock_movements.c.reservation_id, stock_movements.c.kind).where(
            stock_movements.c.reservation_id.in_(reservation_ids)
        )
    )
    kinds: dict[str, set[str]] = {rid: set() for rid in reservation_ids}
    for row in result.fetchall():
        kinds[row.reservation_id].add(row.kind)
    return kinds
