"""
Stock Ledger — コマンドハンドラ (Write 側)

在庫の引き当て(Reserve)・解放(Release)・確定(Commit)を処理する。

  Reserve  books.version を使った CAS で available_quantity を減らす。
           競合に負けたらロールバックして読み直す（長時間ロックは取らない）
  Release  stock_movements の (reservation_id, 'release') 主キーで冪等にする。
           同じ引き当てを2回解放しても1回分しか戻さない
  Commit   数量は Reserve 時点で減っているので変更しない。台帳に記録するだけ

InsufficientStock はリトライしない（リトライしても在庫は増えない）。
"""

import asyncio
import logging
import random
from datetime import datetime, timezone
from uuid import UUID

import redis.asyncio as aioredis
from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import books, stock_movements
from ..errors import (
    BookNotFound,
    InsufficientStock,
    StockContention,
    ValidationError,
)
from ..messaging import INVENTORY_CHANNEL, publish_event
from .events import StockCommitted, StockReleased, StockReservationFailed, StockReserved

logger = logging.getLogger(__name__)

RESERVE = "reserve"
RELEASE = "release"
COMMIT = "commit"

DEFAULT_MAX_ATTEMPTS = 20


def reservation_id_for(checkout_id: UUID, line_no: int) -> str:
    """チェックアウト試行と明細番号から引き当て ID を決める。"""
    return f"{checkout_id}:{line_no}"


def _contention_delay(attempt: int) -> float:
    # 数ミリ秒のジッター付き。同じ本を取り合うワーカー同士の再衝突を避ける
    return min(0.05, 0.002 * (2**attempt)) * random.uniform(0.5, 1.5)  # nosec B311


async def _movement_kinds(session: AsyncSession, reservation_id: str) -> dict:
    result = await session.execute(
        select(
            stock_movements.c.kind,
            stock_movements.c.book_id,
            stock_movements.c.quantity,
        ).where(stock_movements.c.reservation_id == reservation_id)
    )
    return {row.kind: row for row in result.fetchall()}


async def reserve_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    book_id: int,
    quantity: int,
    reservation_id: str,
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> None:
    """
    在庫引き当てコマンド

    1. 現在の available_quantity と version を読む
    2. 足りなければ InsufficientStock
    3. version が変わっていなければ減算 + reserve 行を記録
       変わっていれば（他のワーカーが先に更新した）読み直す
    """
    if quantity <= 0:
        raise ValidationError(f"Reservation quantity must be positive: {quantity}")

    for attempt in range(max_attempts):
        now = datetime.now(timezone.utc)

        if RESERVE in await _movement_kinds(session, reservation_id):
            await session.rollback()
            logger.info("Reservation %s already applied", reservation_id)
            return

        row = (
            await session.execute(
                select(books.c.available_quantity, books.c.version).where(
                    books.c.id == book_id
                )
            )
        ).one_or_none()
        if row is None:
            await session.rollback()
            raise BookNotFound(book_id)

        if row.available_quantity < quantity:
            await session.rollback()
            await publish_event(
                redis,
                INVENTORY_CHANNEL,
                StockReservationFailed(
                    book_id=book_id,
                    reservation_id=reservation_id,
                    quantity_requested=quantity,
                    quantity_available=row.available_quantity,
                    timestamp=now,
                ),
            )
            raise InsufficientStock(book_id, quantity, row.available_quantity)

        result = await session.execute(
            update(books)
            .where(books.c.id == book_id, books.c.version == row.version)
            .values(
                available_quantity=books.c.available_quantity - quantity,
                version=books.c.version + 1,
                updated_at=now,
            )
        )
        if result.rowcount != 1:
            await session.rollback()
            logger.debug(
                "Reserve of book %s lost race at version %s (attempt %d)",
                book_id,
                row.version,
                attempt + 1,
            )
            await asyncio.sleep(_contention_delay(attempt))
            continue

        try:
            await session.execute(
                insert(stock_movements).values(
                    reservation_id=reservation_id,
                    kind=RESERVE,
                    book_id=book_id,
                    quantity=quantity,
                    created_at=now,
                )
            )
            await session.commit()
        except IntegrityError:
            # 同じ引き当て ID が並行して記録された。減算ごと取り消す
            await session.rollback()
            logger.info("Reservation %s already applied", reservation_id)
            return

        logger.info(
            "Reserved %d of book %s (%s)", quantity, book_id, reservation_id
        )
        await publish_event(
            redis,
            INVENTORY_CHANNEL,
            StockReserved(
                book_id=book_id,
                reservation_id=reservation_id,
                quantity=quantity,
                available_after=row.available_quantity - quantity,
                timestamp=now,
            ),
        )
        return

    raise StockContention(book_id, max_attempts)


async def release_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    book_id: int,
    quantity: int,
    reservation_id: str,
) -> bool:
    """
    在庫解放コマンド（Saga の補償トランザクション）

    戻した場合は True。既に解放済み・確定済み・引き当てが無い場合は
    何もせず False を返す。
    """
    kinds = await _movement_kinds(session, reservation_id)
    reserved = kinds.get(RESERVE)
    if reserved is None or RELEASE in kinds or COMMIT in kinds:
        await session.rollback()
        if reserved is None:
            logger.warning("Release of unknown reservation %s ignored", reservation_id)
        elif COMMIT in kinds:
            logger.warning("Release of committed reservation %s ignored", reservation_id)
        return False

    if reserved.book_id != book_id or reserved.quantity != quantity:
        await session.rollback()
        raise ValidationError(
            f"Reservation {reservation_id} holds {reserved.quantity} of book "
            f"{reserved.book_id}, not {quantity} of book {book_id}"
        )

    now = datetime.now(timezone.utc)
    try:
        await session.execute(
            insert(stock_movements).values(
                reservation_id=reservation_id,
                kind=RELEASE,
                book_id=book_id,
                quantity=quantity,
                created_at=now,
            )
        )
    except IntegrityError:
        await session.rollback()
        logger.info("Reservation %s already released", reservation_id)
        return False

    await session.execute(
        update(books)
        .where(books.c.id == book_id)
        .values(
            available_quantity=books.c.available_quantity + quantity,
            version=books.c.version + 1,
            updated_at=now,
        )
    )
    await session.commit()

    logger.info("Released %d of book %s (%s)", quantity, book_id, reservation_id)
    await publish_event(
        redis,
        INVENTORY_CHANNEL,
        StockReleased(
            book_id=book_id,
            reservation_id=reservation_id,
            quantity=quantity,
            timestamp=now,
        ),
    )
    return True


async def commit_stock(
    session: AsyncSession,
    redis: aioredis.Redis,
    book_id: int,
    quantity: int,
    reservation_id: str,
) -> bool:
    """
    在庫確定コマンド

    数量は変更しない。commit 行を台帳に残して監査ログを出すだけ。
    """
    kinds = await _movement_kinds(session, reservation_id)
    if RELEASE in kinds:
        await session.rollback()
        logger.error(
            "Commit of released reservation %s (book %s) ignored",
            reservation_id,
            book_id,
        )
        return False

    now = datetime.now(timezone.utc)
    try:
        await session.execute(
            insert(stock_movements).values(
                reservation_id=reservation_id,
                kind=COMMIT,
                book_id=book_id,
                quantity=quantity,
                created_at=now,
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return False

    logger.info("Committed %d of book %s (%s)", quantity, book_id, reservation_id)
    await publish_event(
        redis,
        INVENTORY_CHANNEL,
        StockCommitted(
            book_id=book_id,
            reservation_id=reservation_id,
            quantity=quantity,
            timestamp=now,
        ),
    )
    return True
