"""Tests for the order aggregate store and its state machine."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update

from bookstore.db import books
from bookstore.errors import (
    IllegalTransition,
    OrderNotFound,
    StaleStateError,
    ValidationError,
)
from bookstore.order import commands as order_store
from bookstore.order.aggregate import OrderLine, OrderStatus, check_transition
from bookstore.order.queries import get_order, list_orders

LINES = [
    OrderLine(line_no=1, book_id=5, quantity=2, unit_price_cents=1250),
    OrderLine(line_no=2, book_id=7, quantity=1, unit_price_cents=500),
]


async def _create(session_factory, redis, user_id="user-1", lines=LINES, total="30.00"):
    async with session_factory() as session:
        return await order_store.create_pending(
            session,
            redis,
            user_id,
            uuid4(),
            lines,
            Decimal(total),
            "1 Main St",
            "USD",
        )


class TestTransitionTable:
    def test_pending_may_become_paid_or_failed(self):
        check_transition(OrderStatus.PENDING, OrderStatus.PAID)
        check_transition(OrderStatus.PENDING, OrderStatus.FAILED)

    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            (OrderStatus.PAID, OrderStatus.FAILED),
            (OrderStatus.FAILED, OrderStatus.PAID),
            (OrderStatus.PAID, OrderStatus.PENDING),
            (OrderStatus.PENDING, OrderStatus.PENDING),
        ],
    )
    def test_illegal_transitions(self, from_status, to_status):
        with pytest.raises(IllegalTransition):
            check_transition(from_status, to_status)

    def test_terminal_statuses(self):
        assert not OrderStatus.PENDING.is_terminal
        assert OrderStatus.PAID.is_terminal
        assert OrderStatus.FAILED.is_terminal


class TestCreatePending:
    async def test_creates_pending_order_with_lines(self, session_factory, redis):
        order = await _create(session_factory, redis)

        async with session_factory() as session:
            stored = await get_order(session, order.id)
        assert stored.status is OrderStatus.PENDING
        assert stored.total_amount == Decimal("30.00")
        assert [(line.book_id, line.quantity) for line in stored.lines] == [(5, 2), (7, 1)]

    async def test_empty_lines_rejected(self, session_factory, redis):
        with pytest.raises(ValidationError):
            await _create(session_factory, redis, lines=[], total="0")

    async def test_non_positive_quantity_rejected(self, session_factory, redis):
        bad = [OrderLine(line_no=1, book_id=5, quantity=0, unit_price_cents=1250)]
        with pytest.raises(ValidationError):
            await _create(session_factory, redis, lines=bad, total="0")

    async def test_total_must_match_lines(self, session_factory, redis):
        with pytest.raises(ValidationError):
            await _create(session_factory, redis, total="29.99")

    async def test_total_is_a_snapshot(self, session_factory, redis):
        order = await _create(session_factory, redis)
        async with session_factory() as session:
            await session.execute(update(books).values(price_cents=99999))
            await session.commit()

        async with session_factory() as session:
            stored = await get_order(session, order.id)
        assert stored.total_amount == Decimal("30.00")
        assert stored.lines[0].unit_price == Decimal("12.50")


class TestTransitionStatus:
    async def test_pending_to_paid(self, session_factory, redis):
        order = await _create(session_factory, redis)

        async with session_factory() as session:
            updated = await order_store.transition_status(
                session, redis, order.id, OrderStatus.PENDING, OrderStatus.PAID
            )
        assert updated.status is OrderStatus.PAID
        assert updated.version == 2

    async def test_stale_from_status_fails_and_keeps_status(
        self, session_factory, redis
    ):
        order = await _create(session_factory, redis)
        async with session_factory() as session:
            await order_store.transition_status(
                session, redis, order.id, OrderStatus.PENDING, OrderStatus.FAILED, "declined"
            )

        with pytest.raises(StaleStateError) as exc_info:
            async with session_factory() as session:
                await order_store.transition_status(
                    session, redis, order.id, OrderStatus.PENDING, OrderStatus.PAID
                )

        assert exc_info.value.actual == "Failed"
        async with session_factory() as session:
            stored = await get_order(session, order.id)
        assert stored.status is OrderStatus.FAILED
        assert stored.status_reason == "declined"

    async def test_wrong_from_status_is_stale_even_for_illegal_pair(
        self, session_factory, redis
    ):
        order = await _create(session_factory, redis)

        with pytest.raises(StaleStateError) as exc_info:
            async with session_factory() as session:
                await order_store.transition_status(
                    session, redis, order.id, OrderStatus.PAID, OrderStatus.FAILED
                )

        assert exc_info.value.actual == "Pending"
        async with session_factory() as session:
            assert (await get_order(session, order.id)).status is OrderStatus.PENDING

    async def test_illegal_transition_never_touches_store(self, session_factory, redis):
        order = await _create(session_factory, redis)
        async with session_factory() as session:
            await order_store.transition_status(
                session, redis, order.id, OrderStatus.PENDING, OrderStatus.PAID
            )

        with pytest.raises(IllegalTransition):
            async with session_factory() as session:
                await order_store.transition_status(
                    session, redis, order.id, OrderStatus.PAID, OrderStatus.FAILED
                )

        async with session_factory() as session:
            stored = await get_order(session, order.id)
        assert stored.status is OrderStatus.PAID
        assert stored.version == 2

    async def test_unknown_order(self, session_factory, redis):
        with pytest.raises(OrderNotFound):
            async with session_factory() as session:
                await order_store.transition_status(
                    session, redis, uuid4(), OrderStatus.PENDING, OrderStatus.PAID
                )


class TestListOrders:
    async def test_filters_by_user_and_status(self, session_factory, redis):
        first = await _create(session_factory, redis, user_id="alice")
        await _create(session_factory, redis, user_id="bob")
        async with session_factory() as session:
            await order_store.transition_status(
                session, redis, first.id, OrderStatus.PENDING, OrderStatus.PAID
            )

        async with session_factory() as session:
            alice = await list_orders(session, user_id="alice")
            pending = await list_orders(session, status=OrderStatus.PENDING)
            everything = await list_orders(session)

        assert [o.id for o in alice] == [first.id]
        assert [o.user_id for o in pending] == ["bob"]
        assert len(everything) == 2
