"""
Checkout Orchestrator — 注文・在庫・決済 Saga

Saga パターン（オーケストレーション型）:
  決済はシステム境界をまたぐので1つのトランザクションにできない。
  各ステップを順に実行し、失敗時は補償トランザクションで整合性を保つ。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  checkout                                                     │
  │  1. リクエスト検証            失敗 → Rejected (副作用なし)     │
  │  2. 明細ごとに在庫を引き当て  失敗 → 逆順に解放して Rejected   │
  │  3. Pending の注文を作成      → StockReserved                 │
  │  4. 支払いインテント作成      → PaymentPending                │
  │                                                               │
  │  capture                                                      │
  │  5. Captured → 注文 Paid、引き当てを確定      → Paid          │
  │  6. Failed   → 注文 Failed、引き当てを解放    → Failed        │
  │  7. 結果不明 → 何も変えずに照合待ち (Reconciler が解決)       │
  └──────────────────────────────────────────────────────────────┘

オーケストレーター自身は状態を持たない。共有状態は DB だけにあり、
すべて CAS で更新する。リクエストごとに新しいセッションを使う。
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

import redis.asyncio as aioredis
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..errors import (
    GatewayAmbiguous,
    GatewayError,
    InsufficientStock,
    OrderNotFound,
    StaleStateError,
    StockContention,
    ValidationError,
)
from ..inventory import commands as ledger
from ..inventory.queries import get_prices, movement_kinds
from ..messaging import SAGA_CHANNEL, publish_event
from ..money import from_cents
from ..order import commands as order_store
from ..order.aggregate import LineRequest, Order, OrderLine, OrderStatus, validate_lines
from ..order.queries import get_order
from ..payment import records
from ..payment.gateway import PaymentGatewayClient, PaymentRecord, PaymentStatus
from .events import (
    SagaAwaitingPayment,
    SagaCompensated,
    SagaCompleted,
    SagaReconciling,
    SagaRejected,
)

logger = logging.getLogger(__name__)


class CheckoutState(str, Enum):
    INITIATED = "Initiated"
    STOCK_RESERVED = "StockReserved"
    PAYMENT_PENDING = "PaymentPending"
    PAID = "Paid"
    FAILED = "Failed"
    REJECTED = "Rejected"


@dataclass(frozen=True)
class CheckoutContext:
    """呼び出し元のユーザー。フレームワークのグローバルではなく明示的に渡す。"""
    user_id: str
    request_id: str = field(default_factory=lambda: uuid4().hex)


@dataclass(frozen=True)
class CheckoutRequest:
    shipping_address: str
    lines: list[LineRequest]


@dataclass
class SagaResult:
    state: CheckoutState
    order_id: UUID | None = None
    reason: str | None = None
    error: Exception | None = None
    payment_token: str | None = None
    approval_url: str | None = None
    saga_log: list[dict] = field(default_factory=list)

    @property
    def order_status(self) -> str:
        """クライアントに見せるステータス (Pending / Paid / Failed / Rejected)"""
        if self.state in (CheckoutState.STOCK_RESERVED, CheckoutState.PAYMENT_PENDING):
            return OrderStatus.PENDING.value
        return self.state.value


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _begin(saga_log: list[dict], action: str, **details) -> dict:
    entry = {
        "step": len(saga_log) + 1,
        "action": action,
        "status": "EXECUTING",
        "timestamp": _now(),
        **details,
    }
    saga_log.append(entry)
    return entry


def _failed(entry: dict, error: Exception) -> None:
    entry["status"] = "FAILED"
    entry["error"] = str(error)


class CheckoutOrchestrator:
    """チェックアウト Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        redis: aioredis.Redis,
        gateway: PaymentGatewayClient,
        *,
        currency: str = "USD",
        reserve_max_attempts: int = ledger.DEFAULT_MAX_ATTEMPTS,
    ):
        self.session_factory = session_factory
        self.redis = redis
        self.gateway = gateway
        self.currency = currency
        self.reserve_max_attempts = reserve_max_attempts

    # ── checkout ─────────────────────────────────

    async def checkout(
        self,
        context: CheckoutContext,
        request: CheckoutRequest,
    ) -> SagaResult:
        """
        チェックアウト Saga を実行する。

        在庫を全明細分引き当てられた場合だけ注文を作る（部分的な引き当ては残さない）。
        """
        saga_log: list[dict] = []
        checkout_id = uuid4()

        # ── Step 1: リクエスト検証 ──────────────────
        step = _begin(saga_log, "ValidateRequest")
        try:
            validate_lines(request.lines)
            if not request.shipping_address or not request.shipping_address.strip():
                raise ValidationError("Shipping address is required")
            async with self.session_factory() as session:
                prices = await get_prices(
                    session, sorted({line.book_id for line in request.lines})
                )
            missing = [line.book_id for line in request.lines if line.book_id not in prices]
            if missing:
                raise ValidationError(f"Unknown books: {missing}")
        except ValidationError as e:
            _failed(step, e)
            return await self._rejected(checkout_id, e, saga_log)
        step["status"] = "COMPLETED"

        # ── Step 2: 在庫を引き当て ──────────────────
        reserved: list[OrderLine] = []
        for line_no, line in enumerate(request.lines, start=1):
            step = _begin(saga_log, "ReserveStock", book_id=line.book_id)
            try:
                async with self.session_factory() as session:
                    await ledger.reserve_stock(
                        session,
                        self.redis,
                        line.book_id,
                        line.quantity,
                        ledger.reservation_id_for(checkout_id, line_no),
                        max_attempts=self.reserve_max_attempts,
                    )
            except (InsufficientStock, StockContention, ValidationError) as e:
                # 在庫不足 → 引き当て済みの分を逆順に解放（補償トランザクション）
                _failed(step, e)
                await self._release_lines(checkout_id, reserved, saga_log)
                return await self._rejected(checkout_id, e, saga_log)
            except Exception:
                await self._release_lines(checkout_id, reserved, saga_log)
                raise
            step["status"] = "COMPLETED"
            reserved.append(
                OrderLine(
                    line_no=line_no,
                    book_id=line.book_id,
                    quantity=line.quantity,
                    unit_price_cents=prices[line.book_id],
                )
            )

        # ── Step 3: Pending の注文を作成 ─────────────
        step = _begin(saga_log, "CreateOrder")
        total = from_cents(sum(line.line_total_cents for line in reserved))
        try:
            async with self.session_factory() as session:
                order = await order_store.create_pending(
                    session,
                    self.redis,
                    context.user_id,
                    checkout_id,
                    reserved,
                    total,
                    request.shipping_address.strip(),
                    self.currency,
                )
        except Exception as e:
            _failed(step, e)
            await self._release_lines(checkout_id, reserved, saga_log)
            raise
        step["status"] = "COMPLETED"
        step["order_id"] = str(order.id)

        # ── Step 4: 支払いインテントを作成 ───────────
        step = _begin(saga_log, "CreatePaymentIntent")
        idempotency_key = f"checkout-{checkout_id}"
        try:
            intent = await self.gateway.create_intent(
                order.total_amount,
                order.currency,
                {"order_id": order.id, "user_id": context.user_id},
                idempotency_key,
            )
        except GatewayError as e:
            _failed(step, e)
            return await self._compensate(
                order, f"Payment intent could not be created: {e}", saga_log
            )

        async with self.session_factory() as session:
            await records.create_payment(
                session,
                self.redis,
                order.id,
                intent,
                order.total_amount,
                order.currency,
                idempotency_key,
            )
        step["status"] = "COMPLETED"

        logger.info(
            "Checkout %s created order %s awaiting payment %s",
            checkout_id,
            order.id,
            intent.id,
        )
        result = SagaResult(
            state=CheckoutState.PAYMENT_PENDING,
            order_id=order.id,
            payment_token=intent.token,
            approval_url=intent.approval_url,
            saga_log=saga_log,
        )
        await self._publish(SagaAwaitingPayment, checkout_id, result)
        return result

    # ── capture ──────────────────────────────────

    async def capture(
        self,
        context: CheckoutContext,
        order_id: UUID,
        payment_token: str,
    ) -> SagaResult:
        """
        キャプチャ Saga を実行する。

        既に Paid / Failed の注文はそのままのステータスを返す（冪等）。
        """
        saga_log: list[dict] = []
        async with self.session_factory() as session:
            order = await get_order(session, order_id)
            if order.user_id != context.user_id:
                raise OrderNotFound(order_id)
            payment = await records.get_for_order(session, order_id)

        if payment is None or payment.token != payment_token:
            raise ValidationError(f"Payment token does not belong to order {order_id}")

        if order.status.is_terminal:
            return self._terminal_result(order)
        if payment.status.is_final:
            # 支払いは確定済みだが注文の遷移前に中断していた
            record = PaymentRecord(id=payment.id, token=payment.token, status=payment.status)
            return await self._apply_payment_result(order, payment, record, saga_log)

        async with self.session_factory() as session:
            started = await records.mark_capture_started(session, payment)
            if not started:
                payment = await records.get_for_order(session, order_id)
        if not started:
            # 放棄チェックアウトとして先に確定していた。ゲートウェイは呼ばない
            record = PaymentRecord(id=payment.id, token=payment.token, status=payment.status)
            return await self._apply_payment_result(order, payment, record, saga_log)

        step = _begin(saga_log, "CapturePayment", payment_id=payment.id)
        try:
            record = await self.gateway.capture(payment.token, payment.capture_key)
        except GatewayAmbiguous as e:
            _failed(step, e)
            return await self._await_reconciliation(order, payment, str(e), saga_log)
        except GatewayError as e:
            _failed(step, e)
            if e.retryable:
                return await self._await_reconciliation(order, payment, str(e), saga_log)
            # 回復不能なゲートウェイエラー（課金は発生していない）
            record = PaymentRecord(
                id=payment.id,
                token=payment.token,
                status=PaymentStatus.FAILED,
                failure_reason=str(e),
            )
        else:
            step["status"] = "COMPLETED"
            step["payment_status"] = record.status.value

        if not record.status.is_final:
            return await self._await_reconciliation(
                order, payment, "Capture returned a non-final status", saga_log
            )
        return await self._apply_payment_result(order, payment, record, saga_log)

    # ── 照合 (Reconciler から呼ばれる) ───────────

    async def reconcile_order(self, order_id: UUID, *, abandoned: bool) -> SagaResult:
        """
        Pending の注文をゲートウェイの状態照会で確定させる。

        照会結果が Created のままなら、放棄されたチェックアウト（一定時間
        経っても一度もキャプチャが呼ばれていない）だけを失敗として補償する。
        キャプチャ開始済みなら Captured / Failed が返るまで Pending のまま。
        """
        saga_log: list[dict] = []
        async with self.session_factory() as session:
            order = await get_order(session, order_id)
            payment = await records.get_for_order(session, order_id)

        if order.status.is_terminal:
            return self._terminal_result(order)

        if payment is None:
            if abandoned:
                return await self._compensate(
                    order, "Checkout abandoned before payment was created", saga_log
                )
            return SagaResult(CheckoutState.STOCK_RESERVED, order_id=order.id)

        if payment.status.is_final:
            record = PaymentRecord(id=payment.id, token=payment.token, status=payment.status)
            return await self._apply_payment_result(order, payment, record, saga_log)

        step = _begin(saga_log, "QueryPaymentStatus", payment_id=payment.id)
        try:
            record = await self.gateway.query_status(payment.token)
        except GatewayError as e:
            _failed(step, e)
            logger.warning("Reconciliation of order %s deferred: %s", order.id, e)
            return SagaResult(
                CheckoutState.PAYMENT_PENDING,
                order_id=order.id,
                reason=str(e),
                saga_log=saga_log,
            )
        step["status"] = "COMPLETED"
        step["payment_status"] = record.status.value

        if record.status.is_final:
            return await self._apply_payment_result(order, payment, record, saga_log)
        if abandoned and payment.capture_started_at is None:
            # キャプチャは一度も呼ばれておらず、ゲートウェイも未課金と答えた
            record = replace(
                record,
                status=PaymentStatus.FAILED,
                failure_reason="Checkout abandoned: payment was never captured",
            )
            return await self._apply_payment_result(
                order, payment, record, saga_log, abandoning=True
            )
        return SagaResult(
            CheckoutState.PAYMENT_PENDING,
            order_id=order.id,
            payment_token=payment.token,
            saga_log=saga_log,
        )

    async def release_outstanding(self, order_id: UUID) -> int:
        """
        Failed の注文に残っている引き当てを解放する。

        ステータス遷移の後、解放の途中で中断した場合の修復用。解放した明細数を返す。
        """
        async with self.session_factory() as session:
            order = await get_order(session, order_id)
            if order.status is not OrderStatus.FAILED:
                return 0
            kinds = await movement_kinds(
                session,
                [
                    ledger.reservation_id_for(order.checkout_id, line.line_no)
                    for line in order.lines
                ],
            )
        outstanding = [
            line
            for line in order.lines
            if kinds[ledger.reservation_id_for(order.checkout_id, line.line_no)]
            == {ledger.RESERVE}
        ]
        if outstanding:
            logger.warning(
                "Order %s is Failed with %d outstanding reservations",
                order.id,
                len(outstanding),
            )
            await self._release_lines(order.checkout_id, outstanding, [])
        return len(outstanding)

    # ── 内部ステップ ─────────────────────────────

    async def _apply_payment_result(
        self,
        order: Order,
        payment: records.StoredPayment,
        record: PaymentRecord,
        saga_log: list[dict],
        *,
        abandoning: bool = False,
    ) -> SagaResult:
        """
        支払い結果を記録して Step 5 / 6 に進む。

        記録できなかった場合は DB に残っている支払いの状態に従う。
        """
        async with self.session_factory() as session:
            applied = await records.apply_gateway_result(
                session,
                self.redis,
                payment,
                record,
                unless_capture_started=abandoning,
            )
            stored = payment if applied else await records.get_for_order(session, order.id)

        status = record.status
        reason = record.failure_reason or "Payment was declined"
        if not applied:
            if not stored.status.is_final:
                # 放棄処理より先にキャプチャが始まっていた
                logger.info(
                    "Order %s has a capture in progress; left for reconciliation",
                    order.id,
                )
                return SagaResult(
                    CheckoutState.PAYMENT_PENDING,
                    order_id=order.id,
                    payment_token=stored.token,
                    saga_log=saga_log,
                )
            if stored.status is not record.status:
                logger.error(
                    "Gateway reports %s for payment %s but %s is recorded; "
                    "manual review required",
                    record.status.value,
                    stored.id,
                    stored.status.value,
                )
                reason = f"Payment already recorded as {stored.status.value}"
            status = stored.status

        if status is PaymentStatus.CAPTURED:
            return await self._finish_paid(order, saga_log)
        return await self._compensate(order, reason, saga_log)

    async def _finish_paid(self, order: Order, saga_log: list[dict]) -> SagaResult:
        """Step 5: 注文を Paid にして引き当てを確定する。"""
        step = _begin(saga_log, "MarkOrderPaid", order_id=str(order.id))
        try:
            async with self.session_factory() as session:
                order = await order_store.transition_status(
                    session, self.redis, order.id, OrderStatus.PENDING, OrderStatus.PAID
                )
        except StaleStateError as e:
            _failed(step, e)
            async with self.session_factory() as session:
                order = await get_order(session, order.id)
            if order.status is not OrderStatus.PAID:
                # 照合と競合して先に Failed になった。返金が必要
                logger.error(
                    "Payment captured for order %s which is already %s; refund required",
                    order.id,
                    order.status.value,
                )
                return self._terminal_result(order, saga_log)
        else:
            step["status"] = "COMPLETED"

        for line in order.lines:
            step = _begin(saga_log, "CommitStock", book_id=line.book_id)
            async with self.session_factory() as session:
                await ledger.commit_stock(
                    session,
                    self.redis,
                    line.book_id,
                    line.quantity,
                    ledger.reservation_id_for(order.checkout_id, line.line_no),
                )
            step["status"] = "COMPLETED"

        result = SagaResult(CheckoutState.PAID, order_id=order.id, saga_log=saga_log)
        await self._publish(SagaCompleted, order.checkout_id, result)
        return result

    async def _compensate(
        self,
        order: Order,
        reason: str,
        saga_log: list[dict],
    ) -> SagaResult:
        """
        Step 6 (補償): 注文を Failed にしてから引き当てを解放する。

        先に CAS で Failed を確定させるので、遅れて届いたキャプチャ成功と
        競合しても在庫を解放するのはどちらか一方だけになる。
        """
        step = _begin(saga_log, "MarkOrderFailed (COMPENSATING)", order_id=str(order.id))
        try:
            async with self.session_factory() as session:
                order = await order_store.transition_status(
                    session,
                    self.redis,
                    order.id,
                    OrderStatus.PENDING,
                    OrderStatus.FAILED,
                    reason,
                )
        except StaleStateError as e:
            _failed(step, e)
            async with self.session_factory() as session:
                order = await get_order(session, order.id)
            if order.status is OrderStatus.PAID:
                logger.warning(
                    "Order %s was paid concurrently; stock is kept", order.id
                )
                return self._terminal_result(order, saga_log)
        else:
            step["status"] = "COMPLETED"

        await self._release_lines(order.checkout_id, order.lines, saga_log)

        result = SagaResult(
            CheckoutState.FAILED,
            order_id=order.id,
            reason=order.status_reason or reason,
            saga_log=saga_log,
        )
        await self._publish(SagaCompensated, order.checkout_id, result)
        return result

    async def _await_reconciliation(
        self,
        order: Order,
        payment: records.StoredPayment,
        reason: str,
        saga_log: list[dict],
    ) -> SagaResult:
        """Step 7: 結果不明。在庫も注文も変えずに照合待ちにする。"""
        async with self.session_factory() as session:
            await records.mark_needs_reconcile(session, payment)
        logger.warning(
            "Capture outcome for order %s unknown, queued for reconciliation: %s",
            order.id,
            reason,
        )
        result = SagaResult(
            CheckoutState.PAYMENT_PENDING,
            order_id=order.id,
            reason=reason,
            payment_token=payment.token,
            saga_log=saga_log,
        )
        await self._publish(SagaReconciling, order.checkout_id, result)
        return result

    async def _release_lines(
        self,
        checkout_id: UUID,
        lines: list[OrderLine],
        saga_log: list[dict],
    ) -> None:
        """引き当てを逆順に解放する。解放は冪等なので何度呼んでもよい。"""
        for line in reversed(lines):
            step = _begin(saga_log, "ReleaseStock (COMPENSATING)", book_id=line.book_id)
            try:
                async with self.session_factory() as session:
                    await ledger.release_stock(
                        session,
                        self.redis,
                        line.book_id,
                        line.quantity,
                        ledger.reservation_id_for(checkout_id, line.line_no),
                    )
                step["status"] = "COMPLETED"
            except SQLAlchemyError as e:
                # 残った引き当ては Reconciler が Failed の注文から解放し直す
                _failed(step, e)
                logger.exception(
                    "Failed to release reservation for book %s (checkout %s)",
                    line.book_id,
                    checkout_id,
                )

    async def _rejected(
        self,
        checkout_id: UUID,
        error: Exception,
        saga_log: list[dict],
    ) -> SagaResult:
        logger.info("Checkout %s rejected: %s", checkout_id, error)
        result = SagaResult(
            CheckoutState.REJECTED,
            reason=str(error),
            error=error,
            saga_log=saga_log,
        )
        await self._publish(SagaRejected, checkout_id, result)
        return result

    def _terminal_result(self, order: Order, saga_log: list[dict] | None = None) -> SagaResult:
        state = CheckoutState.PAID if order.status is OrderStatus.PAID else CheckoutState.FAILED
        return SagaResult(
            state,
            order_id=order.id,
            reason=order.status_reason,
            saga_log=saga_log or [],
        )

    async def _publish(self, event_cls, checkout_id: UUID, result: SagaResult) -> None:
        await publish_event(
            self.redis,
            SAGA_CHANNEL,
            event_cls(
                checkout_id=checkout_id,
                order_id=result.order_id,
                state=result.state.value,
                reason=result.reason,
                saga_log=result.saga_log,
            ),
        )
