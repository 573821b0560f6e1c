"""
Checkout Service — FastAPI エントリーポイント

チェックアウトとキャプチャのコマンド、注文・在庫のクエリを公開する。
ユーザーの認証は上流で済んでいる前提で、X-User-Id ヘッダーを
CheckoutContext として Saga に明示的に渡す。

  POST /checkout          在庫引き当て → 注文作成 → 支払いインテント
  POST /checkout/capture  キャプチャ → Paid / Failed / Pending(照合待ち)
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from uuid import UUID

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from . import db
from .config import Settings
from .errors import (
    CheckoutError,
    GatewayAmbiguous,
    GatewayError,
    InsufficientStock,
    OrderNotFound,
    StockContention,
    ValidationError,
)
from .inventory import queries as stock_queries
from .order import queries as order_queries
from .order.aggregate import LineRequest, OrderStatus
from .payment.gateway import PaymentGatewayClient
from .saga.orchestrator import (
    CheckoutContext,
    CheckoutOrchestrator,
    CheckoutRequest as SagaCheckoutRequest,
    CheckoutState,
    SagaResult,
)
from .saga.reconciler import Reconciler, run_reconciler

logger = logging.getLogger(__name__)


# ── Request / Response Models ────────────────────


class CheckoutLine(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    book_id: int = Field(alias="bookId")
    quantity: int


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    shipping_address: str = Field(alias="shippingAddress")
    lines: list[CheckoutLine]


class CheckoutResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: UUID | None = Field(default=None, serialization_alias="orderId")
    status: str
    reason: str | None = None
    payment_token: str | None = Field(default=None, serialization_alias="paymentToken")
    approval_url: str | None = Field(default=None, serialization_alias="approvalUrl")


class CaptureRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: UUID = Field(alias="orderId")
    payment_token: str = Field(alias="paymentToken")


class CaptureResponse(BaseModel):
    order_id: UUID = Field(serialization_alias="orderId")
    status: str
    reason: str | None = None


def _checkout_status_code(result: SagaResult) -> int:
    if result.state is CheckoutState.REJECTED:
        if isinstance(result.error, (InsufficientStock, StockContention)):
            return 409
        return 422
    if result.state is CheckoutState.FAILED:
        return 502
    return 201


def _capture_status_code(result: SagaResult) -> int:
    if result.order_status == OrderStatus.PENDING.value:
        return 202
    return 200


def create_app(
    settings: Settings | None = None,
    *,
    redis: aioredis.Redis | None = None,
    gateway_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        engine = db.make_engine(settings.database_url)
        await db.create_schema(engine)
        session_factory = db.make_session_factory(engine)
        redis_pool = redis or aioredis.from_url(settings.redis_url, decode_responses=True)
        gateway = PaymentGatewayClient(
            settings.gateway_url,
            api_key=settings.gateway_api_key,
            timeout=settings.gateway_timeout,
            max_attempts=settings.gateway_max_attempts,
            backoff_seconds=settings.gateway_backoff_seconds,
            transport=gateway_transport,
        )
        orchestrator = CheckoutOrchestrator(
            session_factory,
            redis_pool,
            gateway,
            currency=settings.currency,
            reserve_max_attempts=settings.reserve_max_attempts,
        )
        reconciler = Reconciler(
            session_factory,
            orchestrator,
            abandon_after_seconds=settings.abandon_after_seconds,
        )

        app.state.session_factory = session_factory
        app.state.orchestrator = orchestrator
        app.state.reconciler = reconciler

        shutdown_event = asyncio.Event()
        reconciler_task = None
        if settings.reconcile_interval_seconds > 0:
            reconciler_task = asyncio.create_task(
                run_reconciler(
                    reconciler, settings.reconcile_interval_seconds, shutdown_event
                )
            )
        yield
        shutdown_event.set()
        if reconciler_task is not None:
            await reconciler_task
        await gateway.aclose()
        if redis is None:
            await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Bookstore Checkout Service", lifespan=lifespan)

    # ── Error Handlers ───────────────────────────

    @app.exception_handler(OrderNotFound)
    async def order_not_found(request: Request, exc: OrderNotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(GatewayError)
    async def gateway_error(request: Request, exc: GatewayError):
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(GatewayAmbiguous)
    async def gateway_ambiguous(request: Request, exc: GatewayAmbiguous):
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(CheckoutError)
    async def checkout_error(request: Request, exc: CheckoutError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    # ── Command Endpoints (Write 側) ─────────────

    @app.post("/checkout")
    async def cmd_checkout(
        req: CheckoutRequest,
        user_id: str = Header(alias="X-User-Id"),
    ):
        """チェックアウト Saga を開始する"""
        result = await app.state.orchestrator.checkout(
            CheckoutContext(user_id=user_id),
            SagaCheckoutRequest(
                shipping_address=req.shipping_address,
                lines=[LineRequest(line.book_id, line.quantity) for line in req.lines],
            ),
        )
        body = CheckoutResponse(
            order_id=result.order_id,
            status=result.order_status,
            reason=result.reason,
            payment_token=result.payment_token,
            approval_url=result.approval_url,
        )
        return JSONResponse(
            status_code=_checkout_status_code(result),
            content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        )

    @app.post("/checkout/capture")
    async def cmd_capture(
        req: CaptureRequest,
        user_id: str = Header(alias="X-User-Id"),
    ):
        """支払いをキャプチャして注文を確定する"""
        result = await app.state.orchestrator.capture(
            CheckoutContext(user_id=user_id), req.order_id, req.payment_token
        )
        body = CaptureResponse(
            order_id=result.order_id, status=result.order_status, reason=result.reason
        )
        return JSONResponse(
            status_code=_capture_status_code(result),
            content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        )

    # ── Query Endpoints (Read 側) ────────────────

    @app.get("/queries/orders")
    async def query_list_orders(user_id: str | None = None, status: str | None = None):
        """注文一覧（ユーザー・ステータスで絞り込み）"""
        try:
            order_status = OrderStatus(status) if status else None
        except ValueError:
            raise HTTPException(422, f"Unknown order status: {status}")
        async with app.state.session_factory() as session:
            orders = await order_queries.list_orders(session, user_id, order_status)
        return [order_queries.order_to_dict(order) for order in orders]

    @app.get("/queries/orders/{order_id}")
    async def query_get_order(order_id: UUID):
        async with app.state.session_factory() as session:
            order = await order_queries.get_order(session, order_id)
        return order_queries.order_to_dict(order)

    @app.get("/queries/books/{book_id}/stock")
    async def query_stock(book_id: int):
        async with app.state.session_factory() as session:
            stock = await stock_queries.get_stock(session, book_id)
        if not stock:
            raise HTTPException(404, "Book not found")
        return stock

    @app.get("/queries/books/{book_id}/movements")
    async def query_movements(book_id: int):
        """在庫台帳（監査用）"""
        async with app.state.session_factory() as session:
            return await stock_queries.list_movements(session, book_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "checkout-service"}

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run(
        "bookstore.main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
    )
