"""
Shared pytest fixtures for the checkout service tests.

- sqlite (aiosqlite) database file per test, with a small seeded catalog
- FakeGateway: in-process payment gateway behind httpx.MockTransport
- redis: AsyncMock standing in for the Pub/Sub connection
"""

import asyncio
import itertools
import json
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import insert

from bookstore.db import books, create_schema, make_engine, make_session_factory
from bookstore.payment.gateway import PaymentGatewayClient
from bookstore.saga.orchestrator import CheckoutOrchestrator

# book_id -> (title, price_cents, available_quantity)
CATALOG = {
    1: ("The Last Copy", 1999, 1),
    5: ("Domain-Driven Design", 1250, 10),
    7: ("Refactoring", 500, 3),
}


async def seed_catalog(engine, catalog=CATALOG) -> None:
    async with engine.begin() as conn:
        await conn.execute(
            insert(books),
            [
                {
                    "id": book_id,
                    "title": title,
                    "price_cents": price,
                    "available_quantity": quantity,
                    "version": 0,
                }
                for book_id, (title, price, quantity) in catalog.items()
            ],
        )


class FakeGateway:
    """
    Minimal PayPal-like gateway.

    capture_mode:
      "complete"         capture succeeds
      "decline"          capture answers 422 (card declined)
      "timeout_charged"  capture is applied but the response times out
      "timeout"          capture times out without being applied
      "garbled"          capture is applied but the 200 body is not JSON
    """

    def __init__(self):
        self.payments: dict[str, dict] = {}
        self.by_key: dict[str, str] = {}
        self.requests: list[httpx.Request] = []
        self.capture_mode = "complete"
        self.create_fails_with: int | None = None
        self.query_fails = False
        self._ids = itertools.count(1)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        key = request.headers.get("Idempotency-Key")

        if request.method == "POST" and path == "/v1/payments":
            if self.create_fails_with:
                return httpx.Response(self.create_fails_with, json={"name": "ERROR"})
            if key in self.by_key:
                return httpx.Response(201, json=self.payments[self.by_key[key]])
            body = json.loads(request.content)
            payment_id = f"PAY-{next(self._ids)}"
            self.payments[payment_id] = {
                "id": payment_id,
                "token": payment_id,
                "status": "CREATED",
                "amount": body["amount"],
                "currency": body["currency"],
                "metadata": body["metadata"],
                "links": [
                    {"rel": "approve", "href": f"https://pay.test/approve/{payment_id}"}
                ],
            }
            self.by_key[key] = payment_id
            return httpx.Response(201, json=self.payments[payment_id])

        if request.method == "POST" and path.endswith("/capture"):
            token = path.split("/")[-2]
            payment = self.payments.get(token)
            if payment is None:
                return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
            if self.capture_mode == "timeout":
                raise httpx.ReadTimeout("capture timed out", request=request)
            if self.capture_mode == "timeout_charged":
                payment["status"] = "COMPLETED"
                raise httpx.ReadTimeout("capture timed out", request=request)
            if self.capture_mode == "decline":
                payment["status"] = "DECLINED"
                return httpx.Response(422, json={"name": "INSTRUMENT_DECLINED"})
            payment["status"] = "COMPLETED"
            if self.capture_mode == "garbled":
                return httpx.Response(200, text="<html>OK</html>")
            return httpx.Response(200, json=payment)

        if request.method == "GET" and path.startswith("/v1/payments/"):
            if self.query_fails:
                return httpx.Response(503)
            payment = self.payments.get(path.rsplit("/", 1)[-1])
            if payment is None:
                return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
            return httpx.Response(200, json=payment)

        return httpx.Response(404)

    def calls(self, method: str, suffix: str = "") -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method and r.url.path.endswith(suffix)
        ]


class HeldCapture:
    """
    Wraps FakeGateway so that capture calls wait inside the gateway until
    release() is called. Other calls pass straight through.
    """

    def __init__(self, fake: FakeGateway):
        self.fake = fake
        self.entered = asyncio.Event()
        self._released = asyncio.Event()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/capture"):
            self.entered.set()
            await self._released.wait()
        return self.fake.handler(request)

    def release(self) -> None:
        self._released.set()


@pytest.fixture
def redis():
    return AsyncMock()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    await create_schema(engine)
    await seed_catalog(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def gateway(fake_gateway):
    client = PaymentGatewayClient(
        "http://gateway.test",
        max_attempts=3,
        backoff_seconds=0,
        transport=httpx.MockTransport(fake_gateway.handler),
    )
    yield client
    await client.aclose()


@pytest.fixture
def orchestrator(session_factory, redis, gateway):
    return CheckoutOrchestrator(session_factory, redis, gateway, currency="USD")


@pytest.fixture
def held_capture(fake_gateway):
    return HeldCapture(fake_gateway)


@pytest_asyncio.fixture
async def held_orchestrator(session_factory, redis, held_capture):
    """Orchestrator whose capture calls block until held_capture.release()."""
    client = PaymentGatewayClient(
        "http://gateway.test",
        max_attempts=3,
        backoff_seconds=0,
        transport=httpx.MockTransport(held_capture.handler),
    )
    yield CheckoutOrchestrator(session_factory, redis, client, currency="USD")
    await client.aclose()


@pytest.fixture
def prepared_db_url(tmp_path):
    """Database file with schema and catalog, for the synchronous API tests."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"

    async def prepare():
        engine = make_engine(url)
        await create_schema(engine)
        await seed_catalog(engine)
        await engine.dispose()

    asyncio.run(prepare())
    return url
