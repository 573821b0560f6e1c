"""Tests for the payment gateway client: status mapping, retries, ambiguity."""

from decimal import Decimal

import httpx
import pytest

from bookstore.errors import GatewayAmbiguous, GatewayError
from bookstore.payment.gateway import PaymentGatewayClient, PaymentStatus, parse_payment


def _client(handler, max_attempts=3):
    return PaymentGatewayClient(
        "http://gateway.test",
        api_key="secret",
        max_attempts=max_attempts,
        backoff_seconds=0,
        transport=httpx.MockTransport(handler),
    )


class TestParsePayment:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("CREATED", PaymentStatus.CREATED),
            ("APPROVED", PaymentStatus.CREATED),
            ("COMPLETED", PaymentStatus.CAPTURED),
            ("DECLINED", PaymentStatus.FAILED),
            ("VOIDED", PaymentStatus.FAILED),
        ],
    )
    def test_status_mapping(self, raw, expected):
        record = parse_payment({"id": "PAY-1", "status": raw})
        assert record.status is expected
        assert record.token == "PAY-1"

    def test_unknown_status_is_a_gateway_error(self):
        with pytest.raises(GatewayError):
            parse_payment({"id": "PAY-1", "status": "SOMETHING_NEW"})

    def test_approval_link(self):
        record = parse_payment(
            {
                "id": "PAY-1",
                "status": "CREATED",
                "amount": "25.00",
                "links": [
                    {"rel": "self", "href": "https://pay.test/PAY-1"},
                    {"rel": "approve", "href": "https://pay.test/approve/PAY-1"},
                ],
            }
        )
        assert record.approval_url == "https://pay.test/approve/PAY-1"
        assert record.amount == Decimal("25.00")


class TestCreateIntent:
    async def test_sends_idempotency_key_and_auth(self, fake_gateway):
        client = _client(fake_gateway.handler)
        record = await client.create_intent(
            Decimal("25.00"), "USD", {"order_id": "o-1"}, "checkout-1"
        )
        await client.aclose()

        assert record.status is PaymentStatus.CREATED
        request = fake_gateway.calls("POST", "/v1/payments")[0]
        assert request.headers["Idempotency-Key"] == "checkout-1"
        assert request.headers["Authorization"] == "Bearer secret"

    async def test_retries_reuse_the_same_key(self):
        seen = []

        def handler(request):
            seen.append(request.headers["Idempotency-Key"])
            if len(seen) < 3:
                return httpx.Response(503)
            return httpx.Response(201, json={"id": "PAY-9", "status": "CREATED"})

        client = _client(handler)
        record = await client.create_intent(Decimal("1.00"), "USD", {}, "key-1")
        await client.aclose()

        assert record.id == "PAY-9"
        assert seen == ["key-1", "key-1", "key-1"]

    async def test_exhausted_retries_raise_retryable_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = _client(handler, max_attempts=2)
        with pytest.raises(GatewayError) as exc_info:
            await client.create_intent(Decimal("1.00"), "USD", {}, "key-1")
        await client.aclose()

        assert exc_info.value.retryable is True

    async def test_client_errors_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"name": "INVALID_REQUEST"})

        client = _client(handler)
        with pytest.raises(GatewayError) as exc_info:
            await client.create_intent(Decimal("1.00"), "USD", {}, "key-1")
        await client.aclose()

        assert exc_info.value.retryable is False
        assert exc_info.value.status_code == 400
        assert len(calls) == 1


class TestCapture:
    async def test_capture_success(self, gateway, fake_gateway):
        intent = await gateway.create_intent(Decimal("5.00"), "USD", {}, "k")

        record = await gateway.capture(intent.token, "k:capture")

        assert record.status is PaymentStatus.CAPTURED

    async def test_decline_is_a_failed_record(self, gateway, fake_gateway):
        intent = await gateway.create_intent(Decimal("5.00"), "USD", {}, "k")
        fake_gateway.capture_mode = "decline"

        record = await gateway.capture(intent.token, "k:capture")

        assert record.status is PaymentStatus.FAILED

    async def test_timeout_is_ambiguous_not_failed(self, gateway, fake_gateway):
        intent = await gateway.create_intent(Decimal("5.00"), "USD", {}, "k")
        fake_gateway.capture_mode = "timeout"

        with pytest.raises(GatewayAmbiguous):
            await gateway.capture(intent.token, "k:capture")
        assert len(fake_gateway.calls("POST", "/capture")) == 3

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(200, text="<html>ok</html>"),
            httpx.Response(200, json={"status": "COMPLETED"}),
            httpx.Response(200, json=["COMPLETED"]),
        ],
    )
    async def test_unreadable_success_body_is_ambiguous(self, response):
        client = _client(lambda request: response)

        with pytest.raises(GatewayAmbiguous):
            await client.capture("PAY-1", "k:capture")
        await client.aclose()

    async def test_unknown_token_is_unrecoverable(self, gateway):
        with pytest.raises(GatewayError) as exc_info:
            await gateway.capture("PAY-404", "k:capture")
        assert exc_info.value.retryable is False


class TestQueryStatus:
    async def test_reports_true_state_after_timeout(self, gateway, fake_gateway):
        intent = await gateway.create_intent(Decimal("5.00"), "USD", {}, "k")
        fake_gateway.capture_mode = "timeout_charged"
        with pytest.raises(GatewayAmbiguous):
            await gateway.capture(intent.token, "k:capture")

        record = await gateway.query_status(intent.token)

        assert record.status is PaymentStatus.CAPTURED
