"""
Payment Gateway Client — 外部決済 API の薄いアダプター

PayPal 風の REST API を呼ぶ:

  POST /v1/payments                  支払いインテント作成
  POST /v1/payments/{token}/capture  キャプチャ
  GET  /v1/payments/{token}          状態照会

すべてのリクエストに Idempotency-Key を付ける。リトライでは同じキーを
使い回すので、ゲートウェイ側で二重課金にならない。

キャプチャのタイムアウトは「失敗」ではない。本当の結果は状態照会でしか
分からないので GatewayAmbiguous として呼び出し側に返す。
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum

import httpx

from ..errors import GatewayAmbiguous, GatewayError

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    CREATED = "Created"
    CAPTURED = "Captured"
    FAILED = "Failed"

    @property
    def is_final(self) -> bool:
        return self is not PaymentStatus.CREATED


_GATEWAY_STATUS = {
    "CREATED": PaymentStatus.CREATED,
    "SAVED": PaymentStatus.CREATED,
    "APPROVED": PaymentStatus.CREATED,
    "PAYER_ACTION_REQUIRED": PaymentStatus.CREATED,
    "COMPLETED": PaymentStatus.CAPTURED,
    "CAPTURED": PaymentStatus.CAPTURED,
    "DECLINED": PaymentStatus.FAILED,
    "FAILED": PaymentStatus.FAILED,
    "VOIDED": PaymentStatus.FAILED,
}

# カード拒否などの業務的な失敗。キャプチャでは Failed として扱う
_DECLINE_STATUS_CODES = (402, 422)


@dataclass(frozen=True)
class PaymentRecord:
    id: str
    token: str
    status: PaymentStatus
    amount: Decimal | None = None
    currency: str | None = None
    approval_url: str | None = None
    failure_reason: str | None = None


def parse_payment(data: dict) -> PaymentRecord:
    """ゲートウェイの応答を PaymentRecord にする。形が合わなければ GatewayError。"""
    try:
        raw_status = str(data.get("status", "")).upper()
        if raw_status not in _GATEWAY_STATUS:
            raise GatewayError(f"Unknown gateway payment status: {raw_status!r}")
        approval_url = next(
            (
                link["href"]
                for link in data.get("links", [])
                if link.get("rel") in ("approve", "payer-action")
            ),
            None,
        )
        amount = data.get("amount")
        return PaymentRecord(
            id=data["id"],
            token=data.get("token", data["id"]),
            status=_GATEWAY_STATUS[raw_status],
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=data.get("currency"),
            approval_url=approval_url,
            failure_reason=data.get("failure_reason"),
        )
    except (KeyError, TypeError, AttributeError, InvalidOperation) as e:
        raise GatewayError(f"Malformed gateway payment: {e!r}") from e


class _Exhausted(Exception):
    def __init__(self, message: str, outcome_unknown: bool):
        super().__init__(message)
        self.outcome_unknown = outcome_unknown


class PaymentGatewayClient:
    """外部決済ゲートウェイのクライアント"""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── 公開 API ─────────────────────────────────

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict,
        idempotency_key: str,
    ) -> PaymentRecord:
        """支払いインテントを作成する。結果は Created のはず。"""
        try:
            data = await self._request(
                "POST",
                "/v1/payments",
                idempotency_key=idempotency_key,
                json={
                    "intent": "CAPTURE",
                    "amount": f"{amount:.2f}",
                    "currency": currency,
                    "metadata": {k: str(v) for k, v in metadata.items()},
                },
            )
        except _Exhausted as e:
            raise GatewayError(str(e), retryable=True) from e
        return parse_payment(data)

    async def capture(self, token: str, idempotency_key: str) -> PaymentRecord:
        """
        キャプチャする。

        Captured / Failed の PaymentRecord を返す。タイムアウトや 5xx が
        続いた場合、2xx でも応答が読めない場合は GatewayAmbiguous（結果不明）を
        送出する。
        """
        try:
            data = await self._request(
                "POST",
                f"/v1/payments/{token}/capture",
                idempotency_key=idempotency_key,
                json={},
            )
            return parse_payment(data)
        except _Exhausted as e:
            if e.outcome_unknown:
                raise GatewayAmbiguous(token, str(e)) from e
            raise GatewayError(str(e), retryable=True) from e
        except GatewayError as e:
            if e.status_code in _DECLINE_STATUS_CODES:
                return PaymentRecord(
                    id=token,
                    token=token,
                    status=PaymentStatus.FAILED,
                    failure_reason=str(e),
                )
            if e.retryable:
                # 受け付けられたが応答を解釈できない。課金されたかもしれない
                raise GatewayAmbiguous(token, str(e)) from e
            raise

    async def query_status(self, token: str) -> PaymentRecord:
        try:
            data = await self._request("GET", f"/v1/payments/{token}")
        except _Exhausted as e:
            raise GatewayError(str(e), retryable=True) from e
        return parse_payment(data)

    # ── 内部 ─────────────────────────────────────

    def _backoff(self, attempt: int) -> float:
        delay = self.backoff_seconds * (2**attempt)
        return max(0.0, delay + random.uniform(-0.1, 0.1) * delay)  # nosec B311

    async def _request(
        self,
        method: str,
        path: str,
        *,
        idempotency_key: str | None = None,
        json: dict | None = None,
    ) -> dict:
        """
        リトライ付きでリクエストする。

        通信エラー・5xx・429 はバックオフしてリトライし、上限に達したら
        _Exhausted。4xx はリトライせず GatewayError(retryable=False)。
        """
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        outcome_unknown = False
        last_error = ""

        for attempt in range(self.max_attempts):
            if attempt:
                await asyncio.sleep(self._backoff(attempt - 1))
            try:
                resp = await self._client.request(
                    method, path, json=json, headers=headers
                )
            except httpx.TimeoutException as e:
                outcome_unknown = True
                last_error = f"timeout: {e!r}"
                logger.warning(
                    "Gateway %s %s timed out (attempt %d/%d)",
                    method,
                    path,
                    attempt + 1,
                    self.max_attempts,
                )
                continue
            except httpx.TransportError as e:
                last_error = f"transport error: {e!r}"
                logger.warning(
                    "Gateway %s %s failed: %s (attempt %d/%d)",
                    method,
                    path,
                    e,
                    attempt + 1,
                    self.max_attempts,
                )
                continue

            if resp.status_code >= 500 or resp.status_code == 429:
                # 5xx はサーバー側で処理された可能性がある
                outcome_unknown = outcome_unknown or resp.status_code >= 500
                last_error = f"HTTP {resp.status_code}"
                logger.warning(
                    "Gateway %s %s returned %d (attempt %d/%d)",
                    method,
                    path,
                    resp.status_code,
                    attempt + 1,
                    self.max_attempts,
                )
                continue

            if resp.status_code >= 400:
                raise GatewayError(
                    f"Gateway rejected {method} {path}: "
                    f"HTTP {resp.status_code} {resp.text}",
                    retryable=False,
                    status_code=resp.status_code,
                )

            try:
                return resp.json()
            except ValueError as e:
                raise GatewayError(
                    f"Gateway {method} {path} returned a malformed body "
                    f"(HTTP {resp.status_code})",
                    status_code=resp.status_code,
                ) from e

        raise _Exhausted(
            f"Gateway {method} {path} failed after {self.max_attempts} attempts "
            f"({last_error})",
            outcome_unknown,
        )
