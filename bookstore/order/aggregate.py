"""
Order Aggregate — 注文と注文明細

注文は明細を所有する。明細は本を ID で参照するだけ（本のオブジェクトは持たない）。
単価は注文作成時のカタログ価格のスナップショットで、後から価格が変わっても
注文の合計金額は変わらない。

状態遷移:
    PENDING → PAID    (キャプチャ成功)
    PENDING → FAILED  (キャプチャ失敗 = 補償)
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from ..errors import IllegalTransition, ValidationError
from ..money import from_cents


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.FAILED}),
    OrderStatus.PAID: frozenset(),
    OrderStatus.FAILED: frozenset(),
}


def check_transition(from_status: OrderStatus, to_status: OrderStatus) -> None:
    if to_status not in ALLOWED_TRANSITIONS[from_status]:
        raise IllegalTransition(from_status.value, to_status.value)


@dataclass(frozen=True)
class LineRequest:
    """チェックアウト要求の1明細（価格はまだ決まっていない）"""
    book_id: int
    quantity: int


@dataclass(frozen=True)
class OrderLine:
    line_no: int
    book_id: int
    quantity: int
    unit_price_cents: int

    @property
    def unit_price(self) -> Decimal:
        return from_cents(self.unit_price_cents)

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


def validate_lines(lines) -> None:
    if not lines:
        raise ValidationError("Order must contain at least one line")
    for line in lines:
        if line.quantity <= 0:
            raise ValidationError(
                f"Quantity for book {line.book_id} must be positive, got {line.quantity}"
            )


@dataclass
class Order:
    id: UUID
    user_id: str
    checkout_id: UUID
    created_at: datetime
    total_cents: int
    currency: str
    shipping_address: str
    status: OrderStatus
    version: int
    status_reason: str | None = None
    lines: list[OrderLine] = field(default_factory=list)

    @property
    def total_amount(self) -> Decimal:
        return from_cents(self.total_cents)
