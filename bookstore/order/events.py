"""
Order Aggregate — イベント定義

イベントは過去形で命名し、不変として扱う。order_events チャネルに発行する。
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class OrderLineSnapshot(BaseModel):
    book_id: int
    quantity: int
    unit_price_cents: int


class OrderCreated(BaseModel):
    """注文が作成された（在庫引き当て済み、支払い待ち）"""
    order_id: UUID
    user_id: str
    total_cents: int
    currency: str
    lines: list[OrderLineSnapshot]
    timestamp: datetime


class OrderPaid(BaseModel):
    """注文の支払いが確定した"""
    order_id: UUID
    timestamp: datetime


class OrderFailed(BaseModel):
    """注文が失敗した（補償トランザクション）"""
    order_id: UUID
    reason: str
    timestamp: datetime
