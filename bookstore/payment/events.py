"""
Payment — イベント定義

payment_events チャネルに発行する。
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class PaymentIntentCreated(BaseModel):
    """支払いインテントが作成された"""
    payment_id: str
    order_id: UUID
    amount_cents: int
    currency: str
    timestamp: datetime


class PaymentStatusChanged(BaseModel):
    """支払い記録のステータスが確定した"""
    payment_id: str
    order_id: UUID
    status: str
    timestamp: datetime
