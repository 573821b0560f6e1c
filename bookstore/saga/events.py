"""
Checkout Saga — イベント定義

Saga の結果を saga_log ごと saga_events チャネルに発行する。
"""

from uuid import UUID

from pydantic import BaseModel


class SagaEvent(BaseModel):
    checkout_id: UUID | None = None
    order_id: UUID | None = None
    state: str
    reason: str | None = None
    saga_log: list[dict]


class SagaRejected(SagaEvent):
    """在庫を引き当てる前・途中で拒否された（注文は作られていない）"""


class SagaAwaitingPayment(SagaEvent):
    """注文と支払いインテントを作成し、キャプチャ待ち"""


class SagaReconciling(SagaEvent):
    """キャプチャ結果が不明。照合待ち"""


class SagaCompleted(SagaEvent):
    """支払い確定"""


class SagaCompensated(SagaEvent):
    """補償トランザクションを実行して失敗として終了した"""
