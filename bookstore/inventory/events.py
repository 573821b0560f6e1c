"""
Stock Ledger — イベント定義

在庫台帳で発生するイベント。inventory_events チャネルに発行する。
"""

from datetime import datetime

from pydantic import BaseModel


class StockReserved(BaseModel):
    """在庫が引き当てられた"""
    book_id: int
    reservation_id: str
    quantity: int
    available_after: int
    timestamp: datetime


class StockReservationFailed(BaseModel):
    """在庫引き当てが失敗した（在庫不足）"""
    book_id: int
    reservation_id: str
    quantity_requested: int
    quantity_available: int
    timestamp: datetime


class StockReleased(BaseModel):
    """引き当てが解放された（補償トランザクション）"""
    book_id: int
    reservation_id: str
    quantity: int
    timestamp: datetime


class StockCommitted(BaseModel):
    """引き当てが確定した（数量は変えない、監査用）"""
    book_id: int
    reservation_id: str
    quantity: int
    timestamp: datetime
