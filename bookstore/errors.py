"""
エラー分類

  ValidationError    リクエスト不正。副作用なし、リトライしない
  InsufficientStock  在庫不足。リトライしない、引き当て済み分は補償で解放
  StockContention    CAS の競合が上限回数まで続いた
  StaleStateError    状態遷移の競合。呼び出し側が再読込して判断する
  GatewayError       決済ゲートウェイの通信・サービス障害
  GatewayAmbiguous   キャプチャ結果が不明。状態照会でのみ確定させる
"""


class CheckoutError(Exception):
    """このサービスの例外の基底クラス"""


class ValidationError(CheckoutError):
    pass


class BookNotFound(ValidationError):
    def __init__(self, book_id: int):
        super().__init__(f"Book not found: {book_id}")
        self.book_id = book_id


class InsufficientStock(CheckoutError):
    def __init__(self, book_id: int, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for book {book_id}: "
            f"requested={requested}, available={available}"
        )
        self.book_id = book_id
        self.requested = requested
        self.available = available


class StockContention(CheckoutError):
    def __init__(self, book_id: int, attempts: int):
        super().__init__(
            f"Stock update for book {book_id} lost {attempts} consecutive races"
        )
        self.book_id = book_id
        self.attempts = attempts


class OrderNotFound(CheckoutError):
    def __init__(self, order_id):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class IllegalTransition(CheckoutError):
    def __init__(self, from_status, to_status):
        super().__init__(f"Illegal order transition: {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class StaleStateError(CheckoutError):
    def __init__(self, order_id, expected, actual):
        super().__init__(
            f"Order {order_id} is {actual}, expected {expected}"
        )
        self.order_id = order_id
        self.expected = expected
        self.actual = actual


class GatewayError(CheckoutError):
    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class GatewayAmbiguous(CheckoutError):
    """キャプチャが成功したかどうか分からない（タイムアウト等）"""

    def __init__(self, token: str, message: str = ""):
        super().__init__(message or f"Capture outcome unknown for payment {token}")
        self.token = token
