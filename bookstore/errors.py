"""
Bookstore — エラー定義

業務エラーはすべて BookstoreError のサブクラスとして型付きで送出する。
HTTP 層はこの型を見てステータスコードに変換する (api/main.py)。
"""


class BookstoreError(Exception):
    """業務エラーの基底クラス"""

    code = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(BookstoreError):
    """リクエストが不正 (空の明細、0 以下の数量など)。変更は一切行われない。"""

    code = "invalid_input"


class InvalidJobPayload(InvalidInput):
    code = "invalid_job_payload"


class Forbidden(BookstoreError):
    code = "forbidden"


class NotFound(BookstoreError):
    code = "not_found"


class ItemNotFound(NotFound):
    code = "item_not_found"

    def __init__(self, item_id) -> None:
        super().__init__(f"Item not found: {item_id}")
        self.item_id = item_id


class OrderNotFound(NotFound):
    code = "order_not_found"

    def __init__(self, order_id) -> None:
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class InsufficientStock(BookstoreError):
    """在庫不足。トランザクションは中断され、どの明細の在庫も減らない。"""

    code = "insufficient_stock"

    def __init__(self, item_id, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for item {item_id}: "
            f"requested={requested}, available={available}"
        )
        self.item_id = item_id
        self.requested = requested
        self.available = available


class InvalidTransition(BookstoreError):
    code = "invalid_transition"


class TransactionConflict(BookstoreError):
    """ストアが同時実行の競合を検知した。Coordinator が有限回リトライする。"""

    code = "transaction_conflict"


class JobPermanentFailure(BookstoreError):
    """リトライを使い切ったジョブ。呼び出し元ではなくオペレーターに通知する。"""

    code = "job_permanent_failure"

    def __init__(self, job_id: str, kind: str, attempts: int, reason: str) -> None:
        super().__init__(
            f"Job {job_id} ({kind}) failed permanently after {attempts} attempt(s): {reason}"
        )
        self.job_id = job_id
        self.kind = kind
        self.attempts = attempts
        self.reason = reason


class PermanentJobError(Exception):
    """ハンドラが送出するとリトライせずに即 failed になる。"""
