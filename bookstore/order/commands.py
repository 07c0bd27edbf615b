"""
Order — コマンドハンドラ (Order Transaction Coordinator)

注文確定トランザクション:

  ┌──────────────────────────────────────────────────────────┐
  │  1. 入力チェック (空の明細・0 以下の数量は InvalidInput)   │
  │  2. トランザクション開始                                   │
  │  3. 明細ごとに (指定された順に):                           │
  │       商品を読む → 在庫チェック → 単価スナップショットで    │
  │       合計に加算 → 条件付きで在庫を減らす                  │
  │  4. 注文を pending で保存してコミット                      │
  │     ※ どこかで失敗したら全部ロールバック                   │
  │  5. コミット後に注文確定メールのジョブを投入               │
  │     (タイムアウト付きのベストエフォート)                   │
  └──────────────────────────────────────────────────────────┘

注文がコミットされた時点で結果は確定する。ジョブ投入の失敗は
ログに残すだけで、注文をロールバックしたりエラーにしたりはしない。
"""

import logging
from uuid import UUID

from ..caller import Caller
from ..config import Settings
from ..errors import (
    Forbidden,
    InsufficientStock,
    InvalidInput,
    InvalidTransition,
    ItemNotFound,
    OrderNotFound,
    TransactionConflict,
)
from ..inventory.aggregate import validate_quantity
from ..jobs.payloads import EMAIL_QUEUE, SEND_ORDER_CONFIRMATION
from ..jobs.queue import JobQueue, enqueue_best_effort
from ..store.base import Store, StoreTransaction
from .aggregate import Order, OrderLine

logger = logging.getLogger(__name__)


def parse_lines(lines) -> list[tuple[UUID, int]]:
    """
    注文明細を (item_id, quantity) のリストに正規化する。

    dict ({"item_id": ..., "quantity": ...}) でもタプルでも受け付ける。
    1 つでも不正なら InvalidInput で、何も処理しない。
    """
    if not lines:
        raise InvalidInput("Items are required")
    parsed = []
    for line in lines:
        if isinstance(line, dict):
            item_id, quantity = line.get("item_id"), line.get("quantity")
        else:
            try:
                item_id, quantity = line
            except (TypeError, ValueError) as e:
                raise InvalidInput(f"Invalid order line: {line!r}") from e
        try:
            item_id = item_id if isinstance(item_id, UUID) else UUID(str(item_id))
        except ValueError as e:
            raise InvalidInput(f"Invalid item id: {item_id!r}") from e
        parsed.append((item_id, validate_quantity(quantity, allow_zero=False)))
    return parsed


class OrderCoordinator:
    """在庫の減算と注文の保存を 1 つのトランザクションで行う"""

    def __init__(self, store: Store, queue: JobQueue, settings: Settings) -> None:
        self.store = store
        self.queue = queue
        self.settings = settings

    async def place_order(
        self,
        caller: Caller,
        lines,
        idempotency_key: str | None = None,
    ) -> Order:
        requested = parse_lines(lines)
        if idempotency_key is not None and not idempotency_key.strip():
            raise InvalidInput("Idempotency key must not be blank")

        attempts = self.settings.transaction_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                order, created = await self._commit_order(caller, requested, idempotency_key)
                break
            except TransactionConflict:
                if attempt == attempts:
                    logger.error(
                        "Giving up placing order for user %s after %d conflicting attempt(s)",
                        caller.user_id, attempt,
                    )
                    raise
                logger.warning(
                    "Transaction conflict placing order for user %s (attempt %d/%d), retrying",
                    caller.user_id, attempt, attempts,
                )

        if not created:
            logger.info(
                "Returning existing order %s for idempotency key %s", order.id, idempotency_key
            )
            return order

        logger.info(
            "Order %s placed by user %s: %d line(s), total %s",
            order.id, caller.user_id, len(order.lines), order.total,
        )
        await self._enqueue_confirmation(caller, order)
        return order

    async def _commit_order(
        self,
        caller: Caller,
        requested: list[tuple[UUID, int]],
        idempotency_key: str | None,
    ) -> tuple[Order, bool]:
        async with self.store.transaction() as tx:
            if idempotency_key is not None:
                existing = await tx.find_order_by_key(caller.user_id, idempotency_key)
                if existing is not None:
                    return existing, False

            order_lines = [
                await self._take_stock(tx, item_id, quantity)
                for item_id, quantity in requested
            ]
            order = Order.create(caller.user_id, order_lines, idempotency_key)
            await tx.insert_order(order)
        return order, True

    async def _take_stock(self, tx: StoreTransaction, item_id: UUID, quantity: int) -> OrderLine:
        item = await tx.read_item(item_id)
        if item is None:
            raise ItemNotFound(item_id)
        if item.quantity < quantity:
            raise InsufficientStock(item_id, quantity, item.quantity)
        # 単価はこの時点の値を明細に固定する
        line = OrderLine(
            item_id=item.id,
            title=item.title,
            quantity=quantity,
            unit_price=item.unit_price,
        )
        await tx.decrement_stock(item_id, quantity)
        return line

    async def _enqueue_confirmation(self, caller: Caller, order: Order) -> None:
        if not caller.email:
            logger.warning(
                "User %s has no email address, skipping confirmation for order %s",
                caller.user_id, order.id,
            )
            return
        payload = {
            "order_id": order.id,
            "user_id": order.user_id,
            "recipient": caller.email,
            "total": order.total,
            "lines": [line.to_dict() for line in order.lines],
        }
        await enqueue_best_effort(
            self.queue,
            EMAIL_QUEUE,
            SEND_ORDER_CONFIRMATION,
            payload,
            timeout=self.settings.enqueue_timeout,
        )

    # ── ステータス更新 / 削除 (管理者向け) ────────

    async def update_order_status(
        self,
        caller: Caller,
        order_id: UUID,
        new_status: str,
    ) -> Order:
        if not caller.is_privileged:
            raise Forbidden("Only admin or deliver can update order status")
        async with self.store.transaction() as tx:
            order = await tx.find_order(order_id)
            if order is None:
                raise OrderNotFound(order_id)
            previous = order.status
            if order.transition_to(new_status):
                await tx.update_order(order)
                logger.info(
                    "Order %s moved from %s to %s by %s",
                    order.id, previous, order.status, caller.user_id,
                )
        return order

    async def purge_order(self, caller: Caller, order_id: UUID) -> None:
        """
        注文を削除する (管理者のみ)。

        出荷・配達済みの注文は履行記録なので削除できない。
        在庫は戻さない。
        """
        if not caller.is_admin:
            raise Forbidden("Only admin can delete orders")
        async with self.store.transaction() as tx:
            order = await tx.find_order(order_id)
            if order is None:
                raise OrderNotFound(order_id)
            if order.status != "pending":
                raise InvalidTransition(
                    f"Order {order.id} is {order.status} and can no longer be deleted"
                )
            await tx.delete_order(order_id)
        logger.info("Order %s deleted by admin %s", order_id, caller.user_id)
