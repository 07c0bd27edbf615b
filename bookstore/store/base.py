"""
Store — 永続化境界 (Inventory Store / Order Ledger)

Coordinator と Catalog はこのプロトコル越しにしか在庫・注文に触れない。
transaction() は非同期コンテキストマネージャで、
ブロックを正常に抜ければコミット、例外なら全変更を破棄する。

decrement_stock は条件付き減算 (在庫が足りるときだけ減らす) で、
同じ商品を奪い合う並行注文が在庫をマイナスにしないことを保証する。
"""

from contextlib import AbstractAsyncContextManager
from typing import Protocol
from uuid import UUID

from ..inventory.aggregate import InventoryItem
from ..order.aggregate import Order


class StoreTransaction(Protocol):
    # ── Inventory ────────────────────────────────

    async def read_item(self, item_id: UUID) -> InventoryItem | None: ...

    async def write_item(self, item: InventoryItem) -> None: ...

    async def delete_item(self, item_id: UUID) -> bool: ...

    async def list_items(self) -> list[InventoryItem]: ...

    async def decrement_stock(self, item_id: UUID, quantity: int) -> InventoryItem:
        """在庫が quantity 以上あるときだけ減らし、status を再計算した商品を返す。

        商品が無ければ ItemNotFound、不足なら InsufficientStock。
        """
        ...

    # ── Orders ───────────────────────────────────

    async def insert_order(self, order: Order) -> None: ...

    async def update_order(self, order: Order) -> bool:
        """status / updated_at を書き戻す。合計金額と明細は更新しない。"""
        ...

    async def find_order(self, order_id: UUID) -> Order | None: ...

    async def find_order_by_key(self, user_id: str, idempotency_key: str) -> Order | None: ...

    async def list_orders(self, user_id: str | None = None) -> list[Order]: ...

    async def delete_order(self, order_id: UUID) -> bool: ...


class Store(Protocol):
    def transaction(self) -> AbstractAsyncContextManager[StoreTransaction]: ...
