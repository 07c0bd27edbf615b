"""
Store — インメモリ実装

単一プロセス用 (テスト・ローカル開発)。
トランザクション全体を 1 つの asyncio.Lock で直列化するので
並行注文同士は serializable に見える。
変更はトランザクション内のコピーに溜め、正常終了時にだけ反映する。
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from uuid import UUID

from ..errors import ItemNotFound
from ..inventory.aggregate import InventoryItem
from ..order.aggregate import Order


class InMemoryStore:
    def __init__(self) -> None:
        self._items: dict[UUID, InventoryItem] = {}
        self._orders: dict[UUID, Order] = {}
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self):
        async with self._lock:
            tx = InMemoryTransaction(self._items, self._orders)
            yield tx
            tx.commit()


class InMemoryTransaction:
    def __init__(
        self,
        items: dict[UUID, InventoryItem],
        orders: dict[UUID, Order],
    ) -> None:
        self._items = items
        self._orders = orders
        self._staged_items: dict[UUID, InventoryItem | None] = {}
        self._staged_orders: dict[UUID, Order | None] = {}

    def commit(self) -> None:
        for item_id, item in self._staged_items.items():
            if item is None:
                self._items.pop(item_id, None)
            else:
                self._items[item_id] = item
        for order_id, order in self._staged_orders.items():
            if order is None:
                self._orders.pop(order_id, None)
            else:
                self._orders[order_id] = order

    # ── Inventory ────────────────────────────────

    async def read_item(self, item_id: UUID) -> InventoryItem | None:
        if item_id in self._staged_items:
            item = self._staged_items[item_id]
        else:
            item = self._items.get(item_id)
        return None if item is None else replace(item)

    async def write_item(self, item: InventoryItem) -> None:
        self._staged_items[item.id] = replace(item)

    async def delete_item(self, item_id: UUID) -> bool:
        if await self.read_item(item_id) is None:
            return False
        self._staged_items[item_id] = None
        return True

    async def list_items(self) -> list[InventoryItem]:
        ids = set(self._items) | set(self._staged_items)
        items = [await self.read_item(item_id) for item_id in ids]
        return sorted((i for i in items if i is not None), key=lambda i: i.title)

    async def decrement_stock(self, item_id: UUID, quantity: int) -> InventoryItem:
        item = await self.read_item(item_id)
        if item is None:
            raise ItemNotFound(item_id)
        item.decrement(quantity)
        await self.write_item(item)
        return item

    # ── Orders ───────────────────────────────────

    async def insert_order(self, order: Order) -> None:
        self._staged_orders[order.id] = replace(order)

    async def update_order(self, order: Order) -> bool:
        current = await self.find_order(order.id)
        if current is None:
            return False
        self._staged_orders[order.id] = replace(
            current, status=order.status, updated_at=order.updated_at
        )
        return True

    async def find_order(self, order_id: UUID) -> Order | None:
        if order_id in self._staged_orders:
            order = self._staged_orders[order_id]
        else:
            order = self._orders.get(order_id)
        return None if order is None else replace(order)

    async def find_order_by_key(self, user_id: str, idempotency_key: str) -> Order | None:
        for order in await self.list_orders(user_id):
            if order.idempotency_key == idempotency_key:
                return order
        return None

    async def list_orders(self, user_id: str | None = None) -> list[Order]:
        ids = set(self._orders) | set(self._staged_orders)
        orders = [await self.find_order(order_id) for order_id in ids]
        orders = [
            o for o in orders
            if o is not None and (user_id is None or o.user_id == user_id)
        ]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def delete_order(self, order_id: UUID) -> bool:
        if await self.find_order(order_id) is None:
            return False
        self._staged_orders[order_id] = None
        return True
