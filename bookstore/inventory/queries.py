"""
Inventory — クエリハンドラ (Read 側)
"""

from uuid import UUID

from ..errors import ItemNotFound
from ..store.base import Store
from .aggregate import InventoryItem


async def get_item(store: Store, item_id: UUID) -> InventoryItem:
    async with store.transaction() as tx:
        item = await tx.read_item(item_id)
    if item is None:
        raise ItemNotFound(item_id)
    return item


async def list_items(store: Store, in_stock_only: bool = False) -> list[InventoryItem]:
    async with store.transaction() as tx:
        items = await tx.list_items()
    if in_stock_only:
        return [item for item in items if item.is_in_stock()]
    return items
