"""
Order — クエリハンドラ (Read 側)

admin / deliver は全注文を参照できる。一般ユーザーは自分の注文だけ。
他人の注文は存在しないものとして扱う (OrderNotFound)。
"""

from uuid import UUID

from ..caller import Caller
from ..errors import OrderNotFound
from ..store.base import Store
from .aggregate import Order


async def get_order(store: Store, caller: Caller, order_id: UUID) -> Order:
    async with store.transaction() as tx:
        order = await tx.find_order(order_id)
    if order is None or not (caller.is_privileged or order.user_id == caller.user_id):
        raise OrderNotFound(order_id)
    return order


async def list_orders(store: Store, caller: Caller) -> list[Order]:
    """新しい順に返す"""
    async with store.transaction() as tx:
        if caller.is_privileged:
            return await tx.list_orders()
        return await tx.list_orders(user_id=caller.user_id)
