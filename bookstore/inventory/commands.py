"""
Inventory — コマンドハンドラ (カタログ管理)

管理者による商品の登録・更新・削除。
在庫数や販売可否フラグを変えたときも status は集約側で再計算されるので、
ここで status を書くことはない。

在庫を「減らす」のは注文トランザクション (order/commands.py) だけ。
ここでの quantity 更新は入荷などによる在庫数の上書き。

新刊登録の通知メールと画像リサイズはジョブキューに任せる。
"""

import logging
from uuid import UUID, uuid4

from ..caller import Caller
from ..config import Settings
from ..errors import Forbidden, InvalidInput, ItemNotFound
from ..jobs.payloads import BOOK_QUEUE, IMAGE_QUEUE, RESIZE_IMAGE, SEND_NEW_BOOK_EMAIL
from ..jobs.queue import JobQueue, enqueue_best_effort
from ..money import parse_price
from ..store.base import Store
from .aggregate import InventoryItem, validate_quantity

logger = logging.getLogger(__name__)

_UPDATABLE = {"title", "quantity", "unit_price", "is_available", "image_path"}


def _require_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise Forbidden("Only admin can manage the catalog")


def _validate_title(title) -> str:
    if not isinstance(title, str) or not title.strip():
        raise InvalidInput("Title is required")
    return title.strip()


def _validate_flag(value) -> bool:
    if not isinstance(value, bool):
        raise InvalidInput(f"is_available must be a boolean: {value!r}")
    return value


class CatalogService:
    def __init__(self, store: Store, queue: JobQueue, settings: Settings) -> None:
        self.store = store
        self.queue = queue
        self.settings = settings

    async def add_item(
        self,
        caller: Caller,
        title: str,
        quantity: int,
        unit_price,
        is_available: bool = True,
        image_path: str | None = None,
    ) -> InventoryItem:
        _require_admin(caller)
        item = InventoryItem(
            id=uuid4(),
            title=_validate_title(title),
            quantity=validate_quantity(quantity),
            unit_price=parse_price(unit_price),
            is_available=_validate_flag(is_available),
            image_path=image_path or None,
        )
        async with self.store.transaction() as tx:
            await tx.write_item(item)
        logger.info("Item %s created by admin %s", item.id, caller.user_id)

        await enqueue_best_effort(
            self.queue,
            BOOK_QUEUE,
            SEND_NEW_BOOK_EMAIL,
            {"item_id": item.id, "admin_id": caller.user_id, "title": item.title},
            timeout=self.settings.enqueue_timeout,
        )
        if item.image_path:
            await self._enqueue_resize(item)
        return item

    async def update_item(self, caller: Caller, item_id: UUID, **changes) -> InventoryItem:
        """
        商品を部分更新する。

        更新できるのは title / quantity / unit_price / is_available / image_path。
        status を渡すと InvalidInput (派生値なので直接は変えられない)。
        """
        _require_admin(caller)
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise InvalidInput(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        async with self.store.transaction() as tx:
            item = await tx.read_item(item_id)
            if item is None:
                raise ItemNotFound(item_id)
            previous_image = item.image_path
            if "title" in changes:
                item.title = _validate_title(changes["title"])
            if "quantity" in changes:
                item.quantity = validate_quantity(changes["quantity"])
            if "unit_price" in changes:
                item.unit_price = parse_price(changes["unit_price"])
            if "is_available" in changes:
                item.is_available = _validate_flag(changes["is_available"])
            if "image_path" in changes:
                item.image_path = changes["image_path"] or None
            item.touch()
            await tx.write_item(item)
        logger.info("Item %s updated by admin %s", item.id, caller.user_id)

        if item.image_path and item.image_path != previous_image:
            await self._enqueue_resize(item)
        return item

    async def remove_item(self, caller: Caller, item_id: UUID) -> None:
        """商品を削除する。過去の注文は明細のスナップショットを持つので影響しない。"""
        _require_admin(caller)
        async with self.store.transaction() as tx:
            if not await tx.delete_item(item_id):
                raise ItemNotFound(item_id)
        logger.info("Item %s deleted by admin %s", item_id, caller.user_id)

    async def _enqueue_resize(self, item: InventoryItem) -> None:
        await enqueue_best_effort(
            self.queue,
            IMAGE_QUEUE,
            RESIZE_IMAGE,
            {"item_id": item.id, "image_path": item.image_path},
            timeout=self.settings.enqueue_timeout,
        )
