"""
Jobs — ジョブハンドラ

メール送信や画像のリサイズといった実際の配送手段は外部の責務なので、
Mailer / ImageResizer プロトコル越しに呼び出す。

キューは at-least-once なので、同じジョブが 2 回届くことがある。
各ハンドラは DeliveryLog に「処理済み」を記録し、
2 回目以降の配送では副作用を起こさずに正常終了する。
"""

import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Protocol

import redis.asyncio as aioredis
from pydantic import BaseModel, Field

from ..errors import PermanentJobError
from .payloads import (
    BOOK_QUEUE,
    EMAIL_QUEUE,
    IMAGE_QUEUE,
    NOTIFICATION_QUEUE,
    RESIZE_IMAGE,
    SEND_NEW_BOOK_EMAIL,
    SEND_ORDER_CONFIRMATION,
    WRITE_NOTIFICATION,
    NewBookEmail,
    OrderConfirmation,
    ResizeImage,
    WriteNotification,
)
from .worker import WorkerPool

logger = logging.getLogger(__name__)


# ── 外部の配送手段 ───────────────────────────────

class Mailer(Protocol):
    async def send(self, to: str, subject: str, body: str) -> None: ...


class ImageResizer(Protocol):
    async def resize(self, source: str, target: str, width: int) -> None: ...


class LoggingMailer:
    """送信内容をログに出すだけの Mailer (SMTP などは外部で差し替える)"""

    def __init__(self, sender: str = "no-reply@bookstore.local") -> None:
        self.sender = sender

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info("Sent email from %s to %s: %s", self.sender, to, subject)


class LoggingImageResizer:
    async def resize(self, source: str, target: str, width: int) -> None:
        if not os.path.exists(source):
            raise FileNotFoundError(source)
        logger.info("Resize requested: %s -> %s (width=%d)", source, target, width)


# ── 重複配送の検知 ───────────────────────────────

class DeliveryLog(Protocol):
    async def seen(self, key: str) -> bool: ...

    async def record(self, key: str) -> None: ...


class InMemoryDeliveryLog:
    def __init__(self) -> None:
        self._keys: set[str] = set()

    async def seen(self, key: str) -> bool:
        return key in self._keys

    async def record(self, key: str) -> None:
        self._keys.add(key)


class RedisDeliveryLog:
    def __init__(
        self,
        redis: aioredis.Redis,
        prefix: str = "bookstore",
        ttl_seconds: int = 7 * 24 * 3600,
    ) -> None:
        self.redis = redis
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self.prefix}:delivered:{key}"

    async def seen(self, key: str) -> bool:
        return bool(await self.redis.exists(self._key(key)))

    async def record(self, key: str) -> None:
        await self.redis.set(self._key(key), "1", ex=self.ttl_seconds)


# ── アプリ内通知 ─────────────────────────────────

class Notification(BaseModel):
    user_id: str
    type: str
    message: str
    related_id: str
    read: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationStore(Protocol):
    async def add(self, notification: Notification) -> None: ...

    async def list_for(self, user_id: str) -> list[Notification]: ...


class InMemoryNotificationStore:
    def __init__(self) -> None:
        self._notifications: list[Notification] = []

    async def add(self, notification: Notification) -> None:
        self._notifications.append(notification)

    async def list_for(self, user_id: str) -> list[Notification]:
        return [n for n in self._notifications if n.user_id == user_id]


class RedisNotificationStore:
    def __init__(self, redis: aioredis.Redis, prefix: str = "bookstore") -> None:
        self.redis = redis
        self.prefix = prefix

    def _key(self, user_id: str) -> str:
        return f"{self.prefix}:notifications:{user_id}"

    async def add(self, notification: Notification) -> None:
        await self.redis.lpush(
            self._key(notification.user_id), notification.model_dump_json()
        )

    async def list_for(self, user_id: str) -> list[Notification]:
        raw = await self.redis.lrange(self._key(user_id), 0, -1)
        return [Notification.model_validate(json.loads(r)) for r in raw]


# ── ハンドラ ─────────────────────────────────────

def small_image_path(image_path: str) -> str:
    """cover.jpg → cover_small.jpg"""
    return re.sub(r"(\.\w+)$", r"_small\1", image_path)


class JobHandlers:
    def __init__(
        self,
        mailer: Mailer,
        notifications: NotificationStore,
        delivery_log: DeliveryLog,
        resizer: ImageResizer | None = None,
        admin_email: str = "admin@bookstore.local",
    ) -> None:
        self.mailer = mailer
        self.notifications = notifications
        self.delivery_log = delivery_log
        self.resizer = resizer or LoggingImageResizer()
        self.admin_email = admin_email

    def register_all(self, pool: WorkerPool) -> None:
        pool.register(EMAIL_QUEUE, SEND_ORDER_CONFIRMATION, self.send_order_confirmation)
        pool.register(BOOK_QUEUE, SEND_NEW_BOOK_EMAIL, self.send_new_book_email)
        pool.register(IMAGE_QUEUE, RESIZE_IMAGE, self.resize_image)
        pool.register(NOTIFICATION_QUEUE, WRITE_NOTIFICATION, self.write_notification)

    async def send_order_confirmation(self, payload: OrderConfirmation) -> None:
        key = f"{SEND_ORDER_CONFIRMATION}:{payload.order_id}"
        if await self.delivery_log.seen(key):
            logger.info("Order confirmation for %s already sent, skipping", payload.order_id)
            return

        lines = "\n".join(
            f"  - {line.title} x {line.quantity} @ ${line.unit_price}"
            for line in payload.lines
        )
        await self.mailer.send(
            payload.recipient,
            "Order Confirmation - Your order has been received",
            f"Dear customer, your order #{payload.order_id} totaling ${payload.total} "
            f"has been successfully received.\n{lines}\nThank you for shopping with us!",
        )
        await self.notifications.add(
            Notification(
                user_id=payload.user_id,
                type="order",
                message=f"Your order #{payload.order_id} has been received",
                related_id=str(payload.order_id),
            )
        )
        await self.delivery_log.record(key)

    async def send_new_book_email(self, payload: NewBookEmail) -> None:
        key = f"{SEND_NEW_BOOK_EMAIL}:{payload.item_id}"
        if await self.delivery_log.seen(key):
            return
        await self.mailer.send(
            self.admin_email,
            f"New Book Created: {payload.title}",
            f"Admin {payload.admin_id} created a new book with ID: {payload.item_id}",
        )
        await self.delivery_log.record(key)

    async def resize_image(self, payload: ResizeImage) -> None:
        target = small_image_path(payload.image_path)
        try:
            await self.resizer.resize(payload.image_path, target, payload.width)
        except FileNotFoundError as e:
            # 元画像が無いなら何度やっても同じ
            raise PermanentJobError(f"Image not found: {payload.image_path}") from e
        logger.info("Image resized: %s", target)

    async def write_notification(self, payload: WriteNotification) -> None:
        key = f"{WRITE_NOTIFICATION}:{payload.type}:{payload.user_id}:{payload.related_id}"
        if await self.delivery_log.seen(key):
            return
        await self.notifications.add(
            Notification(
                user_id=payload.user_id,
                type=payload.type,
                message=payload.message,
                related_id=payload.related_id,
            )
        )
        await self.delivery_log.record(key)
