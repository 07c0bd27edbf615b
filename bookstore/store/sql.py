"""
Store — SQLAlchemy (async) 実装

PostgreSQL (asyncpg) を想定。テストでは SQLite (aiosqlite) でも動く SQL だけを使う。

在庫の減算は条件付き UPDATE で行う:

    UPDATE inventory_items
    SET quantity = quantity - :qty ...
    WHERE id = :id AND quantity >= :qty

並行トランザクションが同じ行を奪い合っても、WHERE 条件は最新の行に対して
再評価されるため、在庫がマイナスになることはない (lost update にならない)。
金額はすべて整数のセントで保存する。
"""

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from ..errors import InsufficientStock, ItemNotFound, TransactionConflict
from ..inventory.aggregate import InventoryItem
from ..money import from_cents, to_cents
from ..order.aggregate import Order, OrderLine

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS inventory_items (
        id VARCHAR(36) PRIMARY KEY,
        title VARCHAR(255) NOT NULL,
        quantity INTEGER NOT NULL CHECK (quantity >= 0),
        unit_price_cents INTEGER NOT NULL CHECK (unit_price_cents > 0),
        is_available BOOLEAN NOT NULL,
        status VARCHAR(16) NOT NULL,
        image_path TEXT,
        sold_count INTEGER NOT NULL DEFAULT 0,
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(36) PRIMARY KEY,
        user_id VARCHAR(255) NOT NULL,
        lines TEXT NOT NULL,
        total_cents BIGINT NOT NULL,
        status VARCHAR(16) NOT NULL,
        idempotency_key VARCHAR(255),
        created_at TIMESTAMP WITH TIME ZONE NOT NULL,
        updated_at TIMESTAMP WITH TIME ZONE NOT NULL,
        UNIQUE (user_id, idempotency_key)
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_user_id ON orders (user_id)",
]

# タイムスタンプは型を明示して渡す (SQLite では UTC の文字列として保存される)
_TIMESTAMP = DateTime(timezone=True)


def _ts(*names: str):
    return [bindparam(name, type_=_TIMESTAMP) for name in names]


# シリアライズ失敗 / デッドロック
_CONFLICT_SQLSTATES = {"40001", "40P01"}


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


def _is_conflict(exc: DBAPIError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _CONFLICT_SQLSTATES:
        return True
    # SQLite は書き込み競合をロックエラーとして返す
    return isinstance(exc, OperationalError) and "locked" in str(orig).lower()


def _as_datetime(value) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _row_to_item(row) -> InventoryItem:
    return InventoryItem(
        id=UUID(str(row.id)),
        title=row.title,
        quantity=row.quantity,
        unit_price=from_cents(row.unit_price_cents),
        is_available=bool(row.is_available),
        image_path=row.image_path,
        sold_count=row.sold_count,
        updated_at=_as_datetime(row.updated_at),
    )


def _row_to_order(row) -> Order:
    lines = json.loads(row.lines) if isinstance(row.lines, str) else row.lines
    return Order(
        id=UUID(str(row.id)),
        user_id=row.user_id,
        lines=tuple(OrderLine.from_dict(line) for line in lines),
        total=from_cents(row.total_cents),
        status=row.status,
        created_at=_as_datetime(row.created_at),
        updated_at=_as_datetime(row.updated_at),
        idempotency_key=row.idempotency_key,
    )


class SqlStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._session_factory = sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

    @asynccontextmanager
    async def transaction(self):
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    yield SqlTransaction(session)
            except IntegrityError as e:
                # (user_id, idempotency_key) の一意制約違反は同時リトライとの競合
                raise TransactionConflict(f"Constraint violation: {e.orig}") from e
            except DBAPIError as e:
                if _is_conflict(e):
                    raise TransactionConflict(f"Concurrent update: {e.orig}") from e
                raise


class SqlTransaction:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ── Inventory ────────────────────────────────

    async def read_item(self, item_id: UUID) -> InventoryItem | None:
        result = await self.session.execute(
            text("SELECT * FROM inventory_items WHERE id = :id"),
            {"id": str(item_id)},
        )
        row = result.fetchone()
        return _row_to_item(row) if row else None

    async def write_item(self, item: InventoryItem) -> None:
        params = {
            "id": str(item.id),
            "title": item.title,
            "quantity": item.quantity,
            "price": to_cents(item.unit_price),
            "available": item.is_available,
            "status": item.status,
            "image": item.image_path,
            "sold": item.sold_count,
            "now": item.updated_at,
        }
        result = await self.session.execute(
            text("""
                UPDATE inventory_items
                SET title = :title, quantity = :quantity, unit_price_cents = :price,
                    is_available = :available, status = :status, image_path = :image,
                    sold_count = :sold, updated_at = :now
                WHERE id = :id
            """).bindparams(*_ts("now")),
            params,
        )
        if result.rowcount == 0:
            await self.session.execute(
                text("""
                    INSERT INTO inventory_items
                        (id, title, quantity, unit_price_cents, is_available,
                         status, image_path, sold_count, updated_at)
                    VALUES
                        (:id, :title, :quantity, :price, :available,
                         :status, :image, :sold, :now)
                """).bindparams(*_ts("now")),
                params,
            )

    async def delete_item(self, item_id: UUID) -> bool:
        result = await self.session.execute(
            text("DELETE FROM inventory_items WHERE id = :id"),
            {"id": str(item_id)},
        )
        return result.rowcount > 0

    async def list_items(self) -> list[InventoryItem]:
        result = await self.session.execute(
            text("SELECT * FROM inventory_items ORDER BY title"),
        )
        return [_row_to_item(row) for row in result.fetchall()]

    async def decrement_stock(self, item_id: UUID, quantity: int) -> InventoryItem:
        result = await self.session.execute(
            text("""
                UPDATE inventory_items
                SET quantity = quantity - :qty,
                    sold_count = sold_count + :qty,
                    updated_at = :now
                WHERE id = :id AND quantity >= :qty
            """).bindparams(*_ts("now")),
            {"id": str(item_id), "qty": quantity, "now": datetime.now(timezone.utc)},
        )
        item = await self.read_item(item_id)
        if item is None:
            raise ItemNotFound(item_id)
        if result.rowcount == 0:
            raise InsufficientStock(item_id, quantity, item.quantity)

        # status は減算後の在庫数から再計算する
        await self.session.execute(
            text("UPDATE inventory_items SET status = :status WHERE id = :id"),
            {"id": str(item_id), "status": item.status},
        )
        return item

    # ── Orders ───────────────────────────────────

    async def insert_order(self, order: Order) -> None:
        await self.session.execute(
            text("""
                INSERT INTO orders
                    (id, user_id, lines, total_cents, status, idempotency_key,
                     created_at, updated_at)
                VALUES
                    (:id, :user_id, :lines, :total, :status, :key,
                     :created_at, :updated_at)
            """).bindparams(*_ts("created_at", "updated_at")),
            {
                "id": str(order.id),
                "user_id": order.user_id,
                "lines": json.dumps([line.to_dict() for line in order.lines]),
                "total": to_cents(order.total),
                "status": order.status,
                "key": order.idempotency_key,
                "created_at": order.created_at,
                "updated_at": order.updated_at,
            },
        )

    async def update_order(self, order: Order) -> bool:
        result = await self.session.execute(
            text("""
                UPDATE orders
                SET status = :status, updated_at = :now
                WHERE id = :id
            """).bindparams(*_ts("now")),
            {"id": str(order.id), "status": order.status, "now": order.updated_at},
        )
        return result.rowcount > 0

    async def find_order(self, order_id: UUID) -> Order | None:
        result = await self.session.execute(
            text("SELECT * FROM orders WHERE id = :id"),
            {"id": str(order_id)},
        )
        row = result.fetchone()
        return _row_to_order(row) if row else None

    async def find_order_by_key(self, user_id: str, idempotency_key: str) -> Order | None:
        result = await self.session.execute(
            text("""
                SELECT * FROM orders
                WHERE user_id = :user_id AND idempotency_key = :key
            """),
            {"user_id": user_id, "key": idempotency_key},
        )
        row = result.fetchone()
        return _row_to_order(row) if row else None

    async def list_orders(self, user_id: str | None = None) -> list[Order]:
        if user_id is None:
            result = await self.session.execute(
                text("SELECT * FROM orders ORDER BY created_at DESC"),
            )
        else:
            result = await self.session.execute(
                text("""
                    SELECT * FROM orders
                    WHERE user_id = :user_id
                    ORDER BY created_at DESC
                """),
                {"user_id": user_id},
            )
        return [_row_to_order(row) for row in result.fetchall()]

    async def delete_order(self, order_id: UUID) -> bool:
        result = await self.session.execute(
            text("DELETE FROM orders WHERE id = :id"),
            {"id": str(order_id)},
        )
        return result.rowcount > 0
