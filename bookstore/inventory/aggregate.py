"""
Inventory — 在庫集約 (InventoryItem)

在庫数・単価・販売可否フラグを持つ。
status は (quantity, is_available) から算出する派生値で、
呼び出し側が直接セットすることはできない。

    quantity <= 0          → out_of_stock
    is_available == False  → discontinued
    それ以外               → in_stock
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal
from uuid import UUID

from ..errors import InsufficientStock, InvalidInput

ItemStatus = Literal["in_stock", "out_of_stock", "discontinued"]


def derive_status(quantity: int, is_available: bool) -> ItemStatus:
    if quantity <= 0:
        return "out_of_stock"
    if not is_available:
        return "discontinued"
    return "in_stock"


def validate_quantity(value, *, allow_zero: bool = True) -> int:
    """在庫数・注文数の検証。bool は int のサブクラスなので明示的に弾く。"""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"Quantity must be an integer: {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise InvalidInput(f"Quantity out of range: {value!r}")
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class InventoryItem:
    id: UUID
    title: str
    quantity: int
    unit_price: Decimal
    is_available: bool = True
    image_path: str | None = None
    sold_count: int = 0
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def status(self) -> ItemStatus:
        return derive_status(self.quantity, self.is_available)

    def is_in_stock(self) -> bool:
        return self.status == "in_stock"

    # ── 変更メソッド ─────────────────────────────

    def decrement(self, quantity: int) -> None:
        """在庫を減らす。不足していれば何も変更せずに InsufficientStock。"""
        if quantity > self.quantity:
            raise InsufficientStock(self.id, quantity, self.quantity)
        self.quantity -= quantity
        self.sold_count += quantity
        self.updated_at = _utcnow()

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "title": self.title,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "is_available": self.is_available,
            "status": self.status,
            "image_path": self.image_path,
            "sold_count": self.sold_count,
            "updated_at": self.updated_at.isoformat(),
        }
