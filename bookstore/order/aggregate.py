"""
Order — 注文集約 (Order Aggregate)

注文は Coordinator がコミットに成功したときだけ作られる。
合計金額はコミット時点の単価スナップショットから計算し、以後は再計算しない。

状態遷移 (後戻りは不可):
    pending → shipping → delivered
    pending → delivered   (管理者は前方向なら任意にスキップできる)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal
from uuid import UUID, uuid4

from ..errors import InvalidInput, InvalidTransition

OrderStatus = Literal["pending", "shipping", "delivered"]

ORDER_STATUSES: tuple[str, ...] = ("pending", "shipping", "delivered")
_RANK = {status: rank for rank, status in enumerate(ORDER_STATUSES)}


def validate_status(value) -> OrderStatus:
    if value not in _RANK:
        raise InvalidInput(f"Invalid order status: {value!r}")
    return value


@dataclass(frozen=True)
class OrderLine:
    """注文明細。商品への参照ではなく、コミット時点のスナップショット。"""

    item_id: UUID
    title: str
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "item_id": str(self.item_id),
            "title": self.title,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OrderLine":
        return cls(
            item_id=UUID(data["item_id"]),
            title=data["title"],
            quantity=int(data["quantity"]),
            unit_price=Decimal(data["unit_price"]),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Order:
    id: UUID
    user_id: str
    lines: tuple[OrderLine, ...]
    total: Decimal
    status: OrderStatus = "pending"
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    idempotency_key: str | None = None

    @classmethod
    def create(
        cls,
        user_id: str,
        lines: list[OrderLine],
        idempotency_key: str | None = None,
    ) -> "Order":
        now = _utcnow()
        return cls(
            id=uuid4(),
            user_id=user_id,
            lines=tuple(lines),
            total=sum((line.subtotal for line in lines), Decimal("0")),
            status="pending",
            created_at=now,
            updated_at=now,
            idempotency_key=idempotency_key,
        )

    def transition_to(self, new_status: str) -> bool:
        """
        ステータスを前方向に進める。

        同じステータスへの更新は何もせず False を返す。
        後戻りは InvalidTransition。
        """
        new_status = validate_status(new_status)
        if new_status == self.status:
            return False
        if _RANK[new_status] < _RANK[self.status]:
            raise InvalidTransition(
                f"Order {self.id} cannot move from {self.status} to {new_status}"
            )
        self.status = new_status
        self.updated_at = _utcnow()
        return True

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "user_id": self.user_id,
            "lines": [line.to_dict() for line in self.lines],
            "total": str(self.total),
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
