"""
Jobs — ジョブペイロード定義

ジョブの種類 (kind) ごとにペイロードの型を決める。
enqueue 時に検証するので、不正なペイロードがハンドラまで届くことはない。
ペイロードには ID だけを入れ、集約そのものへの参照は持たせない。
"""

from decimal import Decimal
from typing import Annotated, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..errors import InvalidJobPayload

# ── キュー名 / ジョブ種別 ─────────────────────────

EMAIL_QUEUE = "email"
BOOK_QUEUE = "book"
IMAGE_QUEUE = "image"
NOTIFICATION_QUEUE = "notification"

SEND_ORDER_CONFIRMATION = "sendOrderConfirmation"
SEND_NEW_BOOK_EMAIL = "sendNewBookEmail"
RESIZE_IMAGE = "resizeImage"
WRITE_NOTIFICATION = "writeNotification"


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class OrderLineSummary(_Payload):
    item_id: UUID
    title: str
    quantity: int = Field(gt=0)
    unit_price: Decimal


class OrderConfirmation(_Payload):
    """注文確定メール (注文したユーザー宛て)"""
    kind: Literal["sendOrderConfirmation"] = SEND_ORDER_CONFIRMATION
    order_id: UUID
    user_id: str
    recipient: str = Field(min_length=3)
    total: Decimal
    lines: list[OrderLineSummary] = Field(min_length=1)


class NewBookEmail(_Payload):
    """新刊登録の通知メール (管理者宛て)"""
    kind: Literal["sendNewBookEmail"] = SEND_NEW_BOOK_EMAIL
    item_id: UUID
    admin_id: str
    title: str


class ResizeImage(_Payload):
    kind: Literal["resizeImage"] = RESIZE_IMAGE
    item_id: UUID
    image_path: str = Field(min_length=1)
    width: int = Field(default=800, gt=0)


class WriteNotification(_Payload):
    """アプリ内通知 / 管理者アラート"""
    kind: Literal["writeNotification"] = WRITE_NOTIFICATION
    user_id: str
    type: str
    message: str
    related_id: str


JobPayload = Annotated[
    Union[OrderConfirmation, NewBookEmail, ResizeImage, WriteNotification],
    Field(discriminator="kind"),
]

_adapter = TypeAdapter(JobPayload)

JOB_KINDS: dict[str, type[_Payload]] = {
    SEND_ORDER_CONFIRMATION: OrderConfirmation,
    SEND_NEW_BOOK_EMAIL: NewBookEmail,
    RESIZE_IMAGE: ResizeImage,
    WRITE_NOTIFICATION: WriteNotification,
}


def parse_payload(kind: str, payload) -> _Payload:
    """kind とペイロードの組み合わせを検証して型付きペイロードを返す。"""
    if kind not in JOB_KINDS:
        raise InvalidJobPayload(f"Unknown job kind: {kind!r}")
    if isinstance(payload, BaseModel):
        if not isinstance(payload, JOB_KINDS[kind]):
            raise InvalidJobPayload(
                f"Payload {type(payload).__name__} does not match job kind {kind!r}"
            )
        return payload
    if not isinstance(payload, dict):
        raise InvalidJobPayload(f"Payload for {kind!r} must be a mapping")
    data = {**payload, "kind": kind}
    try:
        return _adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidJobPayload(f"Invalid payload for {kind!r}: {e}") from e


def dump_payload(payload: _Payload) -> dict:
    return payload.model_dump(mode="json")
