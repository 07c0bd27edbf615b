"""
Bookstore — 呼び出し元 (Caller)

認証・認可そのものは外部 (API ゲートウェイ) の責務。
ここでは認証済みの呼び出し元の情報とロール判定だけを持つ。
"""

from typing import Literal

from pydantic import BaseModel

Role = Literal["user", "admin", "deliver"]

PRIVILEGED_ROLES = frozenset({"admin", "deliver"})


class Caller(BaseModel):
    user_id: str
    role: Role = "user"
    email: str | None = None

    @property
    def is_privileged(self) -> bool:
        """admin / deliver は全注文の参照とステータス更新ができる"""
        return self.role in PRIVILEGED_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
