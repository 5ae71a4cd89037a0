"""
Orders Service — 注文レコードと状態遷移

状態遷移:
    CREATED → CANCELLED  (キャンセル。終端状態)

PENDING や FAILED は存在しない。ユーザーの検証は状態機械に入る前に済ませる。
キャンセル済みの注文は不変で、再キャンセルは呼び出し側で no-op として扱う。
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import ConfigDict, Field

from services.common.events import CamelModel


class OrderStatus(str, Enum):
    CREATED = "created"
    CANCELLED = "cancelled"


class InvalidTransition(Exception):
    def __init__(self, order_id: str, status: OrderStatus, target: OrderStatus):
        super().__init__(f"Order {order_id} cannot move from {status.value} to {target.value}")
        self.order_id = order_id
        self.status = status
        self.target = target


class NewOrder(CamelModel):
    """注文作成の入力。total は数値のみ受け付ける ("10" のような文字列や Infinity / NaN は不可)。"""
    model_config = ConfigDict(strict=True)

    user_id: str = Field(min_length=1)
    items: list[Any] = Field(min_length=1)
    total: float = Field(ge=0, allow_inf_nan=False)


class Order(CamelModel):
    id: str
    user_id: str
    items: list[Any]
    total: float
    status: OrderStatus = OrderStatus.CREATED
    created_at: datetime
    cancelled_at: datetime | None = None

    @classmethod
    def open(cls, draft: NewOrder) -> "Order":
        """新しい注文を CREATED 状態で作る。内容が同じでも ID は毎回新しい。"""
        return cls(
            id=new_order_id(),
            user_id=draft.user_id,
            items=draft.items,
            total=draft.total,
            status=OrderStatus.CREATED,
            created_at=datetime.now(timezone.utc),
        )

    @property
    def is_cancelled(self) -> bool:
        return self.status is OrderStatus.CANCELLED

    def cancel(self, now: datetime | None = None) -> "Order":
        """CREATED → CANCELLED に遷移した新しいレコードを返す。"""
        if self.status is not OrderStatus.CREATED:
            raise InvalidTransition(self.id, self.status, OrderStatus.CANCELLED)
        return self.model_copy(update={
            "status": OrderStatus.CANCELLED,
            "cancelled_at": now or datetime.now(timezone.utc),
        })


def new_order_id() -> str:
    return f"o_{uuid4().hex[:12]}"
