"""
Orders Service — コマンドハンドラ (注文ライフサイクル)

注文の状態を変更する操作と、それに伴うイベント発行を担う。

  create:
    1. 入力を検証 (副作用なし)
    2. Validator で user_id を確認
       ├─ UNUSABLE      → InvalidUser        (何も保存しない)
       └─ INDETERMINATE → UserUnconfirmed    (何も保存しない)
    3. 注文を CREATED で保存
    4. order.created を発行 (ベストエフォート)

  cancel:
    1. 注文を取得 (無ければ OrderNotFound)
    2. 既に CANCELLED なら保存済みのレコードをそのまま返す (イベントは出さない)
    3. CANCELLED + cancelled_at で更新
    4. order.cancelled を発行 (ベストエフォート)

保存は必ず発行より先。発行に失敗しても注文はロールバックしない。
注文レコードが正であり、イベントは失われうる通知にすぎない。
"""

import logging
from typing import Any

from pydantic import ValidationError

from services.common.broker import EventPublisher
from services.common.events import RoutingKey

from .aggregate import NewOrder, Order, OrderStatus
from .store import OrderStore
from .validator import UserValidator, Validation

logger = logging.getLogger(__name__)


class OrderError(Exception):
    pass


class InvalidOrder(OrderError):
    def __init__(self, errors: list[dict]):
        super().__init__("Invalid order input")
        self.errors = errors


class InvalidUser(OrderError):
    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} does not exist")
        self.user_id = user_id


class UserUnconfirmed(OrderError):
    def __init__(self, user_id: str):
        super().__init__(f"users-service unavailable and user {user_id} not cached")
        self.user_id = user_id


class OrderNotFound(OrderError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class OrderLifecycle:
    def __init__(
        self,
        store: OrderStore,
        validator: UserValidator,
        publisher: EventPublisher,
    ):
        self.store = store
        self.validator = validator
        self.publisher = publisher

    async def create(self, user_id: Any, items: Any, total: Any) -> Order:
        try:
            draft = NewOrder(user_id=user_id, items=items, total=total)
        except ValidationError as e:
            raise InvalidOrder(e.errors(include_url=False, include_context=False)) from e

        outcome = await self.validator.validate(draft.user_id)
        if outcome is Validation.UNUSABLE:
            raise InvalidUser(draft.user_id)
        if outcome is Validation.INDETERMINATE:
            raise UserUnconfirmed(draft.user_id)

        order = await self.store.create(Order.open(draft))
        logger.info("Created order %s for user %s", order.id, order.user_id)

        await self.publisher.publish(RoutingKey.ORDER_CREATED.value, order)
        return order

    async def cancel(self, order_id: str) -> Order:
        order = await self.store.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if order.is_cancelled:
            logger.info("Order %s already cancelled, nothing to do", order_id)
            return order

        cancelled = order.cancel()
        if not await self.store.update(cancelled, expected_status=OrderStatus.CREATED):
            # 同時に走った別のキャンセルが先に遷移させた
            current = await self.store.get(order_id)
            if current is None:
                raise OrderNotFound(order_id)
            return current
        logger.info("Cancelled order %s", order_id)

        await self.publisher.publish(RoutingKey.ORDER_CANCELLED.value, cancelled)
        return cancelled

    async def get(self, order_id: str) -> Order:
        order = await self.store.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def list_all(self) -> list[Order]:
        return await self.store.list_all()
