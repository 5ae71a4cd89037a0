"""
Orders Service — 注文ストア

注文レコードを主キーで作成・取得・更新する。
更新は「期待する現在ステータス」を WHERE 条件に入れた条件付き UPDATE にして、
同じ注文への同時キャンセルが 2 回とも成功扱いにならないようにする。
"""

import json
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import sessionmaker

from .aggregate import Order, OrderStatus

SCHEMA = """
    CREATE TABLE IF NOT EXISTS orders (
        id            TEXT PRIMARY KEY,
        user_id       TEXT NOT NULL,
        items         TEXT NOT NULL,
        total         DOUBLE PRECISION NOT NULL,
        status        TEXT NOT NULL,
        created_at    TEXT NOT NULL,
        cancelled_at  TEXT
    )
"""


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.execute(text(SCHEMA))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _row_to_order(row) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        items=json.loads(row.items),
        total=float(row.total),
        status=OrderStatus(row.status),
        created_at=row.created_at,
        cancelled_at=row.cancelled_at,
    )


class OrderStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def create(self, order: Order) -> Order:
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO orders
                        (id, user_id, items, total, status, created_at, cancelled_at)
                    VALUES
                        (:id, :user_id, :items, :total, :status, :created_at, :cancelled_at)
                """),
                {
                    "id": order.id,
                    "user_id": order.user_id,
                    "items": json.dumps(order.items, default=str),
                    "total": order.total,
                    "status": order.status.value,
                    "created_at": _iso(order.created_at),
                    "cancelled_at": _iso(order.cancelled_at),
                },
            )
            await session.commit()
        return order

    async def get(self, order_id: str) -> Order | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT * FROM orders WHERE id = :id"),
                {"id": order_id},
            )
            row = result.fetchone()
        if not row:
            return None
        return _row_to_order(row)

    async def list_all(self) -> list[Order]:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT * FROM orders ORDER BY created_at DESC"),
            )
            rows = result.fetchall()
        return [_row_to_order(row) for row in rows]

    async def update(self, order: Order, expected_status: OrderStatus) -> bool:
        """
        ステータスが expected_status のときだけ注文を書き換える。
        書き換えた行が無ければ False (存在しない、または既に遷移済み)。
        """
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE orders
                    SET status = :status, cancelled_at = :cancelled_at
                    WHERE id = :id AND status = :expected
                """),
                {
                    "id": order.id,
                    "status": order.status.value,
                    "cancelled_at": _iso(order.cancelled_at),
                    "expected": expected_status.value,
                },
            )
            await session.commit()
        return result.rowcount == 1
