"""
Users Service — ユーザーストア

ユーザーレコードの正 (authoritative copy) を持つ。
email は全ユーザーで一意。UNIQUE 制約違反は DuplicateEmail に変換する。
ユーザーは作成と更新のみで、削除はしない。
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import sessionmaker

from services.common.events import User

SCHEMA = """
    CREATE TABLE IF NOT EXISTS users (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        email       TEXT NOT NULL UNIQUE,
        created_at  TEXT NOT NULL,
        updated_at  TEXT
    )
"""


class UserStoreError(Exception):
    pass


class UserNotFound(UserStoreError):
    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class DuplicateEmail(UserStoreError):
    def __init__(self, email: str):
        super().__init__(f"Email {email} already exists")
        self.email = email


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.execute(text(SCHEMA))


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class UserStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def create(self, name: str, email: str) -> User:
        user = User(
            id=str(uuid4()),
            name=name,
            email=email,
            created_at=datetime.now(timezone.utc),
        )
        async with self.session_factory() as session:
            try:
                await session.execute(
                    text("""
                        INSERT INTO users (id, name, email, created_at)
                        VALUES (:id, :name, :email, :created_at)
                    """),
                    {
                        "id": user.id,
                        "name": user.name,
                        "email": user.email,
                        "created_at": user.created_at.isoformat(),
                    },
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateEmail(email) from e
        return user

    async def get(self, user_id: str) -> User | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT * FROM users WHERE id = :id"),
                {"id": user_id},
            )
            row = result.fetchone()
        if not row:
            return None
        return _row_to_user(row)

    async def list_all(self) -> list[User]:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT * FROM users ORDER BY created_at ASC"),
            )
            rows = result.fetchall()
        return [_row_to_user(row) for row in rows]

    async def update(self, user_id: str, name: str | None = None, email: str | None = None) -> User:
        """指定されたフィールドだけを書き換え、updated_at を進める。"""
        current = await self.get(user_id)
        if current is None:
            raise UserNotFound(user_id)

        updated = current.model_copy(update={
            "name": name if name is not None else current.name,
            "email": email if email is not None else current.email,
            "updated_at": datetime.now(timezone.utc),
        })
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    text("""
                        UPDATE users
                        SET name = :name, email = :email, updated_at = :updated_at
                        WHERE id = :id
                    """),
                    {
                        "id": user_id,
                        "name": updated.name,
                        "email": updated.email,
                        "updated_at": updated.updated_at.isoformat(),
                    },
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateEmail(updated.email) from e
        if result.rowcount == 0:
            raise UserNotFound(user_id)
        return updated
