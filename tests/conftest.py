import os

# main モジュールが import 時にエンジンを作るので、テストでは PostgreSQL を要求しない
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.common.broker import EventPublisher
from services.common.events import User
from services.orders.app import store as order_store_module
from services.orders.app.store import OrderStore
from services.users.app import store as user_store_module
from services.users.app.store import UserStore


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def order_store(engine, session_factory):
    await order_store_module.init_schema(engine)
    return OrderStore(session_factory)


@pytest_asyncio.fixture
async def user_store(engine, session_factory):
    await user_store_module.init_schema(engine)
    return UserStore(session_factory)


@pytest.fixture
def publisher():
    """publish 呼び出しを記録するだけの EventPublisher モック"""
    mock = MagicMock(spec=EventPublisher)
    mock.publish = AsyncMock(return_value=True)
    return mock


def make_user(user_id: str = "u1", name: str = "Alice", email: str = "alice@example.com", **extra) -> User:
    return User(
        id=user_id,
        name=name,
        email=email,
        created_at=extra.pop("created_at", datetime(2024, 1, 1, tzinfo=timezone.utc)),
        **extra,
    )
