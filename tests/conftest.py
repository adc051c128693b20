"""
Pytest configuration and fixtures for relay backend tests
"""

import pytest
import fakeredis
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from src.cache.redis_manager import RedisManager
from src.database import crud
from src.database.models import Base


# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

GIB = 1024 * 1024 * 1024


@pytest.fixture(scope="function")
async def test_db_engine():
    """
    Create test database engine
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(test_db_engine) -> AsyncGenerator[AsyncSession, None]:
    """
    Create test database session
    """
    async_session_maker = async_sessionmaker(
        test_db_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ===========================
# REDIS
# ===========================


@pytest.fixture(scope="function")
async def fake_redis():
    """
    In-memory Redis (fakeredis), isolated per test
    """
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture(scope="function")
def redis_manager(fake_redis) -> RedisManager:
    """RedisManager backed by fakeredis"""
    return RedisManager(client=fake_redis)


@pytest.fixture(scope="function")
def unavailable_redis() -> RedisManager:
    """RedisManager that was never initialized (Redis down at startup)"""
    return RedisManager()


@pytest.fixture(scope="function")
async def disconnected_redis():
    """RedisManager whose server drops every command (Redis died mid-flight)"""
    server = fakeredis.FakeServer()
    server.connected = False
    client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    yield RedisManager(client=client)
    await client.aclose()


# ===========================
# DATA
# ===========================


@pytest.fixture
async def user(db_session):
    return await crud.create_user(db_session, username="alice", balance=10_000)


@pytest.fixture
async def node(db_session):
    return await crud.create_node(
        db_session, name="hk-01", host="10.0.0.1", port=9000, secret="node-secret"
    )


@pytest.fixture
async def rule_factory(db_session, node, user):
    """Create forwarding rules on the test node"""
    port = iter(range(20000, 30000))

    async def _create(**kwargs):
        kwargs.setdefault("name", "rule")
        kwargs.setdefault("listen_port", next(port))
        return await crud.create_rule(
            db_session, node_id=node.id, user_id=user.id, **kwargs
        )

    return _create
