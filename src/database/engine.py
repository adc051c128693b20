"""
Database engine for the relay backend

One lazily created async engine per process. Heartbeats and payment
callbacks each get their own session through get_session.
"""

import logging
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import AsyncAdaptedQueuePool

from config.config import DATABASE_URL, ENVIRONMENT

logger = logging.getLogger(__name__)


# Created on first use, reset by dispose_engine
engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use"""
    global engine

    if engine is None:
        is_production = ENVIRONMENT == "production"

        connect_args = {}
        if DATABASE_URL.startswith("postgresql+asyncpg"):
            connect_args = {
                "statement_cache_size": 0,  # pgbouncer in transaction mode
                "server_settings": {
                    "application_name": "relay_backend",
                    "jit": "off",
                },
            }

        engine = create_async_engine(
            DATABASE_URL,
            poolclass=AsyncAdaptedQueuePool,
            pool_size=10 if is_production else 5,
            max_overflow=20 if is_production else 10,
            pool_pre_ping=True,
            pool_recycle=3600,
            echo=False,
            echo_pool=False,
            connect_args=connect_args,
        )

        logger.info(f"Database engine created ({ENVIRONMENT}, pool_size={engine.pool.size()})")

    return engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the engine"""
    global AsyncSessionLocal

    if AsyncSessionLocal is None:
        eng = get_engine()
        AsyncSessionLocal = async_sessionmaker(
            eng,
            class_=AsyncSession,
            expire_on_commit=False,  # services read order/rule fields after commit
            autoflush=False,
        )

        logger.info("Session maker created")

    return AsyncSessionLocal


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding one session per request

    Services commit or roll back themselves; anything that escapes them is
    rolled back here before the session is closed.
    """
    session_maker = get_session_maker()
    async with session_maker() as session:
        try:
            yield session
        except Exception as e:
            await session.rollback()
            logger.error(f"Session error: {e}", exc_info=True)
            raise
        finally:
            await session.close()


async def dispose_engine() -> None:
    """Close pooled connections (API shutdown)"""
    global engine, AsyncSessionLocal

    if engine is not None:
        await engine.dispose()
        logger.info("Database engine disposed")
        engine = None
        AsyncSessionLocal = None


async def check_connection() -> bool:
    """SELECT 1 against the store, used by /health"""
    try:
        eng = get_engine()
        async with eng.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}", exc_info=True)
        return False
