"""
Database Session Management
===========================

Lazily created async engine and session factory, plus the request-scoped
session dependency.

Services commit explicitly (account deletion commits twice);
``get_db`` only rolls back what a failed request left open.
"""

import logging
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from entitlement_engine.config import settings

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    global _engine

    if _engine is None:
        url = settings.database_url_async
        if not url:
            raise ValueError("DATABASE_URL is not configured")

        # Recycle below typical PgBouncer idle timeouts
        _engine = create_async_engine(
            url,
            echo=settings.is_development,
            pool_size=5,
            max_overflow=10,
            pool_recycle=300,
            pool_pre_ping=True,
        )

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory

    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            expire_on_commit=False,
            autoflush=False,
        )

    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request."""
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Open one connection at startup so the first request skips the handshake."""
    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))

    logger.info("Database connection established")


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is None:
        return

    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("Database connections closed")
