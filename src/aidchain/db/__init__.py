"""aidchain database access.

One async engine per process, created lazily from DatabaseSettings, and a
session factory handing out the AsyncSession a workflow action runs in. The
workflow engine flushes inside that session; the caller commits.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy.ext.asyncio import AsyncEngine

ASYNC_DRIVER_SCHEME = "postgresql+psycopg://"

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def async_database_url(url: str) -> str:
    """Point a PostgreSQL URL at the async psycopg driver.

    URLs that already name a driver are returned unchanged.
    """
    for scheme in ("postgresql://", "postgres://"):
        if url.startswith(scheme):
            return ASYNC_DRIVER_SCHEME + url[len(scheme) :]
    return url


def _session_factory_or_init() -> async_sessionmaker[AsyncSession]:
    global _engine, _session_factory

    if _session_factory is None:
        from aidchain.core.settings import get_settings

        database = get_settings().database
        _engine = create_async_engine(
            async_database_url(str(database.url)),
            pool_size=database.pool_size,
            max_overflow=database.max_overflow,
            pool_timeout=database.pool_timeout,
            echo=database.echo,
        )
        # Objects stay readable after commit so routes can serialize them
        _session_factory = async_sessionmaker(_engine, expire_on_commit=False)

    return _session_factory


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Open a session for one unit of work.

    Usage:
        async with get_async_session() as session:
            engine = DeliveryWorkflowEngine(session)
            await engine.authorize(delivery_id, actor)
            await session.commit()

    Yields:
        AsyncSession. Rolled back if the block raises, closed on exit.
    """
    session = _session_factory_or_init()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def close_engine() -> None:
    """Dispose of the engine's connection pool on shutdown."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
