"""Engine construction and the unit-of-work helper for the billing ledger.

The URL scheme picks the backend: ``sqlite+aiosqlite`` goes through
:mod:`billing_engine.state.sqlite_adapter`; anything else is treated as a
pooled PostgreSQL (asyncpg) connection.  Engines are never cached at module
level.  The API and the CLI each build one and hand a session factory to
the services.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from billing_engine.errors import StorageError

logger = logging.getLogger(__name__)

# Server-side limits for every PostgreSQL session, in milliseconds.
_PG_SESSION_LIMITS = {
    "statement_timeout": "30000",
    "lock_timeout": "10000",
}


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Build the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        ``postgresql+asyncpg://...`` or ``sqlite+aiosqlite:///...``.
    pool_size, max_overflow:
        PostgreSQL pool sizing.  Ignored for SQLite.
    """
    if database_url.startswith("sqlite"):
        from billing_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(database_url)

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={"server_settings": _PG_SESSION_LIMITS},
    )
    logger.info("Ledger pool ready (size=%d, overflow=%d)", pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows stay readable after the transaction that loaded them commits.
    return async_sessionmaker(engine, expire_on_commit=False)


def is_transient_storage_error(exc: BaseException) -> bool:
    """Return ``True`` for faults that a later retry is expected to clear."""
    if isinstance(exc, StorageError):
        return exc.transient
    if isinstance(exc, (OperationalError, InterfaceError, PoolTimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


@asynccontextmanager
async def transaction(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Run one unit of work against the ledger.

    Everything written inside the block commits together or not at all.
    SQLAlchemy failures surface as :class:`StorageError`, flagged
    ``transient`` when a retry could succeed.  Domain errors raised inside
    the block roll back and propagate unchanged.
    """
    session = factory()
    try:
        async with session.begin():
            yield session
    except SQLAlchemyError as exc:
        raise StorageError(
            f"{type(exc).__name__}: {exc}",
            transient=is_transient_storage_error(exc),
        ) from exc
    finally:
        await session.close()
