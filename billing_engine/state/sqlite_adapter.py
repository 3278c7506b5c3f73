"""SQLite backend for the CLI, local runs and the test suite.

The ledger tables are the same ORM definitions used on PostgreSQL.  Two
things behave differently here:

* row locks (``with_for_update``) compile to nothing, so concurrent
  writers are serialised by SQLite's database lock and ``busy_timeout``;
* ``create_local_tables`` builds the schema directly instead of running
  the Alembic history.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

# Applied to every new DBAPI connection.  Foreign keys must be on for the
# license_keys -> subscriptions cascade to hold.
CONNECTION_PRAGMAS: tuple[str, ...] = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def get_local_engine(database_url: str = "sqlite+aiosqlite:///.billing/ledger.db") -> AsyncEngine:
    """Build an aiosqlite engine for *database_url*.

    The parent directory of a file database is created if missing.  An
    empty path or ``:memory:`` gives an in-memory database.
    """
    url = make_url(database_url).set(drivername="sqlite+aiosqlite")
    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(url, connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        for pragma in CONNECTION_PRAGMAS:
            cursor.execute(pragma)
        cursor.close()

    logger.info("Opened SQLite ledger at %s", url.database or ":memory:")
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create any missing ledger tables.  Safe to call on every start."""
    from billing_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("Ledger schema verified (%d tables)", len(Base.metadata.tables))
