"""Alembic environment for the billing ledger schema.

The target URL comes from ``ALEMBIC_DATABASE_URL``, then
``BILLING_DATABASE_URL``, then ``sqlalchemy.url`` in ``alembic.ini``.
Async drivers are swapped for their synchronous counterparts because
migrations run on a plain synchronous connection.
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import URL, make_url

from billing_engine.state.tables import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

_SYNC_DRIVERS = {
    "postgresql": "postgresql+psycopg",
    "postgresql+asyncpg": "postgresql+psycopg",
    "sqlite+aiosqlite": "sqlite",
}


def migration_url() -> URL:
    raw = (
        os.environ.get("ALEMBIC_DATABASE_URL")
        or os.environ.get("BILLING_DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
    )
    if not raw:
        raise RuntimeError("No database URL: set BILLING_DATABASE_URL or sqlalchemy.url in alembic.ini")

    url = make_url(raw)
    url = url.set(drivername=_SYNC_DRIVERS.get(url.drivername, url.drivername))
    # asyncpg spells it ``ssl``; libpq drivers expect ``sslmode``.
    if "ssl" in url.query:
        url = url.difference_update_query(["ssl"]).update_query_dict({"sslmode": url.query["ssl"]})
    logger.info("Migrating %s database %s", url.get_backend_name(), url.database)
    return url


def run_migrations_offline() -> None:
    """Emit the migration SQL instead of executing it."""
    context.configure(
        url=migration_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(migration_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
