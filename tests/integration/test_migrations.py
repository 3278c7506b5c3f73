"""The Alembic history must produce the schema the ORM tables declare."""

from __future__ import annotations

from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from billing_engine.state.tables import Base

MIGRATIONS = Path(__file__).resolve().parents[2] / "billing_engine" / "state" / "migrations"


@pytest.fixture
def alembic_config(tmp_path, monkeypatch) -> tuple[Config, str]:
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.delenv("BILLING_DATABASE_URL", raising=False)
    monkeypatch.setenv("ALEMBIC_DATABASE_URL", url)
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS))
    return config, url


class TestMigrations:
    def test_upgrade_creates_every_table_and_column(self, alembic_config) -> None:
        config, url = alembic_config
        command.upgrade(config, "head")

        engine = create_engine(url)
        try:
            inspector = inspect(engine)
            assert set(inspector.get_table_names()) - {"alembic_version"} == set(Base.metadata.tables)
            for name, table in Base.metadata.tables.items():
                migrated = {column["name"] for column in inspector.get_columns(name)}
                assert migrated == set(table.columns.keys()), name
        finally:
            engine.dispose()

    def test_downgrade_removes_everything(self, alembic_config) -> None:
        config, url = alembic_config
        command.upgrade(config, "head")
        command.downgrade(config, "base")

        engine = create_engine(url)
        try:
            assert set(inspect(engine).get_table_names()) == {"alembic_version"}
        finally:
            engine.dispose()
