"""Shared fixtures for the billing engine test suite.

Every test that touches storage gets its own SQLite file database under
``tmp_path`` so that separate transactions (the processor's failure path,
reconciliation's per-discrepancy units of work) see each other's commits
the same way they would on PostgreSQL.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_engine.config import BillingSettings
from billing_engine.license.license_manager import LicenseKeyring
from billing_engine.models.outcomes import ProcessingOutcome
from billing_engine.services.webhook_processor import WebhookEventProcessor
from billing_engine.state.database import get_engine, get_session_factory
from billing_engine.state.sqlite_adapter import create_local_tables
from tests.factories import (
    PRICE_ENTERPRISE,
    PRICE_INDIVIDUAL,
    PRICE_TEAM,
    SIGNING_KEY_HEX,
    WEBHOOK_SECRET,
    event_payload,
    signed,
)


def make_settings(database_url: str, **overrides: Any) -> BillingSettings:
    """Deterministic settings that ignore the developer's environment file."""
    values: dict[str, Any] = {
        "database_url": database_url,
        "stripe_secret_key": "sk_test_xxx",
        "stripe_webhook_secret": WEBHOOK_SECRET,
        "stripe_price_id_individual": PRICE_INDIVIDUAL,
        "stripe_price_id_team": PRICE_TEAM,
        "stripe_price_id_enterprise": PRICE_ENTERPRISE,
        "license_signing_key": SIGNING_KEY_HEX,
        "credential_encryption_key": "test-encryption-secret",
        "license_cache_ttl_seconds": 30.0,
        "max_retries": 1,
        "retry_backoff_base": 0.01,
        "retry_max_delay": 0.02,
        "reconciliation_page_size": 2,
    }
    values.update(overrides)
    return BillingSettings(_env_file=None, **values)


# ---------------------------------------------------------------------------
# Settings and storage
# ---------------------------------------------------------------------------


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}"


@pytest.fixture
def settings(database_url: str) -> BillingSettings:
    return make_settings(database_url)


@pytest_asyncio.fixture
async def engine(settings: BillingSettings) -> AsyncIterator[AsyncEngine]:
    engine = get_engine(settings.database_url)
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)


@pytest.fixture
def keyring(settings: BillingSettings) -> LicenseKeyring:
    return LicenseKeyring.from_settings(settings)


@pytest.fixture
def processor(
    session_factory: async_sessionmaker[AsyncSession],
    settings: BillingSettings,
    keyring: LicenseKeyring,
) -> WebhookEventProcessor:
    return WebhookEventProcessor(session_factory, settings, keyring)


@pytest.fixture
def deliver(processor: WebhookEventProcessor):
    """Return an async helper that signs and processes one provider event."""

    async def _deliver(event_id: str, event_type: str, obj: dict[str, Any]) -> ProcessingOutcome:
        body, header = signed(event_payload(event_id, event_type, obj))
        return await processor.process(body, header)

    return _deliver


@pytest.fixture
def count_rows(session_factory: async_sessionmaker[AsyncSession]):
    """Return an async helper that counts rows in an ORM table."""

    async def _count(table: Any, *where: Any) -> int:
        async with session_factory() as session:
            stmt = select(func.count()).select_from(table)
            for clause in where:
                stmt = stmt.where(clause)
            return (await session.execute(stmt)).scalar_one()

    return _count
