"""Fixtures for the subledger CLI tests.

The CLI reads its settings from ``BILLING_*`` environment variables, so the
same values the engine fixtures use are exported here; credentials issued
while seeding can then be decrypted and verified by the CLI process.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from billing_engine.license.license_manager import LicenseKeyring
from billing_engine.models.outcomes import ProcessingOutcome
from billing_engine.services.webhook_processor import WebhookEventProcessor
from billing_engine.state.database import get_engine, get_session_factory
from billing_engine.state.sqlite_adapter import create_local_tables
from tests.conftest import make_settings
from tests.factories import (
    PRICE_ENTERPRISE,
    PRICE_INDIVIDUAL,
    PRICE_TEAM,
    SIGNING_KEY_HEX,
    WEBHOOK_SECRET,
    event_payload,
    signed,
)


@pytest.fixture(autouse=True)
def cli_env(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("BILLING_STRIPE_SECRET_KEY", "sk_test_xxx")
    monkeypatch.setenv("BILLING_STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("BILLING_STRIPE_PRICE_ID_INDIVIDUAL", PRICE_INDIVIDUAL)
    monkeypatch.setenv("BILLING_STRIPE_PRICE_ID_TEAM", PRICE_TEAM)
    monkeypatch.setenv("BILLING_STRIPE_PRICE_ID_ENTERPRISE", PRICE_ENTERPRISE)
    monkeypatch.setenv("BILLING_LICENSE_SIGNING_KEY", SIGNING_KEY_HEX)
    monkeypatch.setenv("BILLING_CREDENTIAL_ENCRYPTION_KEY", "test-encryption-secret")
    monkeypatch.setenv("BILLING_RECONCILIATION_PAGE_SIZE", "2")
    monkeypatch.setenv("BILLING_MAX_RETRIES", "1")


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Each command reconfigures root logging; undo it after the test."""
    root = logging.getLogger()
    level = root.level
    handlers = list(root.handlers)
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def seed(database_url: str):
    """Return a helper that delivers ``(event_id, type, object)`` events into the CLI's database."""

    def _seed(*events: tuple[str, str, dict[str, Any]]) -> list[ProcessingOutcome]:
        async def _go() -> list[ProcessingOutcome]:
            settings = make_settings(database_url)
            engine = get_engine(database_url)
            try:
                await create_local_tables(engine)
                processor = WebhookEventProcessor(
                    get_session_factory(engine),
                    settings,
                    LicenseKeyring.from_settings(settings),
                )
                outcomes = []
                for event_id, event_type, obj in events:
                    body, header = signed(event_payload(event_id, event_type, obj))
                    outcomes.append(await processor.process(body, header))
                return outcomes
            finally:
                await engine.dispose()

        return asyncio.run(_go())

    return _seed
