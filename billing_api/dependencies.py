"""FastAPI dependency injection for settings, the session factory and services."""

from __future__ import annotations

import hmac
import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_engine.config import BillingSettings, load_settings
from billing_engine.license.license_manager import LicenseKeyring
from billing_engine.provider.stripe_client import ProviderClient
from billing_engine.services.reconciliation_service import ReconciliationService
from billing_engine.services.subject_data_service import SubjectDataService
from billing_engine.services.webhook_processor import WebhookEventProcessor
from billing_engine.state.database import get_engine, get_session_factory as build_session_factory

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: BillingSettings | None = None


def get_settings() -> BillingSettings:
    """Return the cached :class:`BillingSettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_settings()
    return _settings_cache


SettingsDep = Annotated[BillingSettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: BillingSettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = build_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

# ---------------------------------------------------------------------------
# License keyring
# ---------------------------------------------------------------------------

_keyring: LicenseKeyring | None = None


def init_keyring(settings: BillingSettings) -> LicenseKeyring:
    """Create and cache the process-wide :class:`LicenseKeyring`."""
    global _keyring  # noqa: PLW0603
    _keyring = LicenseKeyring.from_settings(settings)
    return _keyring


def get_keyring() -> LicenseKeyring:
    if _keyring is None:
        raise RuntimeError("License keyring has not been initialised. Ensure init_keyring() is called during startup.")
    return _keyring


KeyringDep = Annotated[LicenseKeyring, Depends(get_keyring)]

# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_webhook_processor(
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    keyring: KeyringDep,
) -> WebhookEventProcessor:
    return WebhookEventProcessor(session_factory, settings, keyring)


def get_provider_client(settings: SettingsDep) -> ProviderClient:
    return ProviderClient(settings)


def get_reconciliation_service(
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
    keyring: KeyringDep,
    provider: Annotated[ProviderClient, Depends(get_provider_client)],
) -> ReconciliationService:
    return ReconciliationService(session_factory, settings, provider, keyring)


def get_subject_data_service(
    session_factory: SessionFactoryDep,
    keyring: KeyringDep,
) -> SubjectDataService:
    return SubjectDataService(session_factory, keyring.cache)


WebhookProcessorDep = Annotated[WebhookEventProcessor, Depends(get_webhook_processor)]
ReconciliationServiceDep = Annotated[ReconciliationService, Depends(get_reconciliation_service)]
SubjectDataServiceDep = Annotated[SubjectDataService, Depends(get_subject_data_service)]

# ---------------------------------------------------------------------------
# Operator authentication
# ---------------------------------------------------------------------------


def require_operator(request: Request, settings: SettingsDep) -> None:
    """Require ``Authorization: Bearer <operator_token>`` when a token is configured."""
    if settings.operator_token is None:
        return
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    expected = settings.operator_token.get_secret_value()
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        logger.warning("Rejected operator request to %s", request.url.path)
        raise HTTPException(status_code=401, detail="Operator authentication required")
