"""FastAPI application entry-point for the billing service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from billing_api.dependencies import (
    dispose_engine,
    get_session_factory,
    get_settings,
    init_engine,
    init_keyring,
)
from billing_api.routers import health, reconciliation, subjects, webhooks
from billing_engine import __version__
from billing_engine.config import PlatformEnv
from billing_engine.errors import BillingError, ErrorCode, StorageError
from billing_engine.log_format import configure_logging
from billing_engine.models.outcomes import ReconciliationMode
from billing_engine.provider.stripe_client import ProviderClient
from billing_engine.services.reconciliation_scheduler import ReconciliationScheduler
from billing_engine.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[ErrorCode, int] = {
    ErrorCode.SUBSCRIPTION_NOT_FOUND: 404,
    ErrorCode.DOWNGRADE_NOT_ALLOWED: 409,
    ErrorCode.LEASE_UNAVAILABLE: 409,
    ErrorCode.MALFORMED_PAYLOAD: 400,
    ErrorCode.PROVIDER_API_ERROR: 502,
}


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Configure logging (JSON when ``structured_logging`` is set).
    - Initialise the async database engine.
    - Create tables in dev or local SQLite mode (production uses Alembic).
    - Build the license keyring.
    - Start the reconciliation scheduler when enabled.

    On shutdown the scheduler is stopped and the engine pool disposed.
    """
    settings = get_settings()
    configure_logging(settings)

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.env == PlatformEnv.DEV or is_local:
        from billing_engine.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    keyring = init_keyring(settings)

    scheduler: ReconciliationScheduler | None = None
    if settings.reconciliation_scheduler_enabled and settings.is_stripe_configured():
        service = ReconciliationService(get_session_factory(), settings, ProviderClient(settings), keyring)
        mode = ReconciliationMode.AUTO_FIX if settings.reconciliation_auto_fix else ReconciliationMode.REPORT
        scheduler = ReconciliationScheduler(service, settings.reconciliation_cron, mode=mode)
        await scheduler.start()

    yield

    if scheduler is not None:
        await scheduler.stop()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    app = FastAPI(
        title="Subscription Ledger",
        description="Stripe webhook ingestion, subscription ledger, license keys and reconciliation.",
        version=__version__,
        lifespan=lifespan,
    )

    app.include_router(health.router)
    app.include_router(webhooks.router)
    app.include_router(reconciliation.router)
    app.include_router(subjects.router)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage error on %s: %s", request.url.path, exc.message)
        status_code = 503 if exc.transient else 500
        return JSONResponse(status_code=status_code, content={"detail": {"code": exc.code.value}})

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
        logger.warning("%s on %s: %s", exc.code.value, request.url.path, exc.message)
        return JSONResponse(status_code=_ERROR_STATUS.get(exc.code, 500), content={"detail": exc.to_dict()})

    return app


# Module-level application instance used by ``uvicorn billing_api.main:app``.
app = create_app()
