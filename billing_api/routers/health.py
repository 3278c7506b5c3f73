"""Liveness endpoint."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from billing_api.dependencies import SessionFactoryDep
from billing_engine import __version__

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session_factory: SessionFactoryDep) -> dict[str, Any]:
    """Return service health.

    Always answers 200 so load-balancers see the process as alive; the
    ``db`` field reports whether the database is reachable.
    """
    result: dict[str, Any] = {"status": "healthy", "version": __version__, "db": "ok"}
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Health check database query failed: %s", exc)
        result["db"] = "unavailable"
        result["status"] = "degraded"
    return result
