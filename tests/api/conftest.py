"""Fixtures for the HTTP layer.

The application is built with ``create_app()`` and its dependencies are
overridden to point at the per-test SQLite database; the lifespan hook is
never entered, so no scheduler starts and no global engine is created.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from billing_api.dependencies import get_keyring, get_provider_client, get_session_factory, get_settings
from billing_api.main import create_app
from tests.factories import FakeProvider


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider([])


@pytest.fixture
def app(settings, session_factory, keyring, provider) -> FastAPI:
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_keyring] = lambda: keyring
    application.dependency_overrides[get_provider_client] = lambda: provider
    return application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def override_settings(app: FastAPI, settings: Any) -> None:
    app.dependency_overrides[get_settings] = lambda: settings
