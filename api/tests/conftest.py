"""Shared fixtures for settlement API tests.

The app is built with :func:`api.main.create_app` and driven through
``httpx.ASGITransport``, which does not run the lifespan.  Fixtures attach a
real SQLite-backed snapshot store and a mocked pipeline to ``app.state`` and
override the settings and engine dependencies.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi import FastAPI
from fund_engine.state.database import create_tables
from fund_engine.state.sqlite_adapter import get_local_engine
from fund_engine.state.store import SnapshotStore
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine

from api.config import APISettings
from api.dependencies import get_db_engine, get_settings
from api.main import create_app

ADMIN_SECRET = "test-admin-secret"


@pytest.fixture
def api_settings() -> APISettings:
    return APISettings(admin_secret=ADMIN_SECRET, scheduler_enabled=False, _env_file=None)


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(tmp_path / "api.db")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(db_engine: AsyncEngine) -> SnapshotStore:
    return SnapshotStore(db_engine)


@pytest.fixture
def mock_pipeline() -> MagicMock:
    pipeline = MagicMock()
    pipeline.run_step1 = AsyncMock(return_value=None)
    pipeline.run_step2 = AsyncMock(return_value=None)
    pipeline.run_step3 = AsyncMock(return_value=None)
    pipeline.reset_stuck_distribution = AsyncMock(return_value={"tx_id": "tx_close"})
    return pipeline


@pytest.fixture
def app(api_settings: APISettings, db_engine: AsyncEngine, store: SnapshotStore, mock_pipeline: MagicMock) -> FastAPI:
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: api_settings
    application.dependency_overrides[get_db_engine] = lambda: db_engine
    application.state.store = store
    application.state.pipeline = mock_pipeline
    return application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
