"""FastAPI dependency injection for settings, the database engine, and the pipeline."""

from __future__ import annotations

import hmac
import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Query, Request
from fund_engine.config import Settings, load_settings
from fund_engine.holders import HolderService
from fund_engine.pipeline.settlement import SettlementPipeline
from fund_engine.state.database import get_engine
from fund_engine.state.store import SnapshotStore
from sqlalchemy.ext.asyncio import AsyncEngine

from api.config import APISettings, load_api_settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_fund_settings_cache: Settings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_fund_settings() -> Settings:
    """Return the cached settlement engine :class:`Settings` singleton."""
    global _fund_settings_cache  # noqa: PLW0603
    if _fund_settings_cache is None:
        _fund_settings_cache = load_settings()
    return _fund_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database engine
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None


def init_engine(settings: Settings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None


def get_db_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _engine


EngineDep = Annotated[AsyncEngine, Depends(get_db_engine)]

# ---------------------------------------------------------------------------
# Pipeline, store and holder service (attached to app.state by the lifespan)
# ---------------------------------------------------------------------------


def get_pipeline(request: Request) -> SettlementPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Settlement pipeline is not configured")
    return pipeline


def get_store(request: Request) -> SnapshotStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Snapshot store is not configured")
    return store


def get_holders(request: Request) -> HolderService:
    holders = getattr(request.app.state, "holders", None)
    if holders is None:
        raise HTTPException(status_code=503, detail="Holder service is not configured")
    return holders


PipelineDep = Annotated[SettlementPipeline, Depends(get_pipeline)]
StoreDep = Annotated[SnapshotStore, Depends(get_store)]
HoldersDep = Annotated[HolderService, Depends(get_holders)]

# ---------------------------------------------------------------------------
# Admin secret
# ---------------------------------------------------------------------------


def verify_admin_secret(
    settings: SettingsDep,
    secret: Annotated[str | None, Query()] = None,
) -> None:
    """Guard for the manual trigger endpoints.

    Missing secret -> 400, server secret unset -> 500, mismatch -> 401.
    """
    if not secret:
        raise HTTPException(status_code=400, detail="Secret is required")
    if settings.admin_secret is None or not settings.admin_secret.get_secret_value():
        logger.error("Trigger endpoint called but API_ADMIN_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Admin secret is not configured")
    if not hmac.compare_digest(secret.encode("utf-8"), settings.admin_secret.get_secret_value().encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid secret")


AdminDep = Depends(verify_admin_secret)
