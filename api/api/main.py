"""FastAPI application entry-point for the settlement control plane."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fund_engine.ledger.gateway import GatewayClient
from fund_engine.pipeline.factory import (
    PipelineResources,
    build_gateway,
    build_holder_service,
    build_pipeline,
    build_store,
)
from fund_engine.signing import load_signer
from fund_engine.state.database import create_tables
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import APISettings, load_api_settings
from api.dependencies import dispose_engine, get_fund_settings, init_engine
from api.middleware.logging import RequestLoggingMiddleware
from api.routers import holders, snapshots
from api.services.settlement_scheduler import SettlementScheduler

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine and create missing tables.
    - Load the signer, wire the settlement pipeline and roll back any step
      the previous process left half-done.
    - Without a signer, wire only the holder service for the read-only
      endpoints.
    - Start the step and housekeeping scheduler.

    On shutdown the scheduler is stopped before the HTTP clients and the
    engine pool are closed.
    """
    settings: APISettings = load_api_settings()
    fund_settings = get_fund_settings()

    if settings.structured_logging:
        from api.middleware.json_formatter import configure_json_logging

        configure_json_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(fund_settings)
    logger.info("Database engine initialised (%s)", fund_settings.database_url.split("://", 1)[0])
    await create_tables(engine)

    app.state.store = build_store(fund_settings, engine)
    app.state.pipeline = None
    app.state.holders = None
    resources: PipelineResources | None = None
    standalone_gateway: GatewayClient | None = None
    scheduler: SettlementScheduler | None = None

    if fund_settings.signer_factory:
        signer = load_signer(fund_settings.signer_factory)
        resources = build_pipeline(fund_settings, engine, signer)
        app.state.pipeline = resources.pipeline
        app.state.holders = resources.holders
        await resources.pipeline.recover_interrupted_step()
        phase = await resources.pipeline.current_phase()
        logger.info("Settlement pipeline ready at phase %s", phase.value, extra={"phase": phase.value})
    else:
        logger.warning("FUND_SIGNER_FACTORY is not set; trigger endpoints and the scheduler are disabled")
        standalone_gateway = build_gateway(fund_settings)
        app.state.holders = build_holder_service(fund_settings, standalone_gateway)

    if resources is not None and settings.scheduler_enabled:
        pipeline = resources.pipeline
        maintenance = resources.maintenance
        scheduler = SettlementScheduler(
            {
                "step1": (settings.step1_cron, pipeline.run_step1),
                "step2": (settings.step2_cron, pipeline.run_step2),
                "step3": (settings.step3_cron, pipeline.run_step3),
                "fee_check": (settings.fee_check_cron, maintenance.check_fee_balance),
                "oracle_subscription": (settings.oracle_subscription_cron, maintenance.renew_oracle_subscription),
            }
        )
        await scheduler.start()

    yield

    # Shutdown.
    if scheduler is not None:
        await scheduler.stop()
    if resources is not None:
        await resources.aclose()
    if standalone_gateway is not None:
        await standalone_gateway.close()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Fund Settlement API",
        description="Manual triggers and inspection for the LSU fund settlement pipeline.",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(snapshots.router)
    app.include_router(holders.router)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
