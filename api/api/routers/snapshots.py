"""Manual trigger and inspection endpoints for the settlement pipeline.

Every endpoint except ``/health`` requires the admin secret as the
``secret`` query parameter.  Successful calls answer
``{"success": true, "message": ..., "data": ...}``; a failed step answers
HTTP 500 with ``{"success": false, "error": ...}``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Annotated, Any

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from fund_engine.distribution.engine import DistributionPersistenceError
from fund_engine.models.snapshot import SnapshotState
from fund_engine.pipeline.settlement import InvariantViolationError, StepFailedError
from fund_engine.state.database import ping
from sqlalchemy.exc import SQLAlchemyError

from api.dependencies import AdminDep, EngineDep, PipelineDep, StoreDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/snapshots", tags=["snapshots"])

_STEP_FAILURES = (StepFailedError, InvariantViolationError, DistributionPersistenceError, SQLAlchemyError)


def _ok(message: str, data: Any) -> dict[str, Any]:
    return {"success": True, "message": message, "data": data}


async def _run(label: str, message: str, action: Callable[[], Awaitable[Any]]) -> Any:
    logger.info("Triggering %s manually", label)
    try:
        result = await action()
    except _STEP_FAILURES as exc:
        logger.error("Manual %s failed: %s", label, exc)
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
    return _ok(message, result)


@router.get("/health")
async def health(engine: EngineDep) -> Any:
    """Database connectivity check; 503 when the database is unreachable."""
    timestamp = datetime.now(UTC).isoformat()
    try:
        await ping(engine)
    except (SQLAlchemyError, OSError) as exc:
        logger.error("Health check failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content={"status": "error", "database": "disconnected", "error": str(exc), "timestamp": timestamp},
        )
    return {"status": "ok", "database": "connected", "timestamp": timestamp}


@router.get("/trigger-step-1", dependencies=[AdminDep])
async def trigger_step1(pipeline: PipelineDep) -> Any:
    return await _run("STEP1", "Start unlock operation completed", pipeline.run_step1)


@router.get("/trigger-step-2", dependencies=[AdminDep])
async def trigger_step2(pipeline: PipelineDep) -> Any:
    return await _run("STEP2", "Start unstake operation completed", pipeline.run_step2)


@router.get("/trigger-step-3", dependencies=[AdminDep])
async def trigger_step3(pipeline: PipelineDep) -> Any:
    return await _run("STEP3", "Finish unstake and distribution completed", pipeline.run_step3)


@router.get("/reset-stuck-funds", dependencies=[AdminDep])
async def reset_stuck_funds(pipeline: PipelineDep) -> Any:
    return await _run("reset", "Open distribution round closed", pipeline.reset_stuck_distribution)


@router.get("", dependencies=[AdminDep])
async def list_snapshots(
    store: StoreDep,
    state: SnapshotState | None = None,
    days_ago: Annotated[int | None, Query(ge=0)] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
) -> Any:
    """List snapshots newest first, optionally filtered by state and age."""
    try:
        records = await store.list_snapshots(state=state, days_ago=days_ago, limit=limit)
    except SQLAlchemyError as exc:
        logger.error("Listing snapshots failed: %s", exc)
        return JSONResponse(status_code=500, content={"success": False, "error": "Failed to fetch snapshots"})
    return _ok(
        "Snapshots retrieved",
        [record.model_dump(mode="json") for record in records],
    )
