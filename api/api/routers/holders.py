"""Read-only views of who holds the node's LSU.

These endpoints need no admin secret; they expose the same depositor data a
new snapshot would capture.  Successful calls answer
``{"success": true, "message": ..., "data": ..., "meta": ...}`` where
``meta`` carries ``timestamp``, ``totalHolders`` and ``totalAmount``.  A
gateway failure answers HTTP 500 with ``{"success": false, "error": ...}``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from fund_engine.ledger.base import GatewayError

from api.dependencies import HoldersDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/common", tags=["holders"])


async def _holders_response(
    label: str,
    message: str,
    fetch: Callable[[], Awaitable[tuple[dict[str, Decimal], Decimal]]],
) -> Any:
    logger.info("Fetching %s", label)
    try:
        holders, total = await fetch()
    except GatewayError as exc:
        logger.error("Fetching %s failed: %s", label, exc)
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
    return {
        "success": True,
        "message": message,
        "data": {
            "holders": {address: str(amount) for address, amount in holders.items()},
            "totalAmount": str(total),
        },
        "meta": {
            "timestamp": datetime.now(UTC).isoformat(),
            "totalHolders": len(holders),
            "totalAmount": str(total),
        },
    }


def _with_total(holders: dict[str, Decimal]) -> tuple[dict[str, Decimal], Decimal]:
    return holders, sum(holders.values(), Decimal(0))


@router.get("/node-lsu-holders")
async def node_lsu_holders(service: HoldersDep) -> Any:
    """Accounts holding the node's LSU directly."""

    async def fetch() -> tuple[dict[str, Decimal], Decimal]:
        return _with_total(await service.get_direct_holders())

    return await _holders_response("node LSU holders", "Node LSU holders retrieved", fetch)


@router.get("/lsu-holders-from-weft-collaterals")
async def collateral_lsu_holders(service: HoldersDep) -> Any:
    """Accounts whose lending positions pledge the node's LSU as collateral."""

    async def fetch() -> tuple[dict[str, Decimal], Decimal]:
        return _with_total(await service.get_collateral_holders())

    return await _holders_response("collateral LSU holders", "LSU holders from collaterals retrieved", fetch)


@router.get("/total-lsu-holders")
async def total_lsu_holders(service: HoldersDep) -> Any:
    """Both sources merged, filtered by the snapshot minimum balance."""

    async def fetch() -> tuple[dict[str, Decimal], Decimal]:
        snapshot = await service.get_total_holders()
        return snapshot.holders, snapshot.total

    return await _holders_response("total LSU holders", "Total LSU holders retrieved", fetch)
