"""Depositor discovery: who holds the node's LSU right now, and how much.

Depositors hold LSUs either directly in their accounts or as collateral
inside a lending protocol's position NFTs.  Both sources are read from the
gateway and merged per account.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from fund_engine.ledger.base import GatewayError, LedgerGatewayInterface
from fund_engine.models.ledger import HolderSnapshot

logger = logging.getLogger(__name__)

_HOLDERS_PAGE_SIZE = 1000
_NFT_CHUNK_SIZE = 100


def _chunks(items: list[str], size: int) -> list[list[str]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def _collateral_amount(nft: dict[str, Any], lsu_resource: str) -> Decimal | None:
    """LSU amount pledged in one collateral position NFT, if any."""
    if nft.get("is_burned"):
        return None
    payload = nft.get("data", {}).get("programmatic_json") or {}
    if payload.get("kind") != "Tuple":
        return None
    for field in payload.get("fields", []):
        if field.get("kind") != "Map" or field.get("field_name") != "collaterals":
            continue
        for entry in field.get("entries", []):
            key = entry.get("key", {})
            value = entry.get("value", {})
            if key.get("kind") != "Reference" or key.get("value") != lsu_resource or value.get("kind") != "Tuple":
                continue
            for inner in value.get("fields", []):
                if inner.get("kind") == "Decimal" and inner.get("field_name") == "amount":
                    try:
                        return Decimal(inner["value"])
                    except (InvalidOperation, KeyError, TypeError) as exc:
                        raise GatewayError(f"Bad collateral amount on {nft.get('non_fungible_id')}") from exc
    return None


class HolderService:
    """Builds the depositor set captured by a new snapshot.

    Parameters
    ----------
    gateway:
        Ledger gateway client.
    lsu_resource:
        Resource address of the node's liquid stake unit.
    collateral_nft_resource:
        Position-NFT resource of the lending protocol, or ``None`` to count
        direct holders only.
    min_balance:
        Accounts whose merged balance is not strictly above this are dropped.
    """

    def __init__(
        self,
        gateway: LedgerGatewayInterface,
        lsu_resource: str,
        *,
        collateral_nft_resource: str | None = None,
        min_balance: Decimal = Decimal(1),
    ) -> None:
        self._gateway = gateway
        self._lsu_resource = lsu_resource
        self._collateral_nft_resource = collateral_nft_resource
        self._min_balance = min_balance

    async def get_direct_holders(self) -> dict[str, Decimal]:
        """Accounts holding the LSU directly.  Components are skipped."""
        holders: dict[str, Decimal] = {}
        cursor: str | None = None
        processed = 0
        while True:
            page = await self._gateway.get_resource_holders_page(self._lsu_resource, cursor, _HOLDERS_PAGE_SIZE)
            items = page.get("items", [])
            for item in items:
                address = item.get("holder_address", "")
                if item.get("type") == "FungibleResource" and address.startswith("account"):
                    holders[address] = Decimal(str(item.get("amount", "0")))
            processed += len(items)
            logger.debug("Processed %d/%s LSU holders", processed, page.get("total_count", "?"))
            cursor = page.get("next_cursor")
            if not cursor:
                break
        logger.info("Found %d direct LSU holders", len(holders))
        return holders

    async def get_collateral_holders(self) -> dict[str, Decimal]:
        """Accounts whose lending positions hold the LSU as collateral."""
        resource = self._collateral_nft_resource
        if not resource:
            return {}

        details = await self._gateway.get_entity_details(resource)
        try:
            minted = int(details.get("details", {}).get("total_minted") or 0)
        except (TypeError, ValueError) as exc:
            raise GatewayError(f"Unreadable total_minted for {resource}") from exc
        if minted <= 0:
            raise GatewayError(f"Unable to read total minted positions of {resource}")

        nft_ids = [f"#{index}#" for index in range(1, minted + 1)]
        data_pages = await asyncio.gather(
            *(self._gateway.get_non_fungible_data(resource, chunk) for chunk in _chunks(nft_ids, _NFT_CHUNK_SIZE))
        )

        pledged: dict[str, Decimal] = {}
        for page in data_pages:
            for nft in page:
                amount = _collateral_amount(nft, self._lsu_resource)
                if amount is not None:
                    pledged[nft["non_fungible_id"]] = amount
        if not pledged:
            return {}

        location_pages = await asyncio.gather(
            *(
                self._gateway.get_non_fungible_location(resource, chunk)
                for chunk in _chunks(list(pledged), _NFT_CHUNK_SIZE)
            )
        )

        owners: dict[str, Decimal] = {}
        for page in location_pages:
            for location in page:
                owner = location.get("owning_vault_global_ancestor_address")
                nft_id = location.get("non_fungible_id")
                if owner and nft_id in pledged:
                    owners[owner] = owners.get(owner, Decimal(0)) + pledged[nft_id]
        logger.info("Found %d collateral LSU holders across %d positions", len(owners), len(pledged))
        return owners

    async def get_total_holders(self) -> HolderSnapshot:
        """Merge both sources and drop balances at or below the minimum."""
        direct = await self.get_direct_holders()
        collateral = await self.get_collateral_holders()

        merged: dict[str, Decimal] = dict(direct)
        for address, amount in collateral.items():
            merged[address] = merged.get(address, Decimal(0)) + amount

        holders = {address: amount for address, amount in merged.items() if amount > self._min_balance}
        total = sum(holders.values(), Decimal(0))
        logger.info("Snapshot holder set: %d accounts, %s LSU", len(holders), total)
        return HolderSnapshot(holders=holders, total=total)
