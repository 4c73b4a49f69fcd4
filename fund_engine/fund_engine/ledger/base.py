"""Interfaces of the ledger collaborators the settlement engine talks to.

The engine never signs anything itself.  A :class:`TransactionSigner` turns a
rendered manifest into a notarized transaction, and a
:class:`LedgerGatewayInterface` implementation submits it and answers ledger
queries.  Implementations only need matching signatures (duck typing).
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol

from pydantic import BaseModel, Field

from fund_engine.models.ledger import TransactionStatus, ValidatorStats


class GatewayError(Exception):
    """Raised when the ledger gateway rejects a request or returns garbage."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429


class SignedTransaction(BaseModel):
    """A notarized transaction ready for submission."""

    intent_hash: str = Field(..., min_length=1, description="Transaction id used for polling.")
    notarized_transaction_hex: str = Field(..., min_length=1)


class TransactionSigner(Protocol):
    """Wallet boundary: owns the keys and notarizes manifests."""

    @property
    def account_address(self) -> str:
        """Address of the bot account that pays fees and holds the badge."""
        ...

    async def notarize(self, manifest: str) -> SignedTransaction:
        """Compile, sign and notarize *manifest* for the current epoch."""
        ...


class LedgerGatewayInterface(Protocol):
    """Structural interface for the ledger gateway client."""

    async def get_validator_stats(self, validator_address: str) -> ValidatorStats: ...

    async def get_account_balance(self, address: str, resource_address: str) -> Decimal: ...

    async def get_current_epoch(self) -> int: ...

    async def get_claim_epoch(self, resource_address: str, non_fungible_ids: list[str]) -> int: ...

    async def submit_transaction(self, signed: SignedTransaction) -> str: ...

    async def poll_finality(self, intent_hash: str) -> tuple[TransactionStatus, str | None]: ...

    async def get_transaction_event(self, intent_hash: str, event_name: str) -> dict[str, Any] | None: ...

    async def get_resource_holders_page(
        self, resource_address: str, cursor: str | None = None, limit: int = 1000
    ) -> dict[str, Any]: ...

    async def get_entity_details(self, address: str) -> dict[str, Any]: ...

    async def get_non_fungible_data(self, resource_address: str, non_fungible_ids: list[str]) -> list[dict[str, Any]]: ...

    async def get_non_fungible_location(
        self, resource_address: str, non_fungible_ids: list[str]
    ) -> list[dict[str, Any]]: ...
