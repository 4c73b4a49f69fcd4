"""Typed views of the ledger gateway and oracle responses the engine consumes."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class TransactionStatus(str, Enum):
    """Terminal and non-terminal intent states reported by the gateway."""

    PENDING = "Pending"
    COMMITTED_SUCCESS = "CommittedSuccess"
    COMMITTED_FAILURE = "CommittedFailure"
    PERMANENTLY_REJECTED = "PermanentlyRejected"
    LIKELY_BUT_NOT_CERTAIN_REJECTION = "LikelyButNotCertainRejection"
    UNKNOWN = "Unknown"

    @property
    def is_final(self) -> bool:
        return self in (
            TransactionStatus.COMMITTED_SUCCESS,
            TransactionStatus.COMMITTED_FAILURE,
            TransactionStatus.PERMANENTLY_REJECTED,
        )


class ValidatorStats(BaseModel):
    """Owner stake-unit balances held by the fund's validator."""

    pending_locked_units: Decimal = Field(
        default=Decimal(0),
        description="Owner stake units still locked and eligible to start unlocking.",
    )
    unlocked_units: Decimal = Field(
        default=Decimal(0),
        description="Owner stake units already moved out of the lock and ready to unstake.",
    )


class PriceEntry(BaseModel):
    market_id: str
    price: str
    nonce: str
    data_timestamp: int


class PriceQuote(BaseModel):
    """A signed price message returned by the oracle."""

    entries: list[PriceEntry] = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)

    def message(self) -> str:
        """Render the entries in the oracle's ``market-price-nonce-timestamp`` form."""
        return ",".join(
            f"{entry.market_id}-{entry.price}-{entry.nonce}-{entry.data_timestamp}" for entry in self.entries
        )


class HolderSnapshot(BaseModel):
    """Depositor balances captured at a point in time."""

    holders: dict[str, Decimal] = Field(default_factory=dict)
    total: Decimal = Decimal(0)
