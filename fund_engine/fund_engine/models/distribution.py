"""Result types for transaction execution and batched payouts."""

from __future__ import annotations

from pydantic import BaseModel, Field


class TransactionResult(BaseModel):
    """Outcome of a submit-and-poll cycle.

    ``tx_id`` is populated whenever the gateway accepted the submission,
    including when the committed transaction later failed.
    """

    success: bool
    tx_id: str | None = None
    error: str | None = None


class DistributionItem(BaseModel):
    """A single payout: ``amount`` is an 18-decimal string."""

    address: str = Field(..., min_length=1)
    amount: str


class DistributionOutcome(BaseModel):
    """What a distribution run achieved.

    ``confirmed`` holds the addresses of every batch confirmed on-ledger, in
    submission order.  ``failed_items`` holds the failed batch and every
    batch after it, none of which were paid.
    """

    attempted: int = 0
    confirmed: list[str] = Field(default_factory=list)
    tx_ids: list[str] = Field(default_factory=list)
    batch_count: int = 0
    failed_items: list[DistributionItem] = Field(default_factory=list)
    error: str | None = None

    @property
    def complete(self) -> bool:
        return len(self.confirmed) == self.attempted
