"""Domain models shared across the settlement engine."""

from fund_engine.models.distribution import DistributionItem, DistributionOutcome, TransactionResult
from fund_engine.models.ledger import HolderSnapshot, PriceEntry, PriceQuote, TransactionStatus, ValidatorStats
from fund_engine.models.snapshot import (
    AccountRecord,
    SnapshotRecord,
    SnapshotState,
    can_transition,
    normalize_snapshot_date,
)

__all__ = [
    "AccountRecord",
    "DistributionItem",
    "DistributionOutcome",
    "HolderSnapshot",
    "PriceEntry",
    "PriceQuote",
    "SnapshotRecord",
    "SnapshotState",
    "TransactionResult",
    "TransactionStatus",
    "ValidatorStats",
    "can_transition",
    "normalize_snapshot_date",
]
