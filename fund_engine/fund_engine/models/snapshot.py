"""Snapshot lifecycle states and date normalisation.

A snapshot is keyed by its creation timestamp.  The database cannot tell
sub-second values apart, so every key is truncated to whole seconds in UTC
before it is used for a lookup, an upsert, or a comparison.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict


class SnapshotState(str, Enum):
    """Settlement lifecycle of a snapshot.  Transitions only move forward."""

    UNLOCK_STARTED = "unlock_started"
    UNSTAKE_STARTED = "unstake_started"
    UNSTAKED = "unstaked"
    DISTRIBUTED = "distributed"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)


_STATE_ORDER: list[SnapshotState] = [
    SnapshotState.UNLOCK_STARTED,
    SnapshotState.UNSTAKE_STARTED,
    SnapshotState.UNSTAKED,
    SnapshotState.DISTRIBUTED,
]


def can_transition(current: SnapshotState, target: SnapshotState) -> bool:
    """Return ``True`` if a snapshot in *current* may be written as *target*.

    Re-writing the same state is allowed (upserts are idempotent); moving
    to an earlier state never is.
    """
    return target.rank >= current.rank


def normalize_snapshot_date(value: datetime) -> datetime:
    """Return *value* as a timezone-aware UTC datetime with no microseconds.

    Naive datetimes are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    else:
        value = value.astimezone(UTC)
    return value.replace(microsecond=0)


class SnapshotRecord(BaseModel):
    """Detached view of a ``snapshots`` row."""

    model_config = ConfigDict(from_attributes=True)

    date: datetime
    state: SnapshotState
    claim_nft_id: str | None = None


class AccountRecord(BaseModel):
    """Detached view of a ``snapshot_accounts`` row."""

    model_config = ConfigDict(from_attributes=True)

    account: str
    lsu_amount: str
    fund_units_sent: bool = False

    @property
    def balance(self) -> Decimal:
        return Decimal(self.lsu_amount)
