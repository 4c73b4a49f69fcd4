"""SQLAlchemy 2.0 ORM table definitions for the settlement state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for ``create_all`` at startup and for
the repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
    String,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from fund_engine.models.snapshot import SnapshotState, normalize_snapshot_date


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Second-precision UTC timestamp.

    Values are normalised on the way in and come back timezone-aware on
    every dialect, including SQLite which stores naive strings.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        return normalize_snapshot_date(value)

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        return normalize_snapshot_date(value)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all settlement tables."""


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class SnapshotTable(Base):
    """One row per settlement cycle, keyed by its second-precision date."""

    __tablename__ = "snapshots"

    date: Mapped[datetime] = mapped_column(UTCDateTime(), primary_key=True)
    state: Mapped[str] = mapped_column(String(32), nullable=False, default=SnapshotState.UNLOCK_STARTED.value)
    claim_nft_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    accounts: Mapped[list[SnapshotAccountTable]] = relationship(
        back_populates="snapshot",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("ix_snapshots_state_date", "state", "date"),)


class SnapshotAccountTable(Base):
    """A depositor's LSU balance captured for one snapshot."""

    __tablename__ = "snapshot_accounts"

    date: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        ForeignKey("snapshots.date", ondelete="CASCADE"),
        nullable=False,
    )
    account: Mapped[str] = mapped_column(String(70), nullable=False)
    lsu_amount: Mapped[str] = mapped_column(String(78), nullable=False, default="0")
    fund_units_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    snapshot: Mapped[SnapshotTable] = relationship(back_populates="accounts")

    __table_args__ = (
        PrimaryKeyConstraint("date", "account"),
        Index("ix_snapshot_accounts_pending", "date", "fund_units_sent"),
    )


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------


class PipelineStateTable(Base):
    """Persisted phase marker of the settlement pipeline (one row per pipeline)."""

    __tablename__ = "pipeline_state"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    phase: Mapped[str] = mapped_column(String(32), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )
