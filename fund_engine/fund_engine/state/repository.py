"""Repository classes providing access to the settlement state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that later reads in the same transaction see them; the caller is
responsible for committing (or relying on the ``get_session`` context
manager).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fund_engine.models.snapshot import SnapshotState, can_transition, normalize_snapshot_date
from fund_engine.state.tables import PipelineStateTable, SnapshotAccountTable, SnapshotTable

logger = logging.getLogger(__name__)


class InvalidStateTransitionError(Exception):
    """Raised when a snapshot write would move its state backwards."""


class SnapshotNotFoundError(Exception):
    """Raised when a snapshot expected to exist is missing."""


async def _dialect_insert_ignore(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware ``INSERT ... ON CONFLICT DO NOTHING``."""
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# SnapshotRepository
# ---------------------------------------------------------------------------

_MAX_SNAPSHOT_PAGE_SIZE = 500


class SnapshotRepository:
    """Reads and writes for ``snapshots`` and their ``snapshot_accounts``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, date: datetime) -> SnapshotTable | None:
        """Fetch a snapshot by its (normalised) date."""
        stmt = select(SnapshotTable).where(SnapshotTable.date == normalize_snapshot_date(date))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(
        self,
        date: datetime,
        state: SnapshotState,
        accounts: Mapping[str, str | Decimal],
        *,
        update_accounts: bool = True,
        claim_nft_id: str | None = None,
    ) -> SnapshotTable:
        """Create or update the snapshot for *date*.

        A new snapshot always receives *accounts*.  An existing snapshot has
        its state (and *claim_nft_id* when given) updated; its accounts are
        replaced only when *update_accounts* is true.

        Raises
        ------
        InvalidStateTransitionError
            If the existing snapshot is already past *state*.
        SnapshotNotFoundError
            If *update_accounts* is false and no snapshot exists for *date*.
        """
        date = normalize_snapshot_date(date)
        row = await self.get(date)

        if row is None:
            if not update_accounts:
                raise SnapshotNotFoundError(f"Snapshot {date.isoformat()} does not exist")
            row = SnapshotTable(date=date, state=state.value, claim_nft_id=claim_nft_id)
            self._session.add(row)
            await self._session.flush()
            await self._insert_accounts(date, accounts)
            return row

        current = SnapshotState(row.state)
        if not can_transition(current, state):
            raise InvalidStateTransitionError(
                f"Snapshot {date.isoformat()} cannot move from {current.value} to {state.value}"
            )

        row.state = state.value
        if claim_nft_id is not None:
            row.claim_nft_id = claim_nft_id
        await self._session.flush()

        if update_accounts:
            await self._session.execute(delete(SnapshotAccountTable).where(SnapshotAccountTable.date == date))
            await self._insert_accounts(date, accounts)
        return row

    async def _insert_accounts(self, date: datetime, accounts: Mapping[str, str | Decimal]) -> None:
        for account, amount in accounts.items():
            self._session.add(
                SnapshotAccountTable(
                    date=date,
                    account=account,
                    lsu_amount=str(amount),
                    fund_units_sent=False,
                )
            )
        await self._session.flush()

    async def delete(self, date: datetime) -> int | None:
        """Delete a snapshot and its accounts.

        Returns the number of deleted account rows, or ``None`` when no
        snapshot exists for *date*.
        """
        date = normalize_snapshot_date(date)
        if await self.get(date) is None:
            return None
        result = await self._session.execute(delete(SnapshotAccountTable).where(SnapshotAccountTable.date == date))
        await self._session.execute(delete(SnapshotTable).where(SnapshotTable.date == date))
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def find_oldest(
        self,
        state: SnapshotState,
        lookback_days: int,
        *,
        now: datetime | None = None,
    ) -> SnapshotTable | None:
        """Return the oldest snapshot in *state* created within *lookback_days*."""
        since = normalize_snapshot_date(now or datetime.now(UTC)) - timedelta(days=lookback_days)
        stmt = (
            select(SnapshotTable)
            .where(SnapshotTable.state == state.value, SnapshotTable.date >= since)
            .order_by(SnapshotTable.date.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_recent(
        self,
        *,
        state: SnapshotState | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[SnapshotTable]:
        """Return snapshots newest first, optionally filtered by state and age."""
        limit = max(1, min(limit, _MAX_SNAPSHOT_PAGE_SIZE))
        stmt = select(SnapshotTable)
        if state is not None:
            stmt = stmt.where(SnapshotTable.state == state.value)
        if since is not None:
            stmt = stmt.where(SnapshotTable.date >= normalize_snapshot_date(since))
        stmt = stmt.order_by(SnapshotTable.date.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def get_accounts(self, date: datetime, *, pending_only: bool = False) -> list[SnapshotAccountTable]:
        """Return the accounts of a snapshot ordered by address."""
        stmt = select(SnapshotAccountTable).where(SnapshotAccountTable.date == normalize_snapshot_date(date))
        if pending_only:
            stmt = stmt.where(SnapshotAccountTable.fund_units_sent.is_(False))
        stmt = stmt.order_by(SnapshotAccountTable.account)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def mark_fund_units_sent(self, date: datetime, accounts: Iterable[str]) -> int:
        """Flag *accounts* of the snapshot as paid.  Returns the rows updated."""
        addresses = list(accounts)
        if not addresses:
            return 0
        stmt = (
            update(SnapshotAccountTable)
            .where(
                SnapshotAccountTable.date == normalize_snapshot_date(date),
                SnapshotAccountTable.account.in_(addresses),
            )
            .values(fund_units_sent=True)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# PipelineStateRepository
# ---------------------------------------------------------------------------


class PipelineStateRepository:
    """Persisted phase marker access for the settlement pipeline."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, name: str) -> str | None:
        stmt = select(PipelineStateTable.phase).where(PipelineStateTable.name == name)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def changed_at(self, name: str) -> datetime | None:
        stmt = select(PipelineStateTable.updated_at).where(PipelineStateTable.name == name)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure(self, name: str, initial_phase: str) -> str:
        """Create the marker row with *initial_phase* if missing; return the stored phase."""
        await _dialect_insert_ignore(
            self._session,
            PipelineStateTable,
            values={"name": name, "phase": initial_phase, "updated_at": datetime.now(UTC)},
            index_elements=["name"],
        )
        await self._session.flush()
        phase = await self.get(name)
        assert phase is not None  # noqa: S101
        return phase

    async def compare_and_set(self, name: str, expected: str, new: str) -> bool:
        """Atomically move the marker from *expected* to *new*.

        Returns ``False`` (and changes nothing) when the stored phase is not
        *expected*.
        """
        stmt = (
            update(PipelineStateTable)
            .where(PipelineStateTable.name == name, PipelineStateTable.phase == expected)
            .values(phase=new, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def set(self, name: str, phase: str) -> None:
        """Unconditionally store *phase*."""
        stmt = (
            update(PipelineStateTable)
            .where(PipelineStateTable.name == name)
            .values(phase=phase, updated_at=datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        if not result.rowcount:  # type: ignore[attr-defined]
            self._session.add(PipelineStateTable(name=name, phase=phase))
        await self._session.flush()
