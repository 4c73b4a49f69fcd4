"""Snapshot store: transactional, retrying facade over the repositories.

Every public method runs in its own session, so a multi-row mutation (a
snapshot plus its accounts) commits or rolls back as one unit.  Transient
connectivity failures are retried with exponential backoff; a retried call
replays the whole transaction, which is why every write here is idempotent.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from fund_engine.models.snapshot import AccountRecord, SnapshotRecord, SnapshotState, normalize_snapshot_date
from fund_engine.retry import RetryConfig, async_retry_with_backoff
from fund_engine.state.database import get_session
from fund_engine.state.repository import PipelineStateRepository, SnapshotRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_DB_ERRORS: tuple[type[Exception], ...] = (OperationalError, InterfaceError)


class SnapshotStore:
    """Durable record of snapshots, their accounts, and the phase marker.

    Parameters
    ----------
    engine:
        Async engine for the state database.
    retry_config:
        Backoff policy for transient database errors.
    """

    def __init__(self, engine: AsyncEngine, retry_config: RetryConfig | None = None) -> None:
        self._engine = engine
        self._retry_config = retry_config or RetryConfig()

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def _run(self, label: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def attempt() -> T:
            async with get_session(self._engine) as session:
                return await work(session)

        return await async_retry_with_backoff(
            attempt,
            self._retry_config,
            retryable_exceptions=TRANSIENT_DB_ERRORS,
            label=f"snapshot store {label}",
        )

    # -- snapshots -----------------------------------------------------------

    async def upsert_snapshot(
        self,
        date: datetime,
        state: SnapshotState,
        accounts: Mapping[str, str | Decimal],
        *,
        update_accounts: bool = True,
        claim_nft_id: str | None = None,
    ) -> SnapshotRecord:
        """Create or advance the snapshot for *date* in a single transaction."""

        async def work(session: AsyncSession) -> SnapshotRecord:
            row = await SnapshotRepository(session).upsert(
                date,
                state,
                accounts,
                update_accounts=update_accounts,
                claim_nft_id=claim_nft_id,
            )
            return SnapshotRecord.model_validate(row)

        record = await self._run("upsert", work)
        logger.info(
            "Snapshot %s saved state=%s accounts=%s",
            record.date.isoformat(),
            record.state.value,
            len(accounts) if update_accounts else "unchanged",
        )
        return record

    async def get_snapshot(self, date: datetime) -> SnapshotRecord | None:
        async def work(session: AsyncSession) -> SnapshotRecord | None:
            row = await SnapshotRepository(session).get(date)
            return SnapshotRecord.model_validate(row) if row is not None else None

        return await self._run("get", work)

    async def delete_snapshot(self, date: datetime) -> int | None:
        """Delete a snapshot with its accounts; ``None`` if it did not exist."""
        deleted = await self._run("delete", lambda session: SnapshotRepository(session).delete(date))
        if deleted is not None:
            logger.info(
                "Deleted snapshot %s with %d accounts",
                normalize_snapshot_date(date).isoformat(),
                deleted,
            )
        return deleted

    async def find_oldest_snapshot(
        self,
        state: SnapshotState,
        lookback_days: int,
        *,
        now: datetime | None = None,
    ) -> SnapshotRecord | None:
        async def work(session: AsyncSession) -> SnapshotRecord | None:
            row = await SnapshotRepository(session).find_oldest(state, lookback_days, now=now)
            return SnapshotRecord.model_validate(row) if row is not None else None

        return await self._run("find_oldest", work)

    async def list_snapshots(
        self,
        *,
        state: SnapshotState | None = None,
        days_ago: int | None = None,
        limit: int = 100,
    ) -> list[SnapshotRecord]:
        since = datetime.now(UTC) - timedelta(days=days_ago) if days_ago is not None else None

        async def work(session: AsyncSession) -> list[SnapshotRecord]:
            rows = await SnapshotRepository(session).list_recent(state=state, since=since, limit=limit)
            return [SnapshotRecord.model_validate(row) for row in rows]

        return await self._run("list", work)

    # -- accounts ------------------------------------------------------------

    async def get_accounts(self, date: datetime, *, pending_only: bool = False) -> list[AccountRecord]:
        async def work(session: AsyncSession) -> list[AccountRecord]:
            rows = await SnapshotRepository(session).get_accounts(date, pending_only=pending_only)
            return [AccountRecord.model_validate(row) for row in rows]

        return await self._run("get_accounts", work)

    async def mark_fund_units_sent(self, date: datetime, accounts: Iterable[str]) -> int:
        addresses = list(accounts)
        return await self._run(
            "mark_fund_units_sent",
            lambda session: SnapshotRepository(session).mark_fund_units_sent(date, addresses),
        )

    # -- phase marker --------------------------------------------------------

    async def load_phase(self, name: str, initial_phase: str) -> str:
        return await self._run("load_phase", lambda session: PipelineStateRepository(session).ensure(name, initial_phase))

    async def compare_and_set_phase(self, name: str, expected: str, new: str) -> bool:
        return await self._run(
            "compare_and_set_phase",
            lambda session: PipelineStateRepository(session).compare_and_set(name, expected, new),
        )

    async def set_phase(self, name: str, phase: str) -> None:
        await self._run("set_phase", lambda session: PipelineStateRepository(session).set(name, phase))

    async def phase_changed_at(self, name: str) -> datetime | None:
        """When the marker last moved; ``None`` before it is first stored."""
        return await self._run("phase_changed_at", lambda session: PipelineStateRepository(session).changed_at(name))
