"""Three-step settlement pipeline: unlock, unstake, finish and distribute.

Each step is driven by its own schedule and checks the phase marker left by
its predecessor, so the steps always run in order:

``STEP3_END`` -> STEP1 -> ``STEP1_END`` -> STEP2 -> ``STEP2_END`` -> STEP3 -> ``STEP3_END``

Outcomes fall into three classes:

* precondition not met (wrong phase, nothing to unlock, claim not yet
  redeemable): logged, the step returns ``None`` (or a sentinel), no alert;
* a ledger, oracle or database failure: the marker rolls back to the step's
  entry phase, an alert is sent and :class:`StepFailedError` is raised;
* an invariant violation (missing claim id, a distribution that did not
  pay everyone): alerted and raised as :class:`InvariantViolationError`.

A step that is cancelled mid-run rolls its marker back the same way before
the cancellation propagates; :meth:`SettlementPipeline.recover_interrupted_step`
repairs a marker left at ``*_START`` by a process that died outright.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from fund_engine.alerting import AlertChannel
from fund_engine.config import Settings
from fund_engine.distribution.engine import DistributionEngine, DistributionPersistenceError, compute_distribution
from fund_engine.executor.transaction import TransactionExecutor
from fund_engine.holders import HolderService
from fund_engine.ledger.base import LedgerGatewayInterface
from fund_engine.ledger.manifest import finish_unstake_manifest, start_unlock_manifest, start_unstake_manifest
from fund_engine.models.distribution import DistributionOutcome
from fund_engine.models.snapshot import SnapshotRecord, SnapshotState, normalize_snapshot_date
from fund_engine.oracle.client import OracleClient
from fund_engine.pipeline.phase import PhaseMarker, PhaseTracker
from fund_engine.state.store import SnapshotStore

logger = logging.getLogger(__name__)

NOT_ENOUGH_TO_UNLOCK = "Not enough LSUs to unlock"


class StepFailedError(Exception):
    """A step aborted because a ledger, oracle or database call failed."""

    def __init__(self, step: str, message: str, *, tx_id: str | None = None) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step
        self.tx_id = tx_id


class InvariantViolationError(Exception):
    """Data the pipeline relies on is missing or inconsistent."""


class DistributionMismatchError(InvariantViolationError):
    """Fewer accounts were paid than the distribution attempted."""

    def __init__(self, snapshot_date: datetime, outcome: DistributionOutcome) -> None:
        super().__init__(
            f"Distribution for snapshot {snapshot_date.isoformat()} confirmed "
            f"{len(outcome.confirmed)}/{outcome.attempted} payouts: {outcome.error}"
        )
        self.snapshot_date = snapshot_date
        self.outcome = outcome


_PASS_THROUGH = (StepFailedError, InvariantViolationError, DistributionPersistenceError)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SettlementPipeline:
    """Orchestrates the settlement steps around a shared phase marker.

    Parameters
    ----------
    settings:
        Addresses, fee locks, thresholds and lookback windows.
    store:
        Snapshot store.
    gateway:
        Ledger reads.
    executor:
        Runs the step transactions.
    oracle:
        Signed prices for finish-unstake.
    holders:
        Depositor discovery for new snapshots.
    distribution:
        Batched payouts.
    alerts:
        Operator notifications.
    tracker:
        Phase marker owner; one is built on *store* when omitted.
    clock:
        Returns the current time; snapshots are keyed by it.
    """

    def __init__(
        self,
        settings: Settings,
        store: SnapshotStore,
        gateway: LedgerGatewayInterface,
        executor: TransactionExecutor,
        oracle: OracleClient,
        holders: HolderService,
        distribution: DistributionEngine,
        alerts: AlertChannel,
        *,
        tracker: PhaseTracker | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._store = store
        self._gateway = gateway
        self._executor = executor
        self._oracle = oracle
        self._holders = holders
        self._distribution = distribution
        self._alerts = alerts
        self._tracker = tracker or PhaseTracker(store)
        self._clock = clock

    @property
    def tracker(self) -> PhaseTracker:
        return self._tracker

    async def current_phase(self) -> PhaseMarker:
        return await self._tracker.current()

    # -- failure handling ----------------------------------------------------

    async def _rollback(self, phase: PhaseMarker) -> None:
        try:
            await self._tracker.set(phase)
        except SQLAlchemyError:
            logger.exception("Could not roll phase marker back to %s", phase.value)

    async def _fail(self, step: str, exc: Exception, rollback_to: PhaseMarker | None) -> Exception:
        """Roll the marker back, alert, and return the exception to raise."""
        if rollback_to is not None:
            await self._rollback(rollback_to)
        error = exc if isinstance(exc, _PASS_THROUGH) else StepFailedError(step, str(exc) or type(exc).__name__)
        logger.error("%s failed: %s", step, error, exc_info=exc)
        await self._alerts.notify(f"Settlement {step} failed: {error}")
        return error

    async def _interrupted(self, step: str, rollback_to: PhaseMarker | None) -> None:
        """Undo the claim of a step that was cancelled or killed mid-run."""
        logger.warning("%s interrupted before completing", step)
        if rollback_to is not None:
            await self._rollback(rollback_to)

    def _manifest_args(self) -> tuple[str, str, str]:
        return (
            self._executor.account_address,
            self._settings.fund_bot_badge,
            self._settings.fund_manager_component,
        )

    # -- STEP1: unlock -------------------------------------------------------

    async def run_step1(self) -> dict[str, Any] | str | None:
        """Snapshot current depositors and start unlocking the locked stake units.

        Returns ``None`` when the pipeline is not at ``STEP3_END``, the
        :data:`NOT_ENOUGH_TO_UNLOCK` sentinel when the locked amount is below
        the threshold, and a summary dict on success.
        """
        async with self._tracker.lock:
            claimed = False
            snapshot_date: datetime | None = None
            try:
                if not await self._tracker.transition(PhaseMarker.STEP3_END, PhaseMarker.STEP1_START):
                    logger.info("STEP1 skipped: phase is %s", (await self._tracker.current()).value)
                    return None
                claimed = True

                stats = await self._gateway.get_validator_stats(self._settings.validator_address)
                amount = stats.pending_locked_units
                if amount < self._settings.unlock_threshold:
                    logger.info("STEP1: %s locked units is below threshold %s", amount, self._settings.unlock_threshold)
                    await self._tracker.set(PhaseMarker.STEP1_END)
                    return NOT_ENOUGH_TO_UNLOCK

                holders = await self._holders.get_total_holders()
                snapshot_date = normalize_snapshot_date(self._clock())
                await self._store.upsert_snapshot(
                    snapshot_date,
                    SnapshotState.UNLOCK_STARTED,
                    {address: str(balance) for address, balance in holders.holders.items()},
                )

                result = await self._executor.execute(
                    start_unlock_manifest(*self._manifest_args(), amount),
                    self._settings.unlock_fee_lock,
                )
                if not result.success:
                    raise StepFailedError("STEP1", f"unlock transaction failed: {result.error}", tx_id=result.tx_id)
            except Exception as exc:
                if snapshot_date is not None:
                    await self._discard_snapshot(snapshot_date)
                error = await self._fail("STEP1", exc, PhaseMarker.STEP3_END if claimed else None)
                if error is exc:
                    raise
                raise error from exc
            except BaseException:
                if snapshot_date is not None:
                    await self._discard_snapshot(snapshot_date)
                await self._interrupted("STEP1", PhaseMarker.STEP3_END if claimed else None)
                raise

            await self._tracker.set(PhaseMarker.STEP1_END)
            logger.info("STEP1 done: unlocking %s units, snapshot %s", amount, snapshot_date.isoformat())
            return {
                "snapshot_date": snapshot_date.isoformat(),
                "tx_id": result.tx_id,
                "amount": str(amount),
                "accounts": len(holders.holders),
            }

    async def _discard_snapshot(self, snapshot_date: datetime) -> None:
        try:
            await self._store.delete_snapshot(snapshot_date)
        except SQLAlchemyError:
            logger.exception("Could not delete snapshot %s after failed unlock", snapshot_date.isoformat())

    # -- STEP2: unstake ------------------------------------------------------

    async def run_step2(self) -> dict[str, Any] | None:
        """Start unstaking and record the claim receipt on the oldest unlocked snapshot."""
        async with self._tracker.lock:
            phase = await self._tracker.current()
            if phase is not PhaseMarker.STEP1_END:
                logger.info("STEP2 skipped: phase is %s", phase.value)
                return None

            claimed = False
            try:
                snapshot = await self._store.find_oldest_snapshot(
                    SnapshotState.UNLOCK_STARTED, self._settings.step2_lookback_days, now=self._clock()
                )
                if snapshot is None:
                    # Nothing left to unstake; hand the pipeline back to STEP1.
                    logger.info(
                        "STEP2: no unlock_started snapshot in the last %d days, returning to %s",
                        self._settings.step2_lookback_days,
                        PhaseMarker.STEP3_END.value,
                    )
                    await self._tracker.set(PhaseMarker.STEP3_END)
                    return None

                stats = await self._gateway.get_validator_stats(self._settings.validator_address)
                if stats.unlocked_units <= 0:
                    logger.info("STEP2: no unlocked units to unstake yet")
                    return None

                if not await self._tracker.transition(PhaseMarker.STEP1_END, PhaseMarker.STEP2_START):
                    logger.info("STEP2 skipped: phase moved concurrently")
                    return None
                claimed = True

                result = await self._executor.execute(
                    start_unstake_manifest(*self._manifest_args()),
                    self._settings.unstake_fee_lock,
                )
                if not result.success or not result.tx_id:
                    raise StepFailedError("STEP2", f"unstake transaction failed: {result.error}", tx_id=result.tx_id)

                event = await self._gateway.get_transaction_event(result.tx_id, self._settings.claim_event_name)
                claim_nft_id = (event or {}).get(self._settings.claim_event_field)
                if not claim_nft_id:
                    raise InvariantViolationError(
                        f"Unstake {result.tx_id} emitted no {self._settings.claim_event_name}."
                        f"{self._settings.claim_event_field}"
                    )

                await self._store.upsert_snapshot(
                    snapshot.date,
                    SnapshotState.UNSTAKE_STARTED,
                    {},
                    update_accounts=False,
                    claim_nft_id=str(claim_nft_id),
                )
            except Exception as exc:
                error = await self._fail("STEP2", exc, PhaseMarker.STEP1_END if claimed else None)
                if error is exc:
                    raise
                raise error from exc
            except BaseException:
                await self._interrupted("STEP2", PhaseMarker.STEP1_END if claimed else None)
                raise

            await self._tracker.set(PhaseMarker.STEP2_END)
            logger.info("STEP2 done: snapshot %s claim %s", snapshot.date.isoformat(), claim_nft_id)
            return {
                "snapshot_date": snapshot.date.isoformat(),
                "tx_id": result.tx_id,
                "claim_nft_id": str(claim_nft_id),
            }

    # -- STEP3: finish unstake and distribute ---------------------------------

    async def run_step3(self) -> dict[str, Any] | None:
        """Redeem the claim and pay fund units to the snapshot's depositors.

        A snapshot left ``unstaked`` by an interrupted distribution is resumed
        first, without redeeming anything again.
        """
        async with self._tracker.lock:
            phase = await self._tracker.current()
            if phase is not PhaseMarker.STEP2_END:
                logger.info("STEP3 skipped: phase is %s", phase.value)
                return None

            claimed = False
            try:
                lookback = self._settings.step3_lookback_days
                snapshot = await self._store.find_oldest_snapshot(SnapshotState.UNSTAKED, lookback, now=self._clock())
                resuming = snapshot is not None

                if snapshot is None:
                    snapshot = await self._store.find_oldest_snapshot(
                        SnapshotState.UNSTAKE_STARTED, lookback, now=self._clock()
                    )
                    if snapshot is None:
                        logger.info("STEP3: no unstake_started snapshot in the last %d days", lookback)
                        return None
                    if not snapshot.claim_nft_id:
                        raise InvariantViolationError(f"Snapshot {snapshot.date.isoformat()} has no claim_nft_id")
                    if not await self._claim_is_redeemable(snapshot):
                        await self._tracker.set(PhaseMarker.STEP3_END)
                        return None

                if not await self._tracker.transition(PhaseMarker.STEP2_END, PhaseMarker.STEP3_START):
                    logger.info("STEP3 skipped: phase moved concurrently")
                    return None
                claimed = True

                finish_tx_id = None if resuming else await self._finish_unstake(snapshot)
                outcome = await self._distribute(snapshot)
                if not outcome.complete:
                    raise DistributionMismatchError(snapshot.date, outcome)

                await self._store.upsert_snapshot(snapshot.date, SnapshotState.DISTRIBUTED, {}, update_accounts=False)
            except Exception as exc:
                error = await self._fail("STEP3", exc, PhaseMarker.STEP2_END if claimed else None)
                if error is exc:
                    raise
                raise error from exc
            except BaseException:
                await self._interrupted("STEP3", PhaseMarker.STEP2_END if claimed else None)
                raise

            await self._tracker.set(PhaseMarker.STEP3_END)
            logger.info(
                "STEP3 done: snapshot %s distributed to %d accounts in %d batches",
                snapshot.date.isoformat(),
                len(outcome.confirmed),
                outcome.batch_count,
            )
            return {
                "snapshot_date": snapshot.date.isoformat(),
                "resumed": resuming,
                "finish_tx_id": finish_tx_id,
                "distributed_accounts": len(outcome.confirmed),
                "batches": outcome.batch_count,
                "tx_ids": outcome.tx_ids,
            }

    async def _claim_is_redeemable(self, snapshot: SnapshotRecord) -> bool:
        claim_epoch = await self._gateway.get_claim_epoch(
            self._settings.claim_nft_resource, [snapshot.claim_nft_id or ""]
        )
        current_epoch = await self._gateway.get_current_epoch()
        if current_epoch < claim_epoch:
            logger.info(
                "STEP3: claim %s for snapshot %s redeemable at epoch %d, now %d",
                snapshot.claim_nft_id,
                snapshot.date.isoformat(),
                claim_epoch,
                current_epoch,
            )
            return False
        return True

    async def _finish_unstake(self, snapshot: SnapshotRecord) -> str | None:
        quote = await self._oracle.fetch_signed_quote(self._settings.oracle_market_id)
        result = await self._executor.execute(
            finish_unstake_manifest(
                *self._manifest_args(),
                snapshot.claim_nft_id or "",
                {self._settings.xrd_resource: (quote.message(), quote.signature)},
            ),
            self._settings.finish_unstake_fee_lock,
        )
        if not result.success:
            raise StepFailedError("STEP3", f"finish unstake transaction failed: {result.error}", tx_id=result.tx_id)
        await self._store.upsert_snapshot(snapshot.date, SnapshotState.UNSTAKED, {}, update_accounts=False)
        return result.tx_id

    async def _distribute(self, snapshot: SnapshotRecord) -> DistributionOutcome:
        accounts = await self._store.get_accounts(snapshot.date, pending_only=True)
        balances = {account.account: account.balance for account in accounts}
        if not balances:
            logger.info("STEP3: every account of snapshot %s is already paid", snapshot.date.isoformat())
            return DistributionOutcome()

        total = await self._gateway.get_account_balance(
            self._settings.fund_manager_component, self._settings.fund_unit_resource
        )
        if total <= Decimal(0):
            raise InvariantViolationError(
                f"No fund units available to distribute for snapshot {snapshot.date.isoformat()} "
                f"({len(balances)} accounts pending)"
            )

        items = compute_distribution(balances, total)
        logger.info(
            "STEP3: distributing %s fund units to %d of %d pending accounts",
            total,
            len(items),
            len(balances),
        )
        return await self._distribution.distribute(items, snapshot.date)

    # -- manual recovery -----------------------------------------------------

    async def reset_stuck_distribution(self) -> dict[str, Any]:
        """Close a distribution round the fund manager still holds open."""
        async with self._tracker.lock:
            try:
                result = await self._distribution.close_round()
                if not result.success:
                    raise StepFailedError("RESET", f"closing distribution failed: {result.error}", tx_id=result.tx_id)
            except Exception as exc:
                error = await self._fail("RESET", exc, None)
                if error is exc:
                    raise
                raise error from exc
            return {"tx_id": result.tx_id}

    async def recover_interrupted_step(self) -> dict[str, Any] | None:
        """Roll back a step the previous process left at its ``*_START`` marker.

        Run once at startup, before any schedule ticks.  An interrupted
        STEP1 also loses the ``unlock_started`` snapshot it wrote after
        claiming the marker.  Returns ``None`` when the marker was at rest.
        """
        async with self._tracker.lock:
            changed_at = await self._store.phase_changed_at(self._tracker.name)
            recovered = await self._tracker.recover()
            if recovered is None:
                return None
            stale, restored = recovered

            discarded: str | None = None
            if stale is PhaseMarker.STEP1_START and changed_at is not None:
                discarded = await self._discard_orphan_snapshot(changed_at)

            message = f"Settlement was interrupted at {stale.value}; phase marker moved back to {restored.value}"
            if discarded is not None:
                message += f", discarded unlock_started snapshot {discarded}"
            logger.warning(message, extra={"phase": restored.value})
            await self._alerts.notify(message)
            return {"stale_phase": stale.value, "phase": restored.value, "discarded_snapshot": discarded}

    async def _discard_orphan_snapshot(self, claimed_at: datetime) -> str | None:
        newest = await self._store.list_snapshots(state=SnapshotState.UNLOCK_STARTED, limit=1)
        if not newest or newest[0].date < normalize_snapshot_date(claimed_at):
            return None
        await self._store.delete_snapshot(newest[0].date)
        return newest[0].date.isoformat()
