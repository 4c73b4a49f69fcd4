"""Proportional, batched fund-unit payouts.

A payout round can cover more depositors than fit in one transaction, so it
is split into fixed-size batches submitted strictly in order.  Each
confirmed batch is flagged ``fund_units_sent`` in the snapshot store before
the next one is attempted; that flag is what makes a later retry skip the
accounts already paid.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from decimal import ROUND_DOWN, Decimal, localcontext

from sqlalchemy.exc import SQLAlchemyError

from fund_engine.executor.transaction import TransactionExecutor
from fund_engine.ledger.manifest import Manifest, fund_units_distribution_manifest
from fund_engine.models.distribution import DistributionItem, DistributionOutcome, TransactionResult
from fund_engine.state.store import SnapshotStore

logger = logging.getLogger(__name__)

AMOUNT_PLACES = 18
_QUANTUM = Decimal(1).scaleb(-AMOUNT_PLACES)
# Enough digits for a 78-char balance times a 78-char total.
_WORKING_PRECISION = 160


class DistributionPersistenceError(Exception):
    """A batch was paid on-ledger but could not be flagged as sent.

    The whole distribution is aborted: continuing would leave paid accounts
    looking unpaid, and a retry would pay them twice.
    """

    def __init__(self, message: str, *, tx_id: str | None, addresses: list[str]) -> None:
        super().__init__(message)
        self.tx_id = tx_id
        self.addresses = addresses


def format_amount(amount: Decimal) -> str:
    """Render *amount* with exactly 18 decimals, truncating any excess."""
    with localcontext() as ctx:
        ctx.prec = _WORKING_PRECISION
        return f"{amount.quantize(_QUANTUM, rounding=ROUND_DOWN):.{AMOUNT_PLACES}f}"


def compute_distribution(balances: Mapping[str, Decimal], total: Decimal) -> list[DistributionItem]:
    """Split *total* across *balances* proportionally.

    Each share is ``total * balance / sum(balances)`` rounded toward zero at
    18 decimal places, so the payouts never add up to more than *total*.
    Zero payouts are dropped; the input order is kept.
    """
    pending = sum(balances.values(), Decimal(0))
    if pending <= 0 or total <= 0:
        return []

    items: list[DistributionItem] = []
    with localcontext() as ctx:
        ctx.prec = _WORKING_PRECISION
        ctx.rounding = ROUND_DOWN
        for address, balance in balances.items():
            if balance <= 0:
                continue
            amount = (total * balance / pending).quantize(_QUANTUM, rounding=ROUND_DOWN)
            if amount > 0:
                items.append(DistributionItem(address=address, amount=format_amount(amount)))
    return items


def chunk(items: Sequence[DistributionItem], size: int) -> list[list[DistributionItem]]:
    """Split *items* into consecutive batches of at most *size*."""
    if size < 1:
        raise ValueError(f"batch size must be >= 1, got {size}")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class DistributionEngine:
    """Submit payout batches and record which accounts were paid.

    Parameters
    ----------
    executor:
        Runs each batch transaction.
    store:
        Receives the ``fund_units_sent`` flags.
    component_address:
        Fund manager component that mints and sends fund units.
    badge_address:
        Bot badge proving authority over the component.
    fee_lock:
        Fee reserved per batch transaction.
    batch_size:
        Payouts per transaction.
    """

    def __init__(
        self,
        executor: TransactionExecutor,
        store: SnapshotStore,
        *,
        component_address: str,
        badge_address: str,
        fee_lock: Decimal,
        batch_size: int = 50,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch size must be >= 1, got {batch_size}")
        self._executor = executor
        self._store = store
        self._component_address = component_address
        self._badge_address = badge_address
        self._fee_lock = fee_lock
        self._batch_size = batch_size

    def _manifest(self, items: Iterable[DistributionItem], more_left: bool) -> Manifest:
        return fund_units_distribution_manifest(
            self._executor.account_address,
            self._badge_address,
            self._component_address,
            items,
            more_left,
        )

    async def distribute(self, items: Sequence[DistributionItem], snapshot_date: datetime) -> DistributionOutcome:
        """Pay *items* batch by batch, stopping at the first failed batch.

        Returns
        -------
        DistributionOutcome
            ``confirmed`` lists the addresses of every confirmed batch.
            ``failed_items`` holds the failed batch and all batches after it.

        Raises
        ------
        DistributionPersistenceError
            If a confirmed batch could not be flagged in the store.
        """
        batches = chunk(items, self._batch_size)
        outcome = DistributionOutcome(attempted=len(items), batch_count=len(batches))

        for index, batch in enumerate(batches):
            more_left = index < len(batches) - 1
            result = await self._executor.execute(self._manifest(batch, more_left), self._fee_lock)

            if not result.success:
                outcome.failed_items = [item for remaining in batches[index:] for item in remaining]
                outcome.error = result.error
                logger.error(
                    "Distribution batch %d/%d failed tx_id=%s: %s (%d payouts not sent)",
                    index + 1,
                    len(batches),
                    result.tx_id,
                    result.error,
                    len(outcome.failed_items),
                )
                break

            addresses = [item.address for item in batch]
            try:
                flagged = await self._store.mark_fund_units_sent(snapshot_date, addresses)
            except SQLAlchemyError as exc:
                raise DistributionPersistenceError(
                    f"Batch {index + 1} committed as {result.tx_id} but could not be recorded: {exc}",
                    tx_id=result.tx_id,
                    addresses=addresses,
                ) from exc
            if flagged != len(addresses):
                raise DistributionPersistenceError(
                    f"Batch {index + 1} committed as {result.tx_id} but only {flagged}/{len(addresses)} "
                    "accounts were flagged as sent",
                    tx_id=result.tx_id,
                    addresses=addresses,
                )

            outcome.confirmed.extend(addresses)
            if result.tx_id:
                outcome.tx_ids.append(result.tx_id)
            logger.info(
                "Distribution batch %d/%d confirmed tx_id=%s payouts=%d more_left=%s",
                index + 1,
                len(batches),
                result.tx_id,
                len(batch),
                more_left,
            )

        return outcome

    async def close_round(self) -> TransactionResult:
        """Submit an empty payout with ``more_left=False``.

        Ends a round the component still considers open after a distribution
        stopped part-way.
        """
        result = await self._executor.execute(self._manifest([], False), self._fee_lock)
        if result.success:
            logger.info("Closed open distribution round tx_id=%s", result.tx_id)
        else:
            logger.error("Closing distribution round failed tx_id=%s: %s", result.tx_id, result.error)
        return result
