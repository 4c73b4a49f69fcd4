"""Submit-and-confirm execution of ledger transactions.

Every transaction pays fees whether or not it achieves anything, so the
executor makes at most two attempts: the first, and one more after a short
fixed pause.  Callers that need more resilience re-run on a later tick.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal

from fund_engine.ledger.base import GatewayError, LedgerGatewayInterface, TransactionSigner
from fund_engine.ledger.manifest import Manifest
from fund_engine.models.distribution import TransactionResult
from fund_engine.models.ledger import TransactionStatus

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 2


class TransactionExecutor:
    """Lock fees, sign, submit, and wait for a final status.

    Parameters
    ----------
    gateway:
        Ledger gateway used for submission and status polling.
    signer:
        Notarizes rendered manifests; its account pays the fee lock.
    retry_delay:
        Seconds to wait before the single retry.
    """

    def __init__(
        self,
        gateway: LedgerGatewayInterface,
        signer: TransactionSigner,
        *,
        retry_delay: float = 0.5,
    ) -> None:
        self._gateway = gateway
        self._signer = signer
        self._retry_delay = retry_delay

    @property
    def account_address(self) -> str:
        return self._signer.account_address

    async def execute(self, manifest: Manifest, fee_lock: Decimal) -> TransactionResult:
        """Run *manifest* with *fee_lock* XRD reserved for fees.

        Never raises for ledger or submission failures; they are reported in
        the returned :class:`TransactionResult`.
        """
        program = manifest.with_fee_lock(self._signer.account_address, fee_lock).render()

        result = TransactionResult(success=False, error="not attempted")
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            result = await self._attempt(program)
            if result.success:
                logger.info("Transaction %s committed (attempt %d)", result.tx_id, attempt)
                return result
            logger.warning(
                "Transaction attempt %d/%d failed tx_id=%s: %s",
                attempt,
                _MAX_ATTEMPTS,
                result.tx_id,
                result.error,
            )
            if attempt < _MAX_ATTEMPTS:
                await asyncio.sleep(self._retry_delay)
        return result

    async def _attempt(self, program: str) -> TransactionResult:
        tx_id: str | None = None
        try:
            signed = await self._signer.notarize(program)
            tx_id = await self._gateway.submit_transaction(signed)
            status, error_message = await self._gateway.poll_finality(tx_id)
        except GatewayError as exc:
            return TransactionResult(success=False, tx_id=tx_id, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Transaction submission raised")
            return TransactionResult(success=False, tx_id=tx_id, error=f"{type(exc).__name__}: {exc}")

        if status is TransactionStatus.COMMITTED_SUCCESS:
            return TransactionResult(success=True, tx_id=tx_id)
        return TransactionResult(
            success=False,
            tx_id=tx_id,
            error=f"{status.value}: {error_message}" if error_message else status.value,
        )
