"""Daily housekeeping for the bot account.

Two jobs keep the settlement steps able to run:

* the fee balance check alerts an operator when the bot's XRD, which pays
  every transaction fee, is about to run out;
* the oracle subscription renewal extends the bot's price-oracle access
  NFT a day before it expires, paying the fee the subscription component
  asks for.

Both alert and re-raise on failure so the scheduler logs the error.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from fund_engine.alerting import AlertChannel
from fund_engine.config import Settings
from fund_engine.executor.transaction import TransactionExecutor
from fund_engine.ledger.base import LedgerGatewayInterface
from fund_engine.ledger.gateway import flatten_fields
from fund_engine.ledger.manifest import renew_oracle_subscription_manifest

logger = logging.getLogger(__name__)


class MaintenanceError(Exception):
    """A housekeeping job could not read what it needs or its transaction failed."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


def renewal_due(expires_at: datetime, now: datetime) -> bool:
    """True when the expiry falls on or before tomorrow, comparing UTC calendar dates."""
    tomorrow = now.astimezone(UTC).date() + timedelta(days=1)
    return expires_at.astimezone(UTC).date() <= tomorrow


class MaintenanceService:
    """Fee balance check and oracle subscription renewal.

    Parameters
    ----------
    settings:
        Addresses, thresholds and the subscription component.
    gateway:
        Ledger reads.
    executor:
        Runs the renewal transaction; its account is the default watched
        account.
    alerts:
        Operator notifications.
    clock:
        Returns the current time.
    """

    def __init__(
        self,
        settings: Settings,
        gateway: LedgerGatewayInterface,
        executor: TransactionExecutor,
        alerts: AlertChannel,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._gateway = gateway
        self._executor = executor
        self._alerts = alerts
        self._clock = clock

    @property
    def account_address(self) -> str:
        return self._settings.bot_account_address or self._executor.account_address

    # -- fee balance ---------------------------------------------------------

    async def check_fee_balance(self) -> dict[str, Any]:
        """Alert when the bot account's XRD is at or below the threshold."""
        address = self.account_address
        threshold = self._settings.fee_balance_alert_threshold
        try:
            balance = await self._gateway.get_account_balance(address, self._settings.xrd_resource)
        except Exception as exc:  # noqa: BLE001
            logger.error("Fee balance check failed: %s", exc, exc_info=True)
            await self._alerts.notify(f"Fee balance check failed: {exc}")
            raise

        low = balance <= threshold
        if low:
            logger.warning("Bot account %s holds %s XRD (threshold %s)", address, balance, threshold)
            await self._alerts.notify(
                f"Reminder: the fund bot's XRD balance is running low. Current balance: {balance}."
            )
        else:
            logger.info("Bot account %s holds %s XRD", address, balance)
        return {"account": address, "balance": str(balance), "threshold": str(threshold), "low": low}

    # -- oracle subscription -------------------------------------------------

    async def renew_oracle_subscription(self) -> dict[str, Any] | None:
        """Extend the oracle access NFT when it expires by tomorrow (UTC).

        Returns ``None`` when no subscription component is configured.
        """
        component = self._settings.oracle_subscription_component
        if not component:
            logger.info("Oracle subscription renewal is not configured")
            return None

        try:
            expires_at = await self._subscription_expiry()
            due = renewal_due(expires_at, self._clock())
            logger.info("Oracle subscription expires %s, renewal due: %s", expires_at.isoformat(), due)
            if not due:
                return {"expires_at": expires_at.isoformat(), "renewed": False}

            fee = await self._subscription_fee(component)
            result = await self._executor.execute(
                renew_oracle_subscription_manifest(
                    self._executor.account_address,
                    self._settings.xrd_resource,
                    fee,
                    component,
                    self._settings.oracle_subscription_method,
                    self._settings.oracle_nft_id,
                ),
                self._settings.oracle_subscription_fee_lock,
            )
            if not result.success:
                tx = f" (tx {result.tx_id})" if result.tx_id else ""
                raise MaintenanceError(f"Renewal transaction failed{tx}: {result.error}")
        except Exception as exc:  # noqa: BLE001
            logger.error("Oracle subscription renewal failed: %s", exc, exc_info=True)
            await self._alerts.notify(f"Oracle subscription renewal failed: {exc}")
            raise

        logger.info("Oracle subscription renewed for %s XRD in %s", fee, result.tx_id)
        return {"expires_at": expires_at.isoformat(), "renewed": True, "fee": str(fee), "tx_id": result.tx_id}

    async def _subscription_expiry(self) -> datetime:
        resource = self._settings.oracle_nft_resource
        nft_id = self._settings.oracle_nft_id
        items = await self._gateway.get_non_fungible_data(resource, [nft_id])
        if not items:
            raise MaintenanceError(f"Oracle NFT {nft_id} not found on {resource}")
        fields = flatten_fields(items[0].get("data", {}).get("programmatic_json"))
        field = self._settings.oracle_expiration_field
        try:
            seconds = int(fields[field])
        except (KeyError, TypeError, ValueError) as exc:
            raise MaintenanceError(f"Oracle NFT {nft_id} has no readable {field}") from exc
        return datetime.fromtimestamp(seconds, UTC)

    async def _subscription_fee(self, component: str) -> Decimal:
        details = await self._gateway.get_entity_details(component)
        state = flatten_fields(details.get("details", {}).get("state"))
        field = self._settings.oracle_subscription_fee_field
        try:
            fee = Decimal(str(state[field]))
        except (KeyError, InvalidOperation) as exc:
            raise MaintenanceError(f"Subscription component {component} has no readable {field}") from exc
        if fee <= 0:
            raise MaintenanceError(f"Subscription component {component} reports fee {fee}")
        return fee
