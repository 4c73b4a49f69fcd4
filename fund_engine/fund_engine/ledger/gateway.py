"""Async HTTP client for the ledger gateway API.

Read queries are idempotent and are retried with backoff on transport
errors and 5xx/429 responses.  Submission is never retried here; the
transaction executor owns that policy.
"""

from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from fund_engine.ledger.base import GatewayError, SignedTransaction
from fund_engine.models.ledger import TransactionStatus, ValidatorStats
from fund_engine.retry import RetryConfig, async_retry_with_backoff

logger = logging.getLogger(__name__)

_RESOURCE_HOLDERS_MAX_LIMIT = 1000


def _to_decimal(value: Any, what: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise GatewayError(f"Unparseable {what}: {value!r}") from exc


def flatten_fields(data: dict[str, Any] | None) -> dict[str, Any]:
    """Map ``field_name`` to value for a programmatic-JSON tuple.

    Nested tuples are flattened recursively; enum variants collapse to their
    variant name.
    """
    if not data:
        return {}
    flat: dict[str, Any] = {}
    for field in data.get("fields", []):
        name = field.get("field_name")
        if not name:
            continue
        kind = field.get("kind")
        if kind == "Tuple":
            flat[name] = flatten_fields(field)
        elif kind == "Enum":
            flat[name] = field.get("variant_name", field.get("variant_id"))
        else:
            flat[name] = field.get("value")
    return flat


class GatewayClient:
    """Thin async wrapper around the gateway REST API.

    Parameters
    ----------
    base_url:
        Root URL of the gateway (e.g. ``https://mainnet.radixdlt.com``).
    timeout:
        Per-request timeout in seconds.
    application_name:
        Sent as ``RDX-App-Name`` so the gateway operator can attribute load.
    poll_interval:
        Seconds between status checks in :meth:`poll_finality`.
    finality_timeout:
        Give up polling after this many seconds and report the last status.
    retry_config:
        Backoff policy for read queries.
    client:
        Pre-built ``httpx.AsyncClient``; tests pass one backed by
        ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 15.0,
        application_name: str = "fund-engine",
        application_version: str = "0.1.0",
        poll_interval: float = 2.0,
        finality_timeout: float = 120.0,
        retry_config: RetryConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._poll_interval = poll_interval
        self._finality_timeout = finality_timeout
        self._retry_config = retry_config or RetryConfig()
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout),
            headers={
                "Content-Type": "application/json",
                "RDX-App-Name": application_name,
                "RDX-App-Version": application_version,
            },
        )

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    # -- Internal helpers ----------------------------------------------------

    async def _post_once(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.RequestError as exc:
            raise GatewayError(f"Gateway request to {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise GatewayError(
                f"Gateway returned {response.status_code} for {path}: {response.text[:500]}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayError(f"Gateway returned non-JSON body for {path}", status_code=response.status_code) from exc
        if not isinstance(body, dict):
            raise GatewayError(f"Gateway returned unexpected body for {path}", status_code=response.status_code)
        return body

    async def _query(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST an idempotent read, retrying transient failures."""

        async def attempt() -> dict[str, Any]:
            try:
                return await self._post_once(path, payload)
            except GatewayError as exc:
                if exc.transient:
                    raise _TransientGatewayError(str(exc), status_code=exc.status_code) from exc
                raise

        try:
            return await async_retry_with_backoff(
                attempt,
                self._retry_config,
                retryable_exceptions=(_TransientGatewayError,),
                label=f"gateway {path}",
            )
        except _TransientGatewayError as exc:
            raise GatewayError(str(exc), status_code=exc.status_code) from exc

    # -- Validator and balances ----------------------------------------------

    async def get_validator_stats(self, validator_address: str) -> ValidatorStats:
        """Return the owner stake-unit balances of *validator_address*.

        Walks ``/state/validators/list`` until the validator is found.
        """
        cursor: str | None = None
        while True:
            payload: dict[str, Any] = {}
            if cursor:
                payload["cursor"] = cursor
            body = await self._query("/state/validators/list", payload)
            validators = body.get("validators", {})
            for item in validators.get("items", []):
                if item.get("address") != validator_address:
                    continue
                locked = item.get("locked_owner_stake_unit_vault", {}).get("balance", "0")
                unlocking = item.get("pending_owner_stake_unit_unlock_vault", {}).get("balance", "0")
                return ValidatorStats(
                    pending_locked_units=_to_decimal(locked, "locked owner stake units"),
                    unlocked_units=_to_decimal(unlocking, "unlocked owner stake units"),
                )
            cursor = validators.get("next_cursor")
            if not cursor:
                raise GatewayError(f"Validator {validator_address} not found")

    async def get_account_balance(self, address: str, resource_address: str) -> Decimal:
        """Sum of *resource_address* held across all vaults of *address*."""
        body = await self._query(
            "/state/entity/page/fungible-vaults/",
            {"address": address, "resource_address": resource_address},
        )
        total = Decimal(0)
        for vault in body.get("items", []):
            total += _to_decimal(vault.get("amount", "0"), "vault amount")
        return total

    async def get_current_epoch(self) -> int:
        body = await self._query("/status/gateway-status", {})
        try:
            return int(body["ledger_state"]["epoch"])
        except (KeyError, TypeError, ValueError) as exc:
            raise GatewayError("Gateway status is missing ledger_state.epoch") from exc

    async def get_claim_epoch(self, resource_address: str, non_fungible_ids: list[str]) -> int:
        """Epoch from which the claim receipt(s) can be redeemed.

        With several receipts the latest epoch wins.
        """
        items = await self.get_non_fungible_data(resource_address, non_fungible_ids)
        epochs: list[int] = []
        for item in items:
            fields = flatten_fields(item.get("data", {}).get("programmatic_json"))
            if "claim_epoch" in fields:
                epochs.append(int(fields["claim_epoch"]))
        if not epochs:
            raise GatewayError(f"No claim_epoch on {resource_address} {non_fungible_ids}")
        return max(epochs)

    # -- Transactions --------------------------------------------------------

    async def submit_transaction(self, signed: SignedTransaction) -> str:
        """Submit a notarized transaction.  Returns its intent hash."""
        body = await self._post_once(
            "/transaction/submit",
            {"notarized_transaction_hex": signed.notarized_transaction_hex},
        )
        if body.get("duplicate"):
            logger.info("Gateway reported duplicate submission of %s", signed.intent_hash)
        return signed.intent_hash

    async def poll_finality(self, intent_hash: str) -> tuple[TransactionStatus, str | None]:
        """Poll until the intent reaches a final status or the timeout expires.

        Returns
        -------
        tuple
            ``(status, error_message)``.  A timeout yields the last observed
            non-final status.
        """
        deadline = time.monotonic() + self._finality_timeout
        status = TransactionStatus.UNKNOWN
        error_message: str | None = None
        while True:
            body = await self._query("/transaction/status", {"intent_hash": intent_hash})
            raw = body.get("intent_status", TransactionStatus.UNKNOWN.value)
            try:
                status = TransactionStatus(raw)
            except ValueError:
                status = TransactionStatus.UNKNOWN
            error_message = body.get("error_message")
            if status.is_final:
                return status, error_message
            if time.monotonic() >= deadline:
                logger.warning("Gave up polling %s after %.0fs (status=%s)", intent_hash, self._finality_timeout, raw)
                return status, error_message or f"finality timeout, last status {raw}"
            await asyncio.sleep(self._poll_interval)

    async def get_transaction_event(self, intent_hash: str, event_name: str) -> dict[str, Any] | None:
        """Return the flattened fields of the first *event_name* emitted by the transaction."""
        body = await self._query(
            "/transaction/committed-details",
            {"intent_hash": intent_hash, "opt_ins": {"receipt_events": True}},
        )
        events = body.get("transaction", {}).get("receipt", {}).get("events") or []
        for event in events:
            if event.get("name") == event_name:
                return flatten_fields(event.get("data"))
        return None

    # -- Holders and non-fungibles -------------------------------------------

    async def get_resource_holders_page(
        self,
        resource_address: str,
        cursor: str | None = None,
        limit: int = _RESOURCE_HOLDERS_MAX_LIMIT,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "resource_address": resource_address,
            "limit_per_page": min(limit, _RESOURCE_HOLDERS_MAX_LIMIT),
        }
        if cursor:
            payload["cursor"] = cursor
        return await self._query("/extensions/resource-holders/page", payload)

    async def get_entity_details(self, address: str) -> dict[str, Any]:
        body = await self._query("/state/entity/details", {"addresses": [address]})
        items = body.get("items", [])
        if not items:
            raise GatewayError(f"Entity {address} not found")
        return items[0]

    async def get_non_fungible_data(self, resource_address: str, non_fungible_ids: list[str]) -> list[dict[str, Any]]:
        body = await self._query(
            "/state/non-fungible/data",
            {"resource_address": resource_address, "non_fungible_ids": non_fungible_ids},
        )
        return list(body.get("non_fungible_ids", []))

    async def get_non_fungible_location(
        self, resource_address: str, non_fungible_ids: list[str]
    ) -> list[dict[str, Any]]:
        body = await self._query(
            "/state/non-fungible/location",
            {"resource_address": resource_address, "non_fungible_ids": non_fungible_ids},
        )
        return list(body.get("non_fungible_ids", []))


class _TransientGatewayError(GatewayError):
    """Internal marker for failures worth another attempt."""
