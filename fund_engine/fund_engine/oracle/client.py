"""HTTP client for the signed price oracle.

A price request is authorised by the bot's oracle NFT: the request message
``"{market_id}##{public_key}##{nft_id}"`` is signed with the bot's BLS key
and the signature travels in the URL path.  The oracle answers with price
entries plus its own signature, which the fund manager component verifies
on-ledger during finish-unstake.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from fund_engine.models.ledger import PriceEntry, PriceQuote
from fund_engine.retry import RetryConfig, async_retry_with_backoff

logger = logging.getLogger(__name__)


class OracleError(Exception):
    """Raised when the oracle cannot produce a usable signed quote."""


class _TransientOracleError(OracleError):
    """Internal marker for failures worth another attempt."""


class RequestSigner(Protocol):
    """Holds the key used to authorise oracle requests."""

    @property
    def public_key(self) -> str:
        """Hex-encoded BLS public key registered with the oracle."""
        ...

    def sign(self, message: str) -> str:
        """Return the hex-encoded signature of *message*."""
        ...


def build_request_message(market_id: str, public_key: str, nft_id: str) -> str:
    return f"{market_id}##{public_key}##{nft_id}"


def _parse_quote(body: Any) -> PriceQuote:
    if not isinstance(body, dict):
        raise OracleError("Oracle returned an unexpected body")
    try:
        entries = [
            PriceEntry(
                market_id=item["marketId"],
                price=str(item["price"]),
                nonce=str(item["nonce"]),
                data_timestamp=int(item["dataTimestamp"]),
            )
            for item in body.get("data") or []
        ]
        return PriceQuote(entries=entries, signature=body.get("signature", ""))
    except (KeyError, TypeError, ValueError, ValidationError) as exc:
        raise OracleError(f"Malformed oracle response: {exc}") from exc


class OracleClient:
    """Fetches signed price quotes.

    Parameters
    ----------
    base_url:
        Root URL of the oracle backend.
    nft_id:
        Local id of the oracle access NFT held by the bot.
    signer:
        Signs the request message.
    timeout:
        Per-request timeout in seconds.
    retry_config:
        Backoff policy for transport errors and 5xx/429 responses.
    client:
        Optional pre-built ``httpx.AsyncClient`` (tests).
    """

    def __init__(
        self,
        base_url: str,
        nft_id: str,
        signer: RequestSigner,
        *,
        timeout: float = 10.0,
        retry_config: RetryConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._nft_id = nft_id
        self._signer = signer
        self._retry_config = retry_config or RetryConfig()
        self._client = client or httpx.AsyncClient(base_url=self._base_url, timeout=httpx.Timeout(timeout))

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_once(self, path: str) -> Any:
        try:
            response = await self._client.get(path)
        except httpx.RequestError as exc:
            raise _TransientOracleError(f"Oracle request failed: {exc}") from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise _TransientOracleError(f"Oracle API error {response.status_code}: {response.text[:500]}")
        if response.status_code >= 400:
            raise OracleError(f"Oracle API error {response.status_code}: {response.text[:500]}")

        try:
            return response.json()
        except ValueError as exc:
            raise OracleError("Oracle returned a non-JSON body") from exc

    async def fetch_signed_quote(self, market_id: str) -> PriceQuote:
        """Return the oracle's signed quote for *market_id*.

        Transport errors and 5xx/429 responses are retried with backoff;
        every attempt reuses the same signed path.

        Raises
        ------
        OracleError
            On transport failure, a non-2xx status, or an unusable body.
        """
        public_key = self._signer.public_key
        signature = self._signer.sign(build_request_message(market_id, public_key, self._nft_id))
        path = "/v2/price/" + "/".join(quote(part, safe="") for part in (market_id, public_key, self._nft_id, signature))

        try:
            body = await async_retry_with_backoff(
                lambda: self._get_once(path),
                self._retry_config,
                retryable_exceptions=(_TransientOracleError,),
                label=f"oracle quote {market_id}",
            )
        except _TransientOracleError as exc:
            raise OracleError(str(exc)) from exc

        quote_ = _parse_quote(body)
        logger.info("Fetched oracle quote for %s (%d entries)", market_id, len(quote_.entries))
        return quote_
