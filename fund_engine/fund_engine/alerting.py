"""Operator alerting for settlement failures.

INVARIANT: ``notify`` is fire-and-forget.  Delivery failures are logged
but never propagate to the pipeline, whose own error must win.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx
from pydantic import SecretStr

logger = logging.getLogger(__name__)


class AlertChannel(Protocol):
    async def notify(self, message: str) -> None: ...


class LogAlertChannel:
    """Fallback channel that only writes the alert to the log."""

    async def notify(self, message: str) -> None:
        logger.error("ALERT: %s", message)


class WebhookAlertChannel:
    """POST ``{"text": message}`` to a chat-style incoming webhook.

    Parameters
    ----------
    url:
        Webhook endpoint.
    token:
        Optional bearer token.
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.
    """

    def __init__(
        self,
        url: str,
        *,
        token: SecretStr | None = None,
        timeout: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def notify(self, message: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self._token is not None:
            headers["Authorization"] = f"Bearer {self._token.get_secret_value()}"
        try:
            response = await self._client.post(self._url, json={"text": message}, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Alert delivery failed: %s (alert was: %s)", exc, message)
            return
        if not 200 <= response.status_code < 300:
            logger.warning(
                "Alert webhook returned %d: %s (alert was: %s)",
                response.status_code,
                response.text[:200],
                message,
            )
