"""Tests for operator alert channels."""

from __future__ import annotations

import json
import logging

import httpx
import pytest
from pydantic import SecretStr

from fund_engine.alerting import LogAlertChannel, WebhookAlertChannel


@pytest.mark.asyncio
async def test_log_channel_logs_error(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.ERROR, logger="fund_engine.alerting"):
        await LogAlertChannel().notify("STEP1 failed")
    assert "ALERT: STEP1 failed" in caplog.text


class TestWebhookAlertChannel:
    @pytest.mark.asyncio
    async def test_posts_text_with_bearer_token(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        channel = WebhookAlertChannel("https://hooks.test/alert", token=SecretStr("tok"), http_client=http)

        await channel.notify("Settlement STEP2 failed: boom")

        assert len(captured) == 1
        assert json.loads(captured[0].content) == {"text": "Settlement STEP2 failed: boom"}
        assert captured[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_no_token_no_auth_header(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(204)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        await WebhookAlertChannel("https://hooks.test/alert", http_client=http).notify("hi")

        assert "Authorization" not in captured[0].headers

    @pytest.mark.asyncio
    async def test_delivery_failure_is_swallowed(self, caplog: pytest.LogCaptureFixture) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with caplog.at_level(logging.WARNING, logger="fund_engine.alerting"):
            await WebhookAlertChannel("https://hooks.test/alert", http_client=http).notify("hi")

        assert "Alert delivery failed" in caplog.text

    @pytest.mark.asyncio
    async def test_error_status_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="oops")

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with caplog.at_level(logging.WARNING, logger="fund_engine.alerting"):
            await WebhookAlertChannel("https://hooks.test/alert", http_client=http).notify("hi")

        assert "returned 500" in caplog.text

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self) -> None:
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        channel = WebhookAlertChannel("https://hooks.test/alert", http_client=http)

        await channel.close()

        assert not http.is_closed
        await http.aclose()
