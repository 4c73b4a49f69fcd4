"""Tests for environment-driven engine settings."""

from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import SecretStr, ValidationError

from fund_engine.config import Settings, load_settings


class TestSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("FUND_DATABASE_URL", raising=False)
        settings = Settings(_env_file=None)

        assert settings.database_url.startswith("sqlite+aiosqlite://")
        assert settings.distribution_batch_size == 50
        assert settings.step2_lookback_days == 29
        assert settings.step3_lookback_days == 8
        assert settings.signer_factory is None
        assert not settings.is_alerting_configured()

    def test_reads_prefixed_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FUND_UNLOCK_THRESHOLD", "250.5")
        monkeypatch.setenv("FUND_DISTRIBUTION_BATCH_SIZE", "20")
        monkeypatch.setenv("FUND_ALERT_WEBHOOK_URL", "https://hooks.test/x")
        monkeypatch.setenv("FUND_ALERT_WEBHOOK_TOKEN", "tok")

        settings = Settings(_env_file=None)

        assert settings.unlock_threshold == Decimal("250.5")
        assert settings.distribution_batch_size == 20
        assert settings.is_alerting_configured()
        assert isinstance(settings.alert_webhook_token, SecretStr)
        assert "tok" not in repr(settings)

    def test_rejects_zero_batch_size(self) -> None:
        with pytest.raises(ValidationError):
            load_settings(distribution_batch_size=0)

    def test_overrides(self) -> None:
        settings = load_settings(validator_address="validator_x")
        assert settings.validator_address == "validator_x"
