"""Settlement engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class FundEnv(str, Enum):
    DEV = "dev"
    PROD = "prod"


class Settings(BaseSettings):
    """Application settings loaded from environment variables with FUND_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="FUND_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    env: FundEnv = FundEnv.DEV
    debug: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///.fund_engine/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20
    db_max_retries: int = 3
    db_retry_base_delay: float = 0.5
    db_retry_max_delay: float = 5.0

    # Ledger gateway
    gateway_url: str = "https://stokenet.radixdlt.com"
    application_name: str = "HedgeFundServer"
    application_version: str = "1.0.0"
    gateway_timeout: float = 30.0
    finality_poll_interval: float = 2.0
    finality_timeout: float = 120.0

    # Ledger addresses
    # Account watched by the fee balance check; defaults to the signer account
    bot_account_address: str = ""
    validator_address: str = ""
    fund_manager_component: str = ""
    fund_bot_badge: str = ""
    node_lsu_resource: str = ""
    fund_unit_resource: str = ""
    claim_nft_resource: str = ""
    collateral_nft_resource: str | None = None
    xrd_resource: str = "resource_tdx_2_1tknxxxxxxxxxradxrdxxxxxxxxx009923554798xxxxxxxxxtfd2jc"

    # Oracle
    oracle_url: str = "https://dev-test-radix-oracle-api.morpher.com"
    oracle_nft_id: str = ""
    oracle_market_id: str = "GATEIO:XRD_USDT"
    oracle_timeout: float = 15.0

    # Oracle subscription renewal; an empty component disables it
    oracle_nft_resource: str = ""
    oracle_subscription_component: str = ""
    oracle_subscription_method: str = "extend_subscription"
    oracle_expiration_field: str = "expiration_time"
    oracle_subscription_fee_field: str = "subscription_fee"
    oracle_subscription_fee_lock: Decimal = Decimal("10")

    # Transactions
    unlock_fee_lock: Decimal = Decimal("10")
    unstake_fee_lock: Decimal = Decimal("10")
    finish_unstake_fee_lock: Decimal = Decimal("20")
    distribution_fee_lock: Decimal = Decimal("50")
    tx_retry_delay: float = 0.5

    # Pipeline
    unlock_threshold: Decimal = Decimal("1")
    min_holder_balance: Decimal = Decimal("1")
    distribution_batch_size: int = 50
    step2_lookback_days: int = 29
    step3_lookback_days: int = 8
    claim_event_name: str = "StartUnstakeEvent"
    claim_event_field: str = "claim_nft_id"

    # Maintenance
    fee_balance_alert_threshold: Decimal = Decimal("8")

    # Wallet: "package.module:callable" returning the bot signer
    signer_factory: str | None = None

    # Alerting
    alert_webhook_url: str | None = None
    alert_webhook_token: SecretStr | None = None
    alert_timeout: float = 5.0

    @field_validator("alert_webhook_token", mode="before")
    @classmethod
    def mask_token_in_repr(cls, v: str | None) -> SecretStr | None:
        if v is None:
            return None
        if isinstance(v, SecretStr):
            return v
        return SecretStr(v)

    @field_validator("distribution_batch_size")
    @classmethod
    def _positive_batch_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("distribution_batch_size must be at least 1")
        return v

    def is_alerting_configured(self) -> bool:
        return bool(self.alert_webhook_url)


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    settings = Settings(**overrides)  # type: ignore[arg-type]

    if settings.debug:
        logger.info("Loaded settings for environment: %s", settings.env.value)

    return settings
