"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from typing import Self

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_PORT=8080``) or through a ``.env`` file in the
    working directory.  Settlement engine settings use the ``FUND_`` prefix
    (see :class:`fund_engine.config.Settings`).
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Shared secret required by the manual trigger endpoints.
    admin_secret: SecretStr | None = None

    # Origins permitted by the CORS middleware.
    cors_origins: list[str] = ["http://localhost:3000"]
    cors_allow_credentials: bool = False

    # Structured JSON logging.
    structured_logging: bool = False

    # Background scheduler and the cron schedule of each step.
    scheduler_enabled: bool = True
    step1_cron: str = "0 0 * * *"
    step2_cron: str = "*/30 * * * *"
    step3_cron: str = "*/30 * * * *"

    # Daily housekeeping of the bot account.
    fee_check_cron: str = "10 0 * * *"
    oracle_subscription_cron: str = "15 0 * * *"

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        """Reject wildcard origins when credentials are enabled."""
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when "
                "cors_allow_credentials=True."
            )
        return self


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
