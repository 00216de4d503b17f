"""Configuration settings for BookMate."""

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class FlatSettings(BaseSettings):
    """Flat settings loaded from environment variables and ``.env``."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Apps Script webhook
    sheets_webhook_url: str = Field(default="", validation_alias="SHEETS_WEBHOOK_URL")
    sheets_webhook_secret: SecretStr = Field(
        default=SecretStr(""), validation_alias="SHEETS_WEBHOOK_SECRET"
    )
    sheets_pnl_url: str = Field(default="", validation_alias="SHEETS_PNL_URL")
    webhook_timeout: float = Field(default=30.0, validation_alias="WEBHOOK_TIMEOUT")
    webhook_max_retries: int = Field(default=3, validation_alias="WEBHOOK_MAX_RETRIES")

    # Google Sheets API
    google_sheet_id: str = Field(default="", validation_alias="GOOGLE_SHEET_ID")
    google_service_account_key: SecretStr = Field(
        default=SecretStr(""), validation_alias="GOOGLE_SERVICE_ACCOUNT_KEY"
    )
    google_application_credentials: str = Field(
        default="", validation_alias="GOOGLE_APPLICATION_CREDENTIALS"
    )

    # Cache lifetimes (seconds)
    inbox_cache_ttl: float = Field(default=5.0, validation_alias="INBOX_CACHE_TTL")
    pnl_cache_ttl: float = Field(default=60.0, validation_alias="PNL_CACHE_TTL")
    balance_cache_ttl: float = Field(default=30.0, validation_alias="BALANCE_CACHE_TTL")
    sheet_meta_cache_ttl: float = Field(default=300.0, validation_alias="SHEET_META_CACHE_TTL")

    # Reconciliation thresholds (THB)
    drift_warn_threshold: float = Field(default=100.0, validation_alias="DRIFT_WARN_THRESHOLD")
    drift_fail_threshold: float = Field(default=500.0, validation_alias="DRIFT_FAIL_THRESHOLD")

    # Report sharing
    share_link_secret: SecretStr = Field(
        default=SecretStr("bookmate-dev-share-secret"), validation_alias="SHARE_LINK_SECRET"
    )

    # AI insights (optional)
    openai_api_key: SecretStr = Field(default=SecretStr(""), validation_alias="OPENAI_API_KEY")
    insights_model: str = Field(default="gpt-4o-mini", validation_alias="INSIGHTS_MODEL")
    llm_max_tokens: int = Field(default=1024, validation_alias="LLM_MAX_TOKENS")
    llm_temperature: float = Field(default=0.3, validation_alias="LLM_TEMPERATURE")

    # Multi-tenant account registry
    accounts_file: str = Field(default="", validation_alias="ACCOUNTS_FILE")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )

    @property
    def pnl_url(self) -> str:
        """P&L endpoint, which is usually the same deployment as the webhook."""
        return self.sheets_pnl_url or self.sheets_webhook_url

    def service_account_info(self) -> dict[str, Any] | None:
        """Return parsed service-account credentials, or None when unset.

        ``GOOGLE_SERVICE_ACCOUNT_KEY`` (inline JSON) wins over
        ``GOOGLE_APPLICATION_CREDENTIALS`` (path to a JSON file). Escaped
        newlines in ``private_key`` are repaired since hosting dashboards
        commonly store the key on a single line.
        """
        raw = self.google_service_account_key.get_secret_value().strip()
        if raw:
            info = json.loads(raw)
        elif self.google_application_credentials:
            info = json.loads(Path(self.google_application_credentials).read_text("utf-8"))
        else:
            return None

        if isinstance(info.get("private_key"), str):
            info["private_key"] = info["private_key"].replace("\\n", "\n")
        return info


@lru_cache
def get_settings() -> FlatSettings:
    """Get cached settings instance."""
    return FlatSettings()
