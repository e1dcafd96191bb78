"""Configuration settings for the fiscal-flow service."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class FlatSettings(BaseSettings):
    """Flat settings read from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Record store
    store_backend: Literal["memory", "rest"] = Field(
        default="memory", validation_alias="STORE_BACKEND"
    )
    store_url: str = Field(
        default="http://localhost:54321/rest/v1", validation_alias="STORE_URL"
    )
    store_api_key: SecretStr = Field(
        default=SecretStr(""), validation_alias="STORE_API_KEY"
    )
    store_timeout: float = Field(default=10.0, validation_alias="STORE_TIMEOUT")

    # Billing workflow
    auto_approve_threshold: Decimal = Field(
        default=Decimal("1000"), validation_alias="AUTO_APPROVE_THRESHOLD"
    )
    preview_auto_approve_limit: Decimal = Field(
        default=Decimal("1000"), validation_alias="PREVIEW_AUTO_APPROVE_LIMIT"
    )
    urgent_amount: Decimal = Field(
        default=Decimal("10000"), validation_alias="URGENT_AMOUNT"
    )
    urgent_priority: int = Field(default=2, validation_alias="URGENT_PRIORITY")
    default_priority: int = Field(default=5, validation_alias="DEFAULT_PRIORITY")
    default_tax_regime: str = Field(
        default="SIMPLES", validation_alias="DEFAULT_TAX_REGIME"
    )
    default_service_category: str = Field(
        default="Services", validation_alias="DEFAULT_SERVICE_CATEGORY"
    )

    # Issuance providers
    provider_timeout: float = Field(default=15.0, validation_alias="PROVIDER_TIMEOUT")
    provider_retries: int = Field(default=0, validation_alias="PROVIDER_RETRIES")
    provider_retry_backoff: float = Field(
        default=1.0, validation_alias="PROVIDER_RETRY_BACKOFF"
    )
    plugnotas_production_url: str = Field(
        default="https://api.plugnotas.com.br",
        validation_alias="PLUGNOTAS_PRODUCTION_URL",
    )
    plugnotas_sandbox_url: str = Field(
        default="https://api.sandbox.plugnotas.com.br",
        validation_alias="PLUGNOTAS_SANDBOX_URL",
    )
    focusnfe_url: str = Field(
        default="https://homologacao.focusnfe.com.br", validation_alias="FOCUSNFE_URL"
    )
    focusnfe_token: SecretStr | None = Field(
        default=None, validation_alias="FOCUSNFE_TOKEN"
    )
    boleto_api_url: str | None = Field(default=None, validation_alias="BOLETO_API_URL")

    # Approval worker
    worker_max_attempts: int = Field(default=3, validation_alias="WORKER_MAX_ATTEMPTS")
    worker_retry_backoff: float = Field(
        default=0.5, validation_alias="WORKER_RETRY_BACKOFF"
    )

    # Monitor
    monitor_interval_seconds: float = Field(
        default=3600.0, validation_alias="MONITOR_INTERVAL_SECONDS"
    )
    monitor_client_timeout: float = Field(
        default=30.0, validation_alias="MONITOR_CLIENT_TIMEOUT"
    )
    monitor_max_concurrency: int = Field(
        default=4, validation_alias="MONITOR_MAX_CONCURRENCY"
    )
    monitor_suppress_duplicates: bool = Field(
        default=True, validation_alias="MONITOR_SUPPRESS_DUPLICATES"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> FlatSettings:
    """Get cached settings instance."""
    return FlatSettings()
