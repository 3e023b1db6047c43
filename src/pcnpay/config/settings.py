"""Application configuration schema and validation."""

from decimal import Decimal
from typing import Literal, Optional

from pydantic import Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        ...,
        description="Application environment",
    )
    db_dsn: Optional[PostgresDsn] = Field(
        default=None,
        description="PostgreSQL connection string (in-memory registry if unset, dev only)",
    )
    db_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    stripe_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe secret key",
    )
    stripe_api_version: str = Field(
        default="2025-07-30.basil",
        description="Pinned Stripe API version",
    )
    base_url: str = Field(
        default="http://localhost:5000",
        description="Public base URL used for redirect targets",
    )
    plan_mode: Literal["direct_subscription", "scheduled_checkout"] = Field(
        default="scheduled_checkout",
        description="Plan shape provisioned with the processor",
    )
    currency: str = Field(
        default="gbp",
        min_length=3,
        max_length=3,
        description="ISO currency code for all plans",
    )
    default_penalty_amount: Decimal = Field(
        default=Decimal("90.00"),
        gt=0,
        description="Penalty amount used when a request omits it (3 x 30.00)",
    )
    processor_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Per-call timeout for processor requests",
    )
    server_host: str = Field(
        default="0.0.0.0",
        description="HTTP bind address",
    )
    server_port: int = Field(
        default=5000,
        ge=1,
        le=65535,
        description="HTTP listen port",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Require an absolute http(s) URL and drop the trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.lower()


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
