"""
Configuration Management for tabkeeper

Uses pydantic-settings for type-safe configuration from environment variables.

All configuration is centralized here so every tunable of the ledger
(storage URL, currency symbol, reminder window, retry budget) is validated
once at startup.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TABKEEPER_DB_",
        extra="ignore"
    )

    url: str = Field(
        default="sqlite:///tabkeeper.db",
        description="SQLAlchemy database URL"
    )
    echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )
    busy_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How long a SQLite writer waits for the database lock"
    )
    pool_pre_ping: bool = Field(
        default=True,
        description="Test pooled connections before handing them out"
    )

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Reject obviously malformed URLs early."""
        if "://" not in v:
            raise ValueError(f"Not a database URL: {v!r}")
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class LedgerSettings(BaseSettings):
    """Ledger and reminder behaviour."""

    model_config = SettingsConfigDict(
        env_prefix="TABKEEPER_LEDGER_",
        extra="ignore"
    )

    currency_symbol: str = Field(
        default="$",
        max_length=5,
        description="Symbol used in human-readable messages"
    )
    max_transaction_amount: Decimal = Field(
        default=Decimal("1000000"),
        gt=0,
        description="Largest amount accepted in a single command (sanity check)"
    )
    lending_category: str = Field(
        default="lent",
        description="Category recorded for money lent to a counterparty"
    )
    default_rule_category: str = Field(
        default="subscription",
        description="Category given to recurring rules created without one"
    )
    upcoming_window_days: int = Field(
        default=7,
        ge=1,
        le=90,
        description="How far ahead the dashboard looks for upcoming occurrences"
    )
    default_weekly_day: int = Field(
        default=1,
        ge=0,
        le=6,
        description="Weekday used when a weekly rule has no day (0=Sunday)"
    )
    default_monthly_day: int = Field(
        default=1,
        ge=1,
        le=31,
        description="Day of month used when a monthly rule has no day"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Root log level"
    )
    log_json: bool = Field(
        default=True,
        description="Render logs as JSON (False renders for a console)"
    )

    # Storage retries (attempts include the first try)
    storage_retry_attempts: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Attempts for a command that hit a transient storage error"
    )

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are built on access so a bad value in one section
    # only fails the callers that need it.

    @property
    def database(self) -> DatabaseSettings:
        return DatabaseSettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool | str]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus a
    "<setting_name>_error" entry for each failure.
    """
    results = {}

    settings = get_settings()

    for name in ("database", "ledger", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
