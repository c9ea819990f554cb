"""Configuration management for the trade journal metrics engine."""

from decimal import Decimal
from typing import Literal, Optional

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# Market Data Caching
# =============================================================================


class QuoteCacheConfig(BaseSettings):
    """Quote cache freshness settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # A cached quote younger than this is served without a fetch
    ttl_seconds: int = Field(default=1800, validation_alias="QUOTE_CACHE_TTL_SECONDS")

    # How old a quote may be and still be served when the source is failing
    stale_tolerance_seconds: int = Field(
        default=14400, validation_alias="QUOTE_STALE_TOLERANCE_SECONDS"
    )

    @field_validator("ttl_seconds", "stale_tolerance_seconds")
    @classmethod
    def validate_positive(cls, v):
        """Validate durations are positive."""
        if v <= 0:
            raise ValueError("Duration must be positive")
        return v


class SeriesCacheConfig(BaseSettings):
    """OHLCV series cache settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    ttl_seconds: int = Field(default=86400, validation_alias="SERIES_CACHE_TTL_SECONDS")
    max_entries: int = Field(default=50, validation_alias="SERIES_CACHE_MAX_ENTRIES")

    # An end time this close to "now" maps to the shared "ongoing" slot
    ongoing_tolerance_seconds: float = Field(
        default=1.0, validation_alias="SERIES_ONGOING_TOLERANCE_SECONDS"
    )

    @field_validator("ttl_seconds", "max_entries")
    @classmethod
    def validate_positive(cls, v):
        """Validate TTL and capacity are positive."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v


# =============================================================================
# Market Data Sources
# =============================================================================


class MarketDataConfig(BaseSettings):
    """External quote and series source configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    provider: Literal["script", "exchange"] = Field(
        default="script", validation_alias="MARKET_DATA_PROVIDER"
    )

    # Script-backed endpoint (spreadsheet/app script web app)
    script_url: str = Field(default="", validation_alias="MARKET_DATA_SCRIPT_URL")

    # ccxt exchange id for the exchange provider
    exchange_id: str = Field(default="binance", validation_alias="MARKET_DATA_EXCHANGE_ID")
    timeframe: str = Field(default="1d", validation_alias="MARKET_DATA_TIMEFRAME")

    timeout_seconds: int = Field(default=30, validation_alias="MARKET_DATA_TIMEOUT_SECONDS")
    max_retries: int = Field(default=3, validation_alias="MARKET_DATA_MAX_RETRIES")
    retry_base_delay: float = Field(
        default=1.0, validation_alias="MARKET_DATA_RETRY_BASE_DELAY"
    )

    @computed_field
    @property
    def is_script_configured(self) -> bool:
        """Check if the script endpoint URL is set."""
        return bool(self.script_url)


# =============================================================================
# Metrics
# =============================================================================


class MetricsConfig(BaseSettings):
    """Portfolio metrics settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Used when neither the caller nor the settings store supplies one
    default_starting_capital: Decimal = Field(
        default=Decimal("25000"), validation_alias="DEFAULT_STARTING_CAPITAL"
    )

    # Trailing window for the "new" exposure bucket
    new_exposure_days: int = Field(default=7, validation_alias="NEW_EXPOSURE_DAYS")

    trading_days_per_year: int = Field(default=252, validation_alias="TRADING_DAYS_PER_YEAR")

    # Decides what "today" and a trading day mean
    timezone: str = Field(default="America/New_York", validation_alias="JOURNAL_TIMEZONE")

    @field_validator("default_starting_capital")
    @classmethod
    def validate_capital(cls, v):
        """Validate starting capital is positive."""
        if v <= 0:
            raise ValueError("Starting capital must be positive")
        return v

    @field_validator("new_exposure_days", "trading_days_per_year")
    @classmethod
    def validate_days(cls, v):
        """Validate day counts are positive."""
        if v <= 0:
            raise ValueError("Day count must be positive")
        return v


# =============================================================================
# Storage & Logging
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/tradejournal.db",
        validation_alias="DATABASE_URL",
    )
    echo: bool = Field(default=False, validation_alias="DATABASE_ECHO")


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: Optional[str] = Field(
        default="logs/tradejournal.log", validation_alias="LOG_FILE"
    )


# =============================================================================
# Configuration Container
# =============================================================================


class JournalConfig:
    """
    Container for all trade journal configurations.

    Usage:
        from tradejournal.core.config import journal_config

        ttl = journal_config.quote_cache.ttl_seconds
        capital = journal_config.metrics.default_starting_capital
    """

    def __init__(self):
        self.quote_cache = QuoteCacheConfig()
        self.series_cache = SeriesCacheConfig()
        self.market_data = MarketDataConfig()
        self.metrics = MetricsConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()


# =============================================================================
# Global Configuration Instances
# =============================================================================

quote_cache_config = QuoteCacheConfig()
series_cache_config = SeriesCacheConfig()
market_data_config = MarketDataConfig()
metrics_config = MetricsConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()

journal_config = JournalConfig()


__all__ = [
    "JournalConfig",
    "journal_config",
    "quote_cache_config",
    "series_cache_config",
    "market_data_config",
    "metrics_config",
    "database_config",
    "logging_config",
    "QuoteCacheConfig",
    "SeriesCacheConfig",
    "MarketDataConfig",
    "MetricsConfig",
    "DatabaseConfig",
    "LoggingConfig",
]
