"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based
configuration. Every variable is read with the ``LENDING_`` prefix, for example
``LENDING_LOG_LEVEL=DEBUG``.
"""

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class LendingConfig(BaseSettings):
    """Lending engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LENDING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///lending.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Money and calendar defaults
    default_currency: str = "BRL"
    holiday_jurisdiction: str = "BR"
    allow_saturday: bool = True
    allow_sunday: bool = False
    allow_holidays: bool = False
    max_adjustment_days: int = 366

    # Rate solver
    rate_solver_iterations: int = 40
    rate_solver_max_rate: str = "5.0"  # 500% per period

    # Credit score constants
    score_base: int = 350
    score_on_time_weight: int = 650
    score_late_paid_penalty: int = 15
    score_late_unpaid_penalty: int = 30
    score_band_a: int = 900
    score_band_b: int = 750
    score_band_c: int = 600

    # Payment ledger rules
    elevated_reversal_types: List[str] = ["advance"]
    interest_only_extension_days: int = 30

    # Read-through cache
    cache_ttl_seconds: int = 300


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
