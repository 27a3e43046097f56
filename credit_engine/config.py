"""
Configuration Management Module

Provides the engine configuration using pydantic-settings for environment-based
configuration. Components receive an EngineConfig at construction; the
module-level instance is only the process default.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineConfig(BaseSettings):
    """Credit engine configuration (immutable once built)"""

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_ENGINE_",
        env_file=".env",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
    )

    # Business calendar
    business_timezone: str = "America/Argentina/Tucuman"

    # Late fee and open-modality rules
    daily_late_fee_rate: Decimal = Decimal("0.025")  # 2.5% per day
    open_cycle_cap: int = 3
    open_default_rate: Decimal = Decimal("60")
    open_due_sentinel: date = date(2099, 12, 31)

    # Interest rules
    minimum_rate: Decimal = Decimal("60")
    refinance_p1_monthly_rate: Decimal = Decimal("25")
    refinance_p2_monthly_rate: Decimal = Decimal("15")

    # Storage configuration
    storage_type: str = "memory"  # memory or postgresql
    database_url: Optional[str] = None
    database_pool_size: int = 10

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig()
    return config
