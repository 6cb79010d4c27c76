"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class AgriLedgerConfig(BaseSettings):
    """Loan ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="AGRILEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db, postgresql://...
    database_pool_timeout: int = 30

    # Concurrency
    lock_timeout_seconds: float = 5.0  # Bound on waiting for a per-loan lock

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "USD"
    max_interest_rate: str = "100"  # Percentage
    max_text_length: int = 1000
    default_page_size: int = 10
    max_page_size: int = 100

    # Overdue sweep
    sweep_batch_size: int = 500

    # Feature flags
    enable_audit_logging: bool = True
    enable_domain_events: bool = True


# Global configuration instance
config = AgriLedgerConfig()


def get_config() -> AgriLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> AgriLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = AgriLedgerConfig()
    return config
