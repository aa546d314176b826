"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LoanLedgerConfig(BaseSettings):
    """Loan ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LOAN_LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///loan_ledger.db"  # Default SQLite

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Write path
    max_write_retries: int = 3  # Optimistic-concurrency retries per operation

    # Feature flags
    enable_audit_logging: bool = True
    enable_events: bool = True

    # Reporting
    default_page_size: int = 10
    max_page_size: int = 100
    upcoming_emi_window_days: int = 7


# Global configuration instance
config = LoanLedgerConfig()


def get_config() -> LoanLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LoanLedgerConfig()
    return config
