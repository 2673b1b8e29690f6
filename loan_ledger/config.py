"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Worker loan ledger configuration"""

    # Database configuration
    database_url: str = "sqlite:///loan_ledger.db"  # memory://, sqlite:///path or postgresql://...
    database_timeout: float = 5.0  # seconds to wait for the SQLite write lock

    # Concurrency configuration
    lock_timeout_seconds: float = 5.0  # per-loan row lock wait
    payment_max_retries: int = 3  # ConcurrencyConflict retries inside record_payment
    retry_backoff_seconds: float = 0.05

    # Identifier configuration
    loan_code_prefix: str = "L"
    payment_code_prefix: str = "P"
    sequence_width: int = 4

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    directory_seed_file: Optional[str] = None  # JSON workers/users for the in-memory directories

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
