"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Loan ledger configuration"""

    # Database configuration
    database_url: str = "sqlite:///loan_ledger.db"  # memory://, sqlite:///path or postgresql://...

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 5000

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    currency: str = "BRL"

    # Overdue sweep configuration
    sweep_enabled: bool = True
    sweep_hour: int = 0
    sweep_minute: int = 1
    sweep_before_reads: bool = True

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
