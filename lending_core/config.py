"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Lending core configuration"""

    # Database configuration
    database_url: str = "memory://"  # memory:// or sqlite:///path/to/lending.db

    # Transaction configuration
    transaction_max_attempts: int = 5      # Bounded optimistic retries
    transaction_max_operations: int = 500  # Per-transaction write limit
    void_batch_operations: int = 400       # Write budget per void-with-payments batch

    # Currency inventory
    lot_page_size: int = 50

    # Business rules configuration
    initial_cash: str = "0"
    default_frequency: str = "monthly"
    amount_epsilon: str = "0.01"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Feature flags
    enable_audit_movements: bool = True

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


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
