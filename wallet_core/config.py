"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

from .currency import Currency


class WalletCoreConfig(BaseSettings):
    """Wallet ledger core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="WALLET_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///wallet_core.db"  # or memory://

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Money
    currency: str = "INR"

    # Identifier allocation
    id_max_attempts: int = 5

    # Business rules
    min_payment_amount: str = "10.00"
    min_payment_fee: str = "0.01"
    min_top_up_amount: str = "1.00"
    min_transaction_amount: str = "0.01"

    # Feature flags
    enable_audit_logging: bool = True

    @field_validator("currency")
    @classmethod
    def _known_currency(cls, value: str) -> str:
        code = value.upper()
        if code not in Currency.__members__:
            raise ValueError(f"Unsupported currency {value!r}")
        return code


# Global configuration instance
config = WalletCoreConfig()


def get_config() -> WalletCoreConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WalletCoreConfig:
    """Reload configuration from environment"""
    global config
    config = WalletCoreConfig()
    return config
