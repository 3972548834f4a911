"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class LedgerConfig(BaseSettings):
    """Daily-installment ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="EMI_LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///emi_ledger.db"  # or "memory://"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Local reference time for due dates and the overdue cutoff
    timezone: str = "Asia/Kolkata"

    # Loan terms
    default_interest_rate: Decimal = Decimal("20")
    default_total_days: int = 100
    min_loan_amount: int = 1000
    max_loan_amount: int = 100000
    min_total_days: int = 1
    max_total_days: int = 365

    # Subscription billing: one charge every 7 days settles up to 7 installments
    subscription_batch_size: int = 7
    subscription_interval_days: int = 7

    # Overdue sweep
    overdue_sweep_hour: int = 0  # local hour of the daily run

    # Payment gateway
    gateway_key_secret: str = ""
    gateway_webhook_secret: str = ""
    simulation_enabled: bool = True

    # Notification relay
    notification_relay_url: str = ""  # Empty = log only
    notification_timeout: float = 5.0

    # Feature flags
    enable_audit_logging: bool = True


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
