"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class MicrofinanceConfig(BaseSettings):
    """Microfinance core engine configuration"""

    # Storage configuration
    database_path: str = "microfinance.db"
    storage_timeout_seconds: float = 5.0  # Lock/lookup timeout for the repository

    # Ledger posting rules
    backdate_window_days: int = 3  # Entries older than this need governance approval
    approver_roles: List[str] = ["admin", "ceo"]

    # Reference numbers
    reference_prefix: str = "JN"
    reference_max_retries: int = 5

    # Loan product limits
    max_term_months: int = 360
    max_interest_rate: str = "50"  # Percent per period

    # System account codes used by loan postings
    portfolio_account_code: str = "PORTFOLIO"
    interest_income_account_code: str = "INTEREST_INCOME"
    overpayment_account_code: str = "OVERPAYMENTS"
    provision_account_code: str = "PROVISION"
    recovery_income_account_code: str = "RECOVERY_INCOME"

    # Raise on arithmetic invariant violations instead of logging them
    strict_invariants: bool = True

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    class Config:
        env_prefix = "MICROFINANCE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = MicrofinanceConfig()


def get_config() -> MicrofinanceConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicrofinanceConfig:
    """Reload configuration from environment"""
    global config
    config = MicrofinanceConfig()
    return config
