"""
Configuration Management Module

Settings for the ledger, read from MICROLEND_* environment variables or a
.env file through pydantic-settings.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class MicrolendConfig(BaseSettings):
    """Micro-lending ledger configuration"""

    # Database configuration
    database_url: str = "sqlite:///microlend.db"  # or sqlite:///:memory: / memory://

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_late_fee_per_day: str = "50.00"  # Used when an owner has no setting
    default_overdue_threshold: int = 3       # Overdue installments before default
    max_installments: int = 1000
    max_interest_rate: str = "100"

    # Identifier generation
    identifier_max_attempts: int = 10
    loan_number_prefix: str = "LOAN"
    receipt_number_prefix: str = "REC"

    # SMS gateway configuration
    sms_enabled: bool = True
    sms_gateway_url: str = ""  # Empty = log-only provider
    sms_gateway_api_key: str = ""
    sms_timeout: float = 5.0

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "MICROLEND_"
        env_file = ".env"
        case_sensitive = False


# Process-wide instance, replaced by reload_config()
config = MicrolendConfig()


def get_config() -> MicrolendConfig:
    """Process-wide settings"""
    return config


def reload_config() -> MicrolendConfig:
    """Re-read settings, e.g. after the environment changed in a test"""
    global config
    config = MicrolendConfig()
    return config
