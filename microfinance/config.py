"""
Configuration Management Module

Loan core settings read from ``MICROFINANCE_*`` environment variables or a
local ``.env`` file, using pydantic-settings.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MicrofinanceConfig(BaseSettings):
    """Loan core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="MICROFINANCE_",
        env_file=".env",
        case_sensitive=False
    )

    # Storage
    database_url: str = "sqlite:///microfinance.db"  # memory:// for in-memory storage

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # stderr when unset

    # Concurrency
    lock_timeout_seconds: float = Field(default=5.0, gt=0)  # per-loan lock wait

    # Reconciliation
    reconcile_interval_seconds: float = Field(default=60.0, gt=0)
    reconcile_after_payment: bool = False  # also sweep after every payment write

    # Loan numbering
    ref_no_prefix: str = "REF-"

    # Feature flags
    enable_audit_logging: bool = True

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "text"):
            raise ValueError(f"log_format must be json or text, got {value}")
        return value


# Global configuration instance
config = MicrofinanceConfig()


def get_config() -> MicrofinanceConfig:
    return config


def reload_config() -> MicrofinanceConfig:
    """Re-read configuration from the environment"""
    global config
    config = MicrofinanceConfig()
    return config
