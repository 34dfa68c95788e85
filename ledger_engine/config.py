"""
Configuration Management Module

Engine configuration using pydantic-settings for environment-based values.
A LedgerConfig is built once by the caller and passed explicitly to the
components that need it; there is no process-wide configuration object.
"""

from pydantic_settings import BaseSettings
from typing import Optional

from .currency import Currency


class LedgerConfig(BaseSettings):
    """Ledger engine configuration"""

    # Currency used by init_journal when none is given
    base_currency: str = "GBP"

    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    sqlite_path: str = "ledger.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False

    @property
    def default_currency(self) -> Currency:
        return Currency.from_code(self.base_currency)


def load_config(**overrides) -> LedgerConfig:
    """Build configuration from the environment, with explicit overrides on top"""
    return LedgerConfig(**overrides)
