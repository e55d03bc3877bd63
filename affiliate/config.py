"""
Affiliate ledger settings.

Loads configuration from ``AFFILIATE_*`` environment variables using
pydantic-settings, and sets up loguru sinks.
"""

import sys

from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Affiliate ledger settings loaded from environment variables."""

    # Referral codes
    referral_code_length: int = Field(default=10, ge=6, le=32)

    # Program defaults used when an admin leaves a field empty
    default_currency: str = "EUR"
    default_pending_days: int = Field(default=14, ge=0)
    default_grace_days: int = Field(default=3, ge=0)

    # Admin listing
    payout_page_size_max: int = Field(default=100, ge=1)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = SettingsConfigDict(
        env_prefix="AFFILIATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


def configure_logging(config: Settings) -> None:
    """Replace loguru's default sink with one honouring the settings."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=config.log_level.upper(),
        serialize=config.log_json,
        backtrace=False,
        diagnose=False,
    )


settings = Settings()
