"""Application settings loaded from environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Haven coordination engine configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    haven_log_level: str = "info"

    # Storage (coordination data bank)
    db_path: str = "~/.haven/haven.db"

    # Encryption of opaque blobs and the privacy salt at rest
    encryption_key: str = ""

    # The one principal allowed to replace config, rotate the salt and
    # grant case-worker access. Fixed for the lifetime of a system instance.
    system_owner: str = ""

    # Initial SystemConfig values, in sequence positions (not wall clock).
    max_reservation_time: int = 144
    default_priority_decay: int = 10
    minimum_case_update_interval: int = 72
    privacy_retention_period: int = 52560
    emergency_override_enabled: bool = False


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()


def configure_logging(settings: Settings) -> None:
    """Install a root handler at ``HAVEN_LOG_LEVEL`` (no-op if one exists)."""
    logging.basicConfig(level=getattr(logging, settings.haven_log_level.upper(), logging.INFO))
