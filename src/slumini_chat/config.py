"""Application settings, configurable via SLUMINI_* environment variables."""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the messaging service."""

    model_config = SettingsConfigDict(env_prefix="SLUMINI_", env_file=".env", extra="ignore")

    # Which conversation backend serves every call site
    chat_backend: Literal["remote", "local"] = "remote"

    # Local fallback storage file; in-memory only when unset
    local_storage_path: Optional[Path] = None

    # Simulated round trip of the in-process document store
    store_latency_seconds: float = 0.0

    # Summary reconciliation; 0 disables the periodic job
    reconcile_interval_seconds: float = 0.0
    reconcile_settle_seconds: float = 5.0

    log_level: str = "INFO"
    log_json: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings) -> None:
    """Set up structlog rendering and level."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    renderer = structlog.processors.JSONRenderer() if settings.log_json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )
