"""
imgd - Configuration

Settings are read from the process environment once at startup.

REQUIRED:
  PUBLIC_BASE_URL          – Prefix for the public URL returned on success
  UPLOAD_TOKEN or TOKENS_FILE
                           – At least one credential source must be set

OPTIONAL:
  HOST / PORT              – Bind address (default 0.0.0.0:3000)
  DATA_DIR                 – Storage root (default /data/images)
  MAX_UPLOAD_BYTES         – Size cap per upload (default 5 MiB)
  MAX_CONCURRENT_UPLOADS   – Concurrency permit pool size (default 16)
  RATE_LIMIT_PER_MINUTE    – Per-address sliding window limit (default 60)
  LOG_LEVEL / LOG_FORMAT   – Logging level and console|json output
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Multipart framing allowance on top of MAX_UPLOAD_BYTES for the raw body
BODY_FRAMING_ALLOWANCE = 1024 * 1024

TMP_DIR_NAME = ".tmp"


class Settings(BaseSettings):
    """
    Application settings.

    Does not auto-load any .env file; the deployment (systemd unit, container
    runtime) is expected to provide the environment.
    """

    model_config = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # =========================================================================
    # SERVER
    # =========================================================================

    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=3000, ge=1, le=65535)

    # =========================================================================
    # CREDENTIALS
    # =========================================================================

    UPLOAD_TOKEN: str | None = Field(
        default=None,
        description="Legacy single shared secret",
    )
    TOKENS_FILE: Path | None = Field(
        default=None,
        description="JSON token record file managed by `imgd-token`",
    )

    # =========================================================================
    # STORAGE
    # =========================================================================

    PUBLIC_BASE_URL: str = Field(description="Public URL prefix for stored objects")
    DATA_DIR: Path = Field(default=Path("/data/images"))
    MAX_UPLOAD_BYTES: int = Field(default=5 * 1024 * 1024, gt=0)

    # =========================================================================
    # ADMISSION
    # =========================================================================

    MAX_CONCURRENT_UPLOADS: int = Field(default=16, gt=0)
    RATE_LIMIT_PER_MINUTE: int = Field(default=60, ge=0)

    # =========================================================================
    # LOGGING
    # =========================================================================

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    LOG_FORMAT: Literal["console", "json"] = Field(default="console")

    @model_validator(mode="after")
    def _require_credential_source(self) -> "Settings":
        if not self.UPLOAD_TOKEN and self.TOKENS_FILE is None:
            raise ValueError("UPLOAD_TOKEN or TOKENS_FILE must be set")
        return self

    # =========================================================================
    # DERIVED VALUES
    # =========================================================================

    @property
    def public_base_url(self) -> str:
        return self.PUBLIC_BASE_URL.rstrip("/")

    @property
    def tmp_dir(self) -> Path:
        return self.DATA_DIR / TMP_DIR_NAME

    @property
    def max_body_bytes(self) -> int:
        """Raw request body limit, including multipart framing."""
        return self.MAX_UPLOAD_BYTES + BODY_FRAMING_ALLOWANCE

    @property
    def json_logs(self) -> bool:
        return self.LOG_FORMAT == "json"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached settings instance built from the environment."""
    return Settings()  # type: ignore[call-arg]


def reset_settings() -> None:
    """Clear the cached settings (for testing)."""
    get_settings.cache_clear()


def configure_logging(settings: Settings | None = None) -> None:
    """
    Configure process logging based on settings.

    JSON output for log aggregation when LOG_FORMAT=json, colored console
    output otherwise.
    """
    if settings is None:
        settings = get_settings()

    from imgd.core.logging import configure_structured_logging

    configure_structured_logging(
        level=settings.LOG_LEVEL,
        json_output=settings.json_logs,
        service_name="imgd",
    )

    # Quiet noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("python_multipart").setLevel(logging.WARNING)


def ensure_data_dir_ready(settings: Settings) -> None:
    """
    Create the storage root and staging directory and prove they are writable.

    Raises:
        OSError: If the directories cannot be created or written
    """
    settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
    settings.tmp_dir.mkdir(parents=True, exist_ok=True)

    probe = settings.tmp_dir / ".write_probe"
    probe.write_bytes(b"ok")
    probe.unlink()
    logger.debug(f"Data directory ready: {settings.DATA_DIR}")


__all__ = [
    "BODY_FRAMING_ALLOWANCE",
    "Settings",
    "configure_logging",
    "ensure_data_dir_ready",
    "get_settings",
    "reset_settings",
]
