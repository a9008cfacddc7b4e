#!/usr/bin/env python3
"""
Uvicorn launcher for the imgd service.

Reads settings from the environment, configures logging, verifies the
storage root and then serves the app factory. Fails fast (exit 1) on any
configuration error so the supervisor reports it instead of restarting a
half-configured process.

SINGLE STARTUP LOG LINE (for log aggregation):
  listening host=<HOST> port=<PORT> data_dir=<DATA_DIR> version=<version>
"""

from __future__ import annotations

import sys

import uvicorn
from pydantic import ValidationError

from imgd import __version__
from imgd.config import configure_logging, ensure_data_dir_ready, get_settings

APP_FACTORY = "imgd.main:create_app"


def main() -> None:
    # 1. Load settings
    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"[FATAL] Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    # 2. Logging before anything else logs
    configure_logging(settings)

    # 3. Storage root must be writable before we bind
    try:
        ensure_data_dir_ready(settings)
    except OSError as e:
        print(f"[FATAL] DATA_DIR={settings.DATA_DIR} is not writable: {e}", file=sys.stderr)
        sys.exit(1)

    print(
        f"listening host={settings.HOST} port={settings.PORT} "
        f"data_dir={settings.DATA_DIR} version={__version__}"
    )

    print()
    print("=" * 72)
    print("  IMGD STARTUP")
    print("=" * 72)
    print(f"  App:              {APP_FACTORY}")
    print(f"  Host:             {settings.HOST}")
    print(f"  Port:             {settings.PORT}")
    print(f"  Data dir:         {settings.DATA_DIR}")
    print(f"  Public base URL:  {settings.public_base_url}")
    print(f"  Tokens file:      {settings.TOKENS_FILE or '-'}")
    print(f"  Legacy token:     {'set' if settings.UPLOAD_TOKEN else 'unset'}")
    print(f"  Max upload:       {settings.MAX_UPLOAD_BYTES} bytes")
    print(f"  Concurrency:      {settings.MAX_CONCURRENT_UPLOADS}")
    print(f"  Rate limit:       {settings.RATE_LIMIT_PER_MINUTE}/min")
    print(f"  Log:              {settings.LOG_LEVEL} ({settings.LOG_FORMAT})")
    print("=" * 72)
    print()

    # Single worker: admission state and counters are process-local
    uvicorn.run(
        APP_FACTORY,
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        log_config=None,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )


if __name__ == "__main__":
    main()
