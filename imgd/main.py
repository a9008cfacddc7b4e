"""
imgd - FastAPI Application

Creates the FastAPI app, builds the process-scoped AppState and wires the
routers.

Run with: uvicorn imgd.main:create_app --factory
(or `python -m tools.run_uvicorn`, which also configures logging)
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from . import __version__
from .config import Settings, ensure_data_dir_ready, get_settings
from .core.errors import setup_error_handlers
from .core.middleware import RequestLoggingMiddleware
from .core.security import TokenStore
from .core.state import AppState
from .routers.health import router as health_router
from .routers.metrics import router as metrics_router
from .routers.upload import router as upload_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    state: AppState = app.state.imgd
    logger.info(
        f"Starting imgd v{__version__}: data_dir={state.settings.DATA_DIR} "
        f"tokens={len(state.tokens)} max_upload_bytes={state.settings.MAX_UPLOAD_BYTES} "
        f"max_concurrent_uploads={state.settings.MAX_CONCURRENT_UPLOADS} "
        f"rate_limit_per_minute={state.settings.RATE_LIMIT_PER_MINUTE}"
    )
    yield
    logger.info("imgd shut down")


def create_app(settings: Settings | None = None, tokens: TokenStore | None = None) -> FastAPI:
    """
    Application factory.

    Prepares the storage root, loads the token store once and attaches the
    AppState to `app.state.imgd`.

    Raises:
        OSError: If the storage root is not writable
        ValueError: If no upload token is configured
    """
    settings = settings or get_settings()
    ensure_data_dir_ready(settings)

    app = FastAPI(
        title="imgd",
        description="WebP ingestion service with content-addressed storage.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.imgd = AppState.from_settings(settings, tokens=tokens)

    app.add_middleware(RequestLoggingMiddleware)
    setup_error_handlers(app)

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(upload_router)

    return app
