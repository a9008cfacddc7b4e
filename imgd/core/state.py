"""
Process-scoped application state.

Everything mutable that requests share (rate-limit windows, concurrency
permits, counters) lives on one AppState, created by the app factory and
attached to `app.state.imgd`. Nothing is kept in module globals.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from imgd.config import Settings
from imgd.services.ingest import IngestionPipeline
from imgd.services.storage import ContentAddressedStore
from imgd.services.webp import WEBP

from .admission import AdmissionController
from .metrics import UploadMetrics
from .security import TokenStore


@dataclass
class AppState:
    settings: Settings
    tokens: TokenStore
    metrics: UploadMetrics
    admission: AdmissionController
    store: ContentAddressedStore
    pipeline: IngestionPipeline

    @classmethod
    def from_settings(cls, settings: Settings, tokens: TokenStore | None = None) -> "AppState":
        """
        Wire the components for one process.

        Raises:
            ValueError: If no usable upload token is configured
        """
        if tokens is None:
            tokens = TokenStore.load(settings.TOKENS_FILE, settings.UPLOAD_TOKEN)

        metrics = UploadMetrics()
        store = ContentAddressedStore(settings.DATA_DIR, extension=WEBP.extension)
        return cls(
            settings=settings,
            tokens=tokens,
            metrics=metrics,
            admission=AdmissionController(
                rate_limit_per_minute=settings.RATE_LIMIT_PER_MINUTE,
                max_concurrent_uploads=settings.MAX_CONCURRENT_UPLOADS,
                metrics=metrics,
            ),
            store=store,
            pipeline=IngestionPipeline(
                store=store,
                metrics=metrics,
                max_upload_bytes=settings.MAX_UPLOAD_BYTES,
                max_body_bytes=settings.max_body_bytes,
                image_format=WEBP,
            ),
        )


def get_app_state(request: Request) -> AppState:
    """FastAPI dependency returning the process AppState."""
    return request.app.state.imgd
