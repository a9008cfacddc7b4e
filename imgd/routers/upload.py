"""
Upload router.

POST /upload accepts a multipart body with a single `file` part and returns
the stored object's public URL, path, SHA-256 and size.
"""

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from ..core.errors import ErrorResponse
from ..core.middleware import get_client_ip, get_request_id
from ..core.security import Identity, require_identity
from ..core.state import AppState, get_app_state

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Upload"])


class UploadResponse(BaseModel):
    url: str
    path: str
    sha256: str
    size: int


@router.post(
    "/upload",
    response_model=UploadResponse,
    summary="Upload a WebP image",
    responses={
        400: {"model": ErrorResponse, "description": "Malformed multipart body"},
        401: {"model": ErrorResponse, "description": "Missing, unknown or expired token"},
        413: {"model": ErrorResponse, "description": "File exceeds MAX_UPLOAD_BYTES"},
        415: {"model": ErrorResponse, "description": "Not a .webp file or not a WebP body"},
        429: {"model": ErrorResponse, "description": "Rate or concurrency limit reached"},
        500: {"model": ErrorResponse, "description": "Storage failure"},
    },
)
async def upload_image(
    request: Request,
    identity: Identity = Depends(require_identity),
    state: AppState = Depends(get_app_state),
) -> UploadResponse:
    """
    The body is read as a stream, never parsed up front by the framework, so
    the size cap and the staging write apply chunk by chunk.
    """
    client_ip = get_client_ip(request)

    with state.admission.admit(client_ip, identity):
        stored = await state.pipeline.ingest(
            request.stream(),
            content_type=request.headers.get("content-type"),
            content_length=request.headers.get("content-length"),
            client_ip=client_ip,
            identity=identity,
            request_id=get_request_id() or "-",
        )

    return UploadResponse(
        url=f"{state.settings.public_base_url}{stored.path}",
        path=stored.path,
        sha256=stored.sha256,
        size=stored.size,
    )
