"""
imgd - Error Handling

Every failure surfaces to the client as `{"error": "<code>"}` with a fixed
HTTP status. Internal detail (filesystem paths, tracebacks, which admission
gate tripped) stays in the logs; `reason` is a log tag only.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .middleware import get_request_id

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    """Error body returned for every failed request."""

    error: str


# =============================================================================
# Error Codes
# =============================================================================

ERROR_UNAUTHORIZED = "unauthorized"
ERROR_UNSUPPORTED_MEDIA_TYPE = "unsupported_media_type"
ERROR_FILE_TOO_LARGE = "file_too_large"
ERROR_BAD_REQUEST = "bad_request"
ERROR_TOO_MANY_REQUESTS = "too_many_requests"
ERROR_INTERNAL = "internal_error"
ERROR_NOT_FOUND = "not_found"
ERROR_METHOD_NOT_ALLOWED = "method_not_allowed"

# Window advertised to rate/concurrency-limited clients
RETRY_AFTER_SECONDS = 60


# =============================================================================
# Exceptions
# =============================================================================


class ImgdError(Exception):
    """
    Base exception for upload failures.

    Args:
        reason: Short machine tag for logs (e.g. "signature", "too_large").
            Never included in the response body.
    """

    error_code: str = ERROR_INTERNAL
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, reason: str | None = None):
        self.reason = reason or self.error_code
        super().__init__(self.reason)

    @property
    def headers(self) -> dict[str, str] | None:
        return None


class UnauthorizedError(ImgdError):
    """No valid, unexpired credential was presented."""

    error_code = ERROR_UNAUTHORIZED
    status_code = status.HTTP_401_UNAUTHORIZED

    @property
    def headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class UnsupportedMediaTypeError(ImgdError):
    error_code = ERROR_UNSUPPORTED_MEDIA_TYPE
    status_code = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE


class FileTooLargeError(ImgdError):
    error_code = ERROR_FILE_TOO_LARGE
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class BadRequestError(ImgdError):
    error_code = ERROR_BAD_REQUEST
    status_code = status.HTTP_400_BAD_REQUEST


class TooManyRequestsError(ImgdError):
    """Raised by either admission gate; the response never says which."""

    error_code = ERROR_TOO_MANY_REQUESTS
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(RETRY_AFTER_SECONDS)}


class InternalError(ImgdError):
    error_code = ERROR_INTERNAL
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


# =============================================================================
# Exception Handlers
# =============================================================================


def create_error_response(
    status_code: int,
    error: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Create a standardized error response."""
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error).model_dump(),
        headers=headers,
    )


async def imgd_error_handler(request: Request, exc: ImgdError) -> JSONResponse:
    return create_error_response(exc.status_code, exc.error_code, exc.headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Map framework HTTP errors (unknown route, wrong method) onto error codes."""
    error_map = {
        400: ERROR_BAD_REQUEST,
        401: ERROR_UNAUTHORIZED,
        404: ERROR_NOT_FOUND,
        405: ERROR_METHOD_NOT_ALLOWED,
        413: ERROR_FILE_TOO_LARGE,
        415: ERROR_UNSUPPORTED_MEDIA_TYPE,
        429: ERROR_TOO_MANY_REQUESTS,
    }
    error_code = error_map.get(exc.status_code, ERROR_INTERNAL)

    if exc.status_code >= 500:
        logger.error(
            f"HTTP {exc.status_code}: {exc.detail}",
            extra={"request_id": get_request_id(), "path": request.url.path},
        )

    return create_error_response(exc.status_code, error_code, getattr(exc, "headers", None))


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.warning(
        f"Validation error on {request.url.path}: {len(exc.errors())} errors",
        extra={"request_id": get_request_id(), "path": request.url.path},
    )
    return create_error_response(status.HTTP_400_BAD_REQUEST, ERROR_BAD_REQUEST)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unhandled exceptions.

    Logs the full traceback but returns a generic error to the client.
    """
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        extra={
            "request_id": get_request_id(),
            "path": request.url.path,
            "method": request.method,
        },
        exc_info=True,
    )
    return create_error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, ERROR_INTERNAL)


def setup_error_handlers(app: FastAPI) -> None:
    """Register all error handlers with the FastAPI app."""
    app.add_exception_handler(ImgdError, imgd_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
