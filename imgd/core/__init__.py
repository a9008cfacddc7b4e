"""
imgd - Core Module

Credential authority, admission control, errors, metrics and middleware.
"""

from .admission import AdmissionController, ConcurrencyGate, SlidingWindowRateLimiter
from .errors import (
    BadRequestError,
    FileTooLargeError,
    ImgdError,
    InternalError,
    TooManyRequestsError,
    UnauthorizedError,
    UnsupportedMediaTypeError,
    setup_error_handlers,
)
from .metrics import UploadMetrics
from .middleware import RequestLoggingMiddleware, get_client_ip, get_request_id
from .security import Identity, TokenStore, require_identity

__all__ = [
    # Security
    "Identity",
    "TokenStore",
    "require_identity",
    # Admission
    "AdmissionController",
    "ConcurrencyGate",
    "SlidingWindowRateLimiter",
    # Metrics
    "UploadMetrics",
    # Middleware
    "RequestLoggingMiddleware",
    "get_client_ip",
    "get_request_id",
    # Errors
    "ImgdError",
    "UnauthorizedError",
    "UnsupportedMediaTypeError",
    "FileTooLargeError",
    "BadRequestError",
    "TooManyRequestsError",
    "InternalError",
    "setup_error_handlers",
]
