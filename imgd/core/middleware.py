"""
imgd - Middleware

- Request logging with correlation IDs (X-Request-ID)
- Client address resolution shared with the admission controller
"""

import ipaddress
import logging
import time
import uuid
from contextvars import ContextVar
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .logging import LogContext

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Context variable for request ID (thread/async safe)
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    """Get the current request ID from context."""
    return request_id_var.get()


def get_client_ip(request: Request) -> str:
    """
    Resolve the client address, preferring the first X-Forwarded-For hop.

    The service is deployed behind a reverse proxy that terminates TLS, so
    the forwarded header is the only way to see the real peer. A first hop
    that is not an IP address is ignored in favour of the peer address.
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    first = forwarded.split(",")[0].strip()
    if first:
        try:
            return str(ipaddress.ip_address(first))
        except ValueError:
            logger.debug(f"Ignoring non-address X-Forwarded-For hop: {first[:64]!r}")
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request with:
    - Request ID (propagated from X-Request-ID or generated)
    - Method, path, status code
    - Response time in milliseconds
    - Client IP

    The request ID is set in a context variable for downstream logging and
    echoed back on the response.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request_id_var.set(request_id)
        client_ip = get_client_ip(request)

        start_time = time.perf_counter()
        with LogContext(request_id=request_id):
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(
                    f"[{request_id}] Unhandled exception: {type(e).__name__}: {e}",
                    extra={
                        "path": request.url.path,
                        "method": request.method,
                        "client_ip": client_ip,
                    },
                )
                raise

        duration_ms = (time.perf_counter() - start_time) * 1000

        log_level = logging.INFO if response.status_code < 400 else logging.WARNING
        if response.status_code >= 500:
            log_level = logging.ERROR

        logger.log(
            log_level,
            f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f}ms)",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
