"""
Access Logging Middleware

Emits one request log line per API call and tags every response with a
request id for correlation. Request bodies are never logged: they carry
passwords, codes and tokens.
"""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.logging import get_logger

logger = get_logger("access")

SKIPPED_PATHS = ["/", "/health", "/docs", "/openapi.json"]


class AccessLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs method, path, status, duration and client IP of each request.

    An incoming X-Request-ID header is reused, otherwise a new id is generated.
    """

    def __init__(self, app: ASGIApp, enabled: bool = True):
        """
        Args:
            app: FastAPI application
            enabled: Whether logging is enabled (can be disabled in tests)
        """
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        if not self.enabled or request.url.path in SKIPPED_PATHS:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response

        start_time = time.time()
        response = await call_next(request)
        duration_ms = int((time.time() - start_time) * 1000)

        logger.request(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration=duration_ms,
            ip=self._get_client_ip(request),
            request_id=request_id,
        )

        response.headers["X-Request-ID"] = request_id
        return response

    def _get_client_ip(self, request: Request) -> str:
        """
        Extract client IP address from request.

        Checks X-Forwarded-For header first (for proxied requests),
        then falls back to direct client IP.
        """
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        if request.client:
            return request.client.host

        return "unknown"
