"""
Student Records Registry - HTTP Middleware
Request context (request id, acting admin), access logging and request limits
"""

import time
from typing import Callable, FrozenSet

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from app.core.logging_config import generate_request_id, logger, set_actor, set_request_id


# Probes and docs are not access-logged
QUIET_PATHS: FrozenSet[str] = frozenset({
    "/",
    "/health",
    "/api/v1/health/live",
    "/api/v1/health/ready",
    "/favicon.ico",
    "/docs",
    "/redoc",
    "/openapi.json",
})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Sets the request context and logs each request.

    - X-Request-ID is reused when the caller sends one, generated otherwise
    - X-Actor names the admin recorded in audit entries for this request
    - Responses carry X-Request-ID and X-Response-Time
    """

    def __init__(self, app: ASGIApp, slow_request_ms: float = 1000):
        super().__init__(app)
        self.slow_request_ms = slow_request_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        set_request_id(request_id)
        set_actor(request.headers.get("X-Actor", ""))

        method, path = request.method, request.url.path
        quiet = path in QUIET_PATHS
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.error(
                f"✗ {method} {path} - {type(exc).__name__} ({elapsed_ms:.2f}ms)",
                exc_info=True,
                extra={"event_type": "http_request_error", "http_method": method, "http_path": path,
                       "duration_ms": elapsed_ms},
            )
            raise
        finally:
            set_request_id("")
            set_actor("")

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed_ms:.2f}ms"

        if not quiet:
            status = response.status_code
            log = logger.error if status >= 500 else logger.warning if status >= 400 else logger.info
            log(
                f"{method} {path} - {status} ({elapsed_ms:.2f}ms)",
                extra={
                    "event_type": "http_request",
                    "http_method": method,
                    "http_path": path,
                    "http_status": status,
                    "duration_ms": elapsed_ms,
                    "client_ip": request.client.host if request.client else None,
                },
            )
            if elapsed_ms > self.slow_request_ms:
                logger.log_performance(f"{method} {path}", elapsed_ms, threshold_ms=self.slow_request_ms)

        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Rejects bodies whose declared Content-Length exceeds max_size with 413"""

    def __init__(self, app: ASGIApp, max_size: int):
        super().__init__(app)
        self.max_size = max_size

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_size:
            logger.warning(f"Rejected {request.url.path}: body of {declared} bytes exceeds {self.max_size}")
            return JSONResponse(
                status_code=413,
                content={
                    "success": False,
                    "error": {
                        "code": "REQUEST_TOO_LARGE",
                        "message": f"Request body exceeds {self.max_size // (1024 * 1024)}MB",
                        "details": {"max_bytes": self.max_size},
                    },
                },
            )
        return await call_next(request)


__all__ = [
    "RequestLoggingMiddleware",
    "SecurityHeadersMiddleware",
    "RequestSizeLimitMiddleware",
    "QUIET_PATHS",
]
