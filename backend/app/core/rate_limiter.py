"""
Rate Limiting for the Registry API
==================================
Implements rate limiting using slowapi with in-process storage.

The admin API shares one default limit per client. The public
verification portal has its own, stricter limit (VERIFY_RATE_LIMIT).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.logging_config import logger


def get_client_identifier(request: Request) -> str:
    """
    Rate limit key: the acting admin when the X-Actor header is present,
    otherwise the client IP address.
    """
    actor = request.headers.get("X-Actor")
    if actor:
        return f"actor:{actor}"
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(
    key_func=get_client_identifier,
    default_limits=[f"{settings.RATE_LIMIT_PER_MINUTE}/minute"],
    storage_uri="memory://",
    strategy="fixed-window",
    enabled=not settings.TESTING,
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """Return a JSON 429 with a Retry-After header"""
    retry_after = "60"

    logger.warning(
        f"[RateLimit] Exceeded for {get_client_identifier(request)}: {exc.detail}"
    )

    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": {
                "code": "RATE_LIMIT_EXCEEDED",
                "message": "Too many requests. Please slow down.",
                "details": {"limit": str(exc.detail)},
            },
        },
        headers={"Retry-After": retry_after},
    )


def rate_limit(limit: str):
    """
    Decorator for applying custom rate limits to endpoints.
    The endpoint must accept a `request: Request` argument.

    Usage:
        @router.get("/verify/{identifier}")
        @rate_limit(settings.VERIFY_RATE_LIMIT)
        async def verify(request: Request, identifier: str):
            ...
    """
    return limiter.limit(limit, key_func=get_client_identifier)
