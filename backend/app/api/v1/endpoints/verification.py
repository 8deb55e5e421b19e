"""
Public certificate verification portal.
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.api.dependencies import get_cache_registry
from app.core.config import settings
from app.core.database import get_session_factory
from app.core.rate_limiter import rate_limit
from app.services.cache_service import CacheNamespace, CacheRegistry
from app.services.verification_service import lookup, parse_identifier

router = APIRouter()


@router.get("/{identifier}")
@rate_limit(settings.VERIFY_RATE_LIMIT)
async def verify_certificate(
    request: Request,
    identifier: str,
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Verify a graduate by registration id (GRW-...) or certificate number.

    Not-found results are cached too, so repeated lookups of a bad id stay
    off the database for the verification TTL.
    """
    _, key = parse_identifier(identifier)
    result = await registry.get_or_load(
        CacheNamespace.VERIFICATION, key, lambda: lookup(session_factory, identifier)
    )
    if not result["found"]:
        return JSONResponse(
            status_code=404,
            content={
                "success": False,
                "message": "No student found with the provided identifier",
                **result,
            },
        )
    return {"success": True, **result}
