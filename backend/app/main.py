from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from slowapi.errors import RateLimitExceeded

from app.core.config import settings
from app.core.database import init_db, close_db
from app.core.exceptions import RegistryError, error_response
from app.core.logging_config import logger
from app.core.middleware import (
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    RequestSizeLimitMiddleware,
)
from app.core.rate_limiter import limiter, rate_limit_exceeded_handler
from app.api.v1.router import api_router
from app.services.cache_service import build_cache_registry
from app import models  # noqa: F401  registers tables on Base.metadata


def validate_config() -> None:
    """Warn about settings that work but are unsafe outside development"""
    if not settings.is_dev_mode() and settings.async_database_url.startswith("sqlite"):
        logger.warning("[Startup] Using SQLite outside development")
    if settings.CACHE_STALE_FRACTION <= 0 or settings.CACHE_STALE_FRACTION > 1:
        raise RuntimeError("CACHE_STALE_FRACTION must be in (0, 1]")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Database, upload directory and cache registry live for the whole app"""
    logger.info(f"Starting {settings.APP_NAME} ({settings.ENVIRONMENT}, API {settings.API_VERSION})")

    validate_config()
    await init_db()
    settings.UPLOAD_PATH.mkdir(parents=True, exist_ok=True)

    app.state.cache_registry = build_cache_registry()
    logger.info(f"Cache namespaces: {', '.join(app.state.cache_registry.names())}")

    yield

    logger.info(f"Shutting down {settings.APP_NAME}...")
    await app.state.cache_registry.close()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    description="Student records, documents, bulk imports and certificate verification",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    redirect_slashes=False,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# Middleware order matters - last added runs first
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestSizeLimitMiddleware, max_size=settings.MAX_UPLOAD_SIZE)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Response-Time"],
)


@app.exception_handler(RegistryError)
async def registry_exception_handler(request: Request, exc: RegistryError):
    if exc.status_code >= 500:
        logger.log_error_with_context(exc, context=f"{request.method} {request.url.path}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=error_response(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": "INTERNAL_ERROR",
                "message": str(exc) if settings.DEBUG else "An error occurred",
                "details": {},
            },
        },
    )


@app.get("/health", tags=["Health"])
async def health_check():
    return {
        "status": "healthy",
        "app_name": settings.APP_NAME,
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


app.include_router(api_router, prefix=f"/api/{settings.API_VERSION}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=settings.DEBUG
    )
