"""
Health Check Endpoints

- /health/live  - the process is up
- /health/ready - database and upload directory are usable
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker
from datetime import datetime
from typing import Dict, Any
import time

from app.core.config import settings
from app.core.database import get_session_factory
from app.core.logging_config import logger


router = APIRouter(prefix="/health", tags=["Health Checks"])


async def check_database(session_factory: async_sessionmaker) -> Dict[str, Any]:
    start = time.time()
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return {"status": "healthy", "latency_ms": round((time.time() - start) * 1000, 2)}
    except Exception as e:
        logger.error(f"[HealthCheck] Database check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


def check_storage() -> Dict[str, Any]:
    path = settings.UPLOAD_PATH
    if path.is_dir():
        return {"status": "healthy", "path": str(path)}
    return {"status": "unhealthy", "path": str(path), "error": "upload directory missing"}


@router.get("/live")
async def liveness():
    return {"status": "alive", "timestamp": datetime.utcnow().isoformat()}


@router.get("/ready")
async def readiness(session_factory: async_sessionmaker = Depends(get_session_factory)):
    checks = {
        "database": await check_database(session_factory),
        "storage": check_storage(),
    }
    healthy = all(check["status"] == "healthy" for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ready" if healthy else "not_ready", "checks": checks},
    )
