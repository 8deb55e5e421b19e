"""
Audit log endpoints.
"""
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from datetime import datetime
from typing import Optional

from app.api.dependencies import get_cache_registry, get_invalidator
from app.core.config import settings
from app.core.database import get_db, get_session_factory
from app.core.logging_config import logger
from app.models.audit_log import AuditLog
from app.schemas.audit import AuditCleanupResponse, AuditLogCreate, AuditLogStats, AuditLogsResponse
from app.services.audit_service import AuditService, load_audit_page, load_audit_stats, serialize_audit_log
from app.services.cache_invalidation import CacheInvalidator, EntityType
from app.services.cache_service import CacheNamespace, CacheRegistry, make_key

router = APIRouter()


@router.get("", response_model=AuditLogsResponse)
async def list_audit_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    action: Optional[str] = None,
    resource_type: Optional[str] = None,
    actor: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    search: Optional[str] = None,
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """List audit logs with filtering and pagination"""
    filters = dict(
        page=page,
        page_size=page_size,
        action=action,
        resource_type=resource_type,
        actor=actor,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    key = make_key(**{
        name: value.isoformat() if isinstance(value, datetime) else value
        for name, value in filters.items()
    })
    return await registry.get_or_load(
        CacheNamespace.AUDIT_LOGS, key, lambda: load_audit_page(session_factory, **filters)
    )


@router.get("/stats", response_model=AuditLogStats)
async def get_audit_stats(
    registry: CacheRegistry = Depends(get_cache_registry),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    return await registry.get_or_load(
        CacheNamespace.AUDIT_LOGS, "stats", lambda: load_audit_stats(session_factory)
    )


@router.get("/recent")
async def get_recent_audit_logs(
    limit: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    return {"items": await AuditService(db).recent(limit)}


@router.get("/actions")
async def get_available_actions(db: AsyncSession = Depends(get_db)):
    """Distinct action names, for filtering"""
    result = await db.execute(select(AuditLog.action).distinct().order_by(AuditLog.action))
    return {"actions": [row[0] for row in result.all() if row[0]]}


@router.post("", status_code=201)
async def create_audit_log(
    data: AuditLogCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    """Record an action performed outside the API (e.g. a manual correction)"""
    log = await AuditService(db).record(
        data.action, data.resource_type, data.resource_id, data.details, request
    )
    await db.commit()
    invalidator.entity_changed(EntityType.AUDIT_LOG)
    return serialize_audit_log(log)


@router.delete("/cleanup", response_model=AuditCleanupResponse)
async def cleanup_audit_logs(
    days: int = Query(settings.AUDIT_RETENTION_DAYS, ge=1),
    db: AsyncSession = Depends(get_db),
    invalidator: CacheInvalidator = Depends(get_invalidator),
):
    """Delete entries older than `days`"""
    deleted = await AuditService(db).cleanup(days)
    await db.commit()
    invalidator.entity_changed(EntityType.AUDIT_LOG)
    logger.info(f"Audit cleanup removed {deleted} entries older than {days} days")
    return AuditCleanupResponse(deleted=deleted, older_than_days=days)
