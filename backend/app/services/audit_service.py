"""
Audit Service - records every registry mutation

record() only adds the row to the caller's session; it is committed
together with the change it describes.
"""

import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import Request
from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logging_config import get_actor
from app.models.audit_log import AuditLog
from app.schemas.audit import AuditLogResponse


def serialize_audit_log(log: AuditLog) -> Dict[str, Any]:
    return AuditLogResponse.model_validate(log).model_dump(mode="json")


class AuditService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        action: str,
        resource_type: str,
        resource_id: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
        request: Optional[Request] = None,
        actor: Optional[str] = None,
    ) -> AuditLog:
        log = AuditLog(
            actor=actor or get_actor() or "system",
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details,
            ip_address=request.client.host if request is not None and request.client else None,
            user_agent=request.headers.get("user-agent") if request is not None else None,
        )
        self.db.add(log)
        return log

    def _conditions(self, action: Optional[str] = None, resource_type: Optional[str] = None,
                    actor: Optional[str] = None, start_date: Optional[datetime] = None,
                    end_date: Optional[datetime] = None, search: Optional[str] = None) -> list:
        conditions = []
        if action:
            conditions.append(AuditLog.action == action)
        if resource_type:
            conditions.append(AuditLog.resource_type == resource_type)
        if actor:
            conditions.append(AuditLog.actor == actor)
        if start_date:
            conditions.append(AuditLog.timestamp >= start_date)
        if end_date:
            conditions.append(AuditLog.timestamp <= end_date)
        if search:
            term = f"%{search}%"
            conditions.append(or_(
                AuditLog.action.ilike(term),
                AuditLog.resource_type.ilike(term),
                AuditLog.resource_id.ilike(term),
            ))
        return conditions

    async def list_logs(self, page: int = 1, page_size: int = 20, **filters) -> Dict[str, Any]:
        conditions = self._conditions(**filters)
        where = and_(*conditions) if conditions else True

        total = await self.db.scalar(select(func.count(AuditLog.id)).where(where)) or 0
        result = await self.db.execute(
            select(AuditLog)
            .where(where)
            .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return {
            "items": [serialize_audit_log(log) for log in result.scalars().all()],
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": math.ceil(total / page_size) if total > 0 else 1,
        }

    async def recent(self, limit: int = 10) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(AuditLog).order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit)
        )
        return [serialize_audit_log(log) for log in result.scalars().all()]

    async def stats(self) -> Dict[str, Any]:
        since = datetime.utcnow() - timedelta(hours=24)
        total = await self.db.scalar(select(func.count(AuditLog.id))) or 0
        last_day = await self.db.scalar(
            select(func.count(AuditLog.id)).where(AuditLog.timestamp >= since)
        ) or 0

        by_action = await self.db.execute(
            select(AuditLog.action, func.count(AuditLog.id).label("count"))
            .group_by(AuditLog.action)
            .order_by(func.count(AuditLog.id).desc())
        )
        by_type = await self.db.execute(
            select(AuditLog.resource_type, func.count(AuditLog.id).label("count"))
            .group_by(AuditLog.resource_type)
            .order_by(func.count(AuditLog.id).desc())
        )
        return {
            "total": total,
            "last_24_hours": last_day,
            "by_action": {row.action: row.count for row in by_action},
            "by_resource_type": {row.resource_type: row.count for row in by_type},
        }

    async def cleanup(self, older_than_days: int) -> int:
        cutoff = datetime.utcnow() - timedelta(days=older_than_days)
        result = await self.db.execute(delete(AuditLog).where(AuditLog.timestamp < cutoff))
        return result.rowcount or 0


# ========== Cache loaders ==========

async def load_audit_page(session_factory: async_sessionmaker, **filters) -> Dict[str, Any]:
    async with session_factory() as db:
        return await AuditService(db).list_logs(**filters)


async def load_audit_stats(session_factory: async_sessionmaker) -> Dict[str, Any]:
    async with session_factory() as db:
        return await AuditService(db).stats()
