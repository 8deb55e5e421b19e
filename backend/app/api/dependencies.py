"""
Shared FastAPI dependencies for the v1 endpoints
"""

from typing import Dict, Iterable, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.services.cache_invalidation import CacheInvalidator, EntityType
from app.services.cache_service import CacheNamespace, CacheRegistry
from app.services.document_service import LocalDocumentStorage, get_document_storage


def get_cache_registry(request: Request) -> CacheRegistry:
    """The application's cache registry (created in lifespan, overridden in tests)"""
    return request.app.state.cache_registry


def get_invalidator(registry: CacheRegistry = Depends(get_cache_registry)) -> CacheInvalidator:
    return CacheInvalidator(registry)


def get_storage() -> LocalDocumentStorage:
    return get_document_storage()


async def commit_changes(
    db: AsyncSession,
    invalidator: CacheInvalidator,
    entity: EntityType,
    keys: Optional[Dict[CacheNamespace, Iterable[str]]] = None,
) -> None:
    """Commit the mutation and its audit entry, then drop affected caches"""
    await db.commit()
    invalidator.entity_changed(entity, keys=keys)
    invalidator.entity_changed(EntityType.AUDIT_LOG)
