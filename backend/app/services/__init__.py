from app.services.cache_service import (
    CacheNamespace, CacheRegistry, StaleWhileRevalidateCache, TTLCache, build_cache_registry,
)
from app.services.cache_invalidation import CacheInvalidator, EntityType

# Registry services
from app.services.academic_service import AcademicService
from app.services.student_service import StudentService
from app.services.document_service import DocumentService, LocalDocumentStorage
from app.services.audit_service import AuditService
from app.services.verification_service import parse_identifier

__all__ = [
    # Cache
    "CacheNamespace",
    "CacheRegistry",
    "StaleWhileRevalidateCache",
    "TTLCache",
    "build_cache_registry",
    "CacheInvalidator",
    "EntityType",
    # Registry services
    "AcademicService",
    "StudentService",
    "DocumentService",
    "LocalDocumentStorage",
    "AuditService",
    "parse_identifier",
]
