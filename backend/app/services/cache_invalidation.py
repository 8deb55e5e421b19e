"""
Which cache namespaces a mutation makes stale.

Mutating endpoints call `invalidator.entity_changed(EntityType.X, keys=...)`
after they commit instead of naming namespaces themselves. Adding a new
cached read means adding its namespace to the entries below.

Invalidation is best-effort: failures are logged and never reach the
caller, so a committed mutation is always reported as successful.
"""

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from app.core.logging_config import logger
from app.services.cache_service import CacheNamespace, CacheRegistry


class EntityType(str, Enum):
    FACULTY = "faculty"
    DEPARTMENT = "department"
    ACADEMIC_YEAR = "academic_year"
    STUDENT = "student"
    DOCUMENT = "document"
    AUDIT_LOG = "audit_log"


# Namespaces whose cached data can include the mutated entity.
# Student payloads embed department/faculty/year names, so academic
# changes also reach the student and verification caches. Faculty and
# student lists carry department and document counts.
INVALIDATION_MAP: Mapping[EntityType, FrozenSet[CacheNamespace]] = {
    EntityType.FACULTY: frozenset({
        CacheNamespace.FACULTIES,
        CacheNamespace.DEPARTMENTS,
        CacheNamespace.STUDENTS,
        CacheNamespace.STUDENT_DETAIL,
        CacheNamespace.VERIFICATION,
        CacheNamespace.DASHBOARD,
    }),
    EntityType.DEPARTMENT: frozenset({
        CacheNamespace.FACULTIES,
        CacheNamespace.DEPARTMENTS,
        CacheNamespace.STUDENTS,
        CacheNamespace.STUDENT_DETAIL,
        CacheNamespace.VERIFICATION,
        CacheNamespace.DASHBOARD,
    }),
    EntityType.ACADEMIC_YEAR: frozenset({
        CacheNamespace.ACADEMIC_YEARS,
        CacheNamespace.STUDENTS,
        CacheNamespace.STUDENT_DETAIL,
        CacheNamespace.VERIFICATION,
        CacheNamespace.DASHBOARD,
    }),
    EntityType.STUDENT: frozenset({
        CacheNamespace.STUDENTS,
        CacheNamespace.STUDENT_DETAIL,
        CacheNamespace.STUDENT_VALIDATION,
        CacheNamespace.DOCUMENTS,
        CacheNamespace.VERIFICATION,
        CacheNamespace.DASHBOARD,
    }),
    EntityType.DOCUMENT: frozenset({
        CacheNamespace.DOCUMENTS,
        CacheNamespace.STUDENTS,
        CacheNamespace.STUDENT_DETAIL,
        CacheNamespace.VERIFICATION,
        CacheNamespace.DASHBOARD,
    }),
    EntityType.AUDIT_LOG: frozenset({
        CacheNamespace.AUDIT_LOGS,
    }),
}

# Namespaces keyed by something a mutation can name precisely.
# Everything else is a list/search/aggregate cache and is cleared whole.
KEYED_NAMESPACES: FrozenSet[CacheNamespace] = frozenset({
    CacheNamespace.STUDENT_DETAIL,
    CacheNamespace.DOCUMENTS,
    CacheNamespace.VERIFICATION,
})


def namespaces_for(entity: EntityType) -> List[CacheNamespace]:
    return sorted(INVALIDATION_MAP[entity], key=lambda ns: ns.value)


class CacheInvalidator:
    """Applies INVALIDATION_MAP to a CacheRegistry"""

    def __init__(self, registry: CacheRegistry,
                 invalidation_map: Optional[Mapping[EntityType, Iterable[CacheNamespace]]] = None):
        self.registry = registry
        self.invalidation_map = invalidation_map or INVALIDATION_MAP
        self.failures = 0

    def entity_changed(
        self,
        entity: EntityType,
        keys: Optional[Dict[CacheNamespace, Iterable[str]]] = None,
    ) -> List[str]:
        """
        Invalidate every namespace mapped to entity.

        `keys` narrows keyed namespaces to specific entries, e.g.
        {CacheNamespace.STUDENT_DETAIL: ["42"]}; namespaces without keys
        are cleared whole. Returns the namespaces that were invalidated.
        """
        keys = keys or {}
        invalidated: List[str] = []
        for namespace in self.invalidation_map.get(entity, ()):
            try:
                scoped = keys.get(namespace)
                if scoped is not None and namespace in KEYED_NAMESPACES:
                    for key in scoped:
                        self.registry.invalidate(namespace, key)
                else:
                    self.registry.invalidate(namespace)
                invalidated.append(namespace.value)
            except Exception as e:
                self.failures += 1
                logger.warning(
                    f"Cache invalidation failed for {namespace.value} after {entity.value} change: {e}",
                    extra={"event_type": "cache_invalidation_failed", "cache_namespace": namespace.value},
                )
        logger.debug(f"{entity.value} changed, invalidated: {', '.join(sorted(invalidated)) or 'none'}")
        return sorted(invalidated)
