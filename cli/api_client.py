"""
Registry API client with a client-side data cache.

Every GET goes through a stale-while-revalidate cache keyed by endpoint
and parameters, with one of three TTL presets:

    ACADEMIC  10 min   faculties, departments, academic years, student detail
    SHORT      2 min   student lists, validation list, documents, audit logs
    LONG      30 min   dashboard stats and analytics

Mutations drop the cached GETs for the entity they touch, using the same
entity -> namespace map as the server. Searches run through LatestOnly so
a new search cancels the one still in flight.
"""

import asyncio
import mimetypes
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

import httpx

from app.services.cache_invalidation import CacheInvalidator, EntityType
from app.services.cache_service import (
    BackgroundRefresher, CacheNamespace, CacheRegistry, Clock, make_key,
)
from cli.config import CLIConfig


T = TypeVar("T")


class CachePreset(str, Enum):
    ACADEMIC = "academic"
    SHORT = "short"
    LONG = "long"


NAMESPACE_PRESETS: Dict[CacheNamespace, CachePreset] = {
    CacheNamespace.FACULTIES: CachePreset.ACADEMIC,
    CacheNamespace.DEPARTMENTS: CachePreset.ACADEMIC,
    CacheNamespace.ACADEMIC_YEARS: CachePreset.ACADEMIC,
    CacheNamespace.STUDENT_DETAIL: CachePreset.ACADEMIC,
    CacheNamespace.STUDENTS: CachePreset.SHORT,
    CacheNamespace.STUDENT_VALIDATION: CachePreset.SHORT,
    CacheNamespace.DOCUMENTS: CachePreset.SHORT,
    CacheNamespace.VERIFICATION: CachePreset.SHORT,
    CacheNamespace.AUDIT_LOGS: CachePreset.SHORT,
    CacheNamespace.DASHBOARD: CachePreset.LONG,
}


class ApiError(Exception):
    """Non-2xx response from the registry API"""

    def __init__(self, status_code: int, message: str, code: str = "HTTP_ERROR",
                 details: Optional[Dict[str, Any]] = None, body: Any = None):
        self.status_code = status_code
        self.message = message
        self.code = code
        self.details = details or {}
        self.body = body
        super().__init__(message)

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        try:
            body = response.json()
        except ValueError:
            return cls(response.status_code, response.text or response.reason_phrase)
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return cls(response.status_code, error.get("message", ""), error.get("code", "HTTP_ERROR"),
                       error.get("details"), body)
        if isinstance(body, dict):
            message = body.get("message") or body.get("detail") or response.reason_phrase
            return cls(response.status_code, str(message), body=body)
        return cls(response.status_code, response.reason_phrase, body=body)


class RequestSupersededError(Exception):
    """A newer request on the same channel replaced this one"""

    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"Request on '{channel}' was superseded by a newer one")


class LatestOnly:
    """
    Keeps at most one request running per channel.

    Starting a request cancels the previous one on the same channel; the
    caller of the cancelled request gets RequestSupersededError.
    """

    def __init__(self):
        self._tasks: Dict[str, "asyncio.Task[Any]"] = {}

    def active(self, channel: str) -> bool:
        task = self._tasks.get(channel)
        return task is not None and not task.done()

    async def run(self, channel: str, factory: Callable[[], Awaitable[T]]) -> T:
        previous = self._tasks.get(channel)
        if previous is not None and not previous.done():
            previous.cancel()

        task = asyncio.get_running_loop().create_task(factory())
        self._tasks[channel] = task
        try:
            return await task
        except asyncio.CancelledError:
            if self._tasks.get(channel) is not task:
                raise RequestSupersededError(channel)
            raise
        finally:
            if self._tasks.get(channel) is task:
                del self._tasks[channel]


def build_client_cache(config: CLIConfig, clock: Optional[Clock] = None) -> CacheRegistry:
    ttls = {
        CachePreset.ACADEMIC: config.cache_ttl_academic,
        CachePreset.SHORT: config.cache_ttl_short,
        CachePreset.LONG: config.cache_ttl_long,
    }
    registry = CacheRegistry(
        clock=clock,
        refresher=BackgroundRefresher(max_concurrency=config.cache_refresh_concurrency),
        stale_fraction=config.cache_stale_fraction,
    )
    for namespace, preset in NAMESPACE_PRESETS.items():
        registry.register(namespace, ttls[preset])
    return registry


class RegistryClient:
    """
    Async client for the registry API.

    Usage:
        async with RegistryClient(config) as client:
            page = await client.search_students("amina")
            result = await client.verify("GRW-BCS-2021")
    """

    def __init__(self, config: CLIConfig, transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock: Optional[Clock] = None):
        self.config = config
        headers = {"Accept": "application/json"}
        if config.actor:
            headers["X-Actor"] = config.actor
        self.http = httpx.AsyncClient(
            base_url=config.server_url.rstrip("/"),
            timeout=config.timeout,
            headers=headers,
            transport=transport,
        )
        self.cache = build_client_cache(config, clock)
        self.invalidator = CacheInvalidator(self.cache)
        self.latest = LatestOnly()

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        await self.cache.close()
        await self.http.aclose()

    # ========== Transport ==========

    async def request(self, method: str, path: str, **kwargs) -> Any:
        response = await self.http.request(method, path, **kwargs)
        if response.status_code >= 400:
            raise ApiError.from_response(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def cached_get(self, namespace: CacheNamespace, path: str,
                         params: Optional[Dict[str, Any]] = None, fresh: bool = False) -> Any:
        query = {name: value for name, value in (params or {}).items() if value is not None and value != ""}
        key = f"{path}?{make_key(**query)}"
        if fresh:
            self.cache.invalidate(namespace, key)
        return await self.cache.swr(namespace).get(key, lambda: self.request("GET", path, params=query))

    async def mutate(self, method: str, path: str, entity: EntityType, **kwargs) -> Any:
        """Send a write; on success drop every cached GET that can include entity"""
        result = await self.request(method, path, **kwargs)
        self.invalidator.entity_changed(entity)
        self.invalidator.entity_changed(EntityType.AUDIT_LOG)
        return result

    # ========== Academic configuration ==========

    async def list_faculties(self) -> List[Dict[str, Any]]:
        data = await self.cached_get(CacheNamespace.FACULTIES, "/faculties")
        return data["faculties"]

    async def list_departments(self, faculty_id: Optional[int] = None) -> List[Dict[str, Any]]:
        data = await self.cached_get(CacheNamespace.DEPARTMENTS, "/departments", {"faculty_id": faculty_id})
        return data["departments"]

    async def list_academic_years(self) -> List[Dict[str, Any]]:
        data = await self.cached_get(CacheNamespace.ACADEMIC_YEARS, "/academic-years")
        return data["academic_years"]

    # ========== Students ==========

    async def list_students(self, **filters) -> Dict[str, Any]:
        return await self.cached_get(CacheNamespace.STUDENTS, "/students", filters)

    async def search_students(self, search: Optional[str] = None, page: int = 1,
                              page_size: Optional[int] = None, **filters) -> Dict[str, Any]:
        """Latest search wins; an older search still running raises RequestSupersededError"""
        return await self.latest.run(
            "students-search",
            lambda: self.list_students(
                search=search, page=page, page_size=page_size or self.config.page_size, **filters
            ),
        )

    async def get_student(self, student_id: int) -> Dict[str, Any]:
        return await self.cached_get(CacheNamespace.STUDENT_DETAIL, f"/students/{student_id}")

    async def get_student_by_registration(self, registration_id: str) -> Dict[str, Any]:
        return await self.request("GET", f"/students/by-registration/{registration_id}")

    async def student_identities(self, fresh: bool = False) -> List[Dict[str, Optional[str]]]:
        data = await self.cached_get(CacheNamespace.STUDENT_VALIDATION, "/students/validation", fresh=fresh)
        return data["students"]

    async def create_student(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.mutate("POST", "/students", EntityType.STUDENT, json=payload)

    async def bulk_create_students(self, payloads: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self.mutate("POST", "/students/bulk", EntityType.STUDENT, json={"students": payloads})

    async def update_student(self, student_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        return await self.mutate("PUT", f"/students/{student_id}", EntityType.STUDENT, json=changes)

    async def delete_student(self, student_id: int) -> Dict[str, Any]:
        return await self.mutate("DELETE", f"/students/{student_id}", EntityType.STUDENT)

    # ========== Documents ==========

    async def student_documents(self, registration_id: str) -> List[Dict[str, Any]]:
        data = await self.cached_get(CacheNamespace.DOCUMENTS, f"/documents/student/{registration_id}")
        return data["documents"]

    async def upload_documents(self, registration_id: str, document_type: str,
                               files: Iterable[Tuple[str, bytes]]) -> Dict[str, Any]:
        parts = [
            ("files", (name, data, mimetypes.guess_type(name)[0] or "application/octet-stream"))
            for name, data in files
        ]
        return await self.mutate(
            "POST", f"/documents/{registration_id}/{document_type}", EntityType.DOCUMENT, files=parts
        )

    # ========== Verification, audit, cache ==========

    async def verify(self, identifier: str) -> Dict[str, Any]:
        """Verification result; a 404 is returned as {"found": False, ...}"""
        try:
            return await self.cached_get(CacheNamespace.VERIFICATION, f"/verify/{identifier.strip()}")
        except ApiError as e:
            if e.status_code == 404 and isinstance(e.body, dict):
                return e.body
            raise

    async def audit_logs(self, **filters) -> Dict[str, Any]:
        return await self.cached_get(CacheNamespace.AUDIT_LOGS, "/audit-logs", filters)

    async def dashboard_stats(self) -> Dict[str, Any]:
        return await self.cached_get(CacheNamespace.DASHBOARD, "/dashboard/stats")

    async def student_analytics(self) -> Dict[str, Any]:
        return await self.cached_get(CacheNamespace.DASHBOARD, "/dashboard/analytics/students")

    async def document_insights(self) -> Dict[str, Any]:
        return await self.cached_get(CacheNamespace.DASHBOARD, "/dashboard/analytics/documents")

    async def server_cache_stats(self) -> Dict[str, Any]:
        return await self.request("GET", "/cache/stats")

    async def clear_server_cache(self, namespace: Optional[str] = None, key: Optional[str] = None) -> Dict[str, Any]:
        if namespace is None:
            return await self.request("POST", "/cache/clear")
        return await self.request("POST", f"/cache/{namespace}/clear", params={"key": key} if key else None)
