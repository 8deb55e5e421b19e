import pytest
from httpx import AsyncClient

from app.core.config import settings
from app.services.cache_service import CacheNamespace


@pytest.mark.asyncio
async def test_cache_stats_lists_every_namespace(client: AsyncClient, faculty):
    await client.get("/api/v1/faculties")

    response = await client.get("/api/v1/cache/stats")

    assert response.status_code == 200
    data = response.json()
    assert set(data["namespaces"]) == {ns.value for ns in CacheNamespace}
    assert data["namespaces"]["faculties"]["keys"] == ["all"]
    assert data["total_entries"] == 1
    assert data["refresh"]["failed"] == 0


@pytest.mark.asyncio
async def test_namespace_stats_and_clear(client: AsyncClient, cache_registry, department):
    await client.get("/api/v1/departments")
    await client.get("/api/v1/departments", params={"faculty_id": department.faculty_id})

    response = await client.get("/api/v1/cache/departments/stats")
    data = response.json()
    assert data["size"] == 2
    assert data["ttl_seconds"] == settings.CACHE_TTL_ACADEMIC

    response = await client.post("/api/v1/cache/departments/clear", params={"key": "all"})
    assert response.json()["removed"] == 1
    assert cache_registry.namespace(CacheNamespace.DEPARTMENTS).keys() == [f"faculty_id={department.faculty_id}"]

    response = await client.post("/api/v1/cache/departments/clear")
    assert response.json()["removed"] == 1


@pytest.mark.asyncio
async def test_unknown_namespace(client: AsyncClient):
    response = await client.get("/api/v1/cache/sessions/stats")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "CACHE_NAMESPACE_NOT_FOUND"


@pytest.mark.asyncio
async def test_clear_all(client: AsyncClient, faculty, academic_year):
    await client.get("/api/v1/faculties")
    await client.get("/api/v1/academic-years")

    response = await client.post("/api/v1/cache/clear")

    assert response.json() == {"success": True, "removed": 2}


@pytest.mark.asyncio
async def test_dashboard_stats(client: AsyncClient, make_student, cache_registry, clock):
    """Dashboard counts are cached and refreshed in the background once stale"""
    await make_student()

    response = await client.get("/api/v1/dashboard/stats")
    data = response.json()
    assert data["students"]["total"] == 1
    assert data["students"]["cleared"] == 1
    assert data["students"]["by_department"] == {"BCS": 1}

    await make_student()
    cached = await client.get("/api/v1/dashboard/stats")
    assert cached.json()["students"]["total"] == 1

    clock.advance(settings.CACHE_TTL_DASHBOARD * 0.9)
    stale = await client.get("/api/v1/dashboard/stats")
    assert stale.json()["students"]["total"] == 1
    await cache_registry.refresher.drain()

    refreshed = await client.get("/api/v1/dashboard/stats")
    assert refreshed.json()["students"]["total"] == 2


@pytest.mark.asyncio
async def test_health_endpoints(client: AsyncClient, monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path))

    assert (await client.get("/health")).json()["status"] == "healthy"
    assert (await client.get("/api/v1/health/live")).json()["status"] == "alive"

    response = await client.get("/api/v1/health/ready")
    assert response.status_code == 200
    assert response.json()["checks"]["database"]["status"] == "healthy"


@pytest.mark.asyncio
async def test_readiness_reports_missing_upload_dir(client: AsyncClient, monkeypatch, tmp_path):
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "missing"))

    response = await client.get("/api/v1/health/ready")

    assert response.status_code == 503
    assert response.json()["checks"]["storage"]["status"] == "unhealthy"
