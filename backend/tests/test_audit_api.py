from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient

from app.models import AuditLog


@pytest.mark.asyncio
async def test_mutations_record_actor(client: AsyncClient, student_payload):
    """Each write records who made it, taken from the X-Actor header"""
    await client.post("/api/v1/students", json=student_payload, headers={"X-Actor": "registrar"})

    response = await client.get("/api/v1/audit-logs")

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    entry = data["items"][0]
    assert entry["actor"] == "registrar"
    assert entry["action"] == "create"
    assert entry["resource_type"] == "student"
    assert entry["details"] == {"registration_id": "GRW-BCS-2021"}


@pytest.mark.asyncio
async def test_actor_defaults_to_system(client: AsyncClient, db_session):
    await client.post("/api/v1/audit-logs", json={"action": "manual_fix", "resource_type": "student"})

    response = await client.get("/api/v1/audit-logs/recent")

    assert response.json()["items"][0]["actor"] == "system"


@pytest.mark.asyncio
async def test_audit_list_is_refreshed_after_writes(client: AsyncClient, db_session):
    first = await client.get("/api/v1/audit-logs")
    assert first.json()["total"] == 0

    await client.post("/api/v1/faculties", json={"name": "Faculty of Law"})

    second = await client.get("/api/v1/audit-logs")
    assert second.json()["total"] == 1


@pytest.mark.asyncio
async def test_filter_and_stats(client: AsyncClient, db_session):
    await client.post("/api/v1/faculties", json={"name": "Faculty of Law"})
    await client.post("/api/v1/academic-years", json={"year": "2022-2023"})
    await client.post("/api/v1/audit-logs", json={"action": "manual_fix", "resource_type": "student",
                                                  "resource_id": "GRW-BCS-2021"})

    response = await client.get("/api/v1/audit-logs", params={"action": "create"})
    assert response.json()["total"] == 2

    response = await client.get("/api/v1/audit-logs", params={"search": "GRW-BCS"})
    assert [item["action"] for item in response.json()["items"]] == ["manual_fix"]

    response = await client.get("/api/v1/audit-logs/stats")
    stats = response.json()
    assert stats["total"] == 3
    assert stats["last_24_hours"] == 3
    assert stats["by_action"] == {"create": 2, "manual_fix": 1}

    response = await client.get("/api/v1/audit-logs/actions")
    assert response.json()["actions"] == ["create", "manual_fix"]


@pytest.mark.asyncio
async def test_cleanup_removes_old_entries(client: AsyncClient, db_session):
    db_session.add_all([
        AuditLog(actor="system", action="create", resource_type="student",
                 timestamp=datetime.utcnow() - timedelta(days=200)),
        AuditLog(actor="system", action="create", resource_type="student"),
    ])
    await db_session.commit()

    response = await client.delete("/api/v1/audit-logs/cleanup", params={"days": 90})

    assert response.status_code == 200
    assert response.json() == {"deleted": 1, "older_than_days": 90}
    remaining = await client.get("/api/v1/audit-logs")
    assert remaining.json()["total"] == 1
