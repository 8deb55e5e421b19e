import pytest
from httpx import AsyncClient

from app.services.cache_service import CacheNamespace
from conftest import build_zip


@pytest.fixture
async def student(make_student):
    return await make_student(registration_id="GRW-BCS-2020", certificate_id="202000001")


@pytest.mark.asyncio
async def test_upload_documents(client: AsyncClient, student, storage):
    """Test multi-file upload for one document type"""
    response = await client.post(
        "/api/v1/documents/GRW-BCS-2020/transcript",
        files=[
            ("files", ("year1.pdf", b"%PDF-1.4 one", "application/pdf")),
            ("files", ("year2.pdf", b"%PDF-1.4 two", "application/pdf")),
        ],
    )

    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["count"] == 2
    assert {doc["document_type"] for doc in data["documents"]} == {"TRANSCRIPT"}
    assert data["documents"][0]["file_url"].endswith("/download")

    stored = list((storage.base_dir / "GRW-BCS-2020" / "transcript").iterdir())
    assert len(stored) == 2


@pytest.mark.asyncio
async def test_upload_keeps_good_files_when_one_fails(client: AsyncClient, student):
    response = await client.post(
        "/api/v1/documents/GRW-BCS-2020/Supporting",
        files=[
            ("files", ("letter.docx", b"docx", "application/octet-stream")),
            ("files", ("virus.exe", b"MZ", "application/octet-stream")),
        ],
    )

    assert response.status_code == 201
    data = response.json()
    assert data["success"] is False
    assert data["count"] == 1
    assert data["failed"][0]["file_name"] == "virus.exe"


@pytest.mark.asyncio
async def test_upload_with_no_valid_files(client: AsyncClient, student):
    response = await client.post(
        "/api/v1/documents/GRW-BCS-2020/photo",
        files=[("files", ("notes.txt", b"hello", "text/plain"))],
    )

    assert response.status_code == 400
    assert response.json()["error"]["details"]["failed"][0]["file_name"] == "notes.txt"


@pytest.mark.asyncio
async def test_upload_for_unknown_student(client: AsyncClient, student):
    response = await client.post(
        "/api/v1/documents/GRW-BCS-1999/photo",
        files=[("files", ("a.jpg", b"jpeg", "image/jpeg"))],
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_upload_with_unknown_document_type(client: AsyncClient, student):
    response = await client.post(
        "/api/v1/documents/GRW-BCS-2020/passport",
        files=[("files", ("a.jpg", b"jpeg", "image/jpeg"))],
    )

    assert response.status_code == 400
    assert response.json()["error"]["details"]["field"] == "document_type"


@pytest.mark.asyncio
async def test_upload_clears_student_caches(client: AsyncClient, cache_registry, student):
    await client.get(f"/api/v1/students/{student.id}")
    listing = await client.get("/api/v1/documents/student/grw-bcs-2020")
    assert listing.json()["total"] == 0

    await client.post(
        "/api/v1/documents/GRW-BCS-2020/photo",
        files=[("files", ("GRW-BCS-2020.jpg", b"jpeg", "image/jpeg"))],
    )

    assert str(student.id) not in cache_registry.namespace(CacheNamespace.STUDENT_DETAIL)
    listing = await client.get("/api/v1/documents/student/GRW-BCS-2020")
    assert listing.json()["total"] == 1
    detail = await client.get(f"/api/v1/students/{student.id}")
    assert len(detail.json()["documents"]) == 1


@pytest.mark.asyncio
async def test_document_changes_refresh_student_list_counts(client: AsyncClient, student):
    response = await client.get("/api/v1/students")
    assert response.json()["students"][0]["document_count"] == 0

    upload = await client.post(
        "/api/v1/documents/GRW-BCS-2020/photo",
        files=[("files", ("GRW-BCS-2020.jpg", b"jpeg", "image/jpeg"))],
    )
    assert upload.status_code == 201

    response = await client.get("/api/v1/students")
    assert response.json()["students"][0]["document_count"] == 1

    document_id = upload.json()["documents"][0]["id"]
    await client.delete(f"/api/v1/documents/{document_id}")

    response = await client.get("/api/v1/students")
    assert response.json()["students"][0]["document_count"] == 0


@pytest.mark.asyncio
async def test_download_and_delete_document(client: AsyncClient, student, storage):
    upload = await client.post(
        "/api/v1/documents/GRW-BCS-2020/certificate",
        files=[("files", ("certificate.pdf", b"%PDF certificate", "application/pdf"))],
    )
    document_id = upload.json()["documents"][0]["id"]

    response = await client.get(f"/api/v1/documents/{document_id}/download")
    assert response.status_code == 200
    assert response.content == b"%PDF certificate"

    response = await client.delete(f"/api/v1/documents/{document_id}")
    assert response.status_code == 200
    assert not list((storage.base_dir / "GRW-BCS-2020" / "certificate").iterdir())

    response = await client.get(f"/api/v1/documents/{document_id}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_failed_delete_keeps_stored_file(client: AsyncClient, student, storage, monkeypatch):
    upload = await client.post(
        "/api/v1/documents/GRW-BCS-2020/certificate",
        files=[("files", ("certificate.pdf", b"%PDF certificate", "application/pdf"))],
    )
    document_id = upload.json()["documents"][0]["id"]

    async def failing_commit(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr("app.api.v1.endpoints.documents.commit_changes", failing_commit)

    with pytest.raises(RuntimeError):
        await client.delete(f"/api/v1/documents/{document_id}")

    assert len(list((storage.base_dir / "GRW-BCS-2020" / "certificate").iterdir())) == 1


@pytest.mark.asyncio
async def test_list_documents_with_filters(client: AsyncClient, student):
    await client.post("/api/v1/documents/GRW-BCS-2020/photo",
                      files=[("files", ("p.jpg", b"jpeg", "image/jpeg"))])
    await client.post("/api/v1/documents/GRW-BCS-2020/transcript",
                      files=[("files", ("t.pdf", b"%PDF", "application/pdf"))])

    response = await client.get("/api/v1/documents")
    assert response.json()["total"] == 2

    response = await client.get("/api/v1/documents", params={"document_type": "photos"})
    assert [doc["file_name"] for doc in response.json()["documents"]] == ["p.jpg"]


@pytest.mark.asyncio
async def test_zip_upload(client: AsyncClient, student, make_student):
    """ZIP entries are stored for known students; the rest is reported"""
    await make_student(registration_id="GRW-BCS-2021")
    archive = build_zip({
        "Photo/GRW-BCS-2020.jpg": b"jpeg",
        "Transcript/GRW-BCS-2020.pdf": b"%PDF",
        "Certificate/GRW-BCS-2021.pdf": b"%PDF",
        "Photo/GRW-BCS-2099.jpg": b"jpeg",
        "Unknown/foo.txt": b"?",
    })

    response = await client.post(
        "/api/v1/documents/bulk",
        files={"file": ("documents.zip", archive, "application/zip")},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["uploaded"] == 3
    assert data["batches"] == 3
    assert data["unknown_students"] == ["GRW-BCS-2099"]
    assert data["unrecognized"][0]["path"] == "Unknown/foo.txt"
    assert all(result["document_id"] for result in data["results"])

    listing = await client.get("/api/v1/documents", params={"registration_id": "GRW-BCS-2020"})
    assert listing.json()["total"] == 2


@pytest.mark.asyncio
async def test_zip_upload_rejects_corrupt_archive(client: AsyncClient, student):
    response = await client.post(
        "/api/v1/documents/bulk",
        files={"file": ("documents.zip", b"not a zip at all", "application/zip")},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "ZIP_ARCHIVE_ERROR"


@pytest.mark.asyncio
async def test_zip_upload_rejects_other_file_types(client: AsyncClient, student):
    response = await client.post(
        "/api/v1/documents/bulk",
        files={"file": ("students.csv", b"a,b", "text/csv")},
    )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_deleting_student_removes_files(client: AsyncClient, student, storage):
    await client.post("/api/v1/documents/GRW-BCS-2020/photo",
                      files=[("files", ("p.jpg", b"jpeg", "image/jpeg"))])

    response = await client.delete(f"/api/v1/students/{student.id}")

    assert response.json()["documents_removed"] == 1
    assert not list((storage.base_dir / "GRW-BCS-2020" / "photo").iterdir())
