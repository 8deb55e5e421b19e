import asyncio
import io
import json

import httpx
import pytest
from rich.console import Console

from app.services.cache_service import ManualClock
from cli.api_client import ApiError, LatestOnly, RegistryClient, RequestSupersededError
from cli.config import CLIConfig
from cli.importer import run_import
from cli.main import create_parser, run
from conftest import build_zip


class FakeRegistry:
    """Minimal in-memory stand-in for the registry API"""

    def __init__(self):
        self.requests = []
        self.students = [{"registration_id": "GRW-BCS-2019", "certificate_id": "201900001"}]
        self.bulk_payloads = []
        self.uploads = []
        self.reject_bulk = False
        self.actors = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        self.actors.append(request.headers.get("X-Actor"))
        path = request.url.path.removeprefix("/api/v1")

        if path == "/faculties":
            return httpx.Response(200, json={"faculties": [{"id": 1, "name": "Faculty of Computing", "code": "FOC"}],
                                             "total": 1})
        if path == "/departments":
            return httpx.Response(200, json={"departments": [{"id": 3, "name": "Computer Science", "code": "BCS"}],
                                             "total": 1})
        if path == "/academic-years":
            return httpx.Response(200, json={"academic_years": [{"id": 5, "year": "2020-2021"}], "total": 1})
        if path == "/students/validation":
            return httpx.Response(200, json={"students": self.students, "total": len(self.students)})
        if path == "/students" and request.method == "GET":
            return httpx.Response(200, json={"students": [], "total": len(self.students), "page": 1,
                                             "page_size": 20, "total_pages": 1})
        if path == "/students/bulk":
            body = json.loads(request.content)
            if self.reject_bulk:
                return httpx.Response(409, json={"success": False, "error": {
                    "code": "DUPLICATE_STUDENT", "message": "Students already exist",
                    "details": {"conflicting_ids": [body["students"][0]["registration_id"]]},
                }})
            self.bulk_payloads.append(body["students"])
            created = [student["registration_id"] for student in body["students"]]
            self.students.extend({"registration_id": reg, "certificate_id": None} for reg in created)
            return httpx.Response(201, json={"success": True, "created": len(created), "registration_ids": created})
        if path.startswith("/documents/") and request.method == "POST":
            _, _, registration_id, document_type = path.split("/")
            self.uploads.append((registration_id, document_type))
            return httpx.Response(201, json={
                "success": True, "count": 1, "failed": [],
                "documents": [{"id": len(self.uploads), "file_name": f"{registration_id}.pdf"}],
            })
        if path.startswith("/verify/"):
            identifier = path.rsplit("/", 1)[1]
            if identifier == "GRW-BCS-2019":
                return httpx.Response(200, json={"success": True, "found": True, "identifier": identifier,
                                                 "lookup": "registration_id", "student": {
                                                     "registration_id": identifier, "full_name": "Amina Yusuf",
                                                     "status": "CLEARED"}})
            return httpx.Response(404, json={"success": False, "found": False, "identifier": identifier,
                                             "lookup": "registration_id", "student": None})
        if path == "/dashboard/stats":
            return httpx.Response(200, json={
                "students": {"total": 3, "cleared": 2, "un_cleared": 1, "by_department": {"BCS": 3}},
                "documents": {"total": 4, "by_type": {"PHOTO": 4}},
                "status_distribution": [{"status": "CLEARED", "count": 2, "percentage": 67},
                                        {"status": "UN_CLEARED", "count": 1, "percentage": 33}],
                "monthly_registrations": [{"month": "2021-03", "count": 3}],
                "recent_registrations": [{"registration_id": "GRW-BCS-2019", "full_name": "Amina Yusuf",
                                          "department_name": "Computer Science", "status": "CLEARED"}],
            })
        if path == "/dashboard/analytics/students":
            return httpx.Response(200, json={
                "department_stats": [{"department_code": "BCS", "count": 3, "average_gpa": 3.456}],
                "gpa_bands": {"3.5-4.0": 1, "not recorded": 2},
            })
        return httpx.Response(404, json={"detail": "Not Found"})

    def count(self, method, path):
        return self.requests.count((method, "/api/v1" + path))


@pytest.fixture
def fake_registry():
    return FakeRegistry()


@pytest.fixture
async def api_client(fake_registry):
    config = CLIConfig(server_url="http://registry.test/api/v1", actor="registrar")
    client = RegistryClient(config, transport=httpx.MockTransport(fake_registry), clock=ManualClock())
    yield client
    await client.close()


@pytest.fixture
def console():
    return Console(file=io.StringIO(), width=120)


def output(console: Console) -> str:
    return console.file.getvalue()


# ==================== Client cache ====================

async def test_reads_are_cached(api_client, fake_registry):
    await api_client.list_faculties()
    await api_client.list_faculties()

    assert fake_registry.count("GET", "/faculties") == 1


async def test_cached_reads_expire(api_client, fake_registry):
    await api_client.list_faculties()
    api_client.cache.clock.advance(api_client.config.cache_ttl_academic + 1)
    await api_client.list_faculties()

    assert fake_registry.count("GET", "/faculties") == 2


async def test_mutation_drops_cached_student_reads(api_client, fake_registry):
    await api_client.student_identities()
    await api_client.bulk_create_students([{"registration_id": "GRW-BCS-2021"}])
    identities = await api_client.student_identities()

    assert fake_registry.count("GET", "/students/validation") == 2
    assert {student["registration_id"] for student in identities} == {"GRW-BCS-2019", "GRW-BCS-2021"}


async def test_fresh_read_bypasses_cache(api_client, fake_registry):
    await api_client.student_identities()
    await api_client.student_identities(fresh=True)

    assert fake_registry.count("GET", "/students/validation") == 2


async def test_actor_header_sent(api_client, fake_registry):
    await api_client.list_faculties()
    await api_client.bulk_create_students([{"registration_id": "GRW-BCS-2021"}])

    assert fake_registry.actors == ["registrar", "registrar"]


async def test_error_response_becomes_api_error(api_client, fake_registry):
    fake_registry.reject_bulk = True

    with pytest.raises(ApiError) as exc_info:
        await api_client.bulk_create_students([{"registration_id": "GRW-BCS-2019"}])

    assert exc_info.value.status_code == 409
    assert exc_info.value.code == "DUPLICATE_STUDENT"
    assert exc_info.value.details["conflicting_ids"] == ["GRW-BCS-2019"]


async def test_verify_returns_not_found_body(api_client):
    result = await api_client.verify("GRW-BCS-1999")

    assert result["found"] is False
    assert result["identifier"] == "GRW-BCS-1999"


# ==================== Latest-only requests ====================

async def test_newer_request_supersedes_older_one():
    latest = LatestOnly()
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "old"

    async def fast():
        return "new"

    first = asyncio.create_task(latest.run("search", slow))
    await asyncio.sleep(0)
    assert latest.active("search")

    assert await latest.run("search", fast) == "new"
    with pytest.raises(RequestSupersededError):
        await first
    assert not latest.active("search")


async def test_channels_are_independent():
    latest = LatestOnly()
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "students"

    async def fast():
        return "documents"

    first = asyncio.create_task(latest.run("students", slow))
    await asyncio.sleep(0)
    assert await latest.run("documents", fast) == "documents"

    release.set()
    assert await first == "students"


# ==================== Import workflow ====================

CSV = (
    "Registration No,Full Name,Department,Academic Year,GPA\n"
    "GRW-BCS-2021,Amina Yusuf,BCS,2020-2021,3.5\n"
    "GRW-BCS-2021,Omar Ali,BCS,2020-2021,2.0\n"
    "GRW-BCS-2019,Halima,BCS,,3.1\n"
    "GRW-BCS-2022,Yusuf,History,,3.0\n"
).encode("utf-8")


async def test_import_with_yes_creates_valid_rows(api_client, fake_registry, console):
    exit_code = await run_import(api_client, console, CSV, assume_yes=True)

    assert exit_code == 0
    assert len(fake_registry.bulk_payloads) == 1
    payload = fake_registry.bulk_payloads[0]
    assert [row["registration_id"] for row in payload] == ["GRW-BCS-2021"]
    assert payload[0]["department_id"] == 3
    assert payload[0]["academic_year_id"] == 5
    text = output(console)
    assert "Will import" in text
    assert "Created 1 students" in text


async def test_import_then_upload_documents(api_client, fake_registry, console):
    archive = build_zip({
        "Photo/GRW-BCS-2021.jpg": b"jpeg",
        "Transcript/GRW-BCS-2021.pdf": b"%PDF",
        "Photo/GRW-BCS-2099.jpg": b"jpeg",
    })

    exit_code = await run_import(api_client, console, CSV, archive, assume_yes=True)

    assert exit_code == 0
    # The student created by the CSV step is known to the document step
    assert sorted(fake_registry.uploads) == [("GRW-BCS-2021", "PHOTO"), ("GRW-BCS-2021", "TRANSCRIPT")]
    assert "GRW-BCS-2099" in output(console)


async def test_rejected_chunk_fails_the_import(api_client, fake_registry, console):
    fake_registry.reject_bulk = True

    exit_code = await run_import(api_client, console, CSV, assume_yes=True)

    assert exit_code == 1
    assert "Rejected 1 rows" in output(console)


async def test_declined_confirmation_writes_nothing(api_client, fake_registry, console, monkeypatch):
    monkeypatch.setattr("cli.importer.Confirm.ask", lambda *args, **kwargs: False)

    exit_code = await run_import(api_client, console, CSV)

    assert exit_code == 1
    assert fake_registry.bulk_payloads == []


# ==================== Commands ====================

async def test_verify_command(api_client, console):
    args = create_parser().parse_args(["verify", "GRW-BCS-2019"])

    exit_code = await run(args, api_client.config, console, client=api_client)

    assert exit_code == 0
    assert "Amina Yusuf" in output(console)


async def test_verify_command_not_found(api_client, console):
    args = create_parser().parse_args(["verify", "GRW-BCS-1999"])

    assert await run(args, api_client.config, console, client=api_client) == 1


async def test_students_search_command(api_client, fake_registry, console):
    args = create_parser().parse_args(["students", "search", "amina", "--status", "CLEARED"])

    assert await run(args, api_client.config, console, client=api_client) == 0
    method, path = fake_registry.requests[-1]
    assert (method, path) == ("GET", "/api/v1/students")


async def test_report_summary_command(api_client, fake_registry, console):
    args = create_parser().parse_args(["report"])

    assert await run(args, api_client.config, console, client=api_client) == 0
    text = output(console)
    assert "CLEARED: 2 (67%)" in text
    assert "2021-03" in text
    assert "Amina Yusuf" in text


async def test_report_students_command(api_client, fake_registry, console):
    args = create_parser().parse_args(["report", "students"])

    assert await run(args, api_client.config, console, client=api_client) == 0
    assert fake_registry.count("GET", "/dashboard/analytics/students") == 1
    assert "3.46" in output(console)


# ==================== Configuration ====================

def test_config_file_then_environment(tmp_path):
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps({"server_url": "http://files.test/api/v1", "page_size": 50, "theme": "dark"}))

    config = CLIConfig(config_dir=str(tmp_path))
    config.load_from_file(str(config_file))
    config.load_from_env({
        "REGISTRY_SERVER_URL": "http://env.test/api/v1",
        "REGISTRY_UPLOAD_CONCURRENCY": "5",
        "REGISTRY_VERBOSE": "true",
        "REGISTRY_CACHE_STALE_FRACTION": "",
    })

    assert config.server_url == "http://env.test/api/v1"
    assert config.page_size == 50
    assert config.upload_concurrency == 5
    assert config.verbose is True
    assert config.cache_stale_fraction == 0.8
    assert not hasattr(config, "theme")


def test_missing_config_file_is_ignored(tmp_path):
    config = CLIConfig()
    config.load_from_file(str(tmp_path / "absent.json"))

    assert config.server_url == "http://localhost:8000/api/v1"
