"""
HTTP API Tests

The app is wired with in-memory collaborators through build_services /
wire_api; the lifespan (real clients, bucket check) is not run.
"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from conftest import FakeSource, completed_archive, make_record
from studyzip.api.v1 import archives, jobs, storage
from studyzip.archive.assembler import DelegatedExportAssembler
from studyzip.archive.models import ArchiveStatus
from studyzip.db.dataset_store import InMemoryDatasetStore
from studyzip.main import app, build_services, wire_api


@pytest.fixture
def api_store(now):
    return InMemoryDatasetStore([
        make_record("fresh", "r-fresh"),
        make_record("ready", "r-ready", **completed_archive(now)),
        make_record("old", "r-old", **completed_archive(now, timedelta(days=-1))),
        make_record("busy", "r-busy", status=ArchiveStatus.PROCESSING, job_id=41),
        make_record("broken", "r-broken", status=ArchiveStatus.FAILED, metadata={"error": "Timed out"}),
    ])


@pytest_asyncio.fixture
async def services(api_store, uploader):
    source = FakeSource(export_delay=0.01)
    services = build_services(api_store, source, uploader, DelegatedExportAssembler(source))
    wire_api(services)
    yield services
    await services.queue.stop()
    wire_api_reset()


def wire_api_reset():
    jobs.set_dispatcher(None)
    archives.set_gateway(None)
    storage.set_storage(None)
    storage.set_sweeper(None)


@pytest_asyncio.fixture
async def client(services):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# =============================================================================
# HEALTH
# =============================================================================

async def test_health(client: AsyncClient):
    for path in ("/health", "/api/v1/health"):
        response = await client.get(path)
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


# =============================================================================
# DOWNLOAD
# =============================================================================

async def test_ready_archive_redirects(client: AsyncClient, api_store):
    response = await client.get("/api/v1/archive/ready")

    assert response.status_code == 302
    assert response.headers["location"] == "https://s3.test/test-bucket/studies/2024/old.zip"
    assert response.headers["x-download-method"] == "object-storage"
    assert response.headers["x-archive-file-name"] == "old.zip"
    assert api_store.by_ref("r-ready").archive.download_count == 1


@pytest.mark.parametrize(
    "dataset_id,status_code,state",
    [
        ("fresh", 404, "not_available"),
        ("busy", 202, "processing"),
        ("old", 410, "expired"),
        ("broken", 500, "failed"),
    ],
)
async def test_not_ready_states(client: AsyncClient, dataset_id, status_code, state):
    response = await client.get(f"/api/v1/archive/{dataset_id}")

    assert response.status_code == status_code
    body = response.json()
    assert body["success"] is False
    assert body["status"] == state
    assert body["links"]["create"] == f"/api/v1/archive/{dataset_id}"


async def test_failed_state_includes_error(client: AsyncClient):
    body = (await client.get("/api/v1/archive/broken")).json()
    assert body["error"] == "Timed out"


async def test_unknown_dataset_is_404(client: AsyncClient):
    response = await client.get("/api/v1/archive/missing")
    assert response.status_code == 404
    assert response.json()["detail"] == "Dataset missing not found"


# =============================================================================
# CREATE
# =============================================================================

async def test_create_then_poll(client: AsyncClient, services):
    response = await client.post("/api/v1/archive/fresh")

    assert response.status_code == 200
    body = response.json()
    assert body["created"] is True
    assert body["status"] == "waiting"
    assert body["check_status_url"] == f"/api/v1/jobs/{body['job_id']}"

    again = (await client.post("/api/v1/archive/fresh")).json()
    assert again["created"] is False
    assert again["job_id"] == body["job_id"]

    job = (await client.get(body["check_status_url"])).json()
    assert job["dataset_id"] == "fresh"
    assert job["status"] == "waiting"


async def test_create_runs_to_completion(client: AsyncClient, services):
    await services.queue.start()
    body = (await client.post("/api/v1/archive/fresh")).json()
    await asyncio.wait_for(services.queue.wait_until_idle(), timeout=5)

    job = (await client.get(f"/api/v1/jobs/{body['job_id']}")).json()
    assert job["status"] == "completed"
    assert job["progress"] == 100
    assert job["result"]["file_name"].startswith("Study_DOE_JANE_")

    response = await client.get("/api/v1/archive/fresh")
    assert response.status_code == 302


async def test_create_on_live_archive(client: AsyncClient):
    body = (await client.post("/api/v1/archive/ready")).json()
    assert body["created"] is False
    assert body["status"] == "completed"
    assert body["url"].endswith("old.zip")
    assert body["message"] == "Archive already exists"


async def test_create_unknown_dataset(client: AsyncClient):
    response = await client.post("/api/v1/archive/missing")
    assert response.status_code == 404


# =============================================================================
# INFO / DIRECT
# =============================================================================

async def test_info(client: AsyncClient):
    response = await client.get("/api/v1/archive/ready/info")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["has_archive"] is True
    assert data["file_name"] == "old.zip"


async def test_direct_returns_signed_url(client: AsyncClient):
    response = await client.get("/api/v1/archive/ready/direct")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["download_url"] == "https://signed.test/archive?sig=1"
    assert data["download_method"] == "signed-url"


async def test_direct_not_ready(client: AsyncClient):
    response = await client.get("/api/v1/archive/old/direct")
    assert response.status_code == 410


# =============================================================================
# JOBS
# =============================================================================

async def test_submit_and_list_jobs(client: AsyncClient):
    response = await client.post(
        "/api/v1/jobs", json={"dataset_id": "fresh", "dataset_record_ref": "r-fresh"}
    )
    assert response.status_code == 200
    job_id = response.json()["job_id"]

    listed = (await client.get("/api/v1/jobs")).json()
    assert [j["job_id"] for j in listed] == [job_id]

    stats = (await client.get("/api/v1/jobs/stats")).json()
    assert stats["total"] == 1
    assert stats["waiting"] == 1


async def test_unknown_job(client: AsyncClient):
    assert (await client.get("/api/v1/jobs/999")).status_code == 404


# =============================================================================
# STORAGE
# =============================================================================

async def test_sweep_endpoint(client: AsyncClient, api_store):
    response = await client.post("/api/v1/archive-sweeps")
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["cleaned"] == 1
    assert api_store.by_ref("r-old").archive.status == ArchiveStatus.EXPIRED


async def test_storage_stats(client: AsyncClient, mock_s3_client):
    mock_s3_client.get_paginator.return_value.paginate.return_value = [{}]
    response = await client.get("/api/v1/storage/stats")
    assert response.status_code == 200
    assert response.json()["summary"]["total_files"] == 0


async def test_unwired_service_is_503():
    wire_api_reset()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.get("/api/v1/jobs")
    assert response.status_code == 503
