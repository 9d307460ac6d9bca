"""
HTTP surface tests for the batch prospects router.

The app is built without running its lifespan; the service container is
replaced with in-memory collaborators through dependency_overrides.
"""

import csv
import io
import uuid
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from prospect_research.core.config import Settings
from prospect_research.core.dependencies import get_container
from prospect_research.main import create_app
from prospect_research.services.batch_job_service import BatchJobService
from tests.fakes import Harness

HEADERS = {"X-User-Id": "user-1"}
PAYLOAD = {
    "name": "Spring donors",
    "prospects": [{"Name": "Jane Doe", "City": "Austin", "State": "TX"}],
}


@pytest.fixture
def api():
    harness = Harness()
    job_service = BatchJobService(harness.store, harness.store, harness.plans, harness.idempotency, harness.state)
    container = SimpleNamespace(dispatcher=harness.dispatcher, job_service=job_service)

    app = create_app(Settings())
    app.dependency_overrides[get_container] = lambda: container
    return TestClient(app), harness


def _create(client: TestClient, **headers) -> dict:
    response = client.post("/api/batch-prospects", json=PAYLOAD, headers={**HEADERS, **headers})
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.unit
def test_caller_header_is_required(api):
    client, _ = api
    response = client.get("/api/batch-prospects")
    assert response.status_code == 401
    assert response.json()["detail"] == "X-User-Id header is required"


@pytest.mark.unit
def test_create_list_and_fetch(api):
    client, harness = api
    created = _create(client)

    assert created["job"]["status"] == "pending"
    assert created["summary"]["credits_charged"] == 1
    assert "webhook_secret" not in created["job"]

    listed = client.get("/api/batch-prospects", headers=HEADERS).json()
    assert [job["id"] for job in listed] == [created["job"]["id"]]

    detail = client.get(f"/api/batch-prospects/{created['job']['id']}", headers=HEADERS).json()
    assert detail["items"][0]["prospect_name"] == "Jane Doe"
    assert harness.plans.deductions == [1]


@pytest.mark.unit
def test_idempotency_key_replays_the_original_job(api):
    client, harness = api
    first = _create(client, **{"Idempotency-Key": "abc"})
    second = _create(client, **{"Idempotency-Key": "abc"})

    assert second["job"]["id"] == first["job"]["id"]
    assert second["summary"]["replayed"] is True
    assert harness.plans.deductions == [1]


@pytest.mark.unit
def test_app_errors_use_the_error_envelope(api):
    client, _ = api
    response = client.post("/api/batch-prospects", json={"name": "x", "prospects": []}, headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "NO_VALID_PROSPECTS"

    missing = client.get(f"/api/batch-prospects/{uuid.uuid4()}", headers=HEADERS)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "JOB_NOT_FOUND"


@pytest.mark.unit
def test_jobs_are_invisible_to_other_callers(api):
    client, _ = api
    job_id = _create(client)["job"]["id"]

    other = {"X-User-Id": "user-2"}
    assert client.get(f"/api/batch-prospects/{job_id}", headers=other).status_code == 404
    assert client.post(f"/api/batch-prospects/{job_id}/process-batch", headers=other).status_code == 404
    assert client.delete(f"/api/batch-prospects/{job_id}", headers=other).status_code == 404


@pytest.mark.unit
def test_status_changes(api):
    client, _ = api
    job_id = _create(client)["job"]["id"]
    url = f"/api/batch-prospects/{job_id}"

    invalid = client.patch(url, json={"status": "completed"}, headers=HEADERS)
    assert invalid.status_code == 422
    assert invalid.json()["error"]["code"] == "VALIDATION_ERROR"
    assert client.patch(url, json={"status": "paused"}, headers=HEADERS).json()["status"] == "paused"
    assert client.patch(url, json={"status": "cancelled"}, headers=HEADERS).json()["status"] == "cancelled"

    conflict = client.patch(url, json={"status": "processing"}, headers=HEADERS)
    assert conflict.status_code == 409
    assert conflict.json()["error"]["details"] == {"current": "cancelled", "target": "processing"}


@pytest.mark.unit
def test_process_export_and_retry(api):
    client, harness = api
    job_id = _create(client)["job"]["id"]

    processed = client.post(f"/api/batch-prospects/{job_id}/process-batch", headers=HEADERS).json()
    assert processed["items_processed"] == 1
    assert processed["job_status"] == "completed"
    assert processed["has_more"] is False

    export = client.get(f"/api/batch-prospects/{job_id}/export", headers=HEADERS)
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    rows = list(csv.DictReader(io.StringIO(export.text)))
    assert rows[0]["name"] == "Jane Doe"
    assert rows[0]["status"] == "completed"
    assert rows[0]["romy_score"] == "24"

    item_id = next(iter(harness.store.items))
    retry = client.post(f"/api/batch-prospects/{job_id}/items/{item_id}/retry", headers=HEADERS)
    assert retry.status_code == 409
    assert retry.json()["error"]["code"] == "RETRY_REJECTED"


@pytest.mark.unit
def test_delete_job(api):
    client, harness = api
    job_id = _create(client)["job"]["id"]

    assert client.delete(f"/api/batch-prospects/{job_id}", headers=HEADERS).status_code == 204
    assert harness.store.jobs == {}


@pytest.mark.unit
def test_store_outage_maps_to_503(api):
    client, harness = api
    harness.store.fail_reads = True

    response = client.get("/api/batch-prospects", headers=HEADERS)
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "BATCH_STATE_UNAVAILABLE"
