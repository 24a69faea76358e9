"""Unit tests for the FastAPI router."""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch
from uuid import uuid4

from fastapi import FastAPI
from fastapi.testclient import TestClient

from bulk_exports.errors import QuotaExceededError
from bulk_exports.fastapi_router import create_exports_router, register_error_handlers
from bulk_exports.models import ApiKey, ApiKeyScope

API_KEYS = {
    "read-key": ApiKey("k1", "customer-1", ApiKeyScope.READ),
    "write-key": ApiKey("k2", "customer-1", ApiKeyScope.WRITE),
    "admin-key": ApiKey("k3", "customer-1", ApiKeyScope.ADMIN),
    "revoked-key": ApiKey("k4", "customer-1", ApiKeyScope.ADMIN, is_revoked=True),
    "other-key": ApiKey("k5", "customer-2", ApiKeyScope.ADMIN),
}

READ = {"X-API-Key": "read-key"}
WRITE = {"X-API-Key": "write-key"}
ADMIN = {"X-API-Key": "admin-key"}
OTHER = {"X-API-Key": "other-key"}

SCHEDULE_BODY = {
    "name": "Nightly orders",
    "cron_expr": "0 0 * * *",
    "format": "csv",
    "payload": {"source": "orders"},
}


@pytest.fixture
def client(job_service, schedule_service):
    async def resolve_api_key(raw_key):
        return API_KEYS.get(raw_key)

    app = FastAPI()
    register_error_handlers(app)
    app.include_router(
        create_exports_router(lambda: job_service, lambda: schedule_service, resolve_api_key)
    )
    return TestClient(app)


def create_export(client, headers=WRITE, **body):
    payload = {"format": "csv", "query": {"source": "orders"}}
    payload.update(body)
    return client.post("/exports", json=payload, headers=headers)


def test_create_export(client, job_store):
    response = create_export(client, priority=3)

    assert response.status_code == 202
    data = response.json()
    assert data["status"] == "QUEUED"
    [job] = job_store.jobs.values()
    assert str(job.id) == data["job_id"]
    assert job.customer_id == "customer-1"
    assert job.priority == 3


def test_create_export_with_run_at(client, job_store):
    response = create_export(client, run_at="2030-01-01T06:30:00")

    assert response.status_code == 202
    [job] = job_store.jobs.values()
    assert job.run_at == datetime(2030, 1, 1, 6, 30, tzinfo=timezone.utc)


def test_create_export_with_bad_run_at(client):
    response = create_export(client, run_at="next tuesday")
    assert response.status_code == 422


def test_create_export_unknown_source(client):
    response = create_export(client, query={"source": "payroll"})

    assert response.status_code == 400
    assert "Unknown export source" in response.json()["detail"]


def test_create_export_unsupported_format(client):
    response = create_export(client, format="pdf")
    assert response.status_code == 422


def test_create_export_over_quota(client, job_service):
    with patch.object(
        job_service,
        "create_export_job",
        AsyncMock(side_effect=QuotaExceededError("customer-1", 2)),
    ):
        response = create_export(client)

    assert response.status_code == 429


def test_read_key_cannot_create(client, job_store):
    response = create_export(client, headers=READ)

    assert response.status_code == 403
    assert response.json() == {"error": "Insufficient permissions", "code": "FORBIDDEN"}
    assert job_store.jobs == {}


def test_missing_key_is_unauthorized(client):
    response = client.get("/exports")

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid or missing API key", "code": "UNAUTHORIZED"}


@pytest.mark.parametrize("raw_key", ["revoked-key", "unknown-key"])
def test_unusable_key_is_unauthorized(client, raw_key):
    response = client.get("/exports", headers={"X-API-Key": raw_key})
    assert response.status_code == 401


def test_bearer_token_accepted(client):
    response = client.get("/exports", headers={"Authorization": "Bearer read-key"})
    assert response.status_code == 200


def test_list_exports_scoped_and_filtered(client):
    job_id = create_export(client).json()["job_id"]
    create_export(client)
    client.post(f"/exports/{job_id}/cancel", headers=WRITE)

    assert len(client.get("/exports", headers=READ).json()) == 2
    failed = client.get("/exports", params={"status": "FAILED"}, headers=READ).json()
    assert [job["id"] for job in failed] == [job_id]
    assert client.get("/exports", headers=OTHER).json() == []


def test_list_exports_internal_error(client, job_service):
    with patch.object(job_service, "list_jobs", AsyncMock(side_effect=RuntimeError("db"))):
        response = client.get("/exports", headers=READ)

    assert response.status_code == 500
    assert response.json() == {"detail": "Internal server error"}


def test_get_export_status(client):
    job_id = create_export(client).json()["job_id"]

    response = client.get(f"/exports/{job_id}", headers=READ)

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == job_id
    assert data["status"] == "QUEUED"
    assert data["progress"] == 0


def test_get_export_other_customer_is_not_found(client):
    job_id = create_export(client).json()["job_id"]
    assert client.get(f"/exports/{job_id}", headers=OTHER).status_code == 404


def test_get_export_bad_id(client):
    response = client.get("/exports/not-a-uuid", headers=READ)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid job ID format"


def test_cancel_export(client):
    job_id = create_export(client).json()["job_id"]

    response = client.post(f"/exports/{job_id}/cancel", headers=WRITE)

    assert response.status_code == 200
    assert response.json() == {"id": job_id, "status": "FAILED", "cancel_requested": True}


def test_cancel_unknown_export(client):
    response = client.post(f"/exports/{uuid4()}/cancel", headers=WRITE)
    assert response.status_code == 404


def test_create_and_get_schedule(client):
    response = client.post("/schedules", json=SCHEDULE_BODY, headers=WRITE)

    assert response.status_code == 201
    schedule = response.json()
    assert schedule["cron_expr"] == "0 0 * * *"
    assert schedule["is_active"] is True
    assert schedule["next_run_at"] is not None

    fetched = client.get(f"/schedules/{schedule['id']}", headers=READ)
    assert fetched.status_code == 200
    assert fetched.json()["name"] == "Nightly orders"
    assert [s["id"] for s in client.get("/schedules", headers=READ).json()] == [schedule["id"]]


def test_create_schedule_too_frequent(client):
    body = dict(SCHEDULE_BODY, cron_expr="*/5 * * * *")

    response = client.post("/schedules", json=body, headers=WRITE)

    assert response.status_code == 400
    assert "at least 60 minutes" in response.json()["detail"]


def test_update_schedule_requires_admin(client):
    schedule_id = client.post("/schedules", json=SCHEDULE_BODY, headers=WRITE).json()["id"]

    denied = client.patch(f"/schedules/{schedule_id}", json={"is_active": False}, headers=WRITE)
    allowed = client.patch(f"/schedules/{schedule_id}", json={"is_active": False}, headers=ADMIN)

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["is_active"] is False


def test_update_schedule_invalid_cron(client):
    schedule_id = client.post("/schedules", json=SCHEDULE_BODY, headers=WRITE).json()["id"]

    response = client.patch(
        f"/schedules/{schedule_id}", json={"cron_expr": "nope"}, headers=ADMIN
    )

    assert response.status_code == 400


def test_delete_schedule(client):
    schedule_id = client.post("/schedules", json=SCHEDULE_BODY, headers=WRITE).json()["id"]

    assert client.delete(f"/schedules/{schedule_id}", headers=WRITE).status_code == 403
    assert client.delete(f"/schedules/{schedule_id}", headers=OTHER).status_code == 404
    assert client.delete(f"/schedules/{schedule_id}", headers=ADMIN).status_code == 204
    assert client.get(f"/schedules/{schedule_id}", headers=READ).status_code == 404
