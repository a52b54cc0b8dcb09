"""
CRM Migration Hub - Migration API Tests

Drives the FastAPI router end to end against the in-process fake CRM.
"""

import os
import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from services.migration import InMemoryMigrationJobStore
from server import add_api_routes, configure_migration_services
from fake_crm import SOURCE_KEY, DEST_KEY, SOURCE_LOCATION, DEST_LOCATION

SOURCE = {"apiKey": SOURCE_KEY, "locationId": SOURCE_LOCATION}
DEST = {"apiKey": DEST_KEY, "locationId": DEST_LOCATION}


@pytest.fixture
def api(fake_crm):
    app = FastAPI()
    add_api_routes(app)
    configure_migration_services(app, InMemoryMigrationJobStore(), fake_crm.client_factory())
    with TestClient(app) as client:
        yield client


def wait_for_terminal(api, job_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        data = api.get(f"/api/migration/status/{job_id}").json()["data"]
        if data["status"] in ("completed", "failed", "cancelled"):
            return data
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} did not finish")


class TestValidateEndpoint:

    def test_valid_accounts(self, api):
        response = api.post("/api/migration/validate", json={"sourceAccount": SOURCE, "destinationAccount": DEST})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["isValid"] is True

    def test_bad_source_key(self, api):
        response = api.post("/api/migration/validate", json={
            "sourceAccount": {"apiKey": "nope", "locationId": SOURCE_LOCATION},
            "destinationAccount": DEST
        })
        data = response.json()["data"]
        assert data["isValid"] is False
        assert data["destinationOk"] is True
        assert len(data["errors"]) == 1

    def test_missing_credentials(self, api):
        response = api.post("/api/migration/validate", json={"sourceAccount": SOURCE})
        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": "Destination account credentials (apiKey, locationId) are required"
        }


class TestMalformedRequests:

    def test_wrongly_typed_field(self, api):
        response = api.post("/api/migration/validate", json={
            "sourceAccount": {"apiKey": 123, "locationId": SOURCE_LOCATION},
            "destinationAccount": DEST
        })
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert "sourceAccount.apiKey" in body["error"]

    def test_missing_body(self, api):
        response = api.post("/api/migration/start")
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_body_that_is_not_an_object(self, api):
        response = api.post("/api/migration/analyze", json=["not", "an", "object"])
        assert response.status_code == 400
        assert set(response.json()) == {"success", "error"}


class TestAnalyzeAndExport:

    def test_analyze(self, api):
        response = api.post("/api/migration/analyze", json={"sourceAccount": SOURCE})
        data = response.json()["data"]
        assert data["counts"]["contacts"]["estimatedCount"] == 3
        assert data["estimatedDurationSeconds"] > 0

    def test_analyze_requires_source(self, api):
        assert api.post("/api/migration/analyze", json={}).status_code == 400

    def test_export(self, api):
        response = api.post("/api/migration/export", json={"sourceAccount": SOURCE})
        data = response.json()["data"]
        assert response.json()["success"] is True
        assert len(data["contacts"]) == 3
        assert data["sourceLocationId"] == SOURCE_LOCATION


class TestMigrationJobs:

    def test_start_runs_job_in_background(self, api, fake_crm):
        response = api.post("/api/migration/start", json={
            "sourceAccount": SOURCE,
            "destinationAccount": DEST,
            "options": {"categories": ["contacts"], "conflictPolicy": "skip"},
            "dataCounts": {"contacts": {"estimatedCount": 3}}
        })
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["jobId"].startswith("migration_")
        assert data["status"] == "pending"

        job = wait_for_terminal(api, data["jobId"])

        assert job["status"] == "completed"
        contacts = job["categoryProgress"]["contacts"]
        assert (contacts["total"], contacts["processed"], contacts["succeeded"], contacts["failed"]) == (3, 3, 3, 0)
        assert "apiKey" not in job["sourceAccount"]
        assert len(fake_crm.writes) == 2

    def test_start_with_empty_categories(self, api):
        response = api.post("/api/migration/start", json={
            "sourceAccount": SOURCE, "destinationAccount": DEST, "options": {"categories": []}
        })
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_start_with_unknown_category(self, api):
        response = api.post("/api/migration/start", json={
            "sourceAccount": SOURCE, "destinationAccount": DEST, "options": {"categories": ["invoices"]}
        })
        assert response.status_code == 400
        assert "invoices" in response.json()["error"]

    def test_start_without_credentials(self, api):
        response = api.post("/api/migration/start", json={"options": {"categories": ["tags"]}})
        assert response.status_code == 400

    def test_start_with_string_dry_run(self, api, fake_crm):
        response = api.post("/api/migration/start", json={
            "sourceAccount": SOURCE, "destinationAccount": DEST,
            "options": {"categories": ["contacts"], "dryRun": "false"}
        })
        job = wait_for_terminal(api, response.json()["data"]["jobId"])

        assert job["options"]["dryRun"] is False
        assert len(fake_crm.writes) == 2

    def test_start_with_ambiguous_dry_run(self, api, fake_crm):
        response = api.post("/api/migration/start", json={
            "sourceAccount": SOURCE, "destinationAccount": DEST,
            "options": {"categories": ["contacts"], "dryRun": "maybe"}
        })
        assert response.status_code == 400
        assert "dryRun" in response.json()["error"]

    def test_unknown_job_status(self, api):
        response = api.get("/api/migration/status/migration_missing")
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Migration job not found"}

    def test_cancel_unknown_job(self, api):
        assert api.delete("/api/migration/status/migration_missing").status_code == 404

    def test_cancel_finished_job_still_succeeds(self, api):
        job_id = api.post("/api/migration/start", json={
            "sourceAccount": SOURCE, "destinationAccount": DEST, "options": {"categories": ["tags"]}
        }).json()["data"]["jobId"]
        wait_for_terminal(api, job_id)

        first = api.delete(f"/api/migration/status/{job_id}")
        second = api.delete(f"/api/migration/status/{job_id}")

        assert first.status_code == second.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["message"] == "Migration already completed"
        assert api.get(f"/api/migration/status/{job_id}").json()["data"]["status"] == "completed"

    def test_history_sorted_newest_first(self, api):
        ids = []
        for category in ("tags", "forms"):
            job_id = api.post("/api/migration/start", json={
                "sourceAccount": SOURCE, "destinationAccount": DEST, "options": {"categories": [category]}
            }).json()["data"]["jobId"]
            wait_for_terminal(api, job_id)
            ids.append(job_id)

        history = api.get("/api/migration/history").json()

        assert history["success"] is True
        assert [entry["id"] for entry in history["data"]] == list(reversed(ids))
        assert history["data"][0]["options"]["categories"] == ["forms"]


@pytest.mark.skipif(bool(os.environ.get("MONGO_URL")), reason="uses the in-memory job store")
class TestServerApp:

    def test_health(self):
        from server import app
        with TestClient(app) as client:
            response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
