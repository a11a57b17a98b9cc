"""
API Tests
=========

Endpoints exercised through FastAPI's TestClient with the engine dependency
pointed at the in-memory backend.
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from casesync.api import app, get_engine
from casesync.engine import SyncEngine
from casesync.schemas import AppData, SyncStatus

from .fakes import error_response, make_remote

BACKUP = {
    "clients": [{"id": "c1", "name": "Acme", "cases": [{"id": "k1"}]}],
    "invoices": [{"id": "i1", "client_id": "c1"}],
}


@pytest.fixture
def engine(backend, sessions, store, settings):
    return SyncEngine(sessions, make_remote(backend, sessions), store, "owner-1", settings=settings)


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def put_documents(engine, *documents):
    engine.store.put("owner-1", AppData.model_validate({"documents": list(documents)}))


# =============================================================================
# Health & sync
# =============================================================================

class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert isinstance(body["warnings"], list)


class TestSyncEndpoints:
    """Tests for /sync and /sync/status"""

    def test_status_before_first_sync(self, client):
        body = client.get("/sync/status").json()
        assert body["status"] == "idle"
        assert body["owner_id"] == "owner-1"
        assert body["last_synced_at"] is None

    def test_sync_pulls_remote_rows(self, client, backend, engine):
        backend.tables["clients"] = [{"id": "c1", "name": "Acme", "updated_at": "2026-01-01T00:00:00+00:00"}]

        response = client.post("/sync")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "synced"
        assert body["pulled"]["clients"] == 1
        assert engine.load().clients[0].name == "Acme"
        assert client.get("/sync/status").json()["last_synced_at"] is not None

    def test_sync_failure_is_reported(self, client, backend):
        backend.missing_tables.add("profiles")

        body = client.post("/sync").json()

        assert body["success"] is False
        assert body["error_kind"] == "uninitialized"
        assert body["status"] == "uninitialized"

    def test_sync_while_busy(self, client, engine):
        engine.orchestrator.status = SyncStatus.SYNCING
        assert client.post("/sync").status_code == 409


# =============================================================================
# Documents & records
# =============================================================================

class TestDocumentEndpoints:
    """Download, evict and delete"""

    def test_download_cloud_only(self, client, backend, engine):
        backend.blobs["owner-1/k1/d1"] = b"%PDF"
        put_documents(engine, {"id": "d1", "case_id": "k1", "type": "application/pdf",
                               "storage_path": "owner-1/k1/d1", "local_state": "cloud_only"})

        response = client.post("/documents/d1/download")

        assert response.status_code == 200
        assert response.content == b"%PDF"
        assert response.headers["content-type"] == "application/pdf"
        assert response.headers["x-document-state"] == "synced"
        assert engine.load().documents[0].local_state.value == "synced"

    def test_download_unknown_document(self, client):
        assert client.post("/documents/missing/download").status_code == 404

    def test_download_failure_maps_to_gateway_error(self, client, backend, engine):
        backend.fail_when.append(lambda request: error_response(503, None, "unavailable"))
        put_documents(engine, {"id": "d1", "storage_path": "owner-1/k1/d1", "local_state": "cloud_only"})

        response = client.post("/documents/d1/download")

        assert response.status_code == 502
        assert response.json()["kind"] == "network"
        assert engine.load().documents[0].local_state.value == "cloud_only"

    def test_evict(self, client, engine):
        engine.blobs.write("d1", b"local")
        put_documents(engine, {"id": "d1", "storage_path": "owner-1/k1/d1", "local_state": "synced"})

        response = client.post("/documents/d1/evict")

        assert response.json()["local_state"] == "cloud_only"
        assert not engine.blobs.exists("d1")

    def test_evict_unsent_document_conflicts(self, client, engine):
        put_documents(engine, {"id": "d1", "local_state": "pending_upload"})
        assert client.post("/documents/d1/evict").status_code == 409

    def test_delete_record_queues_tombstone(self, client, engine):
        engine.store.put("owner-1", AppData.model_validate(BACKUP))

        response = client.delete("/records/clients/c1")

        assert response.status_code == 200
        assert response.json()["pending_deletions"] == 1
        data = engine.load()
        assert data.clients == []
        assert data.pending_deletions[0].record_id == "c1"

    @pytest.mark.parametrize("table", ["profiles", "nonsense"])
    def test_delete_unknown_table(self, client, table):
        assert client.delete(f"/records/{table}/x").status_code == 404

    def test_edit_refused_during_sync(self, client, engine):
        engine.store.put("owner-1", AppData.model_validate(BACKUP))
        engine.orchestrator.status = SyncStatus.SYNCING

        assert client.delete("/records/clients/c1").status_code == 409
        assert engine.load().clients[0].id == "c1"


# =============================================================================
# Restore
# =============================================================================

class TestRestoreEndpoints:
    """Tests for /restore"""

    def test_restore_completes(self, client, backend):
        response = client.post("/restore", json=BACKUP)

        assert response.status_code == 200
        body = response.json()
        assert body["finished"] is True
        assert [s["table"] for s in body["steps"]] == ["clients", "cases", "invoices"]
        assert backend.rows("invoices")[0]["user_id"] == "owner-1"
        assert client.get(f"/restore/{body['job_id']}").json()["finished"] is True

    def test_failed_step_then_skip(self, client, backend):
        backend.fail_when.append(
            lambda r: error_response(403, "42501", "policy") if r.url.path == "/rest/v1/cases" and r.method == "POST" else None
        )

        body = client.post("/restore", json=BACKUP).json()
        assert body["finished"] is False
        assert body["cursor"] == 1
        assert body["steps"][1]["status"] == "error"

        body = client.post(f"/restore/{body['job_id']}/skip").json()
        assert body["finished"] is True
        assert body["steps"][1]["status"] == "skipped"
        assert len(backend.writes_to("clients")) == 1

    def test_retry_after_fix(self, client, backend):
        backend.fail_when.append(
            lambda r: error_response(500, None, "boom") if r.url.path == "/rest/v1/invoices" and r.method == "POST" else None
        )
        job_id = client.post("/restore", json=BACKUP).json()["job_id"]
        backend.fail_when.clear()

        body = client.post(f"/restore/{job_id}/retry/2").json()

        assert body["finished"] is True
        assert len(backend.writes_to("cases")) == 1

    def test_retry_bad_index(self, client):
        job_id = client.post("/restore", json=BACKUP).json()["job_id"]
        assert client.post(f"/restore/{job_id}/retry/9").status_code == 409

    def test_unknown_job(self, client):
        assert client.get("/restore/nope").status_code == 404

    def test_empty_backup_rejected(self, client):
        response = client.post("/restore", json={"clients": []})
        assert response.status_code == 400

    def test_uninitialized_backend(self, client, backend):
        backend.missing_tables.add("profiles")

        response = client.post("/restore", json=BACKUP)

        assert response.status_code == 503
        assert response.json()["kind"] == "uninitialized"


# =============================================================================
# Background jobs
# =============================================================================

class TestJobEndpoints:
    """Redis is patched out; only the HTTP mapping is exercised"""

    def test_job_status(self, client):
        status = {"job_id": "job-1", "status": "finished", "result": {"removed": 2}}
        with patch("casesync.jobs.get_job_status", return_value=status):
            body = client.get("/jobs/job-1").json()

        assert body["result"] == {"removed": 2}

    def test_unknown_job(self, client):
        with patch("casesync.jobs.get_job_status", return_value={"job_id": "x", "status": "not_found"}):
            assert client.get("/jobs/x").status_code == 404

    def test_cancel(self, client):
        with patch("casesync.jobs.cancel_job", return_value=True) as cancel:
            assert client.delete("/jobs/job-1").json()["cancelled"] is True
        cancel.assert_called_once_with("job-1")

    def test_cancel_missing(self, client):
        with patch("casesync.jobs.cancel_job", return_value=False):
            assert client.delete("/jobs/job-1").status_code == 404
