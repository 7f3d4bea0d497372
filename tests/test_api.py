"""
Tests for Tech Pack Render API endpoints.

Tests cover:
- Health check
- Snapshot storage and mutation events
- PDF generation, previews and document info
- Error mapping and admission headers
- Synchronous and background bulk generation
- Operator endpoints for the pool and cache
"""

import io
import time
import zipfile

from conftest import default_budgets, page_indexes, sample_snapshot

from techpack_render_backend.admission import AdmissionController, InMemoryBudgetStore


def put_document(client, document_id="TP-1001", **kwargs):
    payload = sample_snapshot(document_id=document_id, **kwargs)
    response = client.put(f"/documents/{document_id}", json=payload)
    assert response.status_code == 200
    return response.json()


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        """Health check should return status ok."""
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestDocuments:
    """Tests for snapshot storage and invalidation endpoints."""

    def test_put_document_stores_snapshot(self, client, api):
        data = put_document(client)

        assert data == {"document_id": "TP-1001", "content_version": "v1", "invalidated": True}
        assert api["store"].get_document_snapshot("TP-1001").content_version == "v1"

    def test_put_document_rejects_malformed_payload(self, client):
        response = client.put("/documents/TP-1", json={"contentVersion": "v1", "colorways": [{"name": "X", "parts": []}]})

        assert response.status_code == 422
        assert response.json()["code"] == "invalid_snapshot"
        assert response.json()["errors"]

    def test_new_version_is_not_served_from_cache(self, client):
        put_document(client, content_version="v1")
        assert client.get("/documents/TP-1001/pdf").headers["X-Cache"] == "MISS"
        assert client.get("/documents/TP-1001/pdf").headers["X-Cache"] == "HIT"

        put_document(client, content_version="v2", bom=30)
        response = client.get("/documents/TP-1001/pdf")

        assert response.headers["X-Cache"] == "MISS"
        assert response.headers["X-Page-Count"] == "5"

    def test_mutation_event_invalidates(self, client):
        put_document(client)
        client.get("/documents/TP-1001/pdf")

        response = client.post("/documents/TP-1001/events/mutated")

        assert response.status_code == 200
        assert response.json() == {"document_id": "TP-1001", "invalidated": True}
        assert client.get("/documents/TP-1001/pdf").headers["X-Cache"] == "MISS"



class TestGeneratePdf:
    """Tests for the /documents/{id}/pdf endpoint."""

    def test_generate_pdf(self, client):
        put_document(client, bom=25, measurements=3, colorways=2)

        response = client.get("/documents/TP-1001/pdf")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.headers["Content-Disposition"] == 'attachment; filename="Techpack_OX-1001_2.pdf"'
        assert response.headers["X-Page-Count"] == "5"
        assert page_indexes(response.content) == [0, 1, 2, 3, 4]

    def test_options_query_parameter(self, client, recorder):
        put_document(client)

        response = client.get("/documents/TP-1001/pdf", params={"options": '{"orientation": "portrait", "format": "Letter"}'})

        assert response.status_code == 200
        assert "size: Letter portrait" in recorder.html[("TP-1001", 0, "pdf")]

    def test_invalid_options_json(self, client):
        put_document(client)
        response = client.get("/documents/TP-1001/pdf", params={"options": "{broken"})
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_options"

    def test_unknown_document(self, client):
        response = client.get("/documents/missing/pdf")
        assert response.status_code == 404
        assert response.json()["code"] == "document_not_found"

    def test_incomplete_document(self, client):
        put_document(client, articleCode="")

        response = client.get("/documents/TP-1001/pdf")

        assert response.status_code == 422
        assert response.json()["errors"] == ["Article code is required"]

    def test_render_failure_maps_to_bad_gateway(self, client, recorder):
        put_document(client)
        recorder.crash_pages.add(1)

        response = client.get("/documents/TP-1001/pdf")

        assert response.status_code == 502
        assert response.json()["code"] == "render_failed"

    def test_admission_rejection_sets_retry_after(self, client, api):
        api["service"].admission = AdmissionController(default_budgets(single=1), InMemoryBudgetStore())
        put_document(client)

        headers = {"X-API-Key": "caller-1"}
        assert client.get("/documents/TP-1001/pdf", headers=headers).status_code == 200
        response = client.get("/documents/TP-1001/pdf", headers=headers)

        assert response.status_code == 429
        assert response.json()["code"] == "admission_rejected"
        assert int(response.headers["Retry-After"]) >= 1
        assert client.get("/documents/TP-1001/pdf", headers={"X-API-Key": "caller-2"}).status_code == 200


class TestPreviewAndInfo:
    """Tests for the preview and info endpoints."""

    def test_preview_page(self, client):
        put_document(client)

        response = client.get("/documents/TP-1001/pdf/preview", params={"page": 2})

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/jpeg"
        assert response.content[:2] == b"\xff\xd8"

    def test_preview_out_of_range(self, client):
        put_document(client)
        response = client.get("/documents/TP-1001/pdf/preview", params={"page": 99})
        assert response.status_code == 422
        assert response.json()["code"] == "page_out_of_range"

    def test_document_info(self, client):
        put_document(client, bom=25, measurements=3, colorways=2)

        response = client.get("/documents/TP-1001/pdf/info")

        assert response.status_code == 200
        data = response.json()
        assert data["estimated_pages"] == 5
        assert data["can_generate"] is True
        assert data["lifecycle_stage"] == "Development"
        assert data["supported_orientations"] == ["portrait", "landscape"]


class TestBulk:
    """Tests for the bulk endpoints."""

    def test_synchronous_bulk_run(self, client):
        put_document(client, "A")
        put_document(client, "B")

        response = client.post("/bulk/run", json={"document_ids": ["B", "missing", "A"]})

        assert response.status_code == 200
        data = response.json()
        assert [entry["document_id"] for entry in data["results"]] == ["B", "missing", "A"]
        assert [entry["success"] for entry in data["results"]] == [True, False, True]
        assert data["summary"] == {"total": 3, "successful": 2, "failed": 1}

    def test_bulk_requires_documents(self, client):
        response = client.post("/bulk/run", json={"document_ids": []})
        assert response.status_code == 422

    def test_background_job_and_download(self, client):
        put_document(client, "A")
        put_document(client, "B")

        response = client.post("/bulk", json={"document_ids": ["A", "B"], "label": "SS25 drop"})
        assert response.status_code == 202
        job_id = response.json()["id"]

        deadline = time.monotonic() + 10
        job = client.get(f"/bulk/{job_id}").json()
        while job["status"] not in ("completed", "failed") and time.monotonic() < deadline:
            time.sleep(0.05)
            job = client.get(f"/bulk/{job_id}").json()

        assert job["status"] == "completed"
        assert job["result"]["summary"]["successful"] == 2
        assert [summary["id"] for summary in client.get("/bulk").json()] == [job_id]

        download = client.get(f"/bulk/{job_id}/download")
        assert download.status_code == 200
        assert download.headers["content-type"] == "application/zip"
        with zipfile.ZipFile(io.BytesIO(download.content)) as bundle:
            assert any(name.endswith("A/Techpack_OX-1001_2.pdf") for name in bundle.namelist())

    def test_unknown_job(self, client):
        assert client.get("/bulk/nope").status_code == 404
        assert client.get("/bulk/nope/download").status_code == 404


class TestAdmin:
    """Tests for the operator endpoints."""

    def test_pool_status(self, client):
        response = client.get("/admin/pool")
        assert response.status_code == 200
        data = response.json()
        assert data["size"] == 2
        assert data["quarantined"] == 0
        assert len(data["slots"]) == 2

    def test_pool_reset(self, client):
        response = client.post("/admin/pool/reset")
        assert response.status_code == 200
        assert response.json() == {"reset": 0}

    def test_flush_cache(self, client):
        put_document(client)
        client.get("/documents/TP-1001/pdf")

        response = client.delete("/admin/cache")

        assert response.status_code == 200
        assert response.json() == {"flushed": True}
        assert client.get("/documents/TP-1001/pdf").headers["X-Cache"] == "MISS"
