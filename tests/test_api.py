"""Tests for the FastAPI endpoints."""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).parent.parent))

import main
from extraction import ExtractionPipeline
from inference_client import InferenceServiceUnavailable
from normalizer import build_result
from result_store import ResultStore


@pytest.fixture
def inference():
    client = MagicMock()
    client.health.return_value = {"status": "healthy", "ready": True}
    return client


@pytest.fixture
def api(monkeypatch, inference) -> TestClient:
    """Test client wired to a mock inference service and a fresh store."""
    monkeypatch.setattr(main, "_client", inference)
    monkeypatch.setattr(main, "_pipeline", ExtractionPipeline(inference))
    monkeypatch.setattr(main, "_store", ResultStore())
    return TestClient(main.app)


@pytest.fixture
def unconfigured(monkeypatch) -> TestClient:
    monkeypatch.setattr(main, "_client", None)
    monkeypatch.setattr(main, "_pipeline", None)
    monkeypatch.setattr(main, "_store", ResultStore())
    return TestClient(main.app)


def upload(image_bytes: bytes, name: str = "scan.jpg", content_type: str = "image/jpeg"):
    return {"file": (name, image_bytes, content_type)}


class TestExtract:
    def test_extract_and_store(self, api, inference, sample_image_bytes, grounding_response, refined_response):
        inference.complete.side_effect = [grounding_response, refined_response]

        resp = api.post("/api/v1/extract", files=upload(sample_image_bytes))

        assert resp.status_code == 200
        body = resp.json()
        assert body["data"]["documentType"] == "invoice"
        fields = body["data"]["extractedFields"]
        assert {f["label"] for f in fields} == {"Invoice Number", "Total"}
        assert set(fields[0]["boundingBox"]) == {"x", "y", "width", "height"}

        stored = api.get(f"/api/v1/results/{body['id']}")
        assert stored.status_code == 200
        assert stored.json() == body["data"]

    def test_total_failure_still_returns_result(self, api, inference, sample_image_bytes):
        inference.complete.side_effect = InferenceServiceUnavailable("down")

        resp = api.post("/api/v1/extract", files=upload(sample_image_bytes))

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["error"] == "Processing failed"
        assert data["extractedFields"][0]["type"] == "error"
        assert data["extractedFields"][0]["confidence"] == 0

    def test_empty_file(self, api):
        resp = api.post("/api/v1/extract", files=upload(b""))
        assert resp.status_code == 400

    def test_unsupported_type(self, api, inference):
        resp = api.post("/api/v1/extract", files=upload(b"hello", "notes.txt", "text/plain"))
        assert resp.status_code == 415
        inference.complete.assert_not_called()

    def test_pdf_uses_text_layer(self, api, inference, sample_pdf_bytes):
        inference.complete.return_value = json.dumps({
            "extractedFields": [{"label": "Invoice Number", "value": "INV-001", "confidence": 0.95}],
        })

        resp = api.post("/api/v1/extract", files=upload(sample_pdf_bytes, "invoice.pdf", "application/pdf"))

        assert resp.status_code == 200
        body = resp.json()
        assert [f["label"] for f in body["data"]["extractedFields"]] == ["Invoice Number"]
        assert "Total: $42.00" in body["data"]["content"]

        # One text-only call, no image attached
        call = inference.complete.call_args
        assert inference.complete.call_count == 1
        assert len(call.args) == 1
        assert "INV-001" in call.args[0]

        assert api.get(f"/api/v1/results/{body['id']}").json() == body["data"]
        csv = api.get(f"/api/v1/results/{body['id']}/download/csv")
        assert "Invoice Number,INV-001" in csv.text

    def test_unreadable_pdf(self, api, inference):
        resp = api.post("/api/v1/extract", files=upload(b"not a pdf", "doc.pdf", "application/pdf"))

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Failed to parse PDF"
        inference.complete.assert_not_called()

    def test_not_configured(self, unconfigured, sample_image_bytes):
        resp = unconfigured.post("/api/v1/extract", files=upload(sample_image_bytes))
        assert resp.status_code == 503


class TestBatch:
    def test_each_file_gets_its_own_result(self, api, inference, sample_image_bytes):
        inference.complete.return_value = '{"documentType": "receipt", "extractedFields": []}'

        resp = api.post(
            "/api/v1/extract/batch",
            files=[
                ("files", ("a.jpg", sample_image_bytes, "image/jpeg")),
                ("files", ("b.jpg", sample_image_bytes, "image/jpeg")),
            ],
        )

        assert resp.status_code == 200
        items = resp.json()
        assert [item["fileName"] for item in items] == ["a.jpg", "b.jpg"]
        assert items[0]["id"] != items[1]["id"]
        assert all(item["data"]["documentType"] == "receipt" for item in items)

    def test_mixed_image_and_pdf(self, api, inference, sample_image_bytes, sample_pdf_bytes):
        inference.complete.return_value = '{"documentType": "receipt", "extractedFields": []}'

        resp = api.post(
            "/api/v1/extract/batch",
            files=[
                ("files", ("a.jpg", sample_image_bytes, "image/jpeg")),
                ("files", ("b.pdf", sample_pdf_bytes, "application/pdf")),
            ],
        )

        assert resp.status_code == 200
        items = resp.json()
        assert [item["fileName"] for item in items] == ["a.jpg", "b.pdf"]
        assert "INV-001" in items[1]["data"]["content"]

    def test_unreadable_pdf_rejects_batch(self, api, inference, sample_image_bytes):
        resp = api.post(
            "/api/v1/extract/batch",
            files=[
                ("files", ("a.jpg", sample_image_bytes, "image/jpeg")),
                ("files", ("b.pdf", b"not a pdf", "application/pdf")),
            ],
        )
        assert resp.status_code == 400
        inference.complete.assert_not_called()

    def test_invalid_file_rejects_batch(self, api, sample_image_bytes):
        resp = api.post(
            "/api/v1/extract/batch",
            files=[
                ("files", ("a.jpg", sample_image_bytes, "image/jpeg")),
                ("files", ("b.txt", b"hello", "text/plain")),
            ],
        )
        assert resp.status_code == 415


class TestResults:
    def test_unknown_id(self, api):
        resp = api.get("/api/v1/results/nonexistent")
        assert resp.status_code == 404
        assert "nonexistent" in resp.json()["detail"]

    def test_delete(self, api):
        result_id = main._store.put(build_result({}))

        resp = api.delete(f"/api/v1/results/{result_id}")

        assert resp.status_code == 204
        assert resp.content == b""
        assert api.get(f"/api/v1/results/{result_id}").status_code == 404
        assert api.get(f"/api/v1/results/{result_id}/download/csv").status_code == 404

    def test_delete_unknown_id(self, api):
        resp = api.delete("/api/v1/results/nonexistent")
        assert resp.status_code == 404
        assert "nonexistent" in resp.json()["detail"]

    def test_delete_twice(self, api):
        result_id = main._store.put(build_result({}))
        assert api.delete(f"/api/v1/results/{result_id}").status_code == 204
        assert api.delete(f"/api/v1/results/{result_id}").status_code == 404

    def test_download_csv(self, api):
        result_id = main._store.put(build_result({"extractedFields": [{"label": "Total", "value": "9.99"}]}))

        resp = api.get(f"/api/v1/results/{result_id}/download/csv")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert "attachment; filename=extracted.csv" == resp.headers["content-disposition"]
        assert "Total,9.99" in resp.text

    def test_download_xlsx(self, api):
        result_id = main._store.put(build_result({}))
        resp = api.get(f"/api/v1/results/{result_id}/download/xlsx")
        assert resp.status_code == 200
        assert resp.content[:2] == b"PK"

    def test_download_bad_format(self, api):
        result_id = main._store.put(build_result({}))
        resp = api.get(f"/api/v1/results/{result_id}/download/pdf")
        assert resp.status_code == 400

    def test_download_unknown_id(self, api):
        assert api.get("/api/v1/results/nonexistent/download/csv").status_code == 404


class TestChat:
    def test_streams_events(self, api, inference):
        result_id = main._store.put(build_result({"extractedFields": [{"label": "Total", "value": "9.99"}]}))
        inference.stream_complete.return_value = iter(["It is ", "9.99"])

        resp = api.post("/api/v1/chat", json={"id": result_id, "message": "What is the total?"})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.text == (
            'data: {"content": "It is "}\n\n'
            'data: {"content": "9.99"}\n\n'
            "data: [DONE]\n\n"
        )

    def test_unknown_id(self, api, inference):
        resp = api.post("/api/v1/chat", json={"id": "nonexistent", "message": "hi"})
        assert resp.status_code == 404
        inference.stream_complete.assert_not_called()


class TestHealth:
    def test_health(self, api):
        data = api.get("/health").json()
        assert data["status"] == "healthy"
        assert data["inference_available"] is True
        assert data["inference_health"]["ready"] is True

    def test_health_unconfigured(self, unconfigured):
        data = unconfigured.get("/health").json()
        assert data["inference_available"] is False
        assert "inference_health" not in data
