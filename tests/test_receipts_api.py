from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from receipt_intake.core.errors import ConfigurationError
from receipt_intake.main import create_app


def _upload(client, body: bytes, name: str = "coffee.pdf", content_type: str = "application/pdf"):
    return client.post("/api/upload", files={"receiptPdf": (name, body, content_type)})


def test_healthz(client):
    r = client.get("/healthz", headers={"x-request-id": "abc123"})
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
    assert r.headers["x-request-id"] == "abc123"


def test_upload_validate_process_round_trip(client, settings, sample_pdf):
    r = _upload(client, sample_pdf)
    assert r.status_code == 201
    body = r.json()
    assert body["message"] == "File uploaded successfully."
    assert body["fileName"] == "coffee.pdf"
    file_id = body["fileId"]

    r = client.post(f"/api/validate/{file_id}")
    assert r.status_code == 200
    assert r.json() == {
        "message": "File marked as valid (exists at path).",
        "fileId": file_id,
        "isValid": True,
    }

    r = client.post(f"/api/process/{file_id}")
    assert r.status_code == 201
    body = r.json()
    assert body["message"] == "Receipt processed and stored."
    assert body["extractedData"] == {
        "merchant_name": "Corner Cafe",
        "purchased_at": "2023-10-26 14:30:00",
        "total_amount": 4.5,
        "category": "groceries",
        "items": [{"name": "Coffee", "unit_price": 4.5, "quantity": 1}],
    }
    receipt_id = body["receiptId"]

    stored = Path(settings.storage_root) / "2023" / "groceries" / "coffee.pdf"
    assert stored.read_bytes() == sample_pdf

    r = client.post(f"/api/process/{file_id}")
    assert r.status_code == 200
    assert r.json()["message"] == "Receipt data updated."
    assert r.json()["receiptId"] == receipt_id

    r = client.get(f"/api/receipts/{receipt_id}")
    assert r.status_code == 200
    receipt = r.json()
    assert receipt["original_file_name"] == "coffee.pdf"
    assert receipt["total_amount"] == 4.5
    assert receipt["file_path"] == str(stored)

    files = client.get("/api/files").json()
    assert len(files) == 1
    assert files[0]["is_processed"] is True
    assert files[0]["invalid_reason"] is None


def test_reupload_reports_update(client, sample_pdf):
    first = _upload(client, sample_pdf).json()

    r = _upload(client, sample_pdf)

    assert r.status_code == 200
    assert r.json()["message"] == "File already exists, record updated."
    assert r.json()["fileId"] == first["fileId"]
    assert len(client.get("/api/files").json()) == 1


def test_upload_without_file_field(client, sample_pdf):
    r = client.post("/api/upload", files={"document": ("coffee.pdf", sample_pdf, "application/pdf")})

    assert r.status_code == 400
    assert r.json()["message"] == "No file uploaded or incorrect field name."


def test_upload_rejects_non_pdf(client):
    r = _upload(client, b"hello", name="note.txt", content_type="text/plain")

    assert r.status_code == 400
    assert r.json()["message"] == "Only PDF files are allowed!"
    assert client.get("/api/files").json() == []


def test_validate_missing_file_is_bad_request(client, sample_pdf):
    body = _upload(client, sample_pdf).json()
    Path(body["filePath"]).unlink()

    r = client.post(f"/api/validate/{body['fileId']}")

    assert r.status_code == 400
    assert r.json()["isValid"] is False
    assert client.get("/api/files").json()[0]["invalid_reason"] == "File not found at stored path."


def test_unknown_ids_are_not_found(client):
    assert client.post("/api/validate/404").status_code == 404
    assert client.post("/api/process/404").status_code == 404
    assert client.get("/api/receipts/404").status_code == 404

    r = client.delete("/api/receipts/404")
    assert r.status_code == 404
    assert r.json()["message"] == "Receipt not found."


def test_process_before_validate_is_rejected(client, sample_pdf):
    file_id = _upload(client, sample_pdf).json()["fileId"]

    r = client.post(f"/api/process/{file_id}")

    assert r.status_code == 400
    assert r.json()["message"] == "File is not validated or is invalid. Please validate first."


def test_unparseable_ai_reply_is_server_error(client, extractor, sample_pdf):
    file_id = _upload(client, sample_pdf).json()["fileId"]
    client.post(f"/api/validate/{file_id}")
    extractor.queue("no json here")

    r = client.post(f"/api/process/{file_id}")

    assert r.status_code == 500
    body = r.json()
    assert body["message"].startswith("AI processing failed")
    assert body["rawResponse"] == "no json here"
    assert client.get("/api/receipts").json() == []


def test_delete_receipt(client, settings, sample_pdf):
    file_id = _upload(client, sample_pdf).json()["fileId"]
    client.post(f"/api/validate/{file_id}")
    receipt_id = client.post(f"/api/process/{file_id}").json()["receiptId"]

    r = client.delete(f"/api/receipts/{receipt_id}")

    assert r.status_code == 200
    assert r.json() == {"message": "Receipt and associated file deleted."}
    assert client.get(f"/api/receipts/{receipt_id}").status_code == 404
    assert client.get("/api/files").json() == []
    assert not (Path(settings.storage_root) / "2023" / "groceries" / "coffee.pdf").exists()


def test_startup_refuses_without_api_key(settings, extractor):
    app = create_app(settings.model_copy(update={"gemini_api_key": ""}), extractor=extractor)

    with pytest.raises(ConfigurationError):
        with TestClient(app):
            pass


def test_unexpected_extractor_error_is_structured(client, extractor, sample_pdf):
    file_id = _upload(client, sample_pdf).json()["fileId"]
    client.post(f"/api/validate/{file_id}")
    extractor.queue(RuntimeError("boom"))

    r = client.post(f"/api/process/{file_id}")

    assert r.status_code == 500
    assert r.headers["content-type"].startswith("application/json")
    assert r.json() == {"message": "AI processing failed.", "fileId": file_id, "errorDetail": "boom"}
    assert client.get("/api/files").json()[0]["invalid_reason"] == "Processing error: boom"


def test_upload_over_limit_is_too_large(settings, extractor, sample_pdf):
    app = create_app(settings.model_copy(update={"max_upload_bytes": 16}), extractor=extractor)

    with TestClient(app) as small_client:
        r = _upload(small_client, sample_pdf)
        assert r.status_code == 413
        assert r.json()["limitBytes"] == 16
        assert small_client.get("/api/files").json() == []
