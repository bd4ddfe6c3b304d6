from __future__ import annotations

import json

import httpx

from receipt_intake.modules.extraction.ai import EXTRACTION_PROMPT, GeminiExtractor
from receipt_intake.modules.extraction.normalize import (
    AdapterError,
    ExtractionResult,
    ParseFailure,
    RateLimited,
    SafetyBlocked,
)

UPLOAD_SESSION_URL = "https://upload.example.test/session/1"
FILE_URI = "https://generativelanguage.googleapis.com/v1beta/files/abc123"


def _reply(text: str) -> dict:
    return {
        "candidates": [
            {"content": {"parts": [{"text": text}], "role": "model"}, "finishReason": "STOP"}
        ]
    }


def _gemini(generate: httpx.Response, seen: list[httpx.Request] | None = None) -> GeminiExtractor:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path == "/upload/v1beta/files":
            return httpx.Response(200, headers={"x-goog-upload-url": UPLOAD_SESSION_URL})
        if str(request.url) == UPLOAD_SESSION_URL:
            return httpx.Response(
                200, json={"file": {"uri": FILE_URI, "mimeType": "application/pdf"}}
            )
        if request.url.path.endswith(":generateContent"):
            return generate
        return httpx.Response(404, json={"error": {"message": "unexpected call"}})

    return GeminiExtractor(
        api_key="test-key",
        model="gemini-test",
        base_url="https://generativelanguage.googleapis.com",
        transport=httpx.MockTransport(handler),
    )


def _pdf(tmp_path, sample_pdf):
    path = tmp_path / "receipt.pdf"
    path.write_bytes(sample_pdf)
    return path


async def test_successful_extraction_uploads_then_generates(tmp_path, sample_pdf):
    seen: list[httpx.Request] = []
    body = '```json\n{"merchant_name": "Corner Cafe", "purchased_at": "2023-10-26 14:30:00", "total_amount": 4.5, "category": "Groceries", "items": []}\n```'
    gemini = _gemini(httpx.Response(200, json=_reply(body)), seen)

    outcome = await gemini.extract(_pdf(tmp_path, sample_pdf))

    assert isinstance(outcome, ExtractionResult)
    assert outcome.data.merchant_name == "Corner Cafe"
    assert outcome.data.category == "groceries"

    start, upload, generate = seen
    assert start.headers["x-goog-api-key"] == "test-key"
    assert start.headers["x-goog-upload-command"] == "start"
    assert upload.headers["x-goog-upload-command"] == "upload, finalize"
    assert upload.content == sample_pdf
    assert generate.url.path == "/v1beta/models/gemini-test:generateContent"

    payload = json.loads(generate.content)
    parts = payload["contents"][0]["parts"]
    assert parts[0]["file_data"] == {"mime_type": "application/pdf", "file_uri": FILE_URI}
    assert parts[1]["text"] == EXTRACTION_PROMPT
    assert payload["generationConfig"]["temperature"] == 0.1
    assert {s["threshold"] for s in payload["safetySettings"]} == {"BLOCK_MEDIUM_AND_ABOVE"}


async def test_rate_limit_is_reported_not_raised(tmp_path, sample_pdf):
    gemini = _gemini(
        httpx.Response(
            429,
            json={"error": {"code": 429, "message": "Quota exceeded", "status": "RESOURCE_EXHAUSTED"}},
        )
    )

    outcome = await gemini.extract(_pdf(tmp_path, sample_pdf))

    assert isinstance(outcome, RateLimited)
    assert outcome.message == "Quota exceeded"


async def test_blocked_prompt_carries_feedback(tmp_path, sample_pdf):
    feedback = {"blockReason": "SAFETY", "safetyRatings": []}
    gemini = _gemini(httpx.Response(200, json={"promptFeedback": feedback}))

    outcome = await gemini.extract(_pdf(tmp_path, sample_pdf))

    assert isinstance(outcome, SafetyBlocked)
    assert outcome.feedback == feedback
    assert outcome.summary().startswith("AI processing blocked. Prompt feedback:")


async def test_safety_finish_reason_is_blocked(tmp_path, sample_pdf):
    gemini = _gemini(
        httpx.Response(200, json={"candidates": [{"finishReason": "SAFETY", "safetyRatings": []}]})
    )

    outcome = await gemini.extract(_pdf(tmp_path, sample_pdf))

    assert isinstance(outcome, SafetyBlocked)
    assert outcome.feedback["finishReason"] == "SAFETY"


async def test_prose_reply_is_parse_failure(tmp_path, sample_pdf):
    gemini = _gemini(httpx.Response(200, json=_reply("I could not find a receipt here.")))

    outcome = await gemini.extract(_pdf(tmp_path, sample_pdf))

    assert isinstance(outcome, ParseFailure)
    assert outcome.raw_text == "I could not find a receipt here."


async def test_server_error_is_adapter_error(tmp_path, sample_pdf):
    gemini = _gemini(httpx.Response(500, json={"error": {"message": "backend unavailable"}}))

    outcome = await gemini.extract(_pdf(tmp_path, sample_pdf))

    assert isinstance(outcome, AdapterError)
    assert outcome.message == "HTTP 500: backend unavailable"


async def test_transport_failure_is_adapter_error(tmp_path, sample_pdf):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gemini = GeminiExtractor(
        api_key="test-key",
        model="gemini-test",
        base_url="https://generativelanguage.googleapis.com",
        transport=httpx.MockTransport(handler),
    )

    outcome = await gemini.extract(_pdf(tmp_path, sample_pdf))

    assert isinstance(outcome, AdapterError)
    assert "connection refused" in outcome.message


async def test_unreadable_file_is_adapter_error(tmp_path):
    gemini = _gemini(httpx.Response(200, json=_reply("{}")))

    outcome = await gemini.extract(tmp_path / "missing.pdf")

    assert isinstance(outcome, AdapterError)
    assert outcome.summary().startswith("Processing error: Could not read file")
