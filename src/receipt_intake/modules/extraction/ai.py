from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Protocol

import aiofiles
import httpx

from receipt_intake.core.config import Settings
from receipt_intake.core.logging import get_logger, log_event, monotonic_ms
from receipt_intake.modules.extraction.normalize import (
    AdapterError,
    ExtractionFailure,
    ExtractionResult,
    RateLimited,
    SafetyBlocked,
    normalize_extraction,
)

logger = get_logger(__name__)

PDF_MIME_TYPE = "application/pdf"

EXTRACTION_PROMPT = (
    "Extract the vendor, purchase date (yyyy-MM-dd HH:mm:ss format), total, category "
    "and item details from this receipt.\n"
    "The category must be a single lowercase word such as groceries, dining, fuel, "
    "travel, utilities, electronics or other.\n"
    "Return only a JSON object in exactly this format:\n"
    "{\n"
    '  "merchant_name": "Example Store",\n'
    '  "purchased_at": "2023-10-26 14:30:00",\n'
    '  "total_amount": 123.45,\n'
    '  "category": "groceries",\n'
    '  "items": [{"name": "Coffee", "unit_price": 4.50, "quantity": 1}]\n'
    "}\n"
    "Use null for any field that is not present on the receipt."
)

_HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


class Extractor(Protocol):
    async def extract(self, file_path: Path | str) -> ExtractionResult | ExtractionFailure: ...


class GeminiExtractor:
    """
    Single-attempt receipt extraction against the Gemini REST API.

    The file is pushed through the Files API, then one generateContent call asks
    for the receipt as JSON. Upstream problems never raise; they come back as
    one of the ``ExtractionFailure`` variants.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> GeminiExtractor:
        return cls(
            api_key=settings.gemini_api_key or "",
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout_seconds=settings.gemini_timeout_seconds,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={"x-goog-api-key": self._api_key},
            timeout=self._timeout,
            transport=self._transport,
            follow_redirects=True,
        )

    async def extract(self, file_path: Path | str) -> ExtractionResult | ExtractionFailure:
        path = Path(file_path)
        start = time.monotonic()
        log_event(logger, "extraction.start", path=str(path), model=self._model)

        outcome = await self._run(path)

        if isinstance(outcome, ExtractionResult):
            log_event(
                logger,
                "extraction.finish",
                path=str(path),
                model=self._model,
                duration_ms=monotonic_ms(start),
            )
        else:
            log_event(
                logger,
                "extraction.failure",
                path=str(path),
                model=self._model,
                failure=outcome.kind,
                summary=outcome.summary(),
                duration_ms=monotonic_ms(start),
            )
        return outcome

    async def _run(self, path: Path) -> ExtractionResult | ExtractionFailure:
        try:
            async with aiofiles.open(path, "rb") as fh:
                body = await fh.read()
        except OSError as e:
            return AdapterError(message=f"Could not read file for extraction: {e}")

        try:
            async with self._client() as client:
                file_uri, mime_type = await self._upload(client, body=body, display_name=path.name)
                payload = await self._generate(client, file_uri=file_uri, mime_type=mime_type)
        except httpx.HTTPStatusError as e:
            return _classify_status_error(e)
        except httpx.HTTPError as e:
            return AdapterError(message=str(e) or type(e).__name__)
        except (KeyError, TypeError, ValueError) as e:
            return AdapterError(message=f"Unexpected response from AI service: {e}")

        return _interpret_generation(payload)

    async def _upload(
        self, client: httpx.AsyncClient, *, body: bytes, display_name: str
    ) -> tuple[str, str]:
        start_resp = await client.post(
            "/upload/v1beta/files",
            headers={
                "X-Goog-Upload-Protocol": "resumable",
                "X-Goog-Upload-Command": "start",
                "X-Goog-Upload-Header-Content-Length": str(len(body)),
                "X-Goog-Upload-Header-Content-Type": PDF_MIME_TYPE,
            },
            json={"file": {"display_name": display_name}},
        )
        start_resp.raise_for_status()
        upload_url = start_resp.headers.get("x-goog-upload-url")
        if not upload_url:
            raise ValueError("upload session did not return an upload URL")

        resp = await client.post(
            upload_url,
            headers={
                "X-Goog-Upload-Offset": "0",
                "X-Goog-Upload-Command": "upload, finalize",
            },
            content=body,
        )
        resp.raise_for_status()
        info = resp.json()["file"]
        return str(info["uri"]), str(info.get("mimeType") or PDF_MIME_TYPE)

    async def _generate(
        self, client: httpx.AsyncClient, *, file_uri: str, mime_type: str
    ) -> dict[str, Any]:
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"file_data": {"mime_type": mime_type, "file_uri": file_uri}},
                        {"text": EXTRACTION_PROMPT},
                    ],
                }
            ],
            "generationConfig": {"temperature": 0.1, "maxOutputTokens": 2048},
            "safetySettings": [
                {"category": category, "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
                for category in _HARM_CATEGORIES
            ],
        }
        resp = await client.post(f"/v1beta/models/{self._model}:generateContent", json=payload)
        resp.raise_for_status()
        raw = resp.json()
        if not isinstance(raw, dict):
            raise ValueError("generateContent returned a non-object body")
        return raw


def _error_details(resp: httpx.Response) -> tuple[str, str | None]:
    try:
        err = resp.json().get("error") or {}
    except Exception:  # noqa: BLE001
        return resp.text[:500] or resp.reason_phrase, None
    if not isinstance(err, dict):
        return str(err)[:500], None
    return str(err.get("message") or resp.reason_phrase), err.get("status")


def _classify_status_error(error: httpx.HTTPStatusError) -> ExtractionFailure:
    resp = error.response
    message, upstream_status = _error_details(resp)
    if (
        resp.status_code == 429
        or upstream_status == "RESOURCE_EXHAUSTED"
        or "quota" in message.lower()
    ):
        return RateLimited(message=message)
    return AdapterError(message=f"HTTP {resp.status_code}: {message}")


def _interpret_generation(payload: dict[str, Any]) -> ExtractionResult | ExtractionFailure:
    feedback = payload.get("promptFeedback")
    if isinstance(feedback, dict) and feedback.get("blockReason"):
        return SafetyBlocked(feedback=feedback)

    candidates = payload.get("candidates") or []
    first = candidates[0] if candidates and isinstance(candidates[0], dict) else {}
    if first.get("finishReason") == "SAFETY":
        return SafetyBlocked(
            feedback={
                "finishReason": "SAFETY",
                "safetyRatings": first.get("safetyRatings") or [],
            }
        )

    parts = (first.get("content") or {}).get("parts") or []
    text = "".join(
        str(part.get("text") or "") for part in parts if isinstance(part, dict)
    )
    return normalize_extraction(text)
