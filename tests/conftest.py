from __future__ import annotations

import os
from pathlib import Path

import pytest

# Set env before any receipt_intake imports (settings are created at import time).
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.receipt_intake_test.db")

SAMPLE_PDF = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\ntrailer << >>\n%%EOF\n"

COFFEE_RECEIPT = (
    '{"merchant_name": "Corner Cafe", "purchased_at": "2023-10-26 14:30:00", '
    '"total_amount": 4.5, "category": "groceries", '
    '"items": [{"name": "Coffee", "unit_price": 4.5, "quantity": 1}]}'
)


class ScriptedExtractor:
    """Stands in for the Gemini adapter; replays queued model replies in order.

    A queued ``str`` is treated as raw model text, an exception is raised, and
    anything else is returned as-is. With nothing queued it answers with the
    coffee receipt.
    """

    def __init__(self) -> None:
        self.replies: list[object] = []
        self.calls: list[Path] = []

    def queue(self, *replies: object) -> None:
        self.replies.extend(replies)

    async def extract(self, file_path):
        from receipt_intake.modules.extraction.normalize import normalize_extraction

        self.calls.append(Path(file_path))
        reply = self.replies.pop(0) if self.replies else COFFEE_RECEIPT
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, str):
            return normalize_extraction(reply)
        return reply


@pytest.fixture
def settings(tmp_path):
    from receipt_intake.core.config import Settings

    return Settings(
        environment="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'receipts.db'}",
        staging_dir=tmp_path / "uploads",
        storage_root=tmp_path / "receipts",
        gemini_api_key="test-key",
    )


@pytest.fixture
def sample_pdf() -> bytes:
    return SAMPLE_PDF


@pytest.fixture
def extractor() -> ScriptedExtractor:
    return ScriptedExtractor()


@pytest.fixture
async def db(settings):
    from receipt_intake.core.db import Database

    database = Database(settings.database_url)
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
async def staging(settings):
    from receipt_intake.core.storage import FileStaging

    files = FileStaging(staging_dir=settings.staging_dir, storage_root=settings.storage_root)
    await files.prepare()
    return files


@pytest.fixture
def lifecycle(db, staging, extractor, settings):
    from receipt_intake.modules.receipts.service import ReceiptLifecycle

    return ReceiptLifecycle(db=db, staging=staging, extractor=extractor, settings=settings)


@pytest.fixture
def client(settings, extractor):
    from fastapi.testclient import TestClient

    from receipt_intake.main import create_app

    with TestClient(create_app(settings, extractor=extractor)) as test_client:
        yield test_client
