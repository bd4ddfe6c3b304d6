from __future__ import annotations

import enum
import json
import logging
import time
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, insert, select, update

from receipt_intake.core.config import Settings
from receipt_intake.core.db import Database, StorageError, StorageIntegrityError
from receipt_intake.core.errors import (
    ExtractionFailed,
    NotFound,
    PathConflict,
    PayloadTooLarge,
    PreconditionFailed,
    ReconciliationError,
)
from receipt_intake.core.locks import KeyedLocks
from receipt_intake.core.logging import (
    file_context,
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
)
from receipt_intake.core.models import utcnow
from receipt_intake.core.storage import FileStaging, StagedFile, sanitize_filename
from receipt_intake.modules.extraction.ai import Extractor
from receipt_intake.modules.extraction.normalize import (
    AdapterError,
    ExtractedReceipt,
    ExtractionFailure,
    ExtractionResult,
    ParseFailure,
    RateLimited,
    SafetyBlocked,
)
from receipt_intake.modules.receipts.models import Receipt, ReceiptFile

logger = get_logger(__name__)

_files = ReceiptFile.__table__
_receipts = Receipt.__table__

NOT_FOUND_AT_PATH = "File not found at stored path."
NOT_FOUND_DURING_PROCESSING = "File not found during processing."

# The physical move has already happened when the receipt write fails, so that
# write gets exactly one more attempt before the mismatch is surfaced.
_PERSIST_ATTEMPTS = 2


class FileState(str, enum.Enum):
    UPLOADED = "UPLOADED"
    VALIDATED = "VALIDATED"
    PROCESSED = "PROCESSED"
    INVALID = "INVALID"


def file_state(row: Mapping[str, Any]) -> FileState:
    if row["is_valid"]:
        return FileState.PROCESSED if row["is_processed"] else FileState.VALIDATED
    return FileState.INVALID if row["invalid_reason"] else FileState.UPLOADED


@dataclass(frozen=True)
class UploadOutcome:
    file_id: int
    file_name: str
    file_path: str
    created: bool


@dataclass(frozen=True)
class ValidationOutcome:
    file_id: int
    is_valid: bool
    reason: str | None = None


@dataclass(frozen=True)
class ProcessOutcome:
    receipt_id: int
    created: bool
    extracted: ExtractedReceipt
    file_path: str


class ReceiptLifecycle:
    """
    Drives a receipt file through upload -> validate -> process -> delete.

    Owns no rows between calls. Operations on the same file id are serialized
    within this process; nothing coordinates across processes.
    """

    def __init__(
        self,
        *,
        db: Database,
        staging: FileStaging,
        extractor: Extractor,
        settings: Settings,
    ):
        self._db = db
        self._staging = staging
        self._extractor = extractor
        self._settings = settings
        self._locks = KeyedLocks()

    # -- queries -----------------------------------------------------------

    async def get_file(self, file_id: int) -> dict[str, Any] | None:
        return await self._db.fetch_one(select(_files).where(_files.c.id == file_id))

    async def list_files(self) -> list[dict[str, Any]]:
        return await self._db.fetch_all(
            select(_files).order_by(_files.c.created_at.desc(), _files.c.id.desc())
        )

    async def list_receipts(self) -> list[dict[str, Any]]:
        return await self._db.fetch_all(
            _joined_receipts().order_by(
                _receipts.c.purchased_at.desc(),
                _receipts.c.created_at.desc(),
                _receipts.c.id.desc(),
            )
        )

    async def get_receipt(self, receipt_id: int) -> dict[str, Any]:
        row = await self._db.fetch_one(_joined_receipts().where(_receipts.c.id == receipt_id))
        if row is None:
            raise NotFound("Receipt not found.", receiptId=receipt_id)
        return row

    async def receipt_count_for_file(self, file_id: int) -> int:
        rows = await self._db.fetch_all(
            select(_receipts.c.id).where(_receipts.c.receipt_file_id == file_id)
        )
        return len(rows)

    # -- upload ------------------------------------------------------------

    @property
    def upload_limit(self) -> int:
        """Largest accepted upload in bytes; 0 disables the check."""
        return self._settings.max_upload_bytes

    async def upload(
        self, *, body: bytes, declared_name: str | None, content_type: str | None
    ) -> UploadOutcome:
        limit = self.upload_limit
        if limit and len(body) > limit:
            raise PayloadTooLarge(
                f"File exceeds the {limit} byte upload limit.", limitBytes=limit
            )

        file_name = (declared_name or "").strip() or sanitize_filename(declared_name)
        log_event(
            logger,
            "upload.received",
            filename=file_name,
            content_type=content_type,
            byte_size=len(body),
        )

        async with self._locks.hold(("name", file_name)):
            staged = await self._staging.stage(
                body=body, declared_name=file_name, content_type=content_type
            )
            try:
                existing = await self._db.fetch_one(
                    select(_files.c.id).where(_files.c.file_name == file_name)
                )
                if existing is not None:
                    async with self._file_scope(existing["id"]):
                        current = await self.get_file(existing["id"])
                        if current is not None:
                            return await self._restage(current, staged)
                return await self._insert_file(file_name, staged)
            except StorageIntegrityError as e:
                await self._staging.remove(staged.path)
                raise PathConflict("File path conflict.", error=str(e)) from e
            except Exception:
                await self._staging.remove(staged.path)
                raise

    async def _insert_file(self, file_name: str, staged: StagedFile) -> UploadOutcome:
        now = utcnow()
        result = await self._db.execute(
            insert(_files).values(
                file_name=file_name,
                file_path=str(staged.path),
                is_valid=False,
                invalid_reason=None,
                is_processed=False,
                created_at=now,
                updated_at=now,
            )
        )
        file_id = int(result.last_row_id or 0)
        log_event(logger, "upload.created", file_id=file_id, path=str(staged.path))
        return UploadOutcome(
            file_id=file_id, file_name=file_name, file_path=str(staged.path), created=True
        )

    async def _restage(self, current: Mapping[str, Any], staged: StagedFile) -> UploadOutcome:
        file_id = current["id"]
        old_path = current["file_path"]
        await self._db.execute(
            update(_files)
            .where(_files.c.id == file_id)
            .values(
                file_path=str(staged.path),
                is_valid=False,
                invalid_reason=None,
                is_processed=False,
                updated_at=utcnow(),
            )
        )
        # Only a file still sitting in staging belongs to the previous upload;
        # a finalized file is owned by its receipt.
        if old_path and old_path != str(staged.path) and self._staging.is_staged(old_path):
            await self._staging.remove(old_path)
        log_event(
            logger,
            "upload.restaged",
            file_id=file_id,
            old_path=old_path,
            path=str(staged.path),
        )
        return UploadOutcome(
            file_id=file_id,
            file_name=current["file_name"],
            file_path=str(staged.path),
            created=False,
        )

    # -- validate ----------------------------------------------------------

    async def validate(self, file_id: int) -> ValidationOutcome:
        async with self._file_scope(file_id):
            row = await self._require_file(file_id)
            present = await self._staging.exists(row["file_path"])
            if present:
                await self._update_file(file_id, is_valid=True, invalid_reason=None)
                log_event(logger, "receipt.validate.valid", file_id=file_id)
                return ValidationOutcome(file_id=file_id, is_valid=True)

            await self._update_file(file_id, is_valid=False, invalid_reason=NOT_FOUND_AT_PATH)
            log_event(
                logger,
                "receipt.validate.invalid",
                level=logging.WARNING,
                file_id=file_id,
                path=row["file_path"],
            )
            return ValidationOutcome(file_id=file_id, is_valid=False, reason=NOT_FOUND_AT_PATH)

    # -- process -----------------------------------------------------------

    async def process(self, file_id: int) -> ProcessOutcome:
        async with self._file_scope(file_id):
            start = time.monotonic()
            row = await self._require_file(file_id)
            state = file_state(row)
            if state not in (FileState.VALIDATED, FileState.PROCESSED):
                raise PreconditionFailed(
                    "File is not validated or is invalid. Please validate first.",
                    fileId=file_id,
                    state=state.value,
                )

            path = row["file_path"]
            if not await self._staging.exists(path):
                await self._mark_invalid(file_id, NOT_FOUND_DURING_PROCESSING)
                raise NotFound(f"File not found at path: {path}.", fileId=file_id)

            log_event(logger, "receipt.process.start", file_id=file_id, path=path)
            try:
                outcome = await self._extractor.extract(path)
            except Exception as e:
                await self._mark_invalid(file_id, f"Processing error: {e}", best_effort=True)
                log_exception(logger, "receipt.process.extractor_error", file_id=file_id)
                raise ExtractionFailed(
                    "AI processing failed.", fileId=file_id, errorDetail=str(e) or type(e).__name__
                ) from e

            if isinstance(outcome, ExtractionFailure):
                await self._mark_invalid(file_id, outcome.summary(), best_effort=True)
                raise _extraction_failed(file_id, outcome)

            result = await self._store_extraction(row, outcome)
            log_event(
                logger,
                "receipt.process.finish",
                file_id=file_id,
                receipt_id=result.receipt_id,
                created=result.created,
                path=result.file_path,
                duration_ms=monotonic_ms(start),
            )
            return result

    async def _store_extraction(
        self, row: Mapping[str, Any], result: ExtractionResult
    ) -> ProcessOutcome:
        file_id = row["id"]
        data = result.data
        year = data.purchase_year()
        sanitized_name = sanitize_filename(row["file_name"])

        dest = self._staging.destination(
            year=year, category=data.category, sanitized_name=sanitized_name
        )
        claimed = await self._db.fetch_one(
            select(_files.c.id).where(_files.c.file_path == str(dest), _files.c.id != file_id)
        )
        if claimed is not None:
            raise PathConflict(
                "File path conflict.",
                fileId=file_id,
                conflictingFileId=claimed["id"],
                filePath=str(dest),
            )

        # Raises FilesystemError before any database write.
        final_path = await self._staging.finalize(
            staged_path=row["file_path"],
            year=year,
            category=data.category,
            sanitized_name=sanitized_name,
        )

        values = {
            "purchased_at": data.purchased_at_datetime(),
            "merchant_name": data.merchant_name,
            "total_amount": data.total_amount,
            "category": data.category,
            "items": [item.model_dump() for item in data.items],
            "file_path": str(final_path),
            "raw_extracted_text": result.raw_text,
        }

        for attempt in range(1, _PERSIST_ATTEMPTS + 1):
            try:
                receipt_id, created = await self._persist_receipt(file_id, values)
                break
            except StorageError as e:
                log_exception(
                    logger,
                    "receipt.process.persist_failed",
                    file_id=file_id,
                    attempt=attempt,
                    path=str(final_path),
                )
                if attempt == _PERSIST_ATTEMPTS:
                    log_event(
                        logger,
                        "receipt.process.reconcile_failed",
                        level=logging.ERROR,
                        file_id=file_id,
                        recorded_path=row["file_path"],
                        actual_path=str(final_path),
                    )
                    raise ReconciliationError(
                        "File was moved but its receipt could not be saved.",
                        fileId=file_id,
                        filePath=str(final_path),
                        error=str(e),
                    ) from e

        return ProcessOutcome(
            receipt_id=receipt_id,
            created=created,
            extracted=data,
            file_path=str(final_path),
        )

    async def _persist_receipt(self, file_id: int, values: dict[str, Any]) -> tuple[int, bool]:
        now = utcnow()
        async with self._db.transaction() as unit:
            existing = await unit.fetch_one(
                select(_receipts.c.id).where(_receipts.c.receipt_file_id == file_id)
            )
            if existing is not None:
                receipt_id = existing["id"]
                created = False
                await unit.execute(
                    update(_receipts)
                    .where(_receipts.c.id == receipt_id)
                    .values(**values, updated_at=now)
                )
            else:
                inserted = await unit.execute(
                    insert(_receipts).values(
                        receipt_file_id=file_id, **values, created_at=now, updated_at=now
                    )
                )
                receipt_id = int(inserted.last_row_id or 0)
                created = True
            await unit.execute(
                update(_files)
                .where(_files.c.id == file_id)
                .values(
                    file_path=values["file_path"],
                    is_valid=True,
                    is_processed=True,
                    invalid_reason=None,
                    updated_at=now,
                )
            )
        return receipt_id, created

    # -- delete ------------------------------------------------------------

    async def delete(self, receipt_id: int) -> None:
        receipt = await self._db.fetch_one(select(_receipts).where(_receipts.c.id == receipt_id))
        if receipt is None:
            raise NotFound("Receipt not found.", receiptId=receipt_id)

        file_id = receipt["receipt_file_id"]
        async with self._file_scope(file_id):
            async with self._db.transaction() as unit:
                file_row = await unit.fetch_one(
                    select(_files.c.file_path).where(_files.c.id == file_id)
                )
                deleted = await unit.execute(delete(_receipts).where(_receipts.c.id == receipt_id))
                if deleted.rows_changed == 0:
                    raise NotFound("Receipt not found.", receiptId=receipt_id)
                await unit.execute(delete(_files).where(_files.c.id == file_id))

            # A re-upload leaves the finalized copy at the receipt's path while the
            # file row points at a new staged copy; both go.
            paths = {p for p in (receipt["file_path"], file_row and file_row["file_path"]) if p}
            removed = [p for p in sorted(paths) if await self._staging.remove(p)]

        log_event(
            logger,
            "receipt.delete.success",
            receipt_id=receipt_id,
            file_id=file_id,
            paths=sorted(paths),
            files_removed=len(removed),
        )

    # -- helpers -----------------------------------------------------------

    @asynccontextmanager
    async def _file_scope(self, file_id: int) -> AsyncIterator[None]:
        async with self._locks.hold(file_id):
            with file_context(file_id):
                yield

    async def _require_file(self, file_id: int) -> dict[str, Any]:
        row = await self.get_file(file_id)
        if row is None:
            raise NotFound("File record not found.", fileId=file_id)
        return row

    async def _update_file(self, file_id: int, **values: Any) -> None:
        await self._db.execute(
            update(_files).where(_files.c.id == file_id).values(**values, updated_at=utcnow())
        )

    async def _mark_invalid(self, file_id: int, reason: str, *, best_effort: bool = False) -> None:
        limit = self._settings.invalid_reason_max_chars
        reason = reason[:limit] if limit else reason
        try:
            await self._update_file(
                file_id, is_valid=False, is_processed=False, invalid_reason=reason
            )
        except StorageError:
            if not best_effort:
                raise
            log_exception(logger, "receipt.mark_invalid.failure", file_id=file_id)
            return
        log_event(
            logger,
            "receipt.invalidated",
            level=logging.WARNING,
            file_id=file_id,
            reason=reason,
        )


def _joined_receipts():
    return select(_receipts, _files.c.file_name.label("original_file_name")).join(
        _files, _receipts.c.receipt_file_id == _files.c.id
    )


def _extraction_failed(file_id: int, failure: ExtractionFailure) -> ExtractionFailed:
    if isinstance(failure, ParseFailure):
        return ExtractionFailed(
            "AI processing failed: Could not parse JSON from response or response was empty.",
            fileId=file_id,
            reason=failure.reason,
            rawResponse=failure.raw_text,
        )
    if isinstance(failure, RateLimited):
        return ExtractionFailed(
            "AI processing failed due to rate limiting or quota issues.",
            fileId=file_id,
            errorDetail=failure.message,
        )
    if isinstance(failure, SafetyBlocked):
        return ExtractionFailed(
            "AI processing failed. Prompt feedback: "
            + json.dumps(failure.feedback, sort_keys=True, default=str),
            fileId=file_id,
            promptFeedback=failure.feedback,
        )
    if isinstance(failure, AdapterError):
        return ExtractionFailed(
            "AI processing failed.", fileId=file_id, errorDetail=failure.message
        )
    return ExtractionFailed("AI processing failed.", fileId=file_id, errorDetail=failure.summary())
