from __future__ import annotations

from typing import Any

from fastapi import status


class ReceiptIntakeError(Exception):
    """Base for failures translated into a structured response at the API edge."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    def payload(self) -> dict[str, Any]:
        return {"message": self.message, **self.details}


class ConfigurationError(RuntimeError):
    pass


class NotFound(ReceiptIntakeError):
    status_code = status.HTTP_404_NOT_FOUND


class PreconditionFailed(ReceiptIntakeError):
    status_code = status.HTTP_400_BAD_REQUEST


class MissingUpload(ReceiptIntakeError):
    status_code = status.HTTP_400_BAD_REQUEST


class UnsupportedMediaType(ReceiptIntakeError):
    status_code = status.HTTP_400_BAD_REQUEST


class PathConflict(ReceiptIntakeError):
    status_code = status.HTTP_409_CONFLICT


class ExtractionFailed(ReceiptIntakeError):
    pass


class FilesystemError(ReceiptIntakeError):
    pass


class ReconciliationError(ReceiptIntakeError):
    pass


class PayloadTooLarge(ReceiptIntakeError):
    status_code = status.HTTP_413_CONTENT_TOO_LARGE
