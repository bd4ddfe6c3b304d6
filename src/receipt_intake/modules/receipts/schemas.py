from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class ReceiptFileOut(BaseModel):
    id: int
    file_name: str
    file_path: str
    is_valid: bool
    invalid_reason: str | None
    is_processed: bool
    created_at: datetime
    updated_at: datetime


class ReceiptOut(BaseModel):
    id: int
    receipt_file_id: int
    purchased_at: datetime | None
    merchant_name: str | None
    total_amount: float | None
    category: str | None
    items: list[dict[str, Any]]
    file_path: str | None
    raw_extracted_text: str | None
    original_file_name: str
    created_at: datetime
    updated_at: datetime


class UploadOut(BaseModel):
    message: str
    fileId: int
    fileName: str
    filePath: str


class ValidateOut(BaseModel):
    message: str
    fileId: int
    isValid: bool


class ProcessOut(BaseModel):
    message: str
    receiptId: int
    extractedData: dict[str, Any]


class MessageOut(BaseModel):
    message: str
