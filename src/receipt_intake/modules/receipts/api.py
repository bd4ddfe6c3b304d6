from __future__ import annotations

from fastapi import APIRouter, Depends, File, Response, UploadFile, status

from receipt_intake.api.deps import get_lifecycle
from receipt_intake.core.errors import MissingUpload
from receipt_intake.modules.receipts.schemas import (
    MessageOut,
    ProcessOut,
    ReceiptFileOut,
    ReceiptOut,
    UploadOut,
    ValidateOut,
)
from receipt_intake.modules.receipts.service import ReceiptLifecycle

router = APIRouter(tags=["receipts"])


@router.post("/upload", response_model=UploadOut)
async def upload_receipt(
    response: Response,
    receipt_pdf: UploadFile | None = File(None, alias="receiptPdf"),
    lifecycle: ReceiptLifecycle = Depends(get_lifecycle),
) -> UploadOut:
    if receipt_pdf is None:
        raise MissingUpload("No file uploaded or incorrect field name.")
    # One byte past the limit is enough for the lifecycle to reject the upload.
    limit = lifecycle.upload_limit
    body = await receipt_pdf.read(limit + 1 if limit else -1)
    outcome = await lifecycle.upload(
        body=body,
        declared_name=receipt_pdf.filename,
        content_type=receipt_pdf.content_type,
    )
    if outcome.created:
        response.status_code = status.HTTP_201_CREATED
        message = "File uploaded successfully."
    else:
        message = "File already exists, record updated."
    return UploadOut(
        message=message,
        fileId=outcome.file_id,
        fileName=outcome.file_name,
        filePath=outcome.file_path,
    )


@router.post("/validate/{file_id}", response_model=ValidateOut)
async def validate_file(
    file_id: int,
    response: Response,
    lifecycle: ReceiptLifecycle = Depends(get_lifecycle),
) -> ValidateOut:
    outcome = await lifecycle.validate(file_id)
    if outcome.is_valid:
        return ValidateOut(
            message="File marked as valid (exists at path).", fileId=file_id, isValid=True
        )
    response.status_code = status.HTTP_400_BAD_REQUEST
    return ValidateOut(
        message="File not found at path, marked as invalid.", fileId=file_id, isValid=False
    )


@router.post("/process/{file_id}", response_model=ProcessOut)
async def process_file(
    file_id: int,
    response: Response,
    lifecycle: ReceiptLifecycle = Depends(get_lifecycle),
) -> ProcessOut:
    outcome = await lifecycle.process(file_id)
    if outcome.created:
        response.status_code = status.HTTP_201_CREATED
        message = "Receipt processed and stored."
    else:
        message = "Receipt data updated."
    return ProcessOut(
        message=message,
        receiptId=outcome.receipt_id,
        extractedData=outcome.extracted.model_dump(mode="json"),
    )


@router.get("/files", response_model=list[ReceiptFileOut])
async def list_files(lifecycle: ReceiptLifecycle = Depends(get_lifecycle)) -> list[ReceiptFileOut]:
    rows = await lifecycle.list_files()
    return [ReceiptFileOut.model_validate(r) for r in rows]


@router.get("/receipts", response_model=list[ReceiptOut])
async def list_receipts(lifecycle: ReceiptLifecycle = Depends(get_lifecycle)) -> list[ReceiptOut]:
    rows = await lifecycle.list_receipts()
    return [ReceiptOut.model_validate(r) for r in rows]


@router.get("/receipts/{receipt_id}", response_model=ReceiptOut)
async def get_receipt(
    receipt_id: int, lifecycle: ReceiptLifecycle = Depends(get_lifecycle)
) -> ReceiptOut:
    row = await lifecycle.get_receipt(receipt_id)
    return ReceiptOut.model_validate(row)


@router.delete("/receipts/{receipt_id}", response_model=MessageOut)
async def delete_receipt(
    receipt_id: int, lifecycle: ReceiptLifecycle = Depends(get_lifecycle)
) -> MessageOut:
    await lifecycle.delete(receipt_id)
    return MessageOut(message="Receipt and associated file deleted.")
