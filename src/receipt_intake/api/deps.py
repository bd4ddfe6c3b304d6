from __future__ import annotations

from fastapi import Request

from receipt_intake.modules.receipts.service import ReceiptLifecycle


def get_lifecycle(request: Request) -> ReceiptLifecycle:
    return request.app.state.lifecycle
