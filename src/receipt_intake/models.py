"""
Model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

from receipt_intake.modules.receipts.models import Receipt, ReceiptFile  # noqa: F401
