from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from receipt_intake.core.models import Base, IntegerPrimaryKey, Timestamped


class ReceiptFile(IntegerPrimaryKey, Timestamped, Base):
    __tablename__ = "receipt_file"

    file_name: Mapped[str] = mapped_column(String(512), unique=True)
    file_path: Mapped[str] = mapped_column(String(2048), unique=True)

    is_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    invalid_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_processed: Mapped[bool] = mapped_column(Boolean, default=False)


class Receipt(IntegerPrimaryKey, Timestamped, Base):
    __tablename__ = "receipt"

    receipt_file_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("receipt_file.id"), unique=True, index=True
    )

    purchased_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    merchant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    items: Mapped[list] = mapped_column(JSON, default=list)

    file_path: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    raw_extracted_text: Mapped[str | None] = mapped_column(Text, nullable=True)

