from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, Field, field_serializer

NOT_AVAILABLE = "N/A"

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*|\s*```\s*$")
_TIMESTAMP_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M")


class ReceiptItem(BaseModel):
    name: str = NOT_AVAILABLE
    unit_price: float | None = None
    quantity: int | float | str = NOT_AVAILABLE


class ExtractedReceipt(BaseModel):
    merchant_name: str | None = None
    purchased_at: str | None = None
    total_amount: Decimal | None = None
    category: str | None = None
    items: list[ReceiptItem] = Field(default_factory=list)

    @field_serializer("total_amount")
    def _total_as_number(self, value: Decimal | None) -> float | None:
        return float(value) if value is not None else None

    def purchased_at_datetime(self) -> datetime | None:
        return parse_timestamp(self.purchased_at)

    def purchase_year(self) -> str | None:
        ts = self.purchased_at_datetime()
        return f"{ts.year:04d}" if ts else None


@dataclass(frozen=True)
class ExtractionResult:
    data: ExtractedReceipt
    raw_text: str


@dataclass(frozen=True)
class ExtractionFailure:
    @property
    def kind(self) -> str:
        return type(self).__name__

    def summary(self) -> str:  # pragma: no cover
        raise NotImplementedError


@dataclass(frozen=True)
class ParseFailure(ExtractionFailure):
    raw_text: str = ""
    reason: str = "AI response was not valid JSON or empty."

    def summary(self) -> str:
        return self.reason


@dataclass(frozen=True)
class RateLimited(ExtractionFailure):
    message: str = ""

    def summary(self) -> str:
        return "AI processing failed due to rate limiting or quota issues."


@dataclass(frozen=True)
class SafetyBlocked(ExtractionFailure):
    feedback: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> str:
        return "AI processing blocked. Prompt feedback: " + json.dumps(
            self.feedback, sort_keys=True, default=str
        )


@dataclass(frozen=True)
class AdapterError(ExtractionFailure):
    message: str = ""

    def summary(self) -> str:
        return f"Processing error: {self.message}"


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", (text or "").strip()).strip()


def _parse_json_object(content: str) -> Any:
    c = (content or "").strip()
    if not c:
        return None
    try:
        return json.loads(c)
    except ValueError:
        pass

    # Fallback: extract the first {...} block.
    m = re.search(r"\{.*\}", c, re.S)
    if not m:
        return None
    try:
        return json.loads(m.group(0))
    except ValueError:
        return None


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _coerce_purchased_at(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    s = value.strip().replace("T", " ", 1)
    if not s:
        return None
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", s):
        s = s + " 00:00:00"
    s = re.sub(r"(Z|[+-]\d{2}:?\d{2})$", "", s).strip()
    s = s.split(".", 1)[0]
    ts = parse_timestamp(s)
    return ts.strftime("%Y-%m-%d %H:%M:%S") if ts else None


def _coerce_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        raw = str(value)
    elif isinstance(value, str):
        raw = value.strip().replace(",", "")
        raw = re.sub(r"^[^\d.+-]+", "", raw)
        if not raw:
            return None
    else:
        return None
    try:
        amount = Decimal(raw)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount.quantize(Decimal("0.01"))


def _coerce_float(value: Any) -> float | None:
    amount = _coerce_decimal(value)
    return float(amount) if amount is not None else None


def _coerce_quantity(value: Any) -> int | float | str:
    if isinstance(value, bool) or value is None:
        return NOT_AVAILABLE
    if isinstance(value, (int, float, str)):
        try:
            qty = Decimal(str(value).strip())
        except InvalidOperation:
            return NOT_AVAILABLE
        if not qty.is_finite():
            return NOT_AVAILABLE
        return int(qty) if qty == qty.to_integral_value() else float(qty)
    return NOT_AVAILABLE


def normalize_category(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    token = re.sub(r"\s+", "_", value.strip().lower())
    token = re.sub(r"[^a-z0-9_-]", "", token).strip("_-")
    return token or None


def _coerce_items(value: Any) -> list[ReceiptItem]:
    if not isinstance(value, list):
        return []
    out: list[ReceiptItem] = []
    for raw in value:
        if not isinstance(raw, dict):
            continue
        name = raw.get("name")
        name = name.strip() if isinstance(name, str) and name.strip() else NOT_AVAILABLE
        price = raw.get("unit_price", raw.get("price"))
        out.append(
            ReceiptItem(
                name=name,
                unit_price=_coerce_float(price),
                quantity=_coerce_quantity(raw.get("quantity")),
            )
        )
    return out


def _coerce_merchant(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    v = value.strip()
    return v[:255] if v else None


def normalize_extraction(text: str | None) -> ExtractionResult | ParseFailure:
    """
    Turn raw model output into a trusted ``ExtractedReceipt``.

    Fenced markdown is unwrapped first. Anything that is not a JSON object is a
    ``ParseFailure`` carrying the cleaned text for diagnostics.
    """
    cleaned = strip_code_fences(text or "")
    if not cleaned:
        return ParseFailure(raw_text=cleaned, reason="AI returned an empty response.")

    obj = _parse_json_object(cleaned)
    if not isinstance(obj, dict):
        return ParseFailure(raw_text=cleaned)

    data = ExtractedReceipt(
        merchant_name=_coerce_merchant(obj.get("merchant_name")),
        purchased_at=_coerce_purchased_at(obj.get("purchased_at")),
        total_amount=_coerce_decimal(obj.get("total_amount")),
        category=normalize_category(obj.get("category")),
        items=_coerce_items(obj.get("items")),
    )
    return ExtractionResult(data=data, raw_text=cleaned)
