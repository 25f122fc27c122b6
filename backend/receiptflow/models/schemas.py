"""Pydantic schemas for the extraction pipeline and the HTTP API.

Pydantic models are used for validating and serialising data that
crosses a boundary: the structured output of the document
understanding capability (``ReceiptDraft``), the fully validated field
set written by the persistence stage (``ExtractedFields``), the
upload-completed event that starts a run, and the API facing request
and response shapes.

Draft models accept both camelCase (as requested from the model) and
snake_case keys so memoized step results round-trip unchanged.
"""

from __future__ import annotations

import math
import re
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .enums import ReceiptStatus

_NUMBER_NOISE = re.compile(r"[^\d.\-]")


def _parse_amount(value: Any) -> Any:
    """Best-effort cleanup of OCR'd monetary strings such as ``"$1,299.00"``."""
    if value is None or isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        cleaned = _NUMBER_NOISE.sub("", value.replace(",", ""))
        if not cleaned or cleaned in {"-", ".", "-."}:
            return None
        return cleaned
    return value


class _DraftModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Draft schemas (output of the document understanding capability)


class MerchantDraft(_DraftModel):
    name: Optional[str] = None
    address: Optional[str] = None
    contact: Optional[str] = None


class TransactionDraft(_DraftModel):
    date: Optional[str] = None
    receipt_number: Optional[str] = None
    payment_method: Optional[str] = None


class LineItemDraft(_DraftModel):
    name: Optional[str] = None
    quantity: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)
    unit_price: Optional[float] = Field(default=None, allow_inf_nan=False)
    total_price: Optional[float] = Field(default=None, allow_inf_nan=False)

    @field_validator("quantity", "unit_price", "total_price", mode="before")
    @classmethod
    def _clean_numbers(cls, v: Any) -> Any:
        return _parse_amount(v)


class TotalsDraft(_DraftModel):
    subtotal: Optional[float] = Field(default=None, allow_inf_nan=False)
    tax: Optional[float] = Field(default=None, allow_inf_nan=False)
    total: Optional[float] = Field(default=None, allow_inf_nan=False)
    currency: Optional[str] = None

    @field_validator("subtotal", "tax", "total", mode="before")
    @classmethod
    def _clean_numbers(cls, v: Any) -> Any:
        return _parse_amount(v)


class ReceiptDraft(_DraftModel):
    """Structured, not-yet-persisted output of the extraction stage."""

    merchant: MerchantDraft = Field(default_factory=MerchantDraft)
    transaction: TransactionDraft = Field(default_factory=TransactionDraft)
    items: List[LineItemDraft] = Field(default_factory=list)
    totals: TotalsDraft = Field(default_factory=TotalsDraft)
    # Optional presentation hints the capability may supply
    display_name: Optional[str] = None
    summary: Optional[str] = None

    def is_empty(self) -> bool:
        """True when the draft carries no merchant, no items and no totals."""
        if self.items:
            return False
        if self.merchant.name:
            return False
        t = self.totals
        return all(v in (None, "") for v in (t.subtotal, t.tax, t.total))


# ---------------------------------------------------------------------------
# Persisted field set


class LineItem(BaseModel):
    """A validated line item as stored on a processed receipt."""

    name: str
    quantity: float = Field(ge=0)
    unitPrice: float
    totalPrice: float

    @field_validator("quantity", "unitPrice", "totalPrice")
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("must be a finite number")
        return v


class ExtractedFields(BaseModel):
    """Complete set of extracted columns written in one commit."""

    file_display_name: str
    merchant_name: str
    merchant_address: str
    merchant_contact: str
    transaction_date: str
    transaction_amount: float
    currency: str
    receipt_summary: str
    items: List[LineItem]

    def as_columns(self) -> dict[str, Any]:
        data = self.model_dump()
        data["items"] = [item.model_dump() for item in self.items]
        return data


# ---------------------------------------------------------------------------
# Pipeline events


class UploadCompletedEvent(BaseModel):
    """Event emitted once a receipt file has been stored and recorded."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    receipt_id: str
    file_url: str
    owner_id: Optional[str] = None


# ---------------------------------------------------------------------------
# API request/response schemas


class ReceiptRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    file_id: str
    file_name: str
    mime_type: str
    size: int
    uploaded_at: datetime
    status: ReceiptStatus
    file_display_name: Optional[str] = None
    merchant_name: Optional[str] = None
    merchant_address: Optional[str] = None
    merchant_contact: Optional[str] = None
    transaction_date: Optional[str] = None
    transaction_amount: Optional[float] = None
    currency: Optional[str] = None
    receipt_summary: Optional[str] = None
    items: Optional[List[LineItem]] = None


class ReceiptStatusUpdate(BaseModel):
    status: ReceiptStatus


class DownloadUrlResponse(BaseModel):
    url: str
    expires_in: Optional[int] = None
