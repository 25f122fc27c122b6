"""SQLAlchemy ORM models for the receipt processing service.

These models define the relational database schema used by the
application.  Enumerated fields are stored as strings using
SQLAlchemy's native Enum type and line items are stored in a JSON
column.

The receipt row carries its own lifecycle guards: the owner cannot be
reassigned once set, and the status column refuses to move from
``processed`` back to ``pending``.
"""

from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import validates

from receiptflow.core.database import Base
from receiptflow.core.errors import InvalidStatusTransition
from .enums import ReceiptStatus, UsageEventType


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# Columns populated by a successful extraction commit.  They are either
# all NULL (pending) or all set (processed).
EXTRACTED_FIELDS: tuple[str, ...] = (
    "file_display_name",
    "merchant_name",
    "merchant_address",
    "merchant_contact",
    "transaction_date",
    "transaction_amount",
    "currency",
    "receipt_summary",
    "items",
)


class Receipt(Base):
    """Uploaded receipt and its extracted financial data."""

    __tablename__ = "receipts"
    __table_args__ = (Index("ix_receipts_owner_uploaded_at", "owner_id", "uploaded_at"),)

    id = Column(String(32), primary_key=True, default=_new_id)
    owner_id = Column(String, nullable=False, index=True)

    # File reference
    file_id = Column(String, nullable=False)
    file_name = Column(String, nullable=False)
    mime_type = Column(String, nullable=False)
    size = Column(Integer, nullable=False)
    uploaded_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    status = Column(Enum(ReceiptStatus), default=ReceiptStatus.PENDING, nullable=False)

    # Extracted data
    file_display_name = Column(String, nullable=True)
    merchant_name = Column(String, nullable=True)
    merchant_address = Column(String, nullable=True)
    merchant_contact = Column(String, nullable=True)
    transaction_date = Column(String, nullable=True)
    transaction_amount = Column(Float, nullable=True)
    currency = Column(String(16), nullable=True)
    receipt_summary = Column(Text, nullable=True)
    items = Column(JSON, nullable=True)

    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    @validates("owner_id")
    def _validate_owner(self, key: str, value: str) -> str:
        if self.owner_id is not None and value != self.owner_id:
            raise ValueError("Receipt owner cannot be changed")
        return value

    @validates("status")
    def _validate_status(self, key: str, value: ReceiptStatus | str) -> ReceiptStatus:
        target = ReceiptStatus(value)
        if self.status is not None and ReceiptStatus(self.status) == ReceiptStatus.PROCESSED and target == ReceiptStatus.PENDING:
            raise InvalidStatusTransition("A processed receipt cannot return to pending", receipt_id=self.id)
        return target

    def is_owned_by(self, user_id: str | None) -> bool:
        return bool(user_id) and self.owner_id == user_id


class UsageEvent(Base):
    """Metered usage emitted after a receipt has been processed."""

    __tablename__ = "usage_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False, index=True)
    event = Column(Enum(UsageEventType), nullable=False, default=UsageEventType.SCAN)
    receipt_id = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
