"""Receipt persistence stage.

Takes a ``ReceiptDraft`` produced by the extraction stage, checks that it
carries every field a processed receipt must have, and commits the full
field set together with the ``pending -> processed`` transition in one
store update.

The stage reports ``PersistenceResult`` values instead of raising: the
pipeline coordinator decides what a failure means for the run.  Usage
metering is not done here; the coordinator runs it as a post-commit hook.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import List, Optional

from pydantic import ValidationError

from receiptflow.core.errors import PersistenceFailed, ReceiptError, ReceiptNotFound, Unauthorized
from receiptflow.models.enums import CommitOutcome
from receiptflow.models.schemas import ExtractedFields, LineItem, ReceiptDraft
from receiptflow.services.receipt_store import ReceiptStore

logger = logging.getLogger(__name__)

# Failures that no amount of retrying will fix
FATAL_ERROR_CODES = frozenset({ReceiptNotFound.code, Unauthorized.code})

_MAX_SUMMARY_ITEMS = 5


@dataclass(frozen=True)
class PersistenceResult:
    outcome: CommitOutcome
    receipt_id: str
    owner_id: Optional[str] = None
    reason: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == CommitOutcome.SUCCESS

    @property
    def fatal(self) -> bool:
        return self.error_code in FATAL_ERROR_CODES

    @classmethod
    def success(cls, receipt_id: str, owner_id: str) -> "PersistenceResult":
        return cls(outcome=CommitOutcome.SUCCESS, receipt_id=receipt_id, owner_id=owner_id)

    @classmethod
    def failed(cls, receipt_id: str, reason: str, error_code: str = PersistenceFailed.code) -> "PersistenceResult":
        return cls(outcome=CommitOutcome.FAILED, receipt_id=receipt_id, reason=reason, error_code=error_code)


def _fmt_amount(value: Optional[float]) -> str:
    return f"{value:.2f}" if value is not None else "?"


def compose_display_name(draft: ReceiptDraft) -> str:
    merchant = (draft.merchant.name or "Receipt").strip()
    date = (draft.transaction.date or "").strip()
    return f"{merchant} - {date}" if date else merchant


def compose_summary(draft: ReceiptDraft) -> str:
    """Build a readable summary from the draft when the model did not supply one."""
    m, t, totals = draft.merchant, draft.transaction, draft.totals
    parts: List[str] = []
    where = ", ".join(p for p in (m.name, m.address) if p)
    if m.contact:
        where = f"{where} ({m.contact})"
    parts.append(f"{where}.")
    paid = f"Total {_fmt_amount(totals.total)} {totals.currency or ''}".strip()
    if t.date:
        paid = f"{t.date}: {paid}"
    if t.payment_method:
        paid += f" paid by {t.payment_method}"
    parts.append(f"{paid}.")
    if t.receipt_number:
        parts.append(f"Receipt #{t.receipt_number}.")
    if draft.items:
        names = []
        for item in draft.items[:_MAX_SUMMARY_ITEMS]:
            qty = item.quantity or 0
            names.append(f"{item.name} x{qty:g}" if qty and qty != 1 else f"{item.name}")
        more = len(draft.items) - _MAX_SUMMARY_ITEMS
        tail = f" and {more} more" if more > 0 else ""
        parts.append(f"{len(draft.items)} item(s): {', '.join(names)}{tail}.")
    return " ".join(parts)


def build_extracted_fields(draft: ReceiptDraft) -> ExtractedFields:
    """Convert a draft into the complete field set for a processed receipt.

    Raises ``PersistenceFailed`` naming every required value the draft
    lacks.  Merchant address and contact are optional on paper receipts
    and are stored as empty strings when absent.
    """
    missing: List[str] = []
    if not (draft.merchant.name or "").strip():
        missing.append("merchant.name")
    if not (draft.transaction.date or "").strip():
        missing.append("transaction.date")
    if draft.totals.total is None:
        missing.append("totals.total")
    if not (draft.totals.currency or "").strip():
        missing.append("totals.currency")
    for idx, item in enumerate(draft.items):
        for attr in ("name", "quantity", "unit_price", "total_price"):
            if getattr(item, attr) in (None, ""):
                missing.append(f"items[{idx}].{attr}")
    if missing:
        raise PersistenceFailed(f"Draft is missing required fields: {', '.join(missing)}")

    try:
        return ExtractedFields(
            file_display_name=(draft.display_name or "").strip() or compose_display_name(draft),
            merchant_name=draft.merchant.name.strip(),
            merchant_address=(draft.merchant.address or "").strip(),
            merchant_contact=(draft.merchant.contact or "").strip(),
            transaction_date=draft.transaction.date.strip(),
            transaction_amount=draft.totals.total,
            currency=draft.totals.currency.strip().upper(),
            receipt_summary=(draft.summary or "").strip() or compose_summary(draft),
            items=[
                LineItem(
                    name=item.name,
                    quantity=item.quantity,
                    unitPrice=item.unit_price,
                    totalPrice=item.total_price,
                )
                for item in draft.items
            ],
        )
    except ValidationError as exc:
        raise PersistenceFailed(f"Draft failed validation: {exc}") from exc


class PersistenceStage(abc.ABC):
    """Commits a draft to the record store."""

    @abc.abstractmethod
    async def commit(self, receipt_id: str, draft: ReceiptDraft, caller_id: Optional[str]) -> PersistenceResult:
        """Commit ``draft`` and report the outcome; never raises."""


class ReceiptPersistenceStage(PersistenceStage):
    def __init__(self, store: ReceiptStore) -> None:
        self._store = store

    async def commit(self, receipt_id: str, draft: ReceiptDraft, caller_id: Optional[str]) -> PersistenceResult:
        try:
            fields = build_extracted_fields(draft)
            if caller_id is None:
                # Events without an owner commit on behalf of the stored owner
                caller_id = await self._store.owner_of(receipt_id)
            receipt = await self._store.patch_extracted_fields(receipt_id, fields, caller_id=caller_id)
        except ReceiptError as exc:
            logger.warning("[persistence] receipt=%s rejected code=%s reason=%s", receipt_id, exc.code, exc.reason)
            return PersistenceResult.failed(receipt_id, exc.reason, error_code=exc.code)
        except Exception as exc:
            logger.error("[persistence] receipt=%s write failed: %s", receipt_id, exc)
            return PersistenceResult.failed(receipt_id, str(exc) or exc.__class__.__name__)
        return PersistenceResult.success(receipt_id, receipt.owner_id)
