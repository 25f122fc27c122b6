"""Domain exceptions for the receipt lifecycle and the processing pipeline.

Exceptions raised to direct callers (API handlers, the upload path) are
translated into HTTP responses by ``receiptflow.api.error_handlers``.
Inside the pipeline, stage failures are converted into outcome values
and never escape the coordinator.
"""

from __future__ import annotations

from typing import Optional


class ReceiptError(Exception):
    """Base class for all receipt domain errors."""

    code: str = "receipt_error"

    def __init__(self, message: str = "", receipt_id: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.receipt_id = receipt_id

    @property
    def reason(self) -> str:
        return str(self)


class ReceiptNotFound(ReceiptError):
    code = "receipt_not_found"

    def __init__(self, receipt_id: Optional[str] = None) -> None:
        super().__init__("Receipt not found", receipt_id=receipt_id)


class Unauthorized(ReceiptError):
    code = "unauthorized"

    def __init__(self, receipt_id: Optional[str] = None) -> None:
        super().__init__("Unauthorized, receipt does not belong to user", receipt_id=receipt_id)


class InvalidStatusTransition(ReceiptError):
    code = "invalid_status_transition"


class DeleteFailed(ReceiptError):
    code = "delete_failed"


class ExtractionFailed(ReceiptError):
    """The document-understanding capability could not produce a draft."""

    code = "extraction_failed"


class PersistenceFailed(ReceiptError):
    """A draft could not be committed to the record store."""

    code = "persistence_failed"


class FileNotFoundInStorage(ReceiptError):
    code = "file_not_found"


__all__ = [
    "ReceiptError",
    "ReceiptNotFound",
    "Unauthorized",
    "InvalidStatusTransition",
    "DeleteFailed",
    "ExtractionFailed",
    "PersistenceFailed",
    "FileNotFoundInStorage",
]
