"""API routes for receipt upload, retrieval and lifecycle management."""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status

from receiptflow.api.dependencies import Enqueue, get_enqueue, get_receipt_store, get_storage_service, get_user_id
from receiptflow.core.config import settings
from receiptflow.core.errors import FileNotFoundInStorage
from receiptflow.core.observability import sentry_breadcrumb, sentry_set_tags
from receiptflow.models.schemas import DownloadUrlResponse, ReceiptRead, ReceiptStatusUpdate, UploadCompletedEvent
from receiptflow.services.receipt_store import ReceiptStore
from receiptflow.services.storage_service import StorageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/receipts", tags=["receipts"])


def _is_pdf(file: UploadFile) -> bool:
    content_type = (file.content_type or "").lower()
    return "pdf" in content_type or (file.filename or "").lower().endswith(".pdf")


@router.post("", response_model=ReceiptRead)
async def upload_receipt(
    file: UploadFile = File(...),
    user_id: str = Depends(get_user_id),
    store: ReceiptStore = Depends(get_receipt_store),
    storage: StorageService = Depends(get_storage_service),
    enqueue: Enqueue = Depends(get_enqueue),
) -> ReceiptRead:
    """Upload a PDF receipt and queue it for processing."""
    if not _is_pdf(file):
        raise HTTPException(status_code=400, detail="Only PDF files are allowed")

    contents = await file.read()
    if not contents:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(contents) > settings.MAX_UPLOAD_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"File too large. Maximum size is {settings.MAX_UPLOAD_SIZE // (1024 * 1024)}MB",
        )

    file_name = file.filename or "receipt.pdf"
    file_id = await storage.save(contents, user_id, file_name, file.content_type or "application/pdf")
    try:
        receipt = await store.create(
            owner_id=user_id,
            file_id=file_id,
            file_name=file_name,
            mime_type=file.content_type or "application/pdf",
            size=len(contents),
        )
    except Exception:
        logger.error("Receipt record for %s could not be created; removing uploaded file", file_id)
        try:
            await storage.delete(file_id)
        except Exception as cleanup_exc:
            logger.error("Failed to remove orphaned upload %s: %s", file_id, cleanup_exc)
        raise

    file_url = await storage.get_download_url(file_id)
    if not file_url:
        raise FileNotFoundInStorage(f"File not found: {file_id}", receipt_id=receipt.id)

    message_id = enqueue(UploadCompletedEvent(receipt_id=receipt.id, file_url=file_url, owner_id=user_id))
    sentry_set_tags({"receipt.id": receipt.id})
    sentry_breadcrumb(
        category="upload",
        message="upload_receipt.enqueued",
        data={"receipt_id": receipt.id, "message_id": message_id, "size": len(contents)},
    )
    logger.info("Receipt %s uploaded by %s (message=%s)", receipt.id, user_id, message_id)
    return ReceiptRead.model_validate(receipt)


@router.get("", response_model=List[ReceiptRead])
async def list_receipts(
    limit: int = Query(200, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_user_id),
    store: ReceiptStore = Depends(get_receipt_store),
) -> List[ReceiptRead]:
    """List the caller's receipts, newest first."""
    receipts = await store.list_by_owner(user_id, limit=limit, offset=offset)
    return [ReceiptRead.model_validate(r) for r in receipts]


@router.get("/{receipt_id}", response_model=ReceiptRead)
async def get_receipt(
    receipt_id: str,
    user_id: str = Depends(get_user_id),
    store: ReceiptStore = Depends(get_receipt_store),
) -> ReceiptRead:
    return ReceiptRead.model_validate(await store.get_by_id(receipt_id, caller_id=user_id))


@router.patch("/{receipt_id}/status", response_model=ReceiptRead)
async def update_receipt_status(
    receipt_id: str,
    update: ReceiptStatusUpdate,
    user_id: str = Depends(get_user_id),
    store: ReceiptStore = Depends(get_receipt_store),
) -> ReceiptRead:
    """Change a receipt's status.

    Only lifecycle-preserving patches are accepted: ``processed`` is set by
    the pipeline when it commits extracted data, and a processed receipt
    never returns to ``pending``.
    """
    receipt = await store.patch_status(receipt_id, update.status, caller_id=user_id)
    return ReceiptRead.model_validate(receipt)


@router.get("/{receipt_id}/download_url", response_model=DownloadUrlResponse)
async def get_download_url(
    receipt_id: str,
    user_id: str = Depends(get_user_id),
    store: ReceiptStore = Depends(get_receipt_store),
) -> DownloadUrlResponse:
    """Return a short-lived URL for the original file."""
    url = await store.get_download_url(receipt_id, caller_id=user_id)
    return DownloadUrlResponse(url=url, expires_in=settings.DOWNLOAD_URL_TTL_SECONDS)


@router.delete("/{receipt_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_receipt(
    receipt_id: str,
    user_id: str = Depends(get_user_id),
    store: ReceiptStore = Depends(get_receipt_store),
):
    """Delete a receipt and its stored file."""
    await store.delete(receipt_id, caller_id=user_id)
    sentry_breadcrumb(category="receipts", message="delete_receipt", data={"receipt_id": receipt_id})
