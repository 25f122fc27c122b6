"""Common dependencies for FastAPI routes.

Routes never build services themselves; they ask for them here so tests
can swap any of them through ``app.dependency_overrides``.  Caller
identity is resolved by ``receiptflow.core.security`` (Clerk JWT, or the
development bypass).
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, Request

from receiptflow.core.database import get_session_factory
from receiptflow.core.security import get_current_user_id
from receiptflow.core.tasks import enqueue_upload_completed
from receiptflow.models.schemas import UploadCompletedEvent
from receiptflow.services.receipt_store import ReceiptStore
from receiptflow.services.storage_service import StorageService, get_storage
from receiptflow.services.usage_service import UsageMeter

Enqueue = Callable[[UploadCompletedEvent], str]


def get_storage_service() -> StorageService:
    return get_storage()


def get_receipt_store(storage: StorageService = Depends(get_storage_service)) -> ReceiptStore:
    return ReceiptStore(get_session_factory(), storage)


def get_usage_meter() -> UsageMeter:
    return UsageMeter(get_session_factory())


def get_enqueue() -> Enqueue:
    """Return the callable that hands upload-completed events to the worker."""
    return enqueue_upload_completed


async def get_user_id(request: Request) -> str:
    """Authenticated caller id."""
    return await get_current_user_id(request)
