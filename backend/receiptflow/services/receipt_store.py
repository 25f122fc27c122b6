"""Receipt record store.

Thin data-access layer over the ``receipts`` table.  Every operation is
keyed by receipt id and, apart from ``create``, enforces that the caller
is the receipt's owner before reading or applying any change.  Each
mutation runs in its own transaction so a patch is either fully visible
or not at all.

Status rules enforced here:

* receipts are created ``pending`` with no extracted fields;
* ``processed`` is only reachable through :meth:`patch_extracted_fields`,
  which writes the full extracted field set and the status together;
* nothing moves a processed receipt back to ``pending``.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptflow.core.errors import (
    DeleteFailed,
    FileNotFoundInStorage,
    InvalidStatusTransition,
    ReceiptNotFound,
    Unauthorized,
)
from receiptflow.models.enums import ReceiptStatus
from receiptflow.models.schemas import ExtractedFields
from receiptflow.models.tables import Receipt
from receiptflow.services.storage_service import StorageService

logger = logging.getLogger(__name__)


async def _load_owned(session: AsyncSession, receipt_id: str, caller_id: Optional[str]) -> Receipt:
    receipt = await session.get(Receipt, receipt_id)
    if receipt is None:
        raise ReceiptNotFound(receipt_id)
    if not receipt.is_owned_by(caller_id):
        logger.warning("[store] caller=%s denied access to receipt=%s", caller_id, receipt_id)
        raise Unauthorized(receipt_id)
    return receipt


class ReceiptStore:
    """CRUD over receipts with ownership checks."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], storage: StorageService) -> None:
        self._sessions = session_factory
        self._storage = storage

    async def create(
        self,
        owner_id: str,
        file_id: str,
        file_name: str,
        mime_type: str,
        size: int,
    ) -> Receipt:
        """Record a freshly uploaded file as a pending receipt."""
        receipt = Receipt(
            owner_id=owner_id,
            file_id=file_id,
            file_name=file_name,
            mime_type=mime_type,
            size=size,
            status=ReceiptStatus.PENDING,
        )
        async with self._sessions() as session:
            session.add(receipt)
            await session.commit()
            await session.refresh(receipt)
        logger.info("[store] created receipt=%s owner=%s", receipt.id, owner_id)
        return receipt

    async def get_by_id(self, receipt_id: str, caller_id: Optional[str]) -> Receipt:
        async with self._sessions() as session:
            return await _load_owned(session, receipt_id, caller_id)

    async def owner_of(self, receipt_id: str) -> str:
        """Owner id of ``receipt_id``; raises ``ReceiptNotFound``."""
        async with self._sessions() as session:
            owner_id = await session.scalar(select(Receipt.owner_id).where(Receipt.id == receipt_id))
        if owner_id is None:
            raise ReceiptNotFound(receipt_id)
        return owner_id

    async def list_by_owner(self, owner_id: str, limit: int = 200, offset: int = 0) -> List[Receipt]:
        """Return the owner's receipts, newest upload first."""
        query = (
            select(Receipt)
            .where(Receipt.owner_id == owner_id)
            .order_by(Receipt.uploaded_at.desc(), Receipt.id.desc())
            .offset(offset)
            .limit(limit)
        )
        async with self._sessions() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def patch_status(self, receipt_id: str, status: ReceiptStatus, caller_id: Optional[str]) -> Receipt:
        target = ReceiptStatus(status)
        async with self._sessions() as session:
            receipt = await _load_owned(session, receipt_id, caller_id)
            current = ReceiptStatus(receipt.status)
            if target == ReceiptStatus.PROCESSED and current != ReceiptStatus.PROCESSED:
                raise InvalidStatusTransition(
                    "A receipt becomes processed only by committing extracted data",
                    receipt_id=receipt_id,
                )
            if current == ReceiptStatus.PROCESSED and target == ReceiptStatus.PENDING:
                raise InvalidStatusTransition(
                    "A processed receipt cannot return to pending",
                    receipt_id=receipt_id,
                )
            # Only same-state patches remain; they are no-ops.
            return receipt

    async def patch_extracted_fields(
        self,
        receipt_id: str,
        fields: ExtractedFields,
        caller_id: Optional[str],
    ) -> Receipt:
        """Write every extracted column and mark the receipt processed.

        Re-applying to a processed receipt overwrites the previous values.
        """
        async with self._sessions() as session:
            receipt = await _load_owned(session, receipt_id, caller_id)
            for column, value in fields.as_columns().items():
                setattr(receipt, column, value)
            receipt.status = ReceiptStatus.PROCESSED
            await session.commit()
            await session.refresh(receipt)
        logger.info("[store] receipt=%s processed items=%d", receipt_id, len(fields.items))
        return receipt

    async def get_download_url(self, receipt_id: str, caller_id: Optional[str]) -> str:
        receipt = await self.get_by_id(receipt_id, caller_id)
        url = await self._storage.get_download_url(receipt.file_id)
        if not url:
            raise FileNotFoundInStorage(f"File not found: {receipt.file_id}", receipt_id=receipt_id)
        return url

    async def delete(self, receipt_id: str, caller_id: Optional[str]) -> None:
        """Delete the backing file, then the record.

        If the file cannot be removed the record is left untouched and
        ``DeleteFailed`` is raised.
        """
        async with self._sessions() as session:
            receipt = await _load_owned(session, receipt_id, caller_id)
            try:
                await self._storage.delete(receipt.file_id)
            except Exception as exc:
                logger.error("[store] file delete failed receipt=%s file=%s err=%s", receipt_id, receipt.file_id, exc)
                raise DeleteFailed(f"Failed to delete receipt file: {exc}", receipt_id=receipt_id) from exc
            await session.delete(receipt)
            await session.commit()
        logger.info("[store] deleted receipt=%s", receipt_id)
