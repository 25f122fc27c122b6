from __future__ import annotations

import datetime as dt

import pytest

from receiptflow.core.errors import (
    DeleteFailed,
    FileNotFoundInStorage,
    InvalidStatusTransition,
    ReceiptNotFound,
    Unauthorized,
)
from receiptflow.models.enums import ReceiptStatus
from receiptflow.models.schemas import ExtractedFields, LineItem
from receiptflow.models.tables import EXTRACTED_FIELDS, Receipt


def _fields(**overrides):
    data = dict(
        file_display_name="Corner Cafe - 2024-03-02",
        merchant_name="Corner Cafe",
        merchant_address="1 Main St",
        merchant_contact="",
        transaction_date="2024-03-02",
        transaction_amount=16.2,
        currency="USD",
        receipt_summary="Coffee",
        items=[LineItem(name="Latte", quantity=2, unitPrice=4.5, totalPrice=9.0)],
    )
    data.update(overrides)
    return ExtractedFields(**data)


@pytest.mark.asyncio
async def test_create_starts_pending_without_extracted_fields(make_receipt, store):
    receipt = await make_receipt()
    fetched = await store.get_by_id(receipt.id, caller_id="user_a")
    assert fetched.status == ReceiptStatus.PENDING
    assert all(getattr(fetched, col) is None for col in EXTRACTED_FIELDS)


@pytest.mark.asyncio
async def test_get_by_id_checks_existence_and_owner(make_receipt, store):
    receipt = await make_receipt()
    with pytest.raises(ReceiptNotFound):
        await store.get_by_id("missing", caller_id="user_a")
    with pytest.raises(Unauthorized):
        await store.get_by_id(receipt.id, caller_id="user_b")
    with pytest.raises(Unauthorized):
        await store.get_by_id(receipt.id, caller_id=None)


@pytest.mark.asyncio
async def test_list_by_owner_is_newest_first_and_scoped(make_receipt, store, session_factory):
    older = await make_receipt(name="old.pdf")
    newer = await make_receipt(name="new.pdf")
    await make_receipt(owner="user_b", name="other.pdf")
    async with session_factory() as session:
        row = await session.get(Receipt, older.id)
        row.uploaded_at = dt.datetime.now(dt.timezone.utc) - dt.timedelta(hours=1)
        await session.commit()

    receipts = await store.list_by_owner("user_a")
    assert [r.id for r in receipts] == [newer.id, older.id]


@pytest.mark.asyncio
async def test_patch_extracted_fields_sets_everything_and_processed(make_receipt, store):
    receipt = await make_receipt()
    updated = await store.patch_extracted_fields(receipt.id, _fields(), caller_id="user_a")
    assert updated.status == ReceiptStatus.PROCESSED
    assert all(getattr(updated, col) is not None for col in EXTRACTED_FIELDS)
    assert updated.items == [{"name": "Latte", "quantity": 2.0, "unitPrice": 4.5, "totalPrice": 9.0}]


@pytest.mark.asyncio
async def test_non_owner_commit_leaves_receipt_untouched(make_receipt, store):
    receipt = await make_receipt()
    with pytest.raises(Unauthorized):
        await store.patch_extracted_fields(receipt.id, _fields(), caller_id="user_b")
    fetched = await store.get_by_id(receipt.id, caller_id="user_a")
    assert fetched.status == ReceiptStatus.PENDING
    assert fetched.merchant_name is None


@pytest.mark.asyncio
async def test_patch_status_cannot_skip_extraction(make_receipt, store):
    receipt = await make_receipt()
    with pytest.raises(InvalidStatusTransition):
        await store.patch_status(receipt.id, ReceiptStatus.PROCESSED, caller_id="user_a")
    same = await store.patch_status(receipt.id, ReceiptStatus.PENDING, caller_id="user_a")
    assert same.status == ReceiptStatus.PENDING
    with pytest.raises(Unauthorized):
        await store.patch_status(receipt.id, ReceiptStatus.PENDING, caller_id="user_b")


@pytest.mark.asyncio
async def test_processed_receipt_never_returns_to_pending(make_receipt, store):
    receipt = await make_receipt()
    await store.patch_extracted_fields(receipt.id, _fields(), caller_id="user_a")
    with pytest.raises(InvalidStatusTransition):
        await store.patch_status(receipt.id, ReceiptStatus.PENDING, caller_id="user_a")
    fetched = await store.get_by_id(receipt.id, caller_id="user_a")
    assert fetched.status == ReceiptStatus.PROCESSED


def test_row_guards_owner_and_status():
    receipt = Receipt(owner_id="user_a", file_id="f", file_name="f.pdf", mime_type="application/pdf", size=1)
    receipt.status = ReceiptStatus.PROCESSED
    with pytest.raises(InvalidStatusTransition):
        receipt.status = ReceiptStatus.PENDING
    with pytest.raises(ValueError):
        receipt.owner_id = "user_b"


@pytest.mark.asyncio
async def test_delete_by_non_owner_keeps_record_and_file(make_receipt, store, storage):
    receipt = await make_receipt()
    with pytest.raises(Unauthorized):
        await store.delete(receipt.id, caller_id="user_b")
    assert await storage.exists(receipt.file_id)
    assert (await store.get_by_id(receipt.id, caller_id="user_a")).id == receipt.id


@pytest.mark.asyncio
async def test_delete_removes_file_then_record(make_receipt, store, storage):
    receipt = await make_receipt()
    await store.delete(receipt.id, caller_id="user_a")
    assert not await storage.exists(receipt.file_id)
    with pytest.raises(ReceiptNotFound):
        await store.get_by_id(receipt.id, caller_id="user_a")


@pytest.mark.asyncio
async def test_delete_keeps_record_when_file_delete_fails(make_receipt, store, storage, monkeypatch):
    receipt = await make_receipt()

    async def refuse(file_id):
        raise OSError("permission denied")

    monkeypatch.setattr(storage, "delete", refuse)
    with pytest.raises(DeleteFailed):
        await store.delete(receipt.id, caller_id="user_a")
    assert (await store.get_by_id(receipt.id, caller_id="user_a")).id == receipt.id


@pytest.mark.asyncio
async def test_download_url_for_existing_and_missing_file(make_receipt, store, storage):
    receipt = await make_receipt()
    url = await store.get_download_url(receipt.id, caller_id="user_a")
    assert "/files/" in url and "sig=" in url and "exp=" in url

    storage.get_full_path(receipt.file_id).unlink()
    with pytest.raises(FileNotFoundInStorage):
        await store.get_download_url(receipt.id, caller_id="user_a")
