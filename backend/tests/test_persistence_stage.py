from __future__ import annotations

import pytest

from fakes import FlakyStore
from receiptflow.core.errors import PersistenceFailed
from receiptflow.models.enums import CommitOutcome, ReceiptStatus
from receiptflow.models.schemas import ReceiptDraft
from receiptflow.services.persistence_service import (
    ReceiptPersistenceStage,
    build_extracted_fields,
    compose_display_name,
    compose_summary,
)
from receiptflow.models.tables import EXTRACTED_FIELDS


def test_build_fields_composes_display_name_and_summary(full_draft):
    fields = build_extracted_fields(ReceiptDraft.model_validate(full_draft))
    assert fields.file_display_name == "Corner Cafe - 2024-03-02"
    assert fields.currency == "USD"
    assert fields.transaction_amount == 16.2
    assert "Receipt #A-17" in fields.receipt_summary
    assert "paid by Visa" in fields.receipt_summary
    assert "Latte x2" in fields.receipt_summary
    assert [i.totalPrice for i in fields.items] == [9.0, 3.25, 2.75]


def test_capability_supplied_names_win(full_draft):
    full_draft["displayName"] = "Cafe run"
    full_draft["summary"] = "Morning coffee"
    fields = build_extracted_fields(ReceiptDraft.model_validate(full_draft))
    assert fields.file_display_name == "Cafe run"
    assert fields.receipt_summary == "Morning coffee"


def test_optional_merchant_details_become_empty_strings(full_draft):
    full_draft["merchant"] = {"name": "Corner Cafe"}
    fields = build_extracted_fields(ReceiptDraft.model_validate(full_draft))
    assert fields.merchant_address == ""
    assert fields.merchant_contact == ""


def test_incomplete_draft_names_missing_fields(full_draft):
    del full_draft["totals"]["currency"]
    full_draft["items"][0].pop("unitPrice")
    with pytest.raises(PersistenceFailed) as exc_info:
        build_extracted_fields(ReceiptDraft.model_validate(full_draft))
    assert "totals.currency" in exc_info.value.reason
    assert "items[0].unit_price" in exc_info.value.reason


def test_compose_helpers_without_optional_parts():
    draft = ReceiptDraft.model_validate({"merchant": {"name": "Shop"}, "totals": {"total": 5, "currency": "EUR"}})
    assert compose_display_name(draft) == "Shop"
    assert compose_summary(draft).startswith("Shop.")


@pytest.mark.asyncio
async def test_commit_marks_processed_with_all_items(make_receipt, store, full_draft):
    receipt = await make_receipt()
    result = await ReceiptPersistenceStage(store).commit(receipt.id, ReceiptDraft.model_validate(full_draft), "user_a")
    assert result.outcome == CommitOutcome.SUCCESS
    assert result.owner_id == "user_a"
    saved = await store.get_by_id(receipt.id, caller_id="user_a")
    assert saved.status == ReceiptStatus.PROCESSED
    assert len(saved.items) == 3


@pytest.mark.asyncio
async def test_commit_twice_is_idempotent(make_receipt, store, full_draft):
    receipt = await make_receipt()
    stage = ReceiptPersistenceStage(store)
    draft = ReceiptDraft.model_validate(full_draft)
    await stage.commit(receipt.id, draft, "user_a")
    first = await store.get_by_id(receipt.id, caller_id="user_a")
    snapshot = {col: getattr(first, col) for col in EXTRACTED_FIELDS}

    result = await stage.commit(receipt.id, draft, "user_a")
    assert result.succeeded
    second = await store.get_by_id(receipt.id, caller_id="user_a")
    assert {col: getattr(second, col) for col in EXTRACTED_FIELDS} == snapshot
    assert second.status == ReceiptStatus.PROCESSED


@pytest.mark.asyncio
async def test_missing_receipt_is_fatal(store, full_draft):
    result = await ReceiptPersistenceStage(store).commit("gone", ReceiptDraft.model_validate(full_draft), "user_a")
    assert result.outcome == CommitOutcome.FAILED
    assert result.error_code == "receipt_not_found"
    assert result.fatal


@pytest.mark.asyncio
async def test_commit_without_caller_uses_stored_owner(make_receipt, store, full_draft):
    receipt = await make_receipt(owner="user_b")
    result = await ReceiptPersistenceStage(store).commit(receipt.id, ReceiptDraft.model_validate(full_draft), None)
    assert result.succeeded
    assert result.owner_id == "user_b"
    assert (await store.get_by_id(receipt.id, caller_id="user_b")).status == ReceiptStatus.PROCESSED


@pytest.mark.asyncio
async def test_commit_without_caller_for_missing_receipt_is_fatal(store, full_draft):
    result = await ReceiptPersistenceStage(store).commit("gone", ReceiptDraft.model_validate(full_draft), None)
    assert result.error_code == "receipt_not_found"
    assert result.fatal


@pytest.mark.asyncio
async def test_non_owner_commit_is_fatal_and_has_no_effect(make_receipt, store, full_draft):
    receipt = await make_receipt()
    result = await ReceiptPersistenceStage(store).commit(receipt.id, ReceiptDraft.model_validate(full_draft), "user_b")
    assert result.error_code == "unauthorized"
    assert result.fatal
    assert (await store.get_by_id(receipt.id, caller_id="user_a")).status == ReceiptStatus.PENDING


@pytest.mark.asyncio
async def test_write_error_is_reported_not_raised(make_receipt, store, full_draft):
    receipt = await make_receipt()
    stage = ReceiptPersistenceStage(FlakyStore(store))
    result = await stage.commit(receipt.id, ReceiptDraft.model_validate(full_draft), "user_a")
    assert result.outcome == CommitOutcome.FAILED
    assert result.reason == "connection reset"
    assert not result.fatal
    saved = await store.get_by_id(receipt.id, caller_id="user_a")
    assert saved.status == ReceiptStatus.PENDING
    assert all(getattr(saved, col) is None for col in EXTRACTED_FIELDS)


@pytest.mark.asyncio
async def test_incomplete_draft_fails_commit(make_receipt, store, full_draft):
    receipt = await make_receipt()
    del full_draft["merchant"]["name"]
    result = await ReceiptPersistenceStage(store).commit(receipt.id, ReceiptDraft.model_validate(full_draft), "user_a")
    assert result.error_code == "persistence_failed"
    assert not result.fatal
