from __future__ import annotations

import pytest

from fakes import BrokenMeter, CountingExtraction, CountingPersistence, FakeReader, FlakyStore
from sqlalchemy.ext.asyncio import AsyncSession

from receiptflow.models.enums import ReceiptStatus, RunStatus
from receiptflow.models.schemas import UploadCompletedEvent
from receiptflow.models.tables import EXTRACTED_FIELDS
from receiptflow.services.extraction_service import ReceiptExtractionStage
from receiptflow.services.persistence_service import ReceiptPersistenceStage
from receiptflow.services.pipeline import EXTRACT_STEP, PipelineCoordinator, metering_hook
from receiptflow.services.step_executor import InMemoryStepExecutor
from receiptflow.services.usage_service import UsageMeter


def _coordinator(store, reader=None, persistence_store=None, hooks=(), executor=None):
    extraction = CountingExtraction(ReceiptExtractionStage(reader or FakeReader()))
    persistence = CountingPersistence(ReceiptPersistenceStage(persistence_store or store))
    coordinator = PipelineCoordinator(
        extraction=extraction,
        persistence=persistence,
        executor=executor or InMemoryStepExecutor(),
        post_commit_hooks=hooks,
    )
    return coordinator, extraction, persistence


def _event(receipt, owner="user_a"):
    return UploadCompletedEvent(receipt_id=receipt.id, file_url=f"https://store/{receipt.id}.pdf", owner_id=owner)


@pytest.mark.asyncio
async def test_full_draft_is_processed_and_metered(make_receipt, store, session_factory):
    receipt = await make_receipt()
    meter = UsageMeter(session_factory)
    coordinator, extraction, persistence = _coordinator(store, hooks=[metering_hook(meter)])

    outcome = await coordinator.run(_event(receipt), run_id="run-1")

    assert outcome.status == RunStatus.COMPLETED
    assert outcome.completed
    saved = await store.get_by_id(receipt.id, caller_id="user_a")
    assert saved.status == ReceiptStatus.PROCESSED
    assert len(saved.items) == 3
    assert extraction.calls == 1 and persistence.calls == 1
    assert await meter.count("user_a") == 1


@pytest.mark.asyncio
async def test_extraction_failure_aborts_before_persistence(make_receipt, store):
    receipt = await make_receipt()
    coordinator, _, persistence = _coordinator(store, reader=FakeReader(RuntimeError("unreadable document")))

    outcome = await coordinator.run(_event(receipt), run_id="run-1")

    assert outcome.status == RunStatus.ABORTED
    assert outcome.reason == "unreadable document"
    assert outcome.retryable
    assert persistence.calls == 0
    assert (await store.get_by_id(receipt.id, caller_id="user_a")).status == ReceiptStatus.PENDING


@pytest.mark.asyncio
async def test_write_failure_aborts_and_leaves_receipt_pending(make_receipt, store, session_factory):
    receipt = await make_receipt()
    meter = UsageMeter(session_factory)
    coordinator, _, _ = _coordinator(store, persistence_store=FlakyStore(store), hooks=[metering_hook(meter)])

    outcome = await coordinator.run(_event(receipt), run_id="run-1")

    assert outcome.status == RunStatus.ABORTED
    assert outcome.reason == "connection reset"
    assert outcome.retryable
    saved = await store.get_by_id(receipt.id, caller_id="user_a")
    assert saved.status == ReceiptStatus.PENDING
    assert all(getattr(saved, col) is None for col in EXTRACTED_FIELDS)
    assert await meter.count("user_a") == 0


@pytest.mark.asyncio
async def test_retry_after_write_failure_reuses_the_draft(make_receipt, store):
    receipt = await make_receipt()
    executor = InMemoryStepExecutor()
    reader = FakeReader()
    coordinator, extraction, persistence = _coordinator(
        store, reader=reader, persistence_store=FlakyStore(store), executor=executor
    )

    first = await coordinator.run(_event(receipt), run_id="run-1")
    second = await coordinator.run(_event(receipt), run_id="run-1")

    assert first.status == RunStatus.ABORTED
    assert second.status == RunStatus.COMPLETED
    assert extraction.calls == 1
    assert len(reader.calls) == 1
    assert persistence.calls == 2
    assert executor.calls[("run-1", EXTRACT_STEP)] == 1


@pytest.mark.asyncio
async def test_reentry_after_persistence_runs_no_stage(make_receipt, store, session_factory):
    receipt = await make_receipt()
    executor = InMemoryStepExecutor()
    meter = UsageMeter(session_factory)
    coordinator, extraction, persistence = _coordinator(store, executor=executor, hooks=[metering_hook(meter)])

    await coordinator.run(_event(receipt), run_id="run-1")
    again = await coordinator.run(_event(receipt), run_id="run-1")

    assert again.status == RunStatus.COMPLETED
    assert extraction.calls == 1
    assert persistence.calls == 1
    assert await meter.count("user_a") == 1
    state = await executor.load_state("run-1")
    assert state["persisted"] is True
    assert state["saved_receipt_id"] == receipt.id
    assert state["attempts"] == 2
    assert state["history"] == ["started", "extracting", "persisting", "completed"]


@pytest.mark.asyncio
async def test_duplicate_event_rewrites_identical_record(make_receipt, store):
    receipt = await make_receipt()
    coordinator, _, persistence = _coordinator(store)

    await coordinator.run(_event(receipt), run_id="run-1")
    first = await store.get_by_id(receipt.id, caller_id="user_a")
    snapshot = {col: getattr(first, col) for col in EXTRACTED_FIELDS}

    outcome = await coordinator.run(_event(receipt), run_id="run-2")
    second = await store.get_by_id(receipt.id, caller_id="user_a")

    assert outcome.completed
    assert persistence.calls == 2
    assert second.status == ReceiptStatus.PROCESSED
    assert {col: getattr(second, col) for col in EXTRACTED_FIELDS} == snapshot


@pytest.mark.asyncio
async def test_unknown_or_foreign_receipt_is_not_retried(make_receipt, store):
    receipt = await make_receipt()
    coordinator, _, _ = _coordinator(store)

    foreign = await coordinator.run(_event(receipt, owner="user_b"), run_id="run-1")
    assert foreign.status == RunStatus.ABORTED
    assert not foreign.retryable

    missing = await coordinator.run(
        UploadCompletedEvent(receipt_id="gone", file_url="https://store/gone.pdf", owner_id="user_a"),
        run_id="run-2",
    )
    assert missing.reason == "Receipt not found"
    assert not missing.retryable
    assert (await store.get_by_id(receipt.id, caller_id="user_a")).status == ReceiptStatus.PENDING


@pytest.mark.asyncio
async def test_metering_failure_does_not_change_outcome(make_receipt, store):
    receipt = await make_receipt()
    broken = BrokenMeter()
    coordinator, _, _ = _coordinator(store, hooks=[metering_hook(broken)])

    outcome = await coordinator.run(_event(receipt), run_id="run-1")

    assert broken.calls == 1
    assert outcome.completed
    assert (await store.get_by_id(receipt.id, caller_id="user_a")).status == ReceiptStatus.PROCESSED


@pytest.mark.asyncio
async def test_runs_record_their_state_history(make_receipt, store):
    receipt = await make_receipt()
    executor = InMemoryStepExecutor()
    coordinator, _, _ = _coordinator(store, executor=executor)

    await coordinator.run(_event(receipt), run_id="run-1")

    state = await executor.load_state("run-1")
    assert state["history"] == ["started", "extracting", "persisting", "completed"]


@pytest.mark.asyncio
async def test_event_without_owner_commits_for_the_stored_owner(make_receipt, store, session_factory):
    receipt = await make_receipt()
    meter = UsageMeter(session_factory)
    coordinator, _, _ = _coordinator(store, hooks=[metering_hook(meter)])
    event = UploadCompletedEvent.model_validate({"receiptId": receipt.id, "fileUrl": f"https://store/{receipt.id}.pdf"})

    outcome = await coordinator.run(event, run_id="run-1")

    assert outcome.completed
    saved = await store.get_by_id(receipt.id, caller_id="user_a")
    assert saved.status == ReceiptStatus.PROCESSED
    assert saved.merchant_name == "Corner Cafe"
    assert await meter.count("user_a") == 1


@pytest.mark.asyncio
async def test_failed_database_commit_leaves_no_fields_behind(make_receipt, store, monkeypatch):
    receipt = await make_receipt()
    coordinator, _, _ = _coordinator(store)

    async def _commit_fails(self):
        raise ConnectionError("database went away")

    monkeypatch.setattr(AsyncSession, "commit", _commit_fails)
    outcome = await coordinator.run(_event(receipt), run_id="run-1")
    monkeypatch.undo()

    assert outcome.status == RunStatus.ABORTED
    assert outcome.reason == "database went away"
    assert outcome.retryable
    saved = await store.get_by_id(receipt.id, caller_id="user_a")
    assert saved.status == ReceiptStatus.PENDING
    assert all(getattr(saved, col) is None for col in EXTRACTED_FIELDS)
