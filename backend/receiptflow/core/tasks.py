"""Dramatiq task definitions for background processing.

Receipt processing (extraction with a language model, then persistence)
runs outside the request path.  The upload endpoint enqueues one
``process_uploaded_receipt`` message per upload-completed event; a
Dramatiq worker picks it up and drives the pipeline coordinator.

The Dramatiq message id is used as the pipeline run id.  A retried
message keeps its id, so the coordinator resumes the same run: a draft
that was already extracted is replayed from the step store and a run
that already persisted finishes without doing any work.

To run these tasks start a worker pointed at the worker module:

```bash
dramatiq receiptflow.worker --processes 1 --threads 4
```

The broker URL defaults to ``REDIS_URL``.  You can override it via the
``DRAMATIQ_BROKER_URL`` environment variable.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import dramatiq
from dramatiq.brokers.redis import RedisBroker
from dramatiq.middleware import AgeLimit, CurrentMessage, ShutdownNotifications, TimeLimit
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from receiptflow.core.config import get_broker_url, settings
from receiptflow.core.database import make_engine, make_session_factory
from receiptflow.core.observability import sentry_breadcrumb, sentry_metric_inc
from receiptflow.models.schemas import UploadCompletedEvent
from receiptflow.services.extraction_service import DocumentReader, OpenAIDocumentReader, ReceiptExtractionStage
from receiptflow.services.persistence_service import ReceiptPersistenceStage
from receiptflow.services.pipeline import PipelineCoordinator, RunOutcome, metering_hook
from receiptflow.services.receipt_store import ReceiptStore
from receiptflow.services.step_executor import RedisStepExecutor, StepExecutor
from receiptflow.services.storage_service import StorageService, get_storage
from receiptflow.services.usage_service import UsageMeter

logger = logging.getLogger(__name__)


class PipelineRunError(Exception):
    """Raised from the actor so Dramatiq retries a retryable abort."""

    def __init__(self, outcome: RunOutcome) -> None:
        super().__init__(f"run {outcome.run_id} aborted: {outcome.reason}")
        self.outcome = outcome


def _has_mw(broker: dramatiq.Broker, mw_cls: type) -> bool:
    return any(isinstance(m, mw_cls) for m in broker.middleware)


broker = RedisBroker(url=get_broker_url())
for _mw in (AgeLimit, TimeLimit, ShutdownNotifications, CurrentMessage):
    if not _has_mw(broker, _mw):
        broker.add_middleware(_mw())
dramatiq.set_broker(broker)


def should_retry(retries_so_far: int, exception: BaseException) -> bool:
    """Retry predicate for ``process_uploaded_receipt``.

    Only retryable pipeline aborts and unexpected infrastructure errors are
    retried, up to ``PIPELINE_MAX_RETRIES`` times.
    """
    if retries_so_far >= settings.PIPELINE_MAX_RETRIES:
        return False
    if isinstance(exception, PipelineRunError):
        return exception.outcome.retryable
    return True


def build_coordinator(
    session_factory: async_sessionmaker[AsyncSession],
    executor: StepExecutor,
    reader: Optional[DocumentReader] = None,
    storage: Optional[StorageService] = None,
) -> PipelineCoordinator:
    """Wire the production stages around ``session_factory``."""
    store = ReceiptStore(session_factory, storage or get_storage())
    return PipelineCoordinator(
        extraction=ReceiptExtractionStage(reader or OpenAIDocumentReader()),
        persistence=ReceiptPersistenceStage(store),
        executor=executor,
        post_commit_hooks=[metering_hook(UsageMeter(session_factory))],
    )


async def _run_pipeline(event: UploadCompletedEvent, run_id: str) -> RunOutcome:
    # Each actor call gets its own event loop, so the engine and Redis
    # client are scoped to this coroutine.
    engine = make_engine()
    executor = RedisStepExecutor()
    try:
        coordinator = build_coordinator(make_session_factory(engine), executor)
        return await coordinator.run(event, run_id=run_id)
    finally:
        await executor.close()
        await engine.dispose()


@dramatiq.actor(retry_when=should_retry, min_backoff=5000, max_backoff=60000, time_limit=settings.PIPELINE_TIME_LIMIT_MS)
def process_uploaded_receipt(event: Dict[str, Any]):
    """Background task that extracts and persists one uploaded receipt."""
    payload = UploadCompletedEvent.model_validate(event)
    message = CurrentMessage.get_current_message()
    run_id = message.message_id if message else payload.receipt_id
    start_time = time.time()
    sentry_breadcrumb(category="task", message="process_uploaded_receipt.start", data={"receipt_id": payload.receipt_id, "run_id": run_id})

    outcome = asyncio.run(_run_pipeline(payload, run_id))

    duration_ms = int((time.time() - start_time) * 1000)
    sentry_metric_inc("task.process_uploaded_receipt", tags={"status": outcome.status.value})
    if outcome.completed:
        logger.info("[task] receipt=%s processed run=%s duration_ms=%d", payload.receipt_id, run_id, duration_ms)
        return
    if outcome.retryable:
        raise PipelineRunError(outcome)
    logger.error("[task] receipt=%s aborted permanently run=%s reason=%s", payload.receipt_id, run_id, outcome.reason)


def enqueue_upload_completed(event: UploadCompletedEvent) -> str:
    """Send an upload-completed event to the worker queue; returns the message id."""
    message = process_uploaded_receipt.send(event.model_dump(by_alias=True))
    logger.info("[task] enqueued receipt=%s message=%s", event.receipt_id, message.message_id)
    return message.message_id
