"""Receipt processing pipeline coordinator.

One run is started per upload-completed event and drives exactly two
stages, strictly in sequence::

    Started -> Extracting -> Persisting -> Completed
                   |             |
                   +-------------+--> Aborted(reason)

The coordinator owns the run's routing state (``RunState``) and passes
what each stage needs explicitly; stages never see each other.  The state
is saved through the step executor after every transition so that when
the worker substrate re-invokes a run (same run id) the coordinator can
tell that persistence already succeeded and finish without re-extracting.

Extraction is executed as a memoized step: a retry after a failed commit
reuses the recorded draft instead of calling the model again.  The commit
itself is not memoized; it is idempotent (last write wins).

Post-commit hooks (usage metering) run only after a successful commit and
can never change the run's outcome.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from receiptflow.core.errors import ExtractionFailed
from receiptflow.core.observability import sentry_breadcrumb, sentry_metric_inc
from receiptflow.models.enums import RunStatus, UsageEventType
from receiptflow.models.schemas import ReceiptDraft, UploadCompletedEvent
from receiptflow.services.extraction_service import ExtractionStage
from receiptflow.services.persistence_service import PersistenceResult, PersistenceStage
from receiptflow.services.step_executor import StepExecutor
from receiptflow.services.usage_service import UsageMeter

logger = logging.getLogger(__name__)

EXTRACT_STEP = "parse-pdf"

PostCommitHook = Callable[[PersistenceResult], Awaitable[Any]]


@dataclass(frozen=True)
class RunOutcome:
    """Final record of a run."""

    run_id: str
    receipt_id: str
    status: RunStatus
    reason: Optional[str] = None
    retryable: bool = False

    @property
    def completed(self) -> bool:
        return self.status == RunStatus.COMPLETED


@dataclass
class RunState:
    """Routing state shared across the stages of one run."""

    run_id: str
    receipt_id: str
    file_url: str
    owner_id: Optional[str] = None
    status: RunStatus = RunStatus.STARTED
    persisted: bool = False
    saved_receipt_id: Optional[str] = None
    reason: Optional[str] = None
    retryable: bool = False
    attempts: int = 0
    history: list[str] = field(default_factory=list)

    def advance(self, status: RunStatus) -> None:
        self.status = status
        self.history.append(status.value)

    def outcome(self) -> RunOutcome:
        return RunOutcome(
            run_id=self.run_id,
            receipt_id=self.receipt_id,
            status=self.status,
            reason=self.reason,
            retryable=self.retryable,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunState":
        data = dict(data)
        data["status"] = RunStatus(data.get("status", RunStatus.STARTED))
        return cls(**data)


def metering_hook(meter: UsageMeter) -> PostCommitHook:
    """Post-commit hook that records a ``scan`` for the receipt owner."""

    async def _track(result: PersistenceResult) -> None:
        if result.owner_id:
            await meter.track(UsageEventType.SCAN, result.owner_id, receipt_id=result.receipt_id)

    return _track


class PipelineCoordinator:
    """Sequences extraction and persistence for a single receipt."""

    def __init__(
        self,
        extraction: ExtractionStage,
        persistence: PersistenceStage,
        executor: StepExecutor,
        post_commit_hooks: Sequence[PostCommitHook] = (),
    ) -> None:
        self._extraction = extraction
        self._persistence = persistence
        self._executor = executor
        self._hooks = tuple(post_commit_hooks)

    async def _load_or_start(self, run_id: str, event: UploadCompletedEvent) -> RunState:
        saved = await self._executor.load_state(run_id)
        if saved:
            state = RunState.from_dict(saved)
            logger.info("[pipeline] run=%s re-entered status=%s persisted=%s", run_id, state.status.value, state.persisted)
        else:
            state = RunState(
                run_id=run_id,
                receipt_id=event.receipt_id,
                file_url=event.file_url,
                owner_id=event.owner_id,
            )
            state.history.append(RunStatus.STARTED.value)
        state.attempts += 1
        return state

    async def _save(self, state: RunState) -> None:
        await self._executor.save_state(state.run_id, state.to_dict())

    async def _finish(self, state: RunState, status: RunStatus, reason: Optional[str] = None, retryable: bool = False) -> RunOutcome:
        state.advance(status)
        state.reason = reason
        state.retryable = retryable
        await self._save(state)
        outcome = state.outcome()
        log = logger.info if outcome.completed else logger.warning
        log(
            "[pipeline] run=%s receipt=%s finished status=%s reason=%s retryable=%s attempts=%d",
            state.run_id,
            state.receipt_id,
            status.value,
            reason,
            retryable,
            state.attempts,
        )
        sentry_metric_inc("pipeline.run", tags={"status": status.value, "retryable": retryable})
        sentry_breadcrumb(
            category="pipeline",
            message=f"run.{status.value}",
            data={"run_id": state.run_id, "receipt_id": state.receipt_id, "reason": reason},
        )
        return outcome

    async def _run_hooks(self, result: PersistenceResult) -> None:
        for hook in self._hooks:
            try:
                await hook(result)
            except Exception as exc:
                logger.error("[pipeline] post-commit hook failed receipt=%s: %s", result.receipt_id, exc)

    async def run(self, event: UploadCompletedEvent, run_id: Optional[str] = None) -> RunOutcome:
        """Execute (or resume) the run for ``event`` and return its outcome."""
        run_id = run_id or uuid.uuid4().hex
        started = time.monotonic()
        state = await self._load_or_start(run_id, event)
        sentry_breadcrumb(category="pipeline", message="run.start", data={"run_id": run_id, "receipt_id": state.receipt_id})

        if state.persisted:
            # Already committed on an earlier attempt of this run
            await self._save(state)
            logger.info("[pipeline] run=%s receipt=%s already completed attempts=%d", run_id, state.receipt_id, state.attempts)
            return state.outcome()

        state.advance(RunStatus.EXTRACTING)
        await self._save(state)

        async def _extract() -> Dict[str, Any]:
            draft = await self._extraction.extract(state.receipt_id, state.file_url)
            return draft.model_dump(mode="json")

        try:
            draft_data = await self._executor.step(run_id, EXTRACT_STEP, _extract)
        except ExtractionFailed as exc:
            return await self._finish(state, RunStatus.ABORTED, reason=exc.reason, retryable=True)
        draft = ReceiptDraft.model_validate(draft_data)

        state.advance(RunStatus.PERSISTING)
        await self._save(state)
        result = await self._persistence.commit(state.receipt_id, draft, caller_id=state.owner_id)
        if not result.succeeded:
            return await self._finish(state, RunStatus.ABORTED, reason=result.reason, retryable=not result.fatal)

        state.persisted = True
        state.saved_receipt_id = result.receipt_id
        outcome = await self._finish(state, RunStatus.COMPLETED)
        await self._run_hooks(result)
        logger.info("[pipeline] run=%s duration_ms=%d", run_id, int((time.monotonic() - started) * 1000))
        return outcome
