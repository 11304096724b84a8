"""
Batch runner for a single pipeline stage.

A run walks the stage's candidates in order, claims the stage lock for each
page, hands it to the stage processor and always releases the lock again.
It stops when ``limit`` candidates were handled, when no candidates are left,
or at the first fatal failure (generation service unreachable).
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog
from structlog.contextvars import bound_contextvars

from pageflow.errors import ErrorKind, PageNotFoundError, UnknownStageError
from pageflow.locking.manager import StageLockManager
from pageflow.observability import metrics
from pageflow.observability.events import BATCH_ABORTED, CANDIDATE_FINISHED, NullEventSink
from pageflow.protocols import (
    Candidate,
    CandidateFailure,
    EventSink,
    FatalFailure,
    StageOutcome,
    StageProcessor,
    Success,
)
from pageflow.scheduling.candidates import CandidateSelector, Cursor
from pageflow.stages import StageRegistry

logger = structlog.get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


@dataclass
class BatchReport:
    """Counters and outcome of one batch run."""

    stage: str
    run_id: str = field(default_factory=lambda: uuid4().hex[:12])
    processed: int = 0
    failed: int = 0
    skipped_locked: int = 0
    skipped_ineligible: int = 0
    aborted: bool = False
    abort_reason: Optional[str] = None
    failures: List[Tuple[int, ErrorKind, int]] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def attempted(self) -> int:
        """Candidates handed out by the selector, whatever became of them."""
        return self.processed + self.failed + self.skipped_locked

    @property
    def exit_code(self) -> int:
        return EXIT_FAILURE if self.failed or self.aborted else EXIT_SUCCESS

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "run_id": self.run_id,
            "processed": self.processed,
            "failed": self.failed,
            "skipped_locked": self.skipped_locked,
            "skipped_ineligible": self.skipped_ineligible,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "failures": [
                {"page_id": page_id, "kind": kind.value, "attempts": attempts}
                for page_id, kind, attempts in self.failures
            ],
            "duration_seconds": round(self.duration_seconds, 3),
            "exit_code": self.exit_code,
        }


class StageBatchRunner:
    """Drive candidate selection, locking and processing for one stage."""

    def __init__(
        self,
        selector: CandidateSelector,
        locks: StageLockManager,
        registry: StageRegistry,
        processors: Dict[str, StageProcessor],
        events: Optional[EventSink] = None,
    ) -> None:
        self.selector = selector
        self.locks = locks
        self.registry = registry
        self.processors = processors
        self.events: EventSink = events or NullEventSink()

    def processor_for(self, stage: str) -> StageProcessor:
        try:
            return self.processors[stage]
        except KeyError:
            raise UnknownStageError(stage, list(self.processors)) from None

    async def run(
        self,
        stage: str,
        *,
        limit: int = 50,
        domain: Optional[str] = None,
        resource_id: Optional[int] = None,
        force: bool = False,
        max_attempts: int = 3,
        sleep_ms: int = 0,
    ) -> BatchReport:
        """
        Run ``stage`` over up to ``limit`` candidates.

        Args:
            stage: Stage name.
            limit: Maximum number of candidates handed out (processed, failed
                or skipped because locked).
            domain: Only consider pages of this domain.
            resource_id: Process exactly this page, bypassing the selector's
                ordering. An ineligible page is reported as skipped.
            force: Reprocess pages whose stage output already exists.
            max_attempts: Generator calls per candidate.
            sleep_ms: Pause between retries of one candidate.

        Raises:
            UnknownStageError: ``stage`` has no definition or processor.
            PageNotFoundError: ``resource_id`` does not exist.
        """
        definition = self.registry.get(stage)
        processor = self.processor_for(stage)
        report = BatchReport(stage=stage)

        with bound_contextvars(run_id=report.run_id, stage=stage):
            logger.info(
                "Batch started",
                limit=limit,
                domain=domain,
                resource_id=resource_id,
                force=force,
                max_attempts=max_attempts,
            )

            if resource_id is not None:
                candidate = await self.selector.get(resource_id, definition, force=force)
                if candidate is None:
                    raise PageNotFoundError(resource_id)
                if not candidate.eligible:
                    report.skipped_ineligible += 1
                    self._finished(candidate, "skipped_ineligible")
                else:
                    await self._handle(candidate, processor, report, max_attempts, sleep_ms)
            else:
                cursor = Cursor()
                while report.attempted < limit:
                    candidate = await self.selector.next(cursor, definition, domain=domain, force=force)
                    if candidate is None:
                        logger.info("No more candidates")
                        break
                    await self._handle(candidate, processor, report, max_attempts, sleep_ms)
                    if report.aborted:
                        break

            report.finished_at = time.time()
            metrics.increment(
                "batches_total",
                labels={"stage": stage, "status": "aborted" if report.aborted else ("failed" if report.failed else "ok")},
            )
            logger.info("Batch finished", **report.to_dict())
        return report

    async def _handle(
        self,
        candidate: Candidate,
        processor: StageProcessor,
        report: BatchReport,
        max_attempts: int,
        sleep_ms: int,
    ) -> None:
        stage = candidate.stage
        if not await self.locks.acquire(candidate.page_id, stage):
            report.skipped_locked += 1
            self._finished(candidate, "skipped_locked")
            return

        try:
            outcome = await self._process(candidate, processor, max_attempts, sleep_ms)
        finally:
            await self.locks.release(candidate.page_id, stage)

        if isinstance(outcome, Success):
            report.processed += 1
            self._finished(candidate, "processed", attempts=outcome.attempts)
        elif isinstance(outcome, FatalFailure):
            report.aborted = True
            report.abort_reason = outcome.message or outcome.kind.value
            self._finished(candidate, "aborted", kind=outcome.kind.value)
            self.events.emit(
                BATCH_ABORTED, page_id=candidate.page_id, stage=stage, kind=outcome.kind.value, message=outcome.message
            )
        else:
            report.failed += 1
            report.failures.append((candidate.page_id, outcome.kind, outcome.attempts))
            self._finished(
                candidate,
                "failed",
                kind=outcome.kind.value,
                last_error=outcome.last_error.value if outcome.last_error else None,
                attempts=outcome.attempts,
            )

    async def _process(
        self, candidate: Candidate, processor: StageProcessor, max_attempts: int, sleep_ms: int
    ) -> StageOutcome:
        try:
            return await processor.process(candidate, max_attempts=max_attempts, sleep_ms=sleep_ms)
        except PageNotFoundError as e:
            # Deleted by someone else between selection and persistence.
            return CandidateFailure(kind=ErrorKind.MISSING_INPUT, message=str(e))

    def _finished(self, candidate: Candidate, status: str, **fields: Any) -> None:
        self.events.emit(CANDIDATE_FINISHED, page_id=candidate.page_id, stage=candidate.stage, status=status, **fields)
