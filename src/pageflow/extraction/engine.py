"""
Retry/validation loop for generator-backed stages.

For one locked candidate the engine repeatedly asks the generator for an
answer, recovers JSON from it, checks the required keys and lets the stage
normalize the values. Each attempt ends in one of three ways:

* ``Success``: the normalized fields are written together with the stage
  timestamp in a single update;
* ``RetryableFailure``: bad HTTP status, empty or unparsable answer, missing
  key, wrong shape. The engine sleeps and tries again until ``max_attempts``
  is used up (no sleep after the last attempt);
* ``FatalFailure``: the service is unreachable. The engine stops at once
  without sleeping; the caller aborts the whole batch.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import aiofiles
import aiohttp
import structlog

from pageflow.errors import ErrorKind, GeneratorUnavailableError, MissingRequiredKeyError, ValidationShapeError
from pageflow.observability.events import ATTEMPT_FAILED, ATTEMPT_STARTED, ATTEMPT_SUCCEEDED, NullEventSink
from pageflow.parsing.json_recovery import ResilientJsonParser
from pageflow.protocols import (
    AttemptOutcome,
    Candidate,
    CandidateFailure,
    EventSink,
    ExtractionAttempt,
    FatalFailure,
    GenerationError,
    Generator,
    RetryableFailure,
    StageOutcome,
    Success,
)
from pageflow.stages.base import GeneratorStage
from pageflow.storage.page_store import PageStore

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

TRANSPORT_ERRORS = (GeneratorUnavailableError, OSError, asyncio.TimeoutError, aiohttp.ClientError)


class ExtractionRetryEngine:
    """Run one generator stage for one candidate with bounded retries."""

    def __init__(
        self,
        stage: GeneratorStage,
        generator: Generator,
        store: PageStore,
        *,
        parser: Optional[ResilientJsonParser] = None,
        events: Optional[EventSink] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        assets_dir: Optional[Path] = None,
        model: Optional[str] = None,
    ) -> None:
        self.stage = stage
        self.generator = generator
        self.store = store
        self.parser = parser or ResilientJsonParser()
        self.events: EventSink = events or NullEventSink()
        self.sleep = sleep
        self.clock = clock
        self.assets_dir = assets_dir
        self.model = model

    async def process(self, candidate: Candidate, *, max_attempts: int = 3, sleep_ms: int = 0) -> StageOutcome:
        """
        Process ``candidate`` through the stage.

        Args:
            candidate: A page the caller holds the stage lock for.
            max_attempts: Generator calls allowed for this candidate.
            sleep_ms: Pause between a failed attempt and the next one.

        Returns:
            ``Success`` after the output was persisted, ``CandidateFailure``
            when the candidate could not be processed, or ``FatalFailure``
            when the generator is unreachable.
        """
        page = candidate.page
        max_attempts = max(1, max_attempts)

        image: Optional[bytes] = None
        if self.stage.uses_image:
            image_path = self.stage.image_path(page, self.assets_dir)
            try:
                if image_path is None:
                    raise FileNotFoundError("page has no screenshot")
                async with aiofiles.open(image_path, "rb") as f:
                    image = await f.read()
            except OSError as e:
                logger.warning("Screenshot unavailable", page_id=page.id, stage=self.stage.name, error=str(e))
                return CandidateFailure(kind=ErrorKind.MISSING_INPUT, message=str(e), attempts=0)

        user_content = self.stage.build_user_content(page)
        options: Dict[str, Any] = {
            "response_format": self.stage.response_format,
            "stage": self.stage.name,
            "page_id": page.id,
        }
        if self.model:
            options["model"] = self.model

        attempt = ExtractionAttempt()
        while attempt.number < max_attempts:
            number = attempt.next()
            self.events.emit(ATTEMPT_STARTED, page_id=page.id, stage=self.stage.name, attempt=number)

            outcome = await self._attempt(user_content, image, options, number)

            if isinstance(outcome, Success):
                completed_at = await self._persist(page.id, outcome.fields)
                self.events.emit(ATTEMPT_SUCCEEDED, page_id=page.id, stage=self.stage.name, attempt=number)
                return Success(fields=outcome.fields, attempts=number, completed_at=completed_at)

            self.events.emit(
                ATTEMPT_FAILED,
                page_id=page.id,
                stage=self.stage.name,
                attempt=number,
                kind=outcome.kind.value,
                message=outcome.message,
            )

            if isinstance(outcome, FatalFailure):
                return FatalFailure(kind=outcome.kind, message=outcome.message, attempts=number)

            attempt.record(outcome.kind)
            if number < max_attempts and sleep_ms > 0:
                await self.sleep(sleep_ms / 1000.0)

        return CandidateFailure(
            kind=ErrorKind.ATTEMPTS_EXHAUSTED,
            message=f"No valid answer after {attempt.number} attempts",
            attempts=attempt.number,
            last_error=attempt.last_error,
        )

    async def _attempt(
        self,
        user_content: str,
        image: Optional[bytes],
        options: Dict[str, Any],
        number: int,
    ) -> AttemptOutcome:
        try:
            result = await self.generator.generate(self.stage.system_prompt, user_content, image, options)
        except TRANSPORT_ERRORS as e:
            return FatalFailure(kind=ErrorKind.TRANSPORT_UNAVAILABLE, message=str(e) or e.__class__.__name__)

        if result is None:
            return FatalFailure(kind=ErrorKind.TRANSPORT_UNAVAILABLE, message="generator returned no response")

        if isinstance(result, GenerationError):
            if not result.has_status:
                return FatalFailure(kind=ErrorKind.TRANSPORT_UNAVAILABLE, message=result.message)
            return RetryableFailure(
                kind=ErrorKind.HTTP_ERROR,
                message=f"HTTP {result.status}: {result.message}",
                attempt=number,
            )

        content = result.content or ""
        if not content.strip():
            return RetryableFailure(kind=ErrorKind.EMPTY_RESPONSE, message="empty assistant content", attempt=number)

        parsed = self.parser.parse(content)
        if parsed is None:
            return RetryableFailure(kind=ErrorKind.INVALID_JSON, message=content[:400], attempt=number)

        missing = self.parser.missing_keys(parsed, self.stage.required_keys)
        if missing:
            return RetryableFailure(
                kind=ErrorKind.MISSING_REQUIRED_KEY,
                message=f"missing keys: {', '.join(missing)}",
                attempt=number,
            )

        try:
            fields = self.stage.normalize(parsed)  # type: ignore[arg-type]
        except MissingRequiredKeyError as e:
            return RetryableFailure(kind=ErrorKind.MISSING_REQUIRED_KEY, message=str(e), attempt=number)
        except ValidationShapeError as e:
            return RetryableFailure(kind=ErrorKind.VALIDATION_SHAPE_ERROR, message=str(e), attempt=number)

        return Success(fields=fields, attempts=number)

    async def _persist(self, page_id: int, fields: Dict[str, Any]) -> float:
        at = self.clock()
        stamps = {name: at for name in self.stage.also_stamps}
        return await self.store.complete_stage(page_id, {**fields, **stamps}, self.stage.timestamp_field, at)
