"""
Core contracts and data structures for PageFlow.

Everything that crosses a module boundary lives here: the page record the
scheduler and stages read, the transient candidate view, the tagged outcomes
produced by stage processors, and the protocols for the pluggable
collaborators (lock store, generator, event sink).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union, runtime_checkable

from pageflow.errors import ErrorKind

# ============================================================================
# Resource records
# ============================================================================


@dataclass
class PageRecord:
    """A crawled page as stored in the ``pages`` table.

    Timestamps are UNIX epoch seconds. ``None`` means "never happened".
    """

    id: int
    url: str
    domain: Optional[str] = None
    title: Optional[str] = None
    meta_description: Optional[str] = None
    page_type: Optional[str] = None
    inbound_links_count: int = 0
    created_at: Optional[float] = None

    # crawl stage
    last_crawled_at: Optional[float] = None
    http_status: Optional[int] = None
    content_hash: Optional[str] = None
    content_length: Optional[int] = None
    content_text: Optional[str] = None
    screenshot_path: Optional[str] = None

    # product_type stage
    is_product: Optional[bool] = None
    is_product_available: Optional[bool] = None
    product_type: Optional[str] = None
    product_type_detected_at: Optional[float] = None

    # recap stage
    product_summary: Optional[str] = None
    product_summary_specs: Optional[str] = None
    product_abilities: Optional[str] = None
    product_predicted_search_text: Optional[str] = None
    recap_generated_at: Optional[float] = None

    # attributes stage
    json_attributes: Optional[Dict[str, Any]] = None
    product_original_article: Optional[str] = None
    product_model_number: Optional[str] = None
    attributes_extracted_at: Optional[float] = None
    product_metadata_extracted_at: Optional[float] = None

    _BOOL_COLUMNS = ("is_product", "is_product_available")

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> PageRecord:
        """Build a record from a database row, ignoring unknown columns."""
        known = {f.name for f in fields(cls)}
        data: Dict[str, Any] = {key: row[key] for key in row.keys() if key in known}

        for column in cls._BOOL_COLUMNS:
            if data.get(column) is not None:
                data[column] = bool(data[column])

        raw_attributes = data.get("json_attributes")
        if isinstance(raw_attributes, (str, bytes)):
            data["json_attributes"] = json.loads(raw_attributes) if raw_attributes else None

        if data.get("inbound_links_count") is None:
            data["inbound_links_count"] = 0

        return cls(**data)


@dataclass
class Candidate:
    """A page together with its eligibility for one stage."""

    page: PageRecord
    stage: str
    eligible: bool = True
    reason: Optional[str] = None

    @property
    def page_id(self) -> int:
        return self.page.id


@dataclass
class ExtractionAttempt:
    """Per-candidate attempt counter, alive for one engine invocation."""

    number: int = 0
    last_error: Optional[ErrorKind] = None
    errors: List[ErrorKind] = field(default_factory=list)

    def next(self) -> int:
        self.number += 1
        return self.number

    def record(self, kind: ErrorKind) -> None:
        self.last_error = kind
        self.errors.append(kind)


# ============================================================================
# Generator responses
# ============================================================================


@dataclass(frozen=True)
class GenerationContent:
    """Assistant text returned by the generation service."""

    content: str
    model: Optional[str] = None
    usage: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class GenerationError:
    """Error reported by the generation service.

    ``status`` is ``None`` (or ``0``) when no HTTP response was received.
    """

    status: Optional[int]
    message: str
    body: str = ""
    url: Optional[str] = None
    path: Optional[str] = None

    @property
    def has_status(self) -> bool:
        return bool(self.status)


GenerationResult = Union[GenerationContent, GenerationError]


# ============================================================================
# Stage outcomes
# ============================================================================


@dataclass(frozen=True)
class Success:
    """Stage output validated and persisted."""

    fields: Dict[str, Any]
    attempts: int = 1
    completed_at: Optional[float] = None


@dataclass(frozen=True)
class RetryableFailure:
    """A single attempt failed in a way that another attempt may fix."""

    kind: ErrorKind
    message: str = ""
    attempt: int = 0


@dataclass(frozen=True)
class FatalFailure:
    """The external dependency is unreachable; the whole batch must stop."""

    kind: ErrorKind
    message: str = ""
    attempts: int = 0


@dataclass(frozen=True)
class CandidateFailure:
    """The candidate could not be processed; the batch continues."""

    kind: ErrorKind
    message: str = ""
    attempts: int = 0
    last_error: Optional[ErrorKind] = None


AttemptOutcome = Union[Success, RetryableFailure, FatalFailure]
StageOutcome = Union[Success, CandidateFailure, FatalFailure]


# ============================================================================
# Collaborator protocols
# ============================================================================


@runtime_checkable
class LockStore(Protocol):
    """Atomic, expiring key store used for stage locks."""

    async def acquire(self, key: str, ttl_seconds: float) -> bool:
        """Claim ``key`` unless an unexpired claim exists. Never blocks."""
        ...

    async def release(self, key: str) -> None:
        """Drop the claim on ``key``. Idempotent."""
        ...

    async def is_held(self, key: str) -> bool:
        ...

    async def sweep(self) -> int:
        """Remove expired claims, returning how many were removed."""
        ...


@runtime_checkable
class Generator(Protocol):
    """Text/vision generation service."""

    async def generate(
        self,
        system_prompt: str,
        user_content: str,
        image: Optional[bytes] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> GenerationResult:
        """Return content or an error. Raise ``GeneratorUnavailableError`` on outage."""
        ...


@runtime_checkable
class EventSink(Protocol):
    """Receives structured progress events from the coordination layer."""

    def emit(self, event: str, **fields: Any) -> None:
        ...


@runtime_checkable
class StageProcessor(Protocol):
    """Executes one stage for one locked candidate."""

    async def process(self, candidate: Candidate, *, max_attempts: int, sleep_ms: int) -> StageOutcome:
        ...
