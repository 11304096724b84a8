"""
Error taxonomy for the pipeline coordination layer.

Expected failures inside a stage run are reported as tagged outcomes carrying
an :class:`ErrorKind`; exceptions are reserved for dependency outages and for
misuse or misconfiguration.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Classification of everything that can go wrong for a candidate."""

    LOCK_CONTENTION = "lock_contention"
    TRANSPORT_UNAVAILABLE = "transport_unavailable"
    HTTP_ERROR = "http_error"
    EMPTY_RESPONSE = "empty_response"
    INVALID_JSON = "invalid_json"
    MISSING_REQUIRED_KEY = "missing_required_key"
    VALIDATION_SHAPE_ERROR = "validation_shape_error"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    MISSING_INPUT = "missing_input"

    @property
    def is_retryable(self) -> bool:
        return self in _RETRYABLE

    @property
    def is_fatal(self) -> bool:
        """Only a dependency outage escalates beyond a single candidate."""
        return self is ErrorKind.TRANSPORT_UNAVAILABLE


_RETRYABLE = frozenset(
    {
        ErrorKind.HTTP_ERROR,
        ErrorKind.EMPTY_RESPONSE,
        ErrorKind.INVALID_JSON,
        ErrorKind.MISSING_REQUIRED_KEY,
        ErrorKind.VALIDATION_SHAPE_ERROR,
    }
)


class PageflowError(Exception):
    """Base class for all PageFlow exceptions."""


class GeneratorUnavailableError(PageflowError):
    """The generation service could not be reached at all."""

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class GeneratorNotConfiguredError(PageflowError):
    """Raised when the generator base URL or model is missing."""


class PageNotFoundError(PageflowError):
    def __init__(self, page_id: int) -> None:
        super().__init__(f"Page {page_id} not found")
        self.page_id = page_id


class UnknownStageError(PageflowError):
    def __init__(self, stage: str, known: list[str] | None = None) -> None:
        hint = f" (known stages: {', '.join(known)})" if known else ""
        super().__init__(f"Unknown stage '{stage}'{hint}")
        self.stage = stage


class ValidationShapeError(PageflowError):
    """Raised by stage normalizers when a parsed response has the wrong shape."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class MissingRequiredKeyError(ValidationShapeError):
    """Raised by stage normalizers for a key that must be present in the response."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Missing required key '{key}'", field=key)
        self.key = key
