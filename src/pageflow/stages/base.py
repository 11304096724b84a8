"""
Stage definitions.

A stage definition bundles everything the coordination layer needs to know
about one pipeline step: which pages are eligible, in what order they are
picked, which column marks the step as done, and, for generator-backed
stages, the prompt and the validation of the model's answer.
"""

from __future__ import annotations

import abc
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pageflow.errors import MissingRequiredKeyError, ValidationShapeError
from pageflow.protocols import PageRecord

SqlFragment = Tuple[str, Dict[str, Any]]

TRUTHY_STRINGS = frozenset({"1", "true", "yes", "y", "да"})
TRUNCATION_MARKER = "\n... [truncated]"


class StageDefinition:
    """Eligibility and ordering of one pipeline stage."""

    name: str = ""
    timestamp_field: str = ""
    output_fields: Tuple[str, ...] = ()
    # Columns that must be non-null and non-empty before the stage can run.
    required_fields: Tuple[str, ...] = ()
    # Extra SQL predicates that always apply, even with ``force``.
    conditions: Tuple[str, ...] = ()
    # Further timestamp columns written together with timestamp_field.
    also_stamps: Tuple[str, ...] = ()

    @property
    def orders_by_id(self) -> bool:
        return True

    def pending_sql(self) -> str:
        """Predicate for "this stage has not produced its output yet"."""
        return f"{self.timestamp_field} IS NULL"

    def eligibility_sql(self, now: float, force: bool = False) -> SqlFragment:
        clauses: List[str] = [f"({name} IS NOT NULL AND {name} <> '')" for name in self.required_fields]
        clauses.extend(f"({condition})" for condition in self.conditions)
        if not force:
            clauses.append(f"({self.pending_sql()})")
        return (" AND ".join(clauses) or "1 = 1"), {}

    def order_sql(self, now: float) -> SqlFragment:
        return "id ASC", {}

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


class GeneratorStage(StageDefinition, abc.ABC):
    """A stage whose output comes from the text/vision generation service."""

    system_prompt: str = ""
    required_keys: Tuple[str, ...] = ()
    uses_image: bool = False
    max_user_chars: int = 50_000
    response_format: Optional[Dict[str, Any]] = {"type": "text"}

    def build_user_content(self, page: PageRecord) -> str:
        parts = [f"URL: {page.url}"]
        if page.title:
            parts.append(f"Title: {page.title}")
        if page.meta_description:
            parts.append(f"Description: {page.meta_description}")
        return truncate_text(self._join(parts), self.max_user_chars)

    @abc.abstractmethod
    def normalize(self, parsed: Dict[str, Any]) -> Dict[str, Any]:
        """Turn a parsed answer into column values.

        Raises:
            ValidationShapeError: the answer has the keys but unusable values.
        """

    def image_path(self, page: PageRecord, assets_dir: Optional[Path] = None) -> Optional[Path]:
        if not self.uses_image or not page.screenshot_path:
            return None
        path = Path(page.screenshot_path)
        if not path.is_absolute() and assets_dir is not None:
            path = Path(assets_dir) / path
        return path

    @staticmethod
    def _join(parts: Iterable[str]) -> str:
        return "\n".join(parts)


# -- value normalization helpers ---------------------------------------------


def to_bool(value: Any) -> bool:
    """Lenient boolean coercion for model answers."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    return False


def normalize_text(value: Any) -> Optional[str]:
    """Trimmed text, or ``None`` for empty and non-scalar values."""
    if value is None or isinstance(value, (bool, dict, list, tuple)):
        return None
    text = str(value).strip()
    return text or None


def normalize_nullable_string(value: Any, max_length: int) -> Optional[str]:
    text = normalize_text(value)
    if text is None:
        return None
    return text[:max_length]


_QUERY_SEPARATORS = re.compile(r"\r\n|[\n\r;]")


def normalize_search_queries(value: Any, minimum: int = 5, maximum: int = 10) -> Optional[str]:
    """
    Normalize predicted search queries into one comma-separated line.

    Splits on newlines, semicolons and commas, drops blanks and
    case-insensitive duplicates, keeps at most ``maximum`` queries and
    rejects the value when fewer than ``minimum`` remain.
    """
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        value = ", ".join(value)
    text = normalize_text(value)
    if text is None:
        return None

    seen = set()
    queries: List[str] = []
    for part in _QUERY_SEPARATORS.sub(",", text).split(","):
        part = part.strip()
        if not part:
            continue
        key = part.casefold()
        if key in seen:
            continue
        seen.add(key)
        queries.append(part)
        if len(queries) >= maximum:
            break

    if len(queries) < minimum:
        return None
    return ", ".join(queries)


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def require_fields(values: Dict[str, Optional[str]]) -> Dict[str, str]:
    """Raise for the first field that normalized to ``None``."""
    for name, value in values.items():
        if value is None:
            raise ValidationShapeError(f"Field '{name}' is empty after normalization", field=name)
    return values  # type: ignore[return-value]


def require_key(parsed: Dict[str, Any], *alternatives: str) -> str:
    """Return the first of ``alternatives`` present in ``parsed``."""
    for key in alternatives:
        if key in parsed:
            return key
    raise MissingRequiredKeyError(alternatives[0])
