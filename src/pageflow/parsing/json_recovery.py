"""
Best-effort recovery of JSON objects from free-form model output.

Language models wrap JSON in prose, markdown fences, trailing commas and
single quotes. :class:`ResilientJsonParser` tries a fixed sequence of
strategies and returns the first structured value it can decode. It never
raises: anything it cannot recover is reported as ``None``.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog

logger = structlog.get_logger(__name__)

JsonValue = Union[Dict[str, Any], List[Any]]

_FENCE_JSON = re.compile(r"```json\s*", re.IGNORECASE)
_FENCE = re.compile(r"```\s*")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_SINGLE_QUOTED = re.compile(r"(?<=[{,\[:])\s*'([^']+)'\s*(?=[,}\]:])")
# Tab, newline and carriage return are kept here; newlines are handled separately.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


class ResilientJsonParser:
    """Recover a JSON object or array from arbitrary text."""

    def parse(self, text: Optional[str]) -> Optional[JsonValue]:
        """Return the first object/array recoverable from ``text``, else ``None``.

        Strategies, first success wins:

        1. direct decode when the trimmed text starts with ``{`` or ``[``;
        2. the first balanced ``{...}`` block, fixed up if it does not decode;
        3. the first balanced ``[...]`` block, likewise;
        4. the fix-up pass over the whole text.
        """
        if not text or not text.strip():
            return None

        for strategy in (self._direct, self._extract_object, self._extract_array, self._fix_and_parse):
            result = strategy(text)
            if result is not None:
                return result

        logger.debug("JSON recovery failed", preview=text[:200])
        return None

    def parse_with_keys(self, text: Optional[str], required_keys: Iterable[str]) -> Optional[Dict[str, Any]]:
        """Like :meth:`parse`, but only accept an object containing every key."""
        result = self.parse(text)
        if not isinstance(result, dict):
            return None
        for key in required_keys:
            if key not in result:
                return None
        return result

    def missing_keys(self, value: Any, required_keys: Iterable[str]) -> List[str]:
        if not isinstance(value, dict):
            return list(required_keys)
        return [key for key in required_keys if key not in value]

    # -- strategies ---------------------------------------------------------

    def _direct(self, text: str) -> Optional[JsonValue]:
        trimmed = text.strip()
        if not trimmed.startswith(("{", "[")):
            return None
        return _loads(trimmed)

    def _extract_object(self, text: str) -> Optional[JsonValue]:
        return self._extract_block(text, "{", "}")

    def _extract_array(self, text: str) -> Optional[JsonValue]:
        return self._extract_block(text, "[", "]")

    def _extract_block(self, text: str, open_char: str, close_char: str) -> Optional[JsonValue]:
        start = text.find(open_char)
        if start == -1:
            return None
        end = find_matching_bracket(text, start, open_char, close_char)
        if end is None:
            return None
        block = text[start : end + 1]
        result = _loads(block)
        if result is not None:
            return result
        return self._fix_and_parse(block)

    def _fix_and_parse(self, text: str) -> Optional[JsonValue]:
        fixed = _FENCE_JSON.sub("", text)
        fixed = _FENCE.sub("", fixed)
        fixed = _TRAILING_COMMA.sub(r"\1", fixed)
        fixed = _SINGLE_QUOTED.sub(r'"\1"', fixed)
        fixed = _CONTROL_CHARS.sub("", fixed)
        fixed = escape_newlines_in_strings(fixed)
        return _loads(fixed.strip())


def find_matching_bracket(text: str, start: int, open_char: str, close_char: str) -> Optional[int]:
    """Index of the bracket closing the one at ``start``, skipping string contents."""
    depth = 0
    in_string = False
    escaped = False

    for index in range(start, len(text)):
        char = text[index]
        if escaped:
            escaped = False
            continue
        if char == "\\" and in_string:
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                return index
    return None


def escape_newlines_in_strings(text: str) -> str:
    """Escape raw line breaks and tabs that sit inside double-quoted strings."""
    out: List[str] = []
    in_string = False
    escaped = False
    for char in text:
        if escaped:
            escaped = False
            out.append(char)
            continue
        if char == "\\" and in_string:
            escaped = True
            out.append(char)
            continue
        if char == '"':
            in_string = not in_string
        elif in_string and char == "\n":
            out.append("\\n")
            continue
        elif in_string and char == "\r":
            out.append("\\r")
            continue
        elif in_string and char == "\t":
            out.append("\\t")
            continue
        out.append(char)
    return "".join(out)


def _loads(text: str) -> Optional[JsonValue]:
    try:
        result = json.loads(text)
    except (ValueError, RecursionError):
        return None
    if isinstance(result, (dict, list)):
        return result
    return None


def sanitize_for_json(value: Any) -> Any:
    """Strip control characters and unencodable code points from every string."""
    if isinstance(value, str):
        cleaned = _CONTROL_CHARS.sub("", value)
        return cleaned.encode("utf-8", "replace").decode("utf-8")
    if isinstance(value, bytes):
        return sanitize_for_json(value.decode("utf-8", "replace"))
    if isinstance(value, dict):
        return {str(sanitize_for_json(k)): sanitize_for_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_for_json(v) for v in value]
    return value


def safe_dumps(value: Any) -> str:
    """Encode ``value`` as JSON, cleaning strings instead of failing on them."""
    return json.dumps(sanitize_for_json(value), ensure_ascii=False, default=str)
