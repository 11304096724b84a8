"""
Audit log of generation service calls (``ai_request_logs``).

Payloads are sanitized before storage: screenshots and other base64 blobs
are redacted and long strings are truncated, so the table stays small and
readable.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from uuid import uuid4

import aiosqlite
import structlog

from pageflow.parsing.json_recovery import safe_dumps

from .page_store import PageStore

logger = structlog.get_logger(__name__)

_BLOB_PATH = re.compile(r"(?:image|base64|data_url|screenshot)", re.IGNORECASE)
REDACTED = "[redacted]"
REDACTED_IMAGE_URL = "[redacted:image_url]"


def truncate(value: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    if len(value) <= max_chars:
        return value
    return f"{value[:max_chars]}...[truncated {len(value) - max_chars} chars]"


def _should_redact(value: str, path: str) -> bool:
    # Short strings under an image-ish key are alt texts, not blobs.
    if path and _BLOB_PATH.search(path) and len(value) >= 120:
        return True
    return value.startswith("data:image/") or ";base64," in value


def sanitize_payload(value: Any, max_chars: int = 50_000, path: str = "") -> Any:
    """Redact binary blobs and truncate long strings anywhere in ``value``."""
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for key, item in value.items():
            next_path = str(key) if not path else f"{path}.{key}"
            out[str(key)] = sanitize_payload(item, max_chars, next_path)
        image_url = out.get("image_url")
        if isinstance(image_url, dict) and isinstance(image_url.get("url"), str):
            out["image_url"] = {**image_url, "url": REDACTED_IMAGE_URL}
        return out
    if isinstance(value, (list, tuple)):
        return [sanitize_payload(item, max_chars, f"{path}.{i}" if path else str(i)) for i, item in enumerate(value)]
    if isinstance(value, str):
        if _should_redact(value, path):
            return REDACTED
        return truncate(value, max_chars)
    return value


@dataclass
class RequestLogContext:
    row_id: int
    trace_id: str
    started_at: float


class AiRequestLogger:
    """Write one ``ai_request_logs`` row per generator call."""

    def __init__(self, store: PageStore, max_chars: int = 50_000) -> None:
        self.store = store
        self.max_chars = max(1_000, min(500_000, max_chars))

    async def start(
        self,
        *,
        provider: str,
        base_url: str,
        path: str,
        model: Optional[str],
        request_payload: Dict[str, Any],
        http_method: str = "POST",
        stage: Optional[str] = None,
        page_id: Optional[int] = None,
    ) -> Optional[RequestLogContext]:
        trace_id = str(uuid4())
        now = time.time()
        try:
            cursor = await self.store.db.execute(
                """
                INSERT INTO ai_request_logs
                    (trace_id, stage, page_id, provider, model, http_method, base_url, path, request_payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    trace_id,
                    stage,
                    page_id,
                    provider,
                    model,
                    http_method.upper(),
                    truncate(base_url, 2048),
                    truncate(path, 512),
                    safe_dumps(sanitize_payload(request_payload, self.max_chars)),
                    now,
                ),
            )
            await self.store.db.commit()
        except aiosqlite.Error as e:
            logger.warning("Failed to record AI request", error=str(e), trace_id=trace_id)
            return None
        return RequestLogContext(row_id=int(cursor.lastrowid or 0), trace_id=trace_id, started_at=now)

    async def finish_success(
        self,
        ctx: Optional[RequestLogContext],
        *,
        status_code: Optional[int],
        response_payload: Any = None,
        response_body: Optional[str] = None,
        usage: Any = None,
    ) -> None:
        await self._finish(ctx, status_code, response_payload, response_body, usage, error=None)

    async def finish_error(
        self,
        ctx: Optional[RequestLogContext],
        *,
        status_code: Optional[int],
        message: str,
        response_body: Optional[str] = None,
        response_payload: Any = None,
        usage: Any = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        error = {"message": truncate(message, 2000), "context": context}
        await self._finish(ctx, status_code, response_payload, response_body, usage, error=error)

    async def _finish(
        self,
        ctx: Optional[RequestLogContext],
        status_code: Optional[int],
        response_payload: Any,
        response_body: Optional[str],
        usage: Any,
        error: Optional[Dict[str, Any]],
    ) -> None:
        if ctx is None:
            return
        duration_ms = int(max(0.0, round((time.time() - ctx.started_at) * 1000)))
        try:
            await self.store.db.execute(
                """
                UPDATE ai_request_logs
                SET status_code = ?, duration_ms = ?, response_payload = ?, response_body = ?, usage = ?, error = ?
                WHERE id = ?
                """,
                (
                    status_code,
                    duration_ms,
                    self._json_or_none(response_payload),
                    truncate(response_body, self.max_chars) if response_body is not None else None,
                    self._json_or_none(usage),
                    self._json_or_none(error),
                    ctx.row_id,
                ),
            )
            await self.store.db.commit()
        except aiosqlite.Error as e:
            logger.warning("Failed to finish AI request log", error=str(e), trace_id=ctx.trace_id)

    def _json_or_none(self, value: Any) -> Optional[str]:
        if not isinstance(value, (dict, list)):
            return None
        return safe_dumps(sanitize_payload(value, self.max_chars))

    async def recent(self, limit: int = 20) -> list[Dict[str, Any]]:
        rows = await self.store.fetch_rows("SELECT * FROM ai_request_logs ORDER BY id DESC LIMIT ?", (limit,))
        return [dict(row) for row in rows]
