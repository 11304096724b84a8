"""
Client for OpenAI-compatible chat completion services (LM Studio, vLLM, ...).
"""

from __future__ import annotations

import asyncio
import base64
import json
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import aiohttp
import structlog

from pageflow.config.config import GeneratorConfig
from pageflow.observability import metrics
from pageflow.protocols import GenerationContent, GenerationError, GenerationResult

if TYPE_CHECKING:
    from pageflow.storage.request_log import AiRequestLogger

logger = structlog.get_logger(__name__)

CHAT_PATH = "/chat/completions"
PROVIDER = "openai_compatible"


def image_data_url(image: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(image).decode('ascii')}"


def guess_image_mime(image: bytes) -> str:
    """Sniff the common screenshot formats from their magic bytes."""
    if image.startswith(b"\x89PNG"):
        return "image/png"
    if image.startswith(b"\xff\xd8"):
        return "image/jpeg"
    if image[:4] == b"RIFF" and image[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


class OpenAICompatibleGenerator:
    """
    Generator backed by ``POST {base_url}/chat/completions``.

    Never raises for service-side problems: HTTP errors and error bodies come
    back as :class:`GenerationError` with the HTTP status, and transport
    failures (refused connection, DNS, timeout) as :class:`GenerationError`
    with ``status=None``.
    """

    def __init__(
        self,
        config: GeneratorConfig,
        request_logger: Optional[AiRequestLogger] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        self.request_logger = request_logger if config.log_requests else None
        self.session = session
        self._owns_session = session is None

    @property
    def url(self) -> str:
        return f"{self.config.base_url}{CHAT_PATH}"

    def is_configured(self) -> bool:
        return bool(self.config.base_url) and bool(self.config.model)

    async def initialize(self) -> None:
        if self.session is None:
            headers = {"Accept": "application/json"}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers=headers,
            )
            self._owns_session = True

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    async def __aenter__(self) -> OpenAICompatibleGenerator:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def build_payload(
        self,
        system_prompt: str,
        user_content: str,
        image: Optional[bytes] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        options = options or {}
        model = options.get("model") or (self.config.vision_model if image is not None else None) or self.config.model

        user: Any = user_content
        if image is not None:
            mime = options.get("image_mime") or guess_image_mime(image)
            user = [
                {"type": "text", "text": user_content},
                {"type": "image_url", "image_url": {"url": image_data_url(image, mime)}},
            ]

        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user},
        ]
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": int(options.get("max_tokens", self.config.max_tokens)),
            "temperature": float(options.get("temperature", self.config.temperature)),
            "stream": False,
        }
        if options.get("response_format"):
            payload["response_format"] = options["response_format"]
        return payload

    async def generate(
        self,
        system_prompt: str,
        user_content: str,
        image: Optional[bytes] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> GenerationResult:
        if self.session is None:
            await self.initialize()
        assert self.session is not None

        payload = self.build_payload(system_prompt, user_content, image, options)
        model = payload["model"]
        log_ctx = None
        if self.request_logger is not None:
            log_ctx = await self.request_logger.start(
                provider=PROVIDER,
                base_url=self.config.base_url,
                path=CHAT_PATH,
                model=model,
                request_payload=payload,
                stage=(options or {}).get("stage"),
                page_id=(options or {}).get("page_id"),
            )

        started = time.monotonic()
        try:
            async with self.session.post(self.url, json=payload) as response:
                status = response.status
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            message = str(e) or e.__class__.__name__
            logger.error("Generation service unreachable", url=self.url, error=message)
            if self.request_logger is not None:
                await self.request_logger.finish_error(log_ctx, status_code=None, message=message)
            return GenerationError(status=None, message=message, url=self.url, path=CHAT_PATH)
        finally:
            metrics.observe("generator_latency_seconds", time.monotonic() - started, labels={"model": model or ""})

        data = _json_or_none(body)
        usage = data.get("usage") if isinstance(data, dict) else None

        error = self._error_from_response(status, body, data)
        if error is not None:
            logger.warning("Generation service returned an error", status=status, message=error.message)
            if self.request_logger is not None:
                await self.request_logger.finish_error(
                    log_ctx,
                    status_code=status,
                    message=error.message,
                    response_body=body,
                    response_payload=data,
                    usage=usage,
                )
            return error

        content = _assistant_content(data)
        if self.request_logger is not None:
            await self.request_logger.finish_success(
                log_ctx, status_code=status, response_payload=data, response_body=body, usage=usage
            )
        return GenerationContent(
            content=content,
            model=str(data.get("model") or model) if isinstance(data, dict) else model,
            usage=usage if isinstance(usage, dict) else None,
        )

    def _error_from_response(self, status: int, body: str, data: Any) -> Optional[GenerationError]:
        # Some servers answer 200 with {"error": ...}
        if isinstance(data, dict) and data.get("error"):
            raw = data["error"]
            if isinstance(raw, dict):
                message = str(raw.get("message") or json.dumps(raw, ensure_ascii=False))
            else:
                message = str(raw)
            return GenerationError(status=status, message=message, body=body, url=self.url, path=CHAT_PATH)
        if status >= 400:
            return GenerationError(
                status=status,
                message="Generation request failed",
                body=body,
                url=self.url,
                path=CHAT_PATH,
            )
        return None


def _json_or_none(body: str) -> Any:
    try:
        return json.loads(body)
    except ValueError:
        return None


def _assistant_content(data: Any) -> str:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return ""
    if isinstance(content, list):
        # content-part arrays: keep the text parts
        return "".join(part.get("text", "") for part in content if isinstance(part, dict))
    return content if isinstance(content, str) else ""
