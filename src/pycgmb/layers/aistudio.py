"""
Multimodal layer over the Generative Language REST API.

One ``generateContent`` call per attempt. Files are inlined as base64
parts. HTTP failures are mapped onto the step error taxonomy:

- 429 -> RateLimitedError (``Retry-After`` honoured)
- 401 / 403 -> non-retryable
- 400 -> InvalidStepInputError
- 5xx, timeouts, transport errors -> retryable
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
from pathlib import Path
from typing import Any

import httpx

from pycgmb.core.errors import (
    InvalidStepInputError,
    LayerInitializationError,
    LayerUnavailableError,
    RateLimitedError,
    StepExecutionError,
)
from pycgmb.layers.base import Layer, LayerResponse, build_prompt, estimate_tokens, step_files
from pycgmb.models import AIStudioAction, LayerType, Step
from pycgmb.quota import QuotaMonitor

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.5-flash"
IMAGE_MODEL = "gemini-2.0-flash-preview-image-generation"
AUDIO_MODEL = "gemini-2.5-flash-preview-tts"
COST_PER_REQUEST = 0.001


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class AIStudioLayer(Layer):
    """
    Multimodal generation and analysis through the AI Studio API.

    Args:
        api_key: API key; the layer is unavailable without one
        model: Default model for text and file analysis
        base_url: API root
        quota: Monitor consulted before, and updated after, every call
        client: Preconfigured client (tests pass one with a mock transport)
    """

    layer_type = LayerType.AISTUDIO

    def __init__(
        self,
        api_key: str | None,
        *,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        quota: QuotaMonitor | None = None,
        client: httpx.AsyncClient | None = None,
        max_concurrency: int = 2,
        timeout: float | None = None,
    ):
        super().__init__(max_concurrency=max_concurrency, timeout=timeout)
        self._api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.quota = quota
        self._client = client
        self._owns_client = client is None

    async def _setup(self) -> None:
        if not self._api_key:
            raise LayerInitializationError(self.layer_type, "no API key configured")
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(None, connect=10.0))

    async def is_available(self) -> bool:
        return bool(self._api_key) and self._client is not None

    def model_for(self, step: Step) -> str:
        options = step.input.get("options") or {}
        if options.get("model"):
            return str(options["model"])
        if step.action == AIStudioAction.GENERATE_IMAGE.value:
            return IMAGE_MODEL
        if step.action == AIStudioAction.GENERATE_AUDIO.value:
            return AUDIO_MODEL
        return self.model

    async def execute(self, step: Step) -> LayerResponse:
        if self._client is None:
            try:
                await self.initialize()
            except LayerInitializationError as e:
                raise LayerUnavailableError(self.layer_type, e.reason) from e

        prompt = build_prompt(step)
        self._check_quota(estimate_tokens(prompt))

        files = step_files(step)
        parts: list[dict[str, Any]] = [{"text": prompt}]
        parts += [await self._file_part(path) for path in files]
        body: dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        if step.action == AIStudioAction.GENERATE_IMAGE.value:
            body["generationConfig"] = {"responseModalities": ["TEXT", "IMAGE"]}
        elif step.action == AIStudioAction.GENERATE_AUDIO.value:
            body["generationConfig"] = {"responseModalities": ["AUDIO"]}

        model = self.model_for(step)
        payload = await self._post(f"{self.base_url}/models/{model}:generateContent", body)
        content, media = self._parse_candidates(payload)

        usage = payload.get("usageMetadata") or {}
        tokens = usage.get("totalTokenCount") or estimate_tokens(prompt, content)
        if self.quota is not None:
            self.quota.record_request(tokens)

        return LayerResponse(
            data={
                "content": content,
                "media": media,
                "model": model,
                "files_processed": len(files),
            },
            tokens_used=tokens,
            cost=self.get_cost(step),
            model=model,
        )

    def _check_quota(self, estimated_tokens: int) -> None:
        if self.quota is None:
            return
        check = self.quota.can_make_request(estimated_tokens)
        if check.allowed:
            return
        message = f"AI Studio quota: {check.reason}"
        if check.oversized:
            raise InvalidStepInputError(message, layer=self.layer_type)
        if check.reason and check.reason.startswith("Daily"):
            raise StepExecutionError(message, retryable=False, layer=self.layer_type)
        raise RateLimitedError(message, retry_after=check.wait_time, layer=self.layer_type)

    async def _file_part(self, path: str) -> dict[str, Any]:
        try:
            raw = await asyncio.to_thread(Path(path).expanduser().read_bytes)
        except OSError as e:
            raise InvalidStepInputError(
                f"Cannot read file '{path}': {e}", layer=self.layer_type
            ) from e
        mime_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        return {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(raw).decode()}}

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        assert self._client is not None
        try:
            response = await self._client.post(
                url, json=body, headers={"x-goog-api-key": self._api_key or ""}
            )
        except httpx.TimeoutException as e:
            raise StepExecutionError(
                f"AI Studio request timed out: {e}", retryable=True, layer=self.layer_type
            ) from e
        except httpx.TransportError as e:
            raise StepExecutionError(
                f"AI Studio transport error: {e}", retryable=True, layer=self.layer_type
            ) from e

        status = response.status_code
        if status == 429:
            raise RateLimitedError(
                f"AI Studio rate limited: {_error_message(response)}",
                retry_after=parse_retry_after(response.headers.get("retry-after")),
                layer=self.layer_type,
            )
        if status in (401, 403):
            raise StepExecutionError(
                f"AI Studio rejected credentials ({status}): {_error_message(response)}",
                retryable=False,
                layer=self.layer_type,
            )
        if status == 400:
            raise InvalidStepInputError(
                f"AI Studio rejected request: {_error_message(response)}", layer=self.layer_type
            )
        if status >= 400:
            raise StepExecutionError(
                f"AI Studio error {status}: {_error_message(response)}",
                retryable=status >= 500,
                layer=self.layer_type,
            )
        return response.json()

    @staticmethod
    def _parse_candidates(payload: dict[str, Any]) -> tuple[str, list[dict[str, str]]]:
        candidates = payload.get("candidates") or []
        if not candidates:
            reason = (payload.get("promptFeedback") or {}).get("blockReason", "no candidates")
            raise StepExecutionError(f"AI Studio returned no content: {reason}", retryable=False)

        texts: list[str] = []
        media: list[dict[str, str]] = []
        for part in (candidates[0].get("content") or {}).get("parts") or []:
            if "text" in part:
                texts.append(part["text"])
            inline = part.get("inlineData") or part.get("inline_data")
            if inline:
                media.append(
                    {
                        "mime_type": inline.get("mimeType") or inline.get("mime_type", ""),
                        "data": inline.get("data", ""),
                    }
                )
        return "".join(texts), media

    def get_cost(self, step: Step) -> float:
        return COST_PER_REQUEST * max(1, len(step_files(step)))

    def get_estimated_duration(self, step: Step) -> float:
        if step.action == AIStudioAction.GENERATE_IMAGE.value:
            return 120.0
        if step.action == AIStudioAction.GENERATE_AUDIO.value:
            return 90.0
        options = step.input.get("options") or {}
        if options.get("type") == "video":
            return 180.0
        return 15.0 + 30.0 * len(step_files(step))

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
            self._initialized = False


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return response.text[:200]


__all__ = ["AIStudioLayer", "parse_retry_after"]
