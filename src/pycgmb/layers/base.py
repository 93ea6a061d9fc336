"""
Layer abstraction for backend executors.

Design Pattern: Adapter Pattern
Each backend (reasoning CLI, search CLI, multimodal HTTP API) is wrapped
in a Layer so the engine can run any step without knowing the backend's
transport. The engine only calls the public operations defined here.

A layer's ``execute()`` returns a ``LayerResponse`` on success and raises
a ``StepError`` subclass on failure. Arbitrary exceptions are normalized
by the step executor with ``as_step_error()``.
"""

from __future__ import annotations

import json
import math
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pycgmb.models import LayerType, Step, supported_actions

DEFAULT_TIMEOUTS: dict[LayerType, float] = {
    LayerType.CLAUDE: 300.0,
    LayerType.GEMINI: 60.0,
    LayerType.AISTUDIO: 180.0,
}
"""Per-layer step timeout in seconds when the step sets none."""

FILE_TIMEOUT_FACTOR = 1.5
ACTION_TIMEOUT_FACTORS: dict[str, float] = {
    "generate_image": 0.8,
    "generate_audio": 0.6,
}


@dataclass(frozen=True)
class LayerResponse:
    """
    Successful outcome of one layer call.

    Attributes:
        data: Payload handed to dependent steps (structured or text)
        tokens_used: Tokens consumed, if the backend reports or we estimate them
        cost: Monetary cost in USD, if known
        model: Model that produced the payload
    """

    data: Any
    tokens_used: int | None = None
    cost: float | None = None
    model: str | None = None


def estimate_tokens(*texts: Any) -> int:
    """Rough token count: one token per four characters."""
    total = 0
    for text in texts:
        if text is None:
            continue
        if not isinstance(text, str):
            text = json.dumps(text, ensure_ascii=False, default=str)
        total += len(text)
    return math.ceil(total / 4)


def build_prompt(step: Step) -> str:
    """
    Flatten a step's input into one prompt string for a text backend.

    ``prompt`` (or ``text``/``query``) leads; any other non-file field is
    appended as a labelled block.
    """
    inputs: Mapping[str, Any] = step.input
    lead_key = next((key for key in ("prompt", "text", "query") if inputs.get(key)), None)
    sections: list[str] = []
    if lead_key is not None:
        sections.append(_as_text(inputs[lead_key]))
    for key, value in inputs.items():
        if key in (lead_key, "files", "options") or value in (None, ""):
            continue
        sections.append(f"{key}:\n{_as_text(value)}")
    if not sections:
        sections.append(step.action.replace("_", " "))
    return "\n\n".join(sections)


def step_files(step: Step) -> list[str]:
    files = step.input.get("files") or []
    if isinstance(files, str):
        return [files]
    return [str(path) for path in files]


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)


class Layer(ABC):
    """
    Abstract backend executor.

    Subclasses set ``layer_type`` and implement ``is_available()`` and
    ``execute()``; cost and duration estimates default to zero/base values.

    Attributes:
        layer_type: Which layer this client serves
        max_concurrency: Ceiling on concurrent calls within one run
    """

    layer_type: LayerType

    def __init__(self, *, max_concurrency: int = 2, timeout: float | None = None):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.max_concurrency = max_concurrency
        self._base_timeout = timeout
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """
        Prepare the layer for use. Safe to call more than once.

        Raises:
            LayerInitializationError: If the backend cannot be used
        """
        if self._initialized:
            return
        await self._setup()
        self._initialized = True

    async def _setup(self) -> None:
        """Backend-specific initialization, run once."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Fast probe: can this layer take work right now."""

    def can_handle(self, step: Step) -> bool:
        return step.layer == self.layer_type and step.action in supported_actions(self.layer_type)

    @abstractmethod
    async def execute(self, step: Step) -> LayerResponse:
        """
        Run one step whose input has already been resolved.

        Raises:
            StepError: Typed failure; ``is_retryable()`` drives retries
        """

    def get_cost(self, step: Step) -> float:
        return 0.0

    def get_estimated_duration(self, step: Step) -> float:
        """Expected wall time of ``step`` in seconds."""
        return 5.0

    def default_timeout(self, step: Step) -> float:
        """
        Timeout for a step that does not set its own.

        Steps carrying files get more time; media generation gets less.
        """
        timeout = self._base_timeout or DEFAULT_TIMEOUTS[self.layer_type]
        if step.has_files:
            timeout *= FILE_TIMEOUT_FACTOR
        timeout *= ACTION_TIMEOUT_FACTORS.get(step.action, 1.0)
        return timeout

    async def aclose(self) -> None:
        """Release clients and connections held by the layer."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(max_concurrency={self.max_concurrency})"


__all__ = [
    "DEFAULT_TIMEOUTS",
    "Layer",
    "LayerResponse",
    "build_prompt",
    "estimate_tokens",
    "step_files",
]
