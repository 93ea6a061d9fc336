"""One client per layer, shared by the steps of a run."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator, Mapping

from pycgmb.config import Settings
from pycgmb.core.context import LayerContext
from pycgmb.core.errors import LayerInitializationError
from pycgmb.layers.aistudio import AIStudioLayer
from pycgmb.layers.base import Layer
from pycgmb.layers.claude import ClaudeCodeLayer
from pycgmb.layers.gemini import GeminiCliLayer
from pycgmb.models import LayerType
from pycgmb.quota import QuotaMonitor

logger = logging.getLogger(__name__)


async def _probe_one(layer: Layer) -> tuple[bool, str | None]:
    try:
        await layer.initialize()
    except LayerInitializationError as e:
        return False, e.reason
    try:
        available = await layer.is_available()
    except Exception as e:
        logger.warning(f"{layer.layer_type} availability probe failed: {e}")
        return False, f"probe failed: {e}"
    return available, None if available else "layer reported itself unavailable"


async def probe_layers(layers: Mapping[LayerType, Layer]) -> LayerContext:
    """
    Initialize every layer and snapshot which ones are usable.

    Layers are probed concurrently. A layer that fails to initialize is
    recorded as unavailable with the reason in ``LayerContext.notes``.
    """
    layer_types = list(layers)
    outcomes = await asyncio.gather(*(_probe_one(layers[lt]) for lt in layer_types))

    availability: dict[LayerType, bool] = {}
    notes: dict[LayerType, str] = {}
    for layer_type, (available, note) in zip(layer_types, outcomes, strict=True):
        availability[layer_type] = available
        if note:
            notes[layer_type] = note
            logger.info(f"{layer_type} layer unavailable: {note}")
    return LayerContext(availability, notes=notes)


class LayerRegistry(Mapping[LayerType, Layer]):
    """
    Read-only mapping of layer type to client.

    Example:
        ```python
        registry = LayerRegistry([ClaudeCodeLayer(), GeminiCliLayer()])
        context = await registry.probe()
        context.is_available(LayerType.CLAUDE)
        ```
    """

    def __init__(self, layers: list[Layer] | tuple[Layer, ...] = ()):
        self._layers: dict[LayerType, Layer] = {}
        for layer in layers:
            if layer.layer_type in self._layers:
                raise ValueError(f"Duplicate client for layer {layer.layer_type}")
            self._layers[layer.layer_type] = layer

    def __getitem__(self, layer_type: LayerType) -> Layer:
        return self._layers[layer_type]

    def __iter__(self) -> Iterator[LayerType]:
        return iter(self._layers)

    def __len__(self) -> int:
        return len(self._layers)

    async def probe(self) -> LayerContext:
        return await probe_layers(self._layers)

    async def aclose(self) -> None:
        for layer in self._layers.values():
            await layer.aclose()

    @classmethod
    def from_settings(cls, settings: Settings, quota: QuotaMonitor | None = None) -> LayerRegistry:
        """Build the three standard layers from configuration."""
        return cls(
            [
                ClaudeCodeLayer(
                    settings.claude_path,
                    max_concurrency=settings.concurrency_for(LayerType.CLAUDE),
                    timeout=settings.timeout_for(LayerType.CLAUDE),
                ),
                GeminiCliLayer(
                    settings.gemini_path,
                    max_concurrency=settings.concurrency_for(LayerType.GEMINI),
                    timeout=settings.timeout_for(LayerType.GEMINI),
                ),
                AIStudioLayer(
                    settings.aistudio_api_key,
                    model=settings.aistudio_model,
                    quota=quota,
                    max_concurrency=settings.concurrency_for(LayerType.AISTUDIO),
                    timeout=settings.timeout_for(LayerType.AISTUDIO),
                ),
            ]
        )

    def __repr__(self) -> str:
        return f"LayerRegistry({', '.join(str(lt) for lt in self._layers)})"


__all__ = ["LayerRegistry", "probe_layers"]
