"""Backend layers: the reasoning CLI, the search CLI and the multimodal API."""

from pycgmb.layers.aistudio import AIStudioLayer
from pycgmb.layers.base import (
    DEFAULT_TIMEOUTS,
    Layer,
    LayerResponse,
    build_prompt,
    estimate_tokens,
)
from pycgmb.layers.claude import ClaudeCodeLayer
from pycgmb.layers.cli import CliLayer
from pycgmb.layers.failures import FailureClass, classify_layer_failure
from pycgmb.layers.gemini import GeminiCliLayer, extract_sources
from pycgmb.layers.registry import LayerRegistry, probe_layers

__all__ = [
    "Layer",
    "LayerResponse",
    "DEFAULT_TIMEOUTS",
    "build_prompt",
    "estimate_tokens",
    "CliLayer",
    "ClaudeCodeLayer",
    "GeminiCliLayer",
    "extract_sources",
    "AIStudioLayer",
    "FailureClass",
    "classify_layer_failure",
    "LayerRegistry",
    "probe_layers",
]
