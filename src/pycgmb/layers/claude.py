"""Reasoning layer backed by the ``claude`` command line tool."""

from __future__ import annotations

from collections.abc import Sequence

from pycgmb.layers.base import LayerResponse, build_prompt, estimate_tokens
from pycgmb.layers.cli import CliLayer
from pycgmb.models import ClaudeAction, LayerType, Step

LONG_PROMPT_CHARS = 1000


class ClaudeCodeLayer(CliLayer):
    """
    Runs ``claude -p <prompt>`` and returns the reply text as step data.

    Calls are billed through the user's own subscription, so the layer
    reports no cost.
    """

    layer_type = LayerType.CLAUDE

    def __init__(self, executable: str = "claude", **kwargs):
        super().__init__(executable, **kwargs)

    def build_args(self, step: Step) -> list[str]:
        return ["-p", build_prompt(step)]

    def parse_output(self, step: Step, args: Sequence[str], stdout: str) -> LayerResponse:
        content = stdout.strip()
        return LayerResponse(
            data=content,
            tokens_used=estimate_tokens(args[-1], content),
            cost=0.0,
            model="claude-code",
        )

    def get_estimated_duration(self, step: Step) -> float:
        estimate = 5.0
        options = step.input.get("options") or {}
        if options.get("workflow"):
            estimate *= 3
        if step.action == ClaudeAction.COMPLEX_REASONING.value:
            estimate *= 2
        if len(build_prompt(step)) > LONG_PROMPT_CHARS:
            estimate *= 1.5
        return estimate


__all__ = ["ClaudeCodeLayer"]
