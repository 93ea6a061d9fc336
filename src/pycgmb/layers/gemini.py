"""Search and grounding layer backed by the ``gemini`` command line tool."""

from __future__ import annotations

import re
from collections.abc import Sequence

from pycgmb.layers.base import LayerResponse, build_prompt, estimate_tokens, step_files
from pycgmb.layers.cli import CliLayer
from pycgmb.models import GeminiAction, LayerType, Step

URL_PATTERN = re.compile(r"https?://[^\s)\]>\"']+")
SOURCE_PATTERN = re.compile(r"^\s*Source:\s*(.+?)\s*$", re.MULTILINE)

SEARCH_ACTIONS = frozenset(
    {GeminiAction.GROUNDED_SEARCH.value, GeminiAction.ANALYZE_WITH_GROUNDING.value}
)
LONG_PROMPT_CHARS = 1000


def extract_sources(output: str) -> list[str]:
    """URLs and ``Source:`` citations found in the output, first occurrence order."""
    found = URL_PATTERN.findall(output) + SOURCE_PATTERN.findall(output)
    return list(dict.fromkeys(source for source in found if source))


def uses_search(step: Step) -> bool:
    options = step.input.get("options") or {}
    if "search" in options:
        return bool(options["search"])
    return step.action in SEARCH_ACTIONS


class GeminiCliLayer(CliLayer):
    """
    Runs ``gemini [--search] -p <prompt>``.

    Files are passed as ``@path`` references at the head of the prompt.
    Step data is a mapping with ``content``, ``sources``, ``grounded`` and
    ``search_used`` keys.
    """

    layer_type = LayerType.GEMINI

    def __init__(self, executable: str = "gemini", **kwargs):
        super().__init__(executable, **kwargs)

    def build_args(self, step: Step) -> list[str]:
        args: list[str] = []
        if uses_search(step):
            args.append("--search")
        prompt = build_prompt(step)
        files = step_files(step)
        if files:
            prompt = " ".join(f"@{path}" for path in files) + "\n\n" + prompt
        args += ["-p", prompt]
        return args

    def parse_output(self, step: Step, args: Sequence[str], stdout: str) -> LayerResponse:
        content = stdout.strip()
        search = "--search" in args
        return LayerResponse(
            data={
                "content": content,
                "sources": extract_sources(content),
                "grounded": search,
                "search_used": search,
            },
            tokens_used=estimate_tokens(args[-1], content),
            cost=0.0,
            model="gemini-cli",
        )

    def get_estimated_duration(self, step: Step) -> float:
        estimate = 3.0
        estimate += 2.0 * len(step_files(step))
        if uses_search(step):
            estimate += 5.0
        if len(build_prompt(step)) > LONG_PROMPT_CHARS:
            estimate += 2.0
        return estimate


__all__ = ["GeminiCliLayer", "extract_sources"]
