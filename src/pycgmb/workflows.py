"""
Ready-made task graphs for common multi-layer jobs.

Each builder returns a plain TaskGraph; nothing here executes anything.

Example:
    ```python
    graph = build_workflow("analysis", "Compare these reports", ["q1.pdf", "q2.pdf"])
    result = await engine.execute_workflow(graph)
    ```
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any

from pycgmb.models import LayerType, Step, StepOutputRef, TaskGraph


class WorkflowKind(Enum):
    ANALYSIS = "analysis"
    CONVERSION = "conversion"
    EXTRACTION = "extraction"
    GENERATION = "generation"

    @classmethod
    def parse(cls, value: WorkflowKind | str) -> WorkflowKind:
        if isinstance(value, WorkflowKind):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown workflow '{value}'. Expected one of: {', '.join(k.value for k in cls)}"
            ) from None


def analysis_workflow(
    prompt: str, files: Sequence[str], options: Mapping[str, Any] | None = None
) -> TaskGraph:
    """
    Requirements, then multimodal analysis, then synthesis.

    If the multimodal API fails or is unavailable, a grounded analysis on
    the search layer takes its place.
    """
    files = list(files)
    return TaskGraph(
        steps=(
            Step(
                "preprocess",
                LayerType.CLAUDE,
                "analyze_requirements",
                input={
                    "prompt": prompt,
                    "files": files,
                    "analysis_type": "multimodal_analysis",
                },
            ),
            Step(
                "multimodal_analysis",
                LayerType.AISTUDIO,
                "process_multimodal",
                input={
                    "instructions": prompt,
                    "requirements": StepOutputRef("preprocess"),
                    "files": files,
                    "options": dict(options or {}),
                },
                depends_on=("preprocess",),
            ),
            Step(
                "synthesis",
                LayerType.CLAUDE,
                "synthesize_results",
                input={
                    "analysis_results": StepOutputRef("multimodal_analysis", "content"),
                    "original_prompt": prompt,
                },
                depends_on=("multimodal_analysis",),
            ),
        ),
        fallback_strategies={
            "multimodal_analysis": Step(
                "fallback_analysis",
                LayerType.GEMINI,
                "analyze_with_grounding",
                input={"prompt": prompt, "files": files},
                depends_on=("preprocess",),
            ),
        },
    )


def conversion_workflow(
    prompt: str, files: Sequence[str], options: Mapping[str, Any] | None = None
) -> TaskGraph:
    files = list(files)
    return TaskGraph(
        steps=(
            Step(
                "format_analysis",
                LayerType.CLAUDE,
                "analyze_conversion_requirements",
                input={"files": files, "target_format": prompt},
            ),
            Step(
                "file_conversion",
                LayerType.AISTUDIO,
                "convert_files",
                input={
                    "conversion_instructions": prompt,
                    "conversion_plan": StepOutputRef("format_analysis"),
                    "files": files,
                    "options": dict(options or {}),
                },
                depends_on=("format_analysis",),
            ),
            Step(
                "quality_check",
                LayerType.GEMINI,
                "validate_conversion",
                input={
                    "original_files": files,
                    "converted_results": StepOutputRef("file_conversion", "content"),
                },
                depends_on=("file_conversion",),
            ),
        )
    )


def extraction_workflow(
    prompt: str, files: Sequence[str], options: Mapping[str, Any] | None = None
) -> TaskGraph:
    files = list(files)
    return TaskGraph(
        steps=(
            Step(
                "extraction_planning",
                LayerType.CLAUDE,
                "plan_extraction",
                input={"files": files, "extraction_requirements": prompt},
            ),
            Step(
                "data_extraction",
                LayerType.AISTUDIO,
                "extract_data",
                input={
                    "extraction_plan": StepOutputRef("extraction_planning"),
                    "files": files,
                    "options": dict(options or {}),
                },
                depends_on=("extraction_planning",),
            ),
            Step(
                "structure_data",
                LayerType.CLAUDE,
                "structure_extracted_data",
                input={
                    "raw_data": StepOutputRef("data_extraction", "content"),
                    "requirements": prompt,
                },
                depends_on=("data_extraction",),
            ),
        )
    )


def generation_workflow(
    prompt: str, files: Sequence[str], options: Mapping[str, Any] | None = None
) -> TaskGraph:
    files = list(files)
    return TaskGraph(
        steps=(
            Step(
                "content_analysis",
                LayerType.AISTUDIO,
                "analyze_source_content",
                input={"generation_goals": prompt, "files": files},
            ),
            Step(
                "generation_strategy",
                LayerType.CLAUDE,
                "develop_generation_strategy",
                input={
                    "content_analysis": StepOutputRef("content_analysis", "content"),
                    "requirements": prompt,
                },
                depends_on=("content_analysis",),
            ),
            Step(
                "content_generation",
                LayerType.AISTUDIO,
                "generate_content",
                input={
                    "prompt": prompt,
                    "strategy": StepOutputRef("generation_strategy"),
                    "source_files": files,
                    "options": {"generation_type": "auto_detect", **dict(options or {})},
                },
                depends_on=("generation_strategy",),
            ),
        )
    )


_BUILDERS = {
    WorkflowKind.ANALYSIS: analysis_workflow,
    WorkflowKind.CONVERSION: conversion_workflow,
    WorkflowKind.EXTRACTION: extraction_workflow,
    WorkflowKind.GENERATION: generation_workflow,
}


def build_workflow(
    kind: WorkflowKind | str,
    prompt: str,
    files: Sequence[str] = (),
    options: Mapping[str, Any] | None = None,
) -> TaskGraph:
    """Build the task graph of a named workflow."""
    return _BUILDERS[WorkflowKind.parse(kind)](prompt, files, options)


def search_and_summarize(query: str, *, timeout: float | None = None) -> TaskGraph:
    """Grounded search, then a summary of exactly what the search returned."""
    return TaskGraph(
        steps=(
            Step("search", LayerType.GEMINI, "grounded_search", input={"query": query}),
            Step(
                "summarize",
                LayerType.CLAUDE,
                "synthesize_results",
                input={
                    "text": StepOutputRef("search"),
                    "instructions": "Summarize the search results above, citing sources.",
                },
                depends_on=("search",),
            ),
        ),
        timeout=timeout,
    )


__all__ = [
    "WorkflowKind",
    "analysis_workflow",
    "build_workflow",
    "conversion_workflow",
    "extraction_workflow",
    "generation_workflow",
    "search_and_summarize",
]
