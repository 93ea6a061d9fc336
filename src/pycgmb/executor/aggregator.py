"""Folding of per-step results into one WorkflowResult."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from pycgmb.models import (
    ExecutionMode,
    StepResult,
    StepStatus,
    TaskGraph,
    WorkflowMetadata,
    WorkflowResult,
)


def summarize(total: int, completed: int, failed: int) -> str:
    """Human readable one-line outcome of a run."""
    if failed == 0:
        return f"All {total} workflow steps completed successfully."
    if completed == 0:
        return f"All {total} workflow steps failed."
    return f"{completed}/{total} workflow steps completed successfully, {failed} failed."


class ResultAggregator:
    """
    Builds the WorkflowResult of a run.

    - ``success`` is True only when every step of the graph succeeded,
      directly or through its fallback.
    - ``steps_failed`` counts failed steps plus those that never ran
      (skipped or not executed); ``steps_skipped`` counts the latter alone.
    - Cost and token totals add up executed steps only, and stay None when
      no executed step reported a value.
    """

    def aggregate(
        self,
        run_id: str,
        graph: TaskGraph,
        results: Mapping[str, StepResult],
        *,
        total_duration: float,
        mode: ExecutionMode,
        phases: Sequence[Sequence[str]] = (),
    ) -> WorkflowResult:
        ordered: dict[str, StepResult] = {}
        for step in graph:
            result = results.get(step.id)
            if result is None:
                result = StepResult.not_run(
                    step.id, step.layer, "Step was not executed", StepStatus.NOT_EXECUTED
                )
            ordered[step.id] = result

        completed = sum(1 for r in ordered.values() if r.success)
        failed = len(ordered) - completed
        skipped = sum(1 for r in ordered.values() if not r.executed)
        fallbacks = sum(1 for r in ordered.values() if r.metadata.fallback_used)

        executed = [r for r in ordered.values() if r.executed]
        costs = [r.metadata.cost for r in executed if r.metadata.cost is not None]
        tokens = [r.metadata.tokens_used for r in executed if r.metadata.tokens_used is not None]

        metadata = WorkflowMetadata(
            total_duration=total_duration,
            steps_completed=completed,
            steps_failed=failed,
            steps_skipped=skipped,
            fallbacks_used=fallbacks,
            total_cost=sum(costs) if costs else None,
            total_tokens=sum(tokens) if tokens else None,
            mode=mode,
            phases=tuple(tuple(phase) for phase in phases),
        )
        return WorkflowResult(
            run_id=run_id,
            success=failed == 0,
            results=ordered,
            metadata=metadata,
            summary=summarize(len(ordered), completed, failed),
        )


__all__ = ["ResultAggregator", "summarize"]
