"""Step and workflow results.

StepResults are created once by the step executor (or by the scheduler
for steps that never ran) and never mutated afterwards. A WorkflowResult
owns the StepResults of one run.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any

from pycgmb.models.layer import ExecutionMode, LayerType


class StepStatus(Enum):
    """Outcome category of a step within a run."""

    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    """Not executed because a dependency failed (continue_on_error runs)."""

    NOT_EXECUTED = "NOT_EXECUTED"
    """Not executed because the workflow halted or was cancelled."""

    @property
    def executed(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class StepMetadata:
    """
    Execution metadata of one step.

    Attributes:
        layer: Layer that produced the result (the fallback's layer when one was used)
        duration: Wall time in seconds across all attempts
        tokens_used: Tokens reported by the layer, if any
        cost: Cost reported by the layer, if any
        model: Model name reported by the layer, if any
        attempts: Number of layer calls made
        status: Outcome category
        fallback_used: True when a fallback step produced this result
        fallback_step_id: Id of that fallback step
        original_error: Error of the replaced step when a fallback was used
    """

    layer: LayerType
    duration: float = 0.0
    tokens_used: int | None = None
    cost: float | None = None
    model: str | None = None
    attempts: int = 0
    status: StepStatus = StepStatus.SUCCEEDED
    fallback_used: bool = False
    fallback_step_id: str | None = None
    original_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["layer"] = self.layer.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StepMetadata:
        values = dict(data)
        values["layer"] = LayerType.parse(values["layer"])
        values["status"] = StepStatus(values.get("status", StepStatus.SUCCEEDED.value))
        return cls(**values)


@dataclass(frozen=True)
class StepResult:
    """
    Result of one step.

    ``step_id`` is always the id of the step slot in the graph. When a
    fallback ran in place of the step, the slot keeps the original id and
    ``metadata.fallback_step_id`` names the step that actually executed.
    """

    step_id: str
    success: bool
    metadata: StepMetadata
    data: Any = None
    error: str | None = None
    error_type: str | None = None

    @property
    def status(self) -> StepStatus:
        return self.metadata.status

    @property
    def executed(self) -> bool:
        return self.metadata.status.executed

    @classmethod
    def succeeded(
        cls,
        step_id: str,
        layer: LayerType,
        data: Any,
        *,
        duration: float,
        attempts: int,
        tokens_used: int | None = None,
        cost: float | None = None,
        model: str | None = None,
    ) -> StepResult:
        return cls(
            step_id=step_id,
            success=True,
            data=data,
            metadata=StepMetadata(
                layer=layer,
                duration=duration,
                tokens_used=tokens_used,
                cost=cost,
                model=model,
                attempts=attempts,
                status=StepStatus.SUCCEEDED,
            ),
        )

    @classmethod
    def failed(
        cls,
        step_id: str,
        layer: LayerType,
        error: BaseException | str,
        *,
        duration: float,
        attempts: int,
    ) -> StepResult:
        return cls(
            step_id=step_id,
            success=False,
            error=str(error),
            error_type=type(error).__name__ if isinstance(error, BaseException) else None,
            metadata=StepMetadata(
                layer=layer,
                duration=duration,
                attempts=attempts,
                status=StepStatus.FAILED,
            ),
        )

    @classmethod
    def not_run(cls, step_id: str, layer: LayerType, reason: str, status: StepStatus) -> StepResult:
        """Result for a step that was skipped or never dispatched."""
        if status.executed:
            raise ValueError(f"not_run() needs a non-executed status, got {status}")
        return cls(
            step_id=step_id,
            success=False,
            error=reason,
            error_type=status.value,
            metadata=StepMetadata(layer=layer, status=status),
        )

    def as_fallback_for(self, step_id: str, original_error: str | None) -> StepResult:
        """Re-key this (fallback) result into the slot of the step it replaces."""
        return replace(
            self,
            step_id=step_id,
            metadata=replace(
                self.metadata,
                fallback_used=True,
                fallback_step_id=self.step_id,
                original_error=original_error,
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "error_type": self.error_type,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StepResult:
        return cls(
            step_id=data["step_id"],
            success=bool(data["success"]),
            data=data.get("data"),
            error=data.get("error"),
            error_type=data.get("error_type"),
            metadata=StepMetadata.from_dict(data["metadata"]),
        )


@dataclass(frozen=True)
class WorkflowMetadata:
    """Aggregate numbers for one run. Durations are in seconds."""

    total_duration: float
    steps_completed: int
    steps_failed: int
    steps_skipped: int = 0
    fallbacks_used: int = 0
    total_cost: float | None = None
    total_tokens: int | None = None
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    phases: tuple[tuple[str, ...], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        data["phases"] = [list(phase) for phase in self.phases]
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkflowMetadata:
        values = dict(data)
        values["mode"] = ExecutionMode.parse(values.get("mode", "sequential"))
        values["phases"] = tuple(tuple(phase) for phase in values.get("phases", ()))
        return cls(**values)


@dataclass(frozen=True)
class WorkflowResult:
    """
    Outcome of ``execute_workflow()``.

    ``results`` holds one entry per step of the graph, in declared order,
    including steps that were skipped or never executed.
    """

    run_id: str
    success: bool
    results: Mapping[str, StepResult]
    metadata: WorkflowMetadata
    summary: str = ""

    def __getitem__(self, step_id: str) -> StepResult:
        return self.results[step_id]

    @property
    def failed_steps(self) -> list[str]:
        return [step_id for step_id, result in self.results.items() if not result.success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "summary": self.summary,
            "results": {step_id: result.to_dict() for step_id, result in self.results.items()},
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WorkflowResult:
        return cls(
            run_id=data["run_id"],
            success=bool(data["success"]),
            summary=data.get("summary", ""),
            results={
                step_id: StepResult.from_dict(result)
                for step_id, result in data.get("results", {}).items()
            },
            metadata=WorkflowMetadata.from_dict(data["metadata"]),
        )


__all__ = [
    "StepStatus",
    "StepMetadata",
    "StepResult",
    "WorkflowMetadata",
    "WorkflowResult",
]
