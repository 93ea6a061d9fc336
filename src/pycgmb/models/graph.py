"""TaskGraph: the immutable DAG of steps for one workflow run."""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import xxhash

from pycgmb.models.step import Step


@dataclass(frozen=True)
class TaskGraph:
    """
    Declarative workflow definition.

    Structural checks (unknown dependencies, cycles, unsupported actions,
    fallback rules, dangling references) are done by
    ``pycgmb.executor.dag.plan_graph()`` before anything runs.

    Attributes:
        steps: Steps in declared order
        timeout: Optional workflow-level timeout in seconds
        continue_on_error: Keep running independent branches after a failure
        fallback_strategies: Step id -> replacement step used when it fails
    """

    steps: tuple[Step, ...]
    timeout: float | None = None
    continue_on_error: bool = False
    fallback_strategies: Mapping[str, Step] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "fallback_strategies", dict(self.fallback_strategies))
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"Workflow timeout must be positive, got {self.timeout}")

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def step_ids(self) -> tuple[str, ...]:
        return tuple(step.id for step in self.steps)

    def step(self, step_id: str) -> Step:
        for candidate in self.steps:
            if candidate.id == step_id:
                return candidate
        raise KeyError(step_id)

    def fallback_for(self, step_id: str) -> Step | None:
        return self.fallback_strategies.get(step_id)

    def fingerprint(self) -> int:
        """Stable hash of the graph definition (used by the run log)."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return xxhash.xxh64(canonical.encode("utf-8")).intdigest() & 0x7FFFFFFFFFFFFFFF

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TaskGraph:
        """
        Build a graph from plain data (a parsed JSON workflow definition).

        ``fallbackStrategies`` may map a step id straight to a step
        definition, or use the ``{"replace": <step id>, "with": <step>}``
        form keyed by an arbitrary strategy name.
        """
        raw_steps: Sequence[Mapping[str, Any]] = data.get("steps") or ()
        steps = tuple(Step.from_dict(raw) for raw in raw_steps)

        raw_fallbacks = data.get("fallback_strategies", data.get("fallbackStrategies")) or {}
        fallbacks: dict[str, Step] = {}
        for key, value in raw_fallbacks.items():
            if "replace" in value and "with" in value:
                fallbacks[str(value["replace"])] = Step.from_dict(value["with"])
            else:
                fallbacks[str(key)] = Step.from_dict(value)

        timeout = data.get("timeout")
        continue_on_error = data.get("continue_on_error", data.get("continueOnError", False))
        return cls(
            steps=steps,
            timeout=float(timeout) if timeout is not None else None,
            continue_on_error=bool(continue_on_error),
            fallback_strategies=fallbacks,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "steps": [step.to_dict() for step in self.steps],
            "continueOnError": self.continue_on_error,
        }
        if self.timeout is not None:
            data["timeout"] = self.timeout
        if self.fallback_strategies:
            data["fallbackStrategies"] = {
                step_id: fallback.to_dict()
                for step_id, fallback in self.fallback_strategies.items()
            }
        return data


__all__ = ["TaskGraph"]
