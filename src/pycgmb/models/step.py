"""Step: one unit of work bound to a layer and an action."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from pycgmb.models.layer import LayerType
from pycgmb.models.refs import StepOutputRef, iter_references, parse_input, unparse


def _dedupe(ids: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for step_id in ids:
        seen.setdefault(str(step_id), None)
    return tuple(seen)


@dataclass(frozen=True)
class Step:
    """
    A single workflow step.

    Steps are immutable. Resolving a step's input against upstream results
    produces a new Step via ``with_input()``.

    Attributes:
        id: Unique id within the graph
        layer: Backend layer that executes the step
        action: Operation name within the layer's action catalog
        input: Named input values; may contain StepOutputRef/TemplateString
        depends_on: Ids of steps that must finish first (declared order kept)
        timeout: Per-step timeout in seconds, overrides the layer default
        retries: Extra attempts after the first, overrides the engine default

    Example:
        ```python
        Step("summarize", LayerType.CLAUDE, "synthesize_results",
             input={"text": StepOutputRef("search")},
             depends_on=("search",))
        ```
    """

    id: str
    layer: LayerType
    action: str
    input: Mapping[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    timeout: float | None = None
    retries: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "layer", LayerType.parse(self.layer))
        object.__setattr__(self, "depends_on", _dedupe(self.depends_on))
        object.__setattr__(self, "input", dict(self.input))
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"Step '{self.id}' timeout must be positive, got {self.timeout}")
        if self.retries is not None and self.retries < 0:
            raise ValueError(f"Step '{self.id}' retries must be >= 0, got {self.retries}")

    @property
    def references(self) -> tuple[StepOutputRef, ...]:
        """All output references found in this step's input."""
        return tuple(iter_references(self.input))

    @property
    def has_files(self) -> bool:
        return bool(self.input.get("files"))

    def with_input(self, resolved: Mapping[str, Any]) -> Step:
        return replace(self, input=dict(resolved))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Step:
        """
        Build a step from plain data.

        Accepts both snake_case and the camelCase keys used by JSON workflow
        definitions (``dependsOn``). Template strings in ``input`` are parsed
        into typed references.
        """
        try:
            step_id = data["id"]
            layer = data["layer"]
            action = data["action"]
        except KeyError as e:
            raise ValueError(f"Step definition is missing required key {e}") from None

        depends_on = data.get("depends_on", data.get("dependsOn")) or ()
        timeout = data.get("timeout")
        retries = data.get("retries")
        return cls(
            id=str(step_id),
            layer=LayerType.parse(layer),
            action=str(action),
            input=parse_input(dict(data.get("input") or {})),
            depends_on=tuple(depends_on),
            timeout=float(timeout) if timeout is not None else None,
            retries=int(retries) if retries is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "layer": self.layer.value,
            "action": self.action,
            "input": unparse(self.input),
            "dependsOn": list(self.depends_on),
        }
        if self.timeout is not None:
            data["timeout"] = self.timeout
        if self.retries is not None:
            data["retries"] = self.retries
        return data


__all__ = ["Step"]
