"""Substitution of upstream step outputs into step inputs."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any

from pycgmb.core.errors import UnresolvedReferenceError
from pycgmb.models import (
    Literal,
    Step,
    StepOutputRef,
    StepResult,
    TaskGraph,
    TemplateString,
)

logger = logging.getLogger(__name__)

_MISSING = object()


def validate_references(graph: TaskGraph, ancestors: Mapping[str, frozenset[str]]) -> None:
    """
    Check every reference in the graph before anything runs.

    A step may only reference steps it (transitively) depends on; those are
    the only outputs guaranteed to exist when it starts. A fallback sees
    the ancestors of the step it replaces.

    Raises:
        UnresolvedReferenceError: On the first reference that breaks the rule
    """
    known = set(graph.step_ids)
    for step in graph:
        _check_step(step, ancestors[step.id], known)
    for original_id, fallback in graph.fallback_strategies.items():
        _check_step(fallback, ancestors.get(original_id, frozenset()), known)


def _check_step(step: Step, visible: frozenset[str], known: set[str]) -> None:
    for ref in step.references:
        if ref.step_id not in known:
            raise UnresolvedReferenceError(step.id, str(ref), "no such step in the workflow")
        if ref.step_id not in visible:
            raise UnresolvedReferenceError(
                step.id,
                str(ref),
                f"'{ref.step_id}' is not a dependency of '{step.id}'",
            )


class TemplateResolver:
    """
    Resolves a step's input against the results recorded so far.

    - ``StepOutputRef`` becomes the referenced step's data, or the value at
      its field path. The structure is kept as is.
    - ``TemplateString`` is rendered to text; structured values are
      rendered as JSON.
    - ``Literal`` is unwrapped without looking inside it.

    A field path that does not exist in the data resolves to None.
    """

    def __init__(self, results: Mapping[str, StepResult]):
        self._results = results

    def resolve_step(self, step: Step) -> Step:
        """Return a copy of ``step`` with every reference substituted."""
        if not step.references:
            return step
        return step.with_input(self.resolve_value(step.input, step.id))

    def resolve_value(self, value: Any, step_id: str) -> Any:
        if isinstance(value, StepOutputRef):
            return self._lookup(value, step_id)
        if isinstance(value, TemplateString):
            return "".join(
                _render(self._lookup(part, step_id)) if isinstance(part, StepOutputRef) else part
                for part in value.parts
            )
        if isinstance(value, Literal):
            return value.value
        if isinstance(value, Mapping):
            return {key: self.resolve_value(item, step_id) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(item, step_id) for item in value]
        if isinstance(value, tuple):
            return tuple(self.resolve_value(item, step_id) for item in value)
        return value

    def _lookup(self, ref: StepOutputRef, step_id: str) -> Any:
        result = self._results.get(ref.step_id)
        if result is None:
            raise UnresolvedReferenceError(step_id, str(ref))
        if not result.success:
            raise UnresolvedReferenceError(step_id, str(ref), f"'{ref.step_id}' did not succeed")

        value = _project(result.data, ref.path)
        if value is _MISSING:
            logger.debug(f"Step '{step_id}': {ref} has no value at '{ref.field}', using None")
            return None
        return value


def _project(data: Any, path: Sequence[str]) -> Any:
    current = data
    for key in path:
        if isinstance(current, Mapping):
            if key not in current:
                return _MISSING
            current = current[key]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(key)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
    return current


def _render(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


__all__ = ["TemplateResolver", "validate_references"]
