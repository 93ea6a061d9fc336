"""
Dependency resolution for task graphs.

**Design Decision Hidden** (Parnas's Information Hiding):
- **"In which order do steps run"**

``plan_graph()`` validates a TaskGraph and groups its steps into phases.
The scheduler only ever sees the resulting ExecutionPlan.

**How It Works**:
1. Reject duplicate ids and (layer, action) pairs outside the catalog
2. Reject dependencies on ids that are not in the graph
3. Find cycles with a depth-first walk and report the offending path
4. Group steps by level (Kahn's algorithm): phase 0 holds steps with no
   dependencies, a step lands in phase k when its deepest dependency is in
   phase k-1
5. Check fallbacks and input references against each step's ancestors

**Example**:
```python
plan = plan_graph(graph)
plan.phases
# (('preprocess',), ('multimodal_analysis',), ('synthesis',))
print(plan.level_graph())
```
"""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass

from pycgmb.core.errors import (
    DependencyCycleError,
    InvalidStepError,
    UnknownDependencyError,
)
from pycgmb.executor.templates import validate_references
from pycgmb.models import Step, TaskGraph, is_supported_action, supported_actions


@dataclass(frozen=True)
class DagSummary:
    """
    Summary information about a graph's structure.

    **Attributes**:
        total_steps: Total number of steps
        root_count: Steps with no dependencies
        leaf_count: Steps nothing depends on
        max_depth: Index of the last phase
        max_width: Size of the widest phase
        roots: Root step ids
        leaves: Leaf step ids
    """

    total_steps: int
    root_count: int
    leaf_count: int
    max_depth: int
    max_width: int
    roots: list[str]
    leaves: list[str]


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Validated graph plus its phase layering.

    Attributes:
        graph: The validated graph
        phases: Step ids per phase, declared order kept inside each phase
        levels: Step id -> phase index
        ancestors: Step id -> every step it transitively depends on
    """

    graph: TaskGraph
    phases: tuple[tuple[str, ...], ...]
    levels: Mapping[str, int]
    ancestors: Mapping[str, frozenset[str]]

    @property
    def max_width(self) -> int:
        return max((len(phase) for phase in self.phases), default=0)

    @property
    def is_linear(self) -> bool:
        """True when no phase holds more than one step."""
        return self.max_width <= 1

    def dependents(self, step_id: str) -> list[str]:
        """Every step that transitively depends on ``step_id``."""
        return [sid for sid, ups in self.ancestors.items() if step_id in ups]

    def summary(self) -> DagSummary:
        graph = self.graph
        roots = [step.id for step in graph if not step.depends_on]
        depended_on = {dep for step in graph for dep in step.depends_on}
        leaves = [step.id for step in graph if step.id not in depended_on]
        return DagSummary(
            total_steps=len(graph),
            root_count=len(roots),
            leaf_count=len(leaves),
            max_depth=max(len(self.phases) - 1, 0),
            max_width=self.max_width,
            roots=roots,
            leaves=leaves,
        )

    def level_graph(self) -> str:
        """
        Level-based view of the plan.

        **Example output**:
        ```
        Execution phases (4 steps):

        Phase 0: [search] [extract] (2 parallel steps)
                 ↓
        Phase 1: [summarize]
        ```
        """
        output = f"Execution phases ({len(self.graph)} steps):\n\n"
        last = len(self.phases) - 1
        for index, phase in enumerate(self.phases):
            parallel_note = f" ({len(phase)} parallel steps)" if len(phase) > 1 else ""
            output += f"Phase {index}: [{'] ['.join(phase)}]{parallel_note}\n"
            if index < last:
                output += "         ↓\n"
        return output


def plan_graph(graph: TaskGraph) -> ExecutionPlan:
    """
    Validate ``graph`` and compute its execution phases.

    **Raises**:
        InvalidStepError: Duplicate id, unsupported action or bad fallback
        UnknownDependencyError: A dependency id is not in the graph
        DependencyCycleError: The dependency graph has a cycle
        UnresolvedReferenceError: An input references a step that is not
            one of the step's ancestors
    """
    step_map = _index_steps(graph)

    for step in graph:
        for dep in step.depends_on:
            if dep not in step_map:
                raise UnknownDependencyError(step.id, dep)
            if dep == step.id:
                raise DependencyCycleError([step.id, step.id])

    _check_cycles(graph, step_map)
    levels = _calculate_levels(graph)
    phases = _group_by_level(graph, levels)
    ancestors = _calculate_ancestors(graph, step_map)

    _check_fallbacks(graph, step_map)
    validate_references(graph, ancestors)

    return ExecutionPlan(graph=graph, phases=phases, levels=levels, ancestors=ancestors)


def resolve_phases(graph: TaskGraph) -> list[list[str]]:
    """Phase layering of ``graph`` as plain lists."""
    return [list(phase) for phase in plan_graph(graph).phases]


def _index_steps(graph: TaskGraph) -> dict[str, Step]:
    step_map: dict[str, Step] = {}
    for step in graph:
        if step.id in step_map:
            raise InvalidStepError(step.id, "duplicate step id")
        _check_action(step)
        step_map[step.id] = step
    return step_map


def _check_action(step: Step) -> None:
    if not is_supported_action(step.layer, step.action):
        raise InvalidStepError(
            step.id,
            f"action '{step.action}' is not supported by the {step.layer} layer "
            f"(supported: {', '.join(sorted(supported_actions(step.layer)))})",
        )


def _check_cycles(graph: TaskGraph, step_map: Mapping[str, Step]) -> None:
    """
    Depth-first search for a back edge.

    On a cycle, the path from the first revisited step back to itself is
    reported, e.g. ``a -> b -> a``.
    """
    visited: set[str] = set()
    stack: list[str] = []
    on_stack: set[str] = set()

    def visit(step_id: str) -> None:
        visited.add(step_id)
        stack.append(step_id)
        on_stack.add(step_id)

        for dep in step_map[step_id].depends_on:
            if dep in on_stack:
                start = stack.index(dep)
                raise DependencyCycleError([*stack[start:], dep])
            if dep not in visited:
                visit(dep)

        stack.pop()
        on_stack.remove(step_id)

    for step in graph:
        if step.id not in visited:
            visit(step.id)


def _calculate_levels(graph: TaskGraph) -> dict[str, int]:
    """
    Kahn's algorithm, tracking the level of every step.

    A step's level is one more than the deepest of its dependencies.
    """
    in_degree: dict[str, int] = {step.id: len(step.depends_on) for step in graph}
    dependents: dict[str, list[str]] = {step.id: [] for step in graph}
    for step in graph:
        for dep in step.depends_on:
            dependents[dep].append(step.id)

    levels: dict[str, int] = {}
    queue = deque(step.id for step in graph if in_degree[step.id] == 0)
    for step_id in queue:
        levels[step_id] = 0

    while queue:
        step_id = queue.popleft()
        for dependent in dependents[step_id]:
            levels[dependent] = max(levels.get(dependent, 0), levels[step_id] + 1)
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(levels) != len(graph) or any(in_degree.values()):
        remaining = [step.id for step in graph if in_degree[step.id] > 0]
        raise DependencyCycleError(remaining)

    return levels


def _group_by_level(graph: TaskGraph, levels: Mapping[str, int]) -> tuple[tuple[str, ...], ...]:
    if not levels:
        return ()
    buckets: list[list[str]] = [[] for _ in range(max(levels.values()) + 1)]
    for step in graph:
        buckets[levels[step.id]].append(step.id)
    return tuple(tuple(bucket) for bucket in buckets)


def _calculate_ancestors(
    graph: TaskGraph, step_map: Mapping[str, Step]
) -> dict[str, frozenset[str]]:
    ancestors: dict[str, frozenset[str]] = {}

    def collect(step_id: str) -> frozenset[str]:
        if step_id in ancestors:
            return ancestors[step_id]
        found: set[str] = set()
        for dep in step_map[step_id].depends_on:
            found.add(dep)
            found |= collect(dep)
        ancestors[step_id] = frozenset(found)
        return ancestors[step_id]

    for step in graph:
        collect(step.id)
    return ancestors


def _check_fallbacks(graph: TaskGraph, step_map: Mapping[str, Step]) -> None:
    for original_id, fallback in graph.fallback_strategies.items():
        if original_id not in step_map:
            raise InvalidStepError(original_id, "fallback configured for a step not in the graph")
        if fallback.id == original_id:
            raise InvalidStepError(original_id, "fallback step must have a different id")
        _check_action(fallback)
        original = step_map[original_id]
        extra = [dep for dep in fallback.depends_on if dep not in original.depends_on]
        if extra:
            raise InvalidStepError(
                fallback.id,
                f"fallback for '{original_id}' adds dependencies {extra} "
                f"not declared by the step it replaces",
            )


__all__ = [
    "DagSummary",
    "ExecutionPlan",
    "plan_graph",
    "resolve_phases",
]
