"""
Pytest configuration and fixtures for pycgmb tests.

Provides a scripted fake layer, run log backends and hypothesis strategies
for random task graphs.
"""

import asyncio
import random
import shutil
import tempfile
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

import pytest
from hypothesis import strategies as st

from pycgmb.core import LayerContext
from pycgmb.layers.base import Layer, LayerResponse
from pycgmb.models import LayerType, RetryPolicy, Step, TaskGraph
from pycgmb.storage import InMemoryRunLog, SqliteRunLog

FAST_RETRY = RetryPolicy(
    max_attempts=3,
    initial_delay_ms=1,
    max_delay_ms=5,
    backoff_multiplier=2.0,
    jitter_ms=1,
)
"""Real backoff shape with millisecond delays, so retry tests stay fast."""


class FakeLayer(Layer):
    """
    Scripted layer for engine tests.

    ``responses`` maps a step id to what the layer does for it:

    - an exception instance is raised
    - a list is consumed one entry per call (the last entry repeats)
    - a callable receives the step and returns the data
    - anything else is returned as the data

    Steps without a script echo their resolved input.
    """

    def __init__(
        self,
        layer_type: LayerType,
        *,
        responses: dict[str, Any] | None = None,
        delay: float | dict[str, float] = 0.0,
        available: bool = True,
        max_concurrency: int = 8,
        timeout: float | None = None,
        tokens: int | None = None,
        cost: float | None = None,
        events: list[tuple[str, str]] | None = None,
    ):
        super().__init__(max_concurrency=max_concurrency, timeout=timeout)
        self.layer_type = layer_type
        self.responses = dict(responses or {})
        self.delay = delay
        self.available = available
        self.tokens = tokens
        self.cost = cost
        self.calls: list[Step] = []
        self.events: list[tuple[str, str]] = events if events is not None else []
        self.active = 0
        self.peak = 0
        self.cancelled: list[str] = []

    async def is_available(self) -> bool:
        return self.available

    def calls_for(self, step_id: str) -> list[Step]:
        return [step for step in self.calls if step.id == step_id]

    def _delay_for(self, step: Step) -> float:
        if isinstance(self.delay, dict):
            return self.delay.get(step.id, 0.0)
        return self.delay

    def _next_outcome(self, step: Step) -> Any:
        if step.id not in self.responses:
            return lambda s: dict(s.input)
        outcome = self.responses[step.id]
        if isinstance(outcome, list):
            index = min(len(self.calls_for(step.id)) - 1, len(outcome) - 1)
            return outcome[index]
        return outcome

    async def execute(self, step: Step) -> LayerResponse:
        self.calls.append(step)
        self.events.append(("start", step.id))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            delay = self._delay_for(step)
            if delay:
                await asyncio.sleep(delay)
            outcome = self._next_outcome(step)
            if isinstance(outcome, BaseException):
                raise outcome
            data = outcome(step) if callable(outcome) else outcome
            return LayerResponse(data=data, tokens_used=self.tokens, cost=self.cost)
        except asyncio.CancelledError:
            self.cancelled.append(step.id)
            raise
        finally:
            self.active -= 1
            self.events.append(("end", step.id))


def fake_layers(**overrides: FakeLayer) -> dict[LayerType, FakeLayer]:
    """One FakeLayer per layer type; keyword arguments replace single ones.

    The default layers share one event list, so start/end order across
    layers can be asserted.
    """
    events: list[tuple[str, str]] = []
    layers = {layer_type: FakeLayer(layer_type, events=events) for layer_type in LayerType}
    for name, layer in overrides.items():
        layers[LayerType(name)] = layer
    return layers


@pytest.fixture
def layers() -> dict[LayerType, FakeLayer]:
    """Three scripted layers, all available."""
    return fake_layers()


@pytest.fixture
def all_available() -> LayerContext:
    return LayerContext.all_available()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return FAST_RETRY


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture
async def in_memory_run_log() -> AsyncGenerator[InMemoryRunLog, None]:
    """Async in-memory run log fixture with automatic cleanup."""
    run_log = InMemoryRunLog()
    yield run_log
    await run_log.reset()


@pytest.fixture
async def sqlite_memory_run_log() -> AsyncGenerator[SqliteRunLog, None]:
    """Async SQLite in-memory run log fixture with automatic cleanup."""
    run_log = SqliteRunLog(":memory:")
    await run_log.connect()
    yield run_log
    await run_log.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "runs.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
async def sqlite_file_run_log(temp_db_path: Path) -> AsyncGenerator[SqliteRunLog, None]:
    """Async SQLite file-based run log fixture with automatic cleanup."""
    run_log = SqliteRunLog(str(temp_db_path))
    await run_log.connect()
    yield run_log
    await run_log.close()


def step(
    step_id: str,
    *depends_on: str,
    layer: LayerType = LayerType.CLAUDE,
    action: str = "execute",
    **kwargs: Any,
) -> Step:
    """Shorthand for building test steps."""
    return Step(step_id, layer, action, depends_on=depends_on, **kwargs)


# Hypothesis strategies for property-based testing


@st.composite
def dag_strategy(draw: Callable) -> TaskGraph:
    """
    Random acyclic task graphs.

    Each step may depend on any subset of the steps generated before it;
    the declared order is then shuffled so it is not a topological order.
    """
    count = draw(st.integers(min_value=1, max_value=12))
    steps = []
    for index in range(count):
        earlier = [f"s{i}" for i in range(index)]
        deps = draw(st.lists(st.sampled_from(earlier), unique=True, max_size=3)) if earlier else []
        layer = draw(st.sampled_from(list(LayerType)))
        action = "generate_content" if layer is LayerType.AISTUDIO else "execute"
        steps.append(Step(f"s{index}", layer, action, depends_on=tuple(deps)))
    order = draw(st.permutations(steps))
    return TaskGraph(steps=tuple(order))


pytest.dag_strategy = dag_strategy
