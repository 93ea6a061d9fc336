"""
End-to-end tests for execute_workflow().

Covers:
- Phase ordering and reference resolution across modes
- Halting versus continue_on_error
- Workflow timeout
- Adaptive mode selection
- Aggregated metadata and the WorkflowEngine wrapper
"""

import asyncio
import json
import time

import pytest
from conftest import FAST_RETRY, FakeLayer, fake_layers, step

from pycgmb.core.errors import (
    DependencyCycleError,
    StepExecutionError,
    UnresolvedReferenceError,
)
from pycgmb.executor import WorkflowEngine, execute_workflow
from pycgmb.layers import LayerRegistry
from pycgmb.models import ExecutionMode, LayerType, StepStatus, TaskGraph
from pycgmb.quota import QuotaMonitor
from pycgmb.storage import InMemoryRunLog

SEARCH_THEN_SUMMARIZE = {
    "steps": [
        {"id": "search", "layer": "gemini", "action": "grounded_search", "dependsOn": []},
        {
            "id": "summarize",
            "layer": "claude",
            "action": "synthesize_results",
            "dependsOn": ["search"],
            "input": {"text": "{{search}}"},
        },
    ]
}


def _index(events, kind, step_id):
    return events.index((kind, step_id))


@pytest.mark.asyncio
async def test_search_then_summarize_scenario():
    search_data = {"content": "Rust 1.80 released", "sources": ["https://blog.rust-lang.org"]}
    layers = fake_layers(gemini=FakeLayer(LayerType.GEMINI, responses={"search": search_data}))
    graph = TaskGraph.from_dict(SEARCH_THEN_SUMMARIZE)

    result = await execute_workflow(graph, "adaptive", layers, retry_policy=FAST_RETRY)

    assert result.metadata.phases == (("search",), ("summarize",))
    assert result.success
    summarize_call = layers[LayerType.CLAUDE].calls_for("summarize")[0]
    assert summarize_call.input["text"] == result["search"].data
    assert summarize_call.input["text"] is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["parallel", "adaptive"])
async def test_join_waits_for_both_branches(mode):
    layers = fake_layers()
    layers[LayerType.CLAUDE].responses["A"] = {"content": "alpha", "n": 1}
    layers[LayerType.CLAUDE].delay = {"A": 0.05}
    layers[LayerType.GEMINI].delay = {"B": 0.02}
    graph = TaskGraph.from_dict(
        {
            "steps": [
                {"id": "A", "layer": "claude", "action": "execute"},
                {"id": "B", "layer": "gemini", "action": "execute"},
                {
                    "id": "C",
                    "layer": "claude",
                    "action": "execute",
                    "dependsOn": ["A", "B"],
                    "input": {"text": "{{A}}"},
                },
            ]
        }
    )

    result = await execute_workflow(graph, mode, layers, retry_policy=FAST_RETRY)

    events = layers[LayerType.CLAUDE].events
    assert _index(events, "start", "C") > _index(events, "end", "A")
    assert _index(events, "start", "C") > _index(events, "end", "B")
    assert _index(events, "start", "B") < _index(events, "end", "A")
    assert result["C"].data == {"text": {"content": "alpha", "n": 1}}
    assert result.metadata.mode is ExecutionMode.PARALLEL


@pytest.mark.asyncio
async def test_parallel_successor_does_not_wait_for_its_phase():
    layers = fake_layers()
    layers[LayerType.CLAUDE].delay = {"slow": 0.2}
    graph = TaskGraph(steps=(step("slow"), step("fast"), step("next", "fast")))

    await execute_workflow(graph, "parallel", layers, retry_policy=FAST_RETRY)

    events = layers[LayerType.CLAUDE].events
    assert _index(events, "start", "next") < _index(events, "end", "slow")


@pytest.mark.asyncio
async def test_sequential_runs_one_step_at_a_time():
    layers = fake_layers()
    graph = TaskGraph(steps=(step("a"), step("b", layer=LayerType.GEMINI), step("c", "a", "b")))

    result = await execute_workflow(graph, "sequential", layers, retry_policy=FAST_RETRY)

    assert layers[LayerType.CLAUDE].events == [
        ("start", "a"),
        ("end", "a"),
        ("start", "b"),
        ("end", "b"),
        ("start", "c"),
        ("end", "c"),
    ]
    assert result.metadata.mode is ExecutionMode.SEQUENTIAL


@pytest.mark.asyncio
async def test_parallel_respects_layer_concurrency():
    gemini = FakeLayer(LayerType.GEMINI, delay=0.05, max_concurrency=2)
    layers = fake_layers(gemini=gemini)
    graph = TaskGraph(steps=tuple(step(f"g{i}", layer=LayerType.GEMINI) for i in range(5)))

    result = await execute_workflow(graph, "parallel", layers, retry_policy=FAST_RETRY)

    assert result.success
    assert gemini.peak == 2


@pytest.mark.asyncio
async def test_halt_on_error_leaves_independent_step_not_executed():
    claude = FakeLayer(LayerType.CLAUDE, responses={"A": StepExecutionError("boom")})
    layers = fake_layers(claude=claude)
    graph = TaskGraph(steps=(step("A", retries=0), step("B")))

    result = await execute_workflow(graph, "sequential", layers, retry_policy=FAST_RETRY)

    assert not result.success
    assert result["B"].status is StepStatus.NOT_EXECUTED
    assert not result["B"].success
    assert result["B"].error == "Not executed: workflow halted after step 'A' failed"
    assert claude.calls_for("B") == []
    assert result.metadata.steps_failed == 2
    assert result.metadata.steps_skipped == 1


@pytest.mark.asyncio
async def test_halt_in_parallel_lets_dispatched_steps_finish():
    claude = FakeLayer(
        LayerType.CLAUDE,
        responses={"A": StepExecutionError("boom")},
        delay={"B": 0.1},
    )
    layers = fake_layers(claude=claude)
    graph = TaskGraph(steps=(step("A", retries=0), step("B"), step("C", "B")))

    result = await execute_workflow(graph, "parallel", layers, retry_policy=FAST_RETRY)

    assert not result.success
    assert result["B"].success
    assert result["C"].status is StepStatus.NOT_EXECUTED
    assert claude.cancelled == []


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["sequential", "parallel"])
async def test_continue_on_error_runs_independent_branch(mode):
    claude = FakeLayer(LayerType.CLAUDE, responses={"A": StepExecutionError("boom")})
    layers = fake_layers(claude=claude)
    graph = TaskGraph(
        steps=(step("A", retries=0), step("B"), step("D", "A")),
        continue_on_error=True,
    )

    result = await execute_workflow(graph, mode, layers, retry_policy=FAST_RETRY)

    assert not result.success
    assert result["B"].success
    assert result["D"].status is StepStatus.SKIPPED
    assert result["D"].error == "Skipped: dependency 'A' did not succeed"
    assert claude.calls_for("D") == []
    assert result.summary == "1/3 workflow steps completed successfully, 2 failed."


@pytest.mark.asyncio
async def test_skips_propagate_transitively():
    claude = FakeLayer(LayerType.CLAUDE, responses={"A": StepExecutionError("boom")})
    graph = TaskGraph(
        steps=(step("A", retries=0), step("B", "A"), step("C", "B")),
        continue_on_error=True,
    )

    result = await execute_workflow(
        graph, "parallel", fake_layers(claude=claude), retry_policy=FAST_RETRY
    )

    assert result["B"].status is StepStatus.SKIPPED
    assert result["C"].status is StepStatus.SKIPPED
    assert result["C"].error == "Skipped: dependency 'B' did not succeed"


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["sequential", "parallel"])
async def test_workflow_timeout_cancels_in_flight_steps(mode):
    claude = FakeLayer(LayerType.CLAUDE, delay=5.0)
    layers = fake_layers(claude=claude)
    graph = TaskGraph(steps=(step("a"), step("b", "a")), timeout=0.1)

    started = time.monotonic()
    result = await execute_workflow(graph, mode, layers, retry_policy=FAST_RETRY)

    assert time.monotonic() - started < 2.0
    assert not result.success
    assert result["a"].error == "Step 'a' cancelled: workflow timed out after 0.1s"
    assert result["b"].status is StepStatus.NOT_EXECUTED
    assert result["b"].error == "Not executed: workflow timed out after 0.1s"
    assert claude.cancelled == ["a"]
    assert claude.active == 0


@pytest.mark.asyncio
async def test_workflow_timeout_stops_steps_waiting_for_the_layer():
    claude = FakeLayer(LayerType.CLAUDE, delay=2.0, max_concurrency=1)
    graph = TaskGraph(steps=(step("a"), step("b")), timeout=0.1)

    result = await execute_workflow(
        graph, "parallel", fake_layers(claude=claude), retry_policy=FAST_RETRY
    )

    assert [s.id for s in claude.calls] == ["a"]
    assert not result["b"].success
    assert result["b"].error == "Step 'b' cancelled: workflow timed out after 0.1s"
    assert result["b"].metadata.attempts == 0


@pytest.mark.asyncio
async def test_step_timeout_leaves_siblings_running():
    claude = FakeLayer(LayerType.CLAUDE, delay={"slow": 5.0, "sibling": 0.2})
    graph = TaskGraph(
        steps=(step("slow", timeout=0.05, retries=0), step("sibling"), step("after", "sibling")),
        continue_on_error=True,
    )

    result = await execute_workflow(
        graph, "parallel", fake_layers(claude=claude), retry_policy=FAST_RETRY
    )

    assert result["slow"].error_type == "StepTimeoutError"
    assert claude.cancelled == ["slow"]
    assert result["sibling"].success
    assert result["after"].success
    assert result.metadata.steps_completed == 2


@pytest.mark.asyncio
async def test_timeout_does_not_fire_after_completion():
    graph = TaskGraph(steps=(step("a"),), timeout=0.05)

    result = await execute_workflow(graph, "sequential", fake_layers(), retry_policy=FAST_RETRY)
    await asyncio.sleep(0.1)

    assert result.success


@pytest.mark.asyncio
async def test_adaptive_mode_picks_by_shape():
    linear = TaskGraph(steps=(step("a"), step("b", "a")))
    branching = TaskGraph(steps=(step("a"), step("b")))

    linear_result = await execute_workflow(linear, "adaptive", fake_layers())
    branching_result = await execute_workflow(branching, "adaptive", fake_layers())

    assert linear_result.metadata.mode is ExecutionMode.SEQUENTIAL
    assert branching_result.metadata.mode is ExecutionMode.PARALLEL


@pytest.mark.asyncio
async def test_unresolved_reference_raises_before_any_call():
    layers = fake_layers()
    graph = TaskGraph.from_dict(
        {
            "steps": [
                {"id": "a", "layer": "claude", "action": "execute"},
                {
                    "id": "b",
                    "layer": "claude",
                    "action": "execute",
                    "input": {"t": "{{nonexistent}}"},
                },
            ]
        }
    )

    with pytest.raises(UnresolvedReferenceError):
        await execute_workflow(graph, "parallel", layers)

    assert all(layer.calls == [] for layer in layers.values())


@pytest.mark.asyncio
async def test_cycle_raises_before_any_call():
    layers = fake_layers()
    graph = TaskGraph(steps=(step("a", "b"), step("b", "a"), step("free")))

    with pytest.raises(DependencyCycleError) as exc_info:
        await execute_workflow(graph, "parallel", layers)

    assert {"a", "b"} <= set(exc_info.value.cycle)
    assert all(layer.calls == [] for layer in layers.values())


@pytest.mark.asyncio
async def test_metadata_totals_and_run_id():
    layers = fake_layers(
        claude=FakeLayer(LayerType.CLAUDE, tokens=100, cost=0.25),
        gemini=FakeLayer(LayerType.GEMINI, tokens=40),
    )
    graph = TaskGraph(steps=(step("a"), step("b", "a", layer=LayerType.GEMINI)))

    result = await execute_workflow(graph, "sequential", layers, run_id="run-42")

    assert result.run_id == "run-42"
    assert result.metadata.total_tokens == 140
    assert result.metadata.total_cost == 0.25
    assert result.metadata.steps_completed == 2
    assert result.summary == "All 2 workflow steps completed successfully."
    assert list(result.results) == ["a", "b"]


@pytest.mark.asyncio
async def test_generated_run_ids_are_unique():
    graph = TaskGraph(steps=(step("a"),))

    first = await execute_workflow(graph, "sequential", fake_layers())
    second = await execute_workflow(graph, "sequential", fake_layers())

    assert first.run_id != second.run_id


@pytest.mark.asyncio
async def test_results_are_json_serializable():
    graph = TaskGraph.from_dict(SEARCH_THEN_SUMMARIZE)

    result = await execute_workflow(graph, "adaptive", fake_layers())

    assert json.loads(json.dumps(result.to_dict()))["success"] is True


@pytest.mark.asyncio
async def test_engine_records_runs_and_probes_each_time():
    claude = FakeLayer(LayerType.CLAUDE, tokens=10)
    aistudio = FakeLayer(LayerType.AISTUDIO, tokens=500)
    registry = LayerRegistry([claude, FakeLayer(LayerType.GEMINI), aistudio])
    run_log = InMemoryRunLog()
    quota = QuotaMonitor()
    engine = WorkflowEngine(registry, run_log=run_log, quota=quota, retry_policy=FAST_RETRY)
    graph = TaskGraph(
        steps=(step("a"), step("img", "a", layer=LayerType.AISTUDIO, action="generate_image"))
    )

    first = await engine.execute_workflow(graph)
    claude.available = False
    second = await engine.execute_workflow(graph, "sequential")

    assert first.success
    assert not second.success
    assert second["a"].error_type == "LayerUnavailableError"
    assert [record.run_id for record in await run_log.list_runs()] == [
        second.run_id,
        first.run_id,
    ]

    fresh_quota = QuotaMonitor()
    await WorkflowEngine(registry, run_log=run_log, quota=fresh_quota).execute_workflow(
        TaskGraph(steps=(step("solo", layer=LayerType.GEMINI),))
    )
    assert fresh_quota.requests_today == 1
    assert fresh_quota.tokens_today == 500

    await engine.aclose()
