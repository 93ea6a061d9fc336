"""
Tests for fallback substitution.

A failed step with a configured fallback is replaced by the fallback's
result under the original id; the fallback runs once and is never chained.
"""

import pytest
from conftest import FAST_RETRY, FakeLayer, fake_layers, step

from pycgmb.core.errors import LayerUnavailableError, StepExecutionError
from pycgmb.executor import execute_workflow
from pycgmb.models import LayerType, Step, StepOutputRef, StepStatus, TaskGraph


def _graph(**kwargs):
    return TaskGraph(
        steps=(
            step("prep", layer=LayerType.CLAUDE, action="analyze_requirements"),
            step(
                "main",
                "prep",
                layer=LayerType.AISTUDIO,
                action="process_multimodal",
                input={"prompt": "describe", "context": StepOutputRef("prep")},
            ),
            step("report", "main", input={"analysis": StepOutputRef("main")}),
        ),
        fallback_strategies={
            "main": Step(
                "main_fb",
                LayerType.GEMINI,
                "analyze_with_grounding",
                input={"mode": "grounded"},
                depends_on=("prep",),
            )
        },
        **kwargs,
    )


@pytest.mark.asyncio
async def test_unavailable_layer_uses_fallback():
    layers = fake_layers(
        claude=FakeLayer(LayerType.CLAUDE, responses={"prep": "requirements"}),
        aistudio=FakeLayer(LayerType.AISTUDIO, available=False),
    )

    result = await execute_workflow(_graph(), "sequential", layers, retry_policy=FAST_RETRY)

    main = result["main"]
    assert result.success
    assert main.step_id == "main"
    assert main.success
    assert main.metadata.fallback_used
    assert main.metadata.fallback_step_id == "main_fb"
    assert main.metadata.layer is LayerType.GEMINI
    assert "aistudio" in main.metadata.original_error
    assert main.data == {"prompt": "describe", "context": "requirements", "mode": "grounded"}
    assert layers[LayerType.AISTUDIO].calls == []
    assert result.metadata.fallbacks_used == 1


@pytest.mark.asyncio
async def test_dependents_see_fallback_data():
    layers = fake_layers(
        aistudio=FakeLayer(LayerType.AISTUDIO, available=False),
        gemini=FakeLayer(LayerType.GEMINI, responses={"main_fb": {"content": "from gemini"}}),
    )

    result = await execute_workflow(_graph(), "sequential", layers, retry_policy=FAST_RETRY)

    assert result["report"].data == {"analysis": {"content": "from gemini"}}


@pytest.mark.asyncio
async def test_failing_step_is_retried_before_fallback():
    aistudio = FakeLayer(LayerType.AISTUDIO, responses={"main": StepExecutionError("503")})
    layers = fake_layers(aistudio=aistudio)

    result = await execute_workflow(_graph(), "sequential", layers, retry_policy=FAST_RETRY)

    assert len(aistudio.calls_for("main")) == 3
    assert result["main"].success
    assert result["main"].metadata.original_error == "503"


@pytest.mark.asyncio
async def test_failing_fallback_is_final():
    gemini = FakeLayer(LayerType.GEMINI, responses={"main_fb": StepExecutionError("also down")})
    layers = fake_layers(aistudio=FakeLayer(LayerType.AISTUDIO, available=False), gemini=gemini)

    result = await execute_workflow(_graph(), "sequential", layers, retry_policy=FAST_RETRY)

    main = result["main"]
    assert not result.success
    assert not main.success
    assert main.error == "also down"
    assert main.metadata.fallback_used
    assert main.metadata.attempts == 1
    assert len(gemini.calls_for("main_fb")) == 1
    assert result["report"].status is StepStatus.NOT_EXECUTED


@pytest.mark.asyncio
async def test_unavailable_fallback_layer():
    layers = fake_layers(
        aistudio=FakeLayer(LayerType.AISTUDIO, available=False),
        gemini=FakeLayer(LayerType.GEMINI, available=False),
    )

    result = await execute_workflow(
        _graph(continue_on_error=True), "parallel", layers, retry_policy=FAST_RETRY
    )

    assert result["main"].error_type == LayerUnavailableError.__name__
    assert result["main"].metadata.fallback_step_id == "main_fb"
    assert result["report"].status is StepStatus.SKIPPED


@pytest.mark.asyncio
async def test_step_without_fallback_keeps_its_failure():
    claude = FakeLayer(LayerType.CLAUDE, responses={"prep": StepExecutionError("nope")})

    result = await execute_workflow(
        _graph(), "sequential", fake_layers(claude=claude), retry_policy=FAST_RETRY
    )

    assert not result["prep"].success
    assert not result["prep"].metadata.fallback_used
    assert result.metadata.fallbacks_used == 0
