"""
Workflow engine entry points.

``execute_workflow()`` is the core operation: plan the graph, run it in the
requested mode and aggregate the results. Structural problems raise a
GraphError before any step runs; step failures never raise and end up in
the returned WorkflowResult.

``WorkflowEngine`` wraps it with the things a long-lived process needs:
a layer registry probed before every run, an optional run log and the
quota monitor of the multimodal layer.

Example:
    ```python
    graph = TaskGraph.from_dict(json.loads(Path("workflow.json").read_text()))
    result = await execute_workflow(graph, "adaptive", registry)
    print(result.summary)
    ```
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Mapping

from uuid_extensions import uuid7

from pycgmb.core.context import CancellationToken, LayerContext
from pycgmb.executor.aggregator import ResultAggregator
from pycgmb.executor.dag import plan_graph
from pycgmb.executor.fallback import FallbackManager
from pycgmb.executor.scheduler import WorkflowScheduler
from pycgmb.executor.step_executor import DEFAULT_RETRIES, StepExecutor
from pycgmb.layers.base import Layer
from pycgmb.layers.registry import LayerRegistry, probe_layers
from pycgmb.models import ExecutionMode, LayerType, RetryPolicy, TaskGraph, WorkflowResult
from pycgmb.quota import QuotaMonitor
from pycgmb.storage.base import RunLog, StorageError

logger = logging.getLogger(__name__)


async def execute_workflow(
    graph: TaskGraph,
    mode: ExecutionMode | str = ExecutionMode.ADAPTIVE,
    layers: Mapping[LayerType, Layer] | None = None,
    *,
    context: LayerContext | None = None,
    retry_policy: RetryPolicy = RetryPolicy.STANDARD,
    default_retries: int = DEFAULT_RETRIES,
    run_id: str | None = None,
    rng: random.Random | None = None,
) -> WorkflowResult:
    """
    Execute a task graph.

    Args:
        graph: Workflow definition
        mode: sequential, parallel or adaptive
        layers: Layer clients shared by the steps of this run
        context: Availability snapshot; probed from ``layers`` when omitted
        retry_policy: Backoff shape; attempts come from each step's ``retries``
        default_retries: Extra attempts for steps that do not set ``retries``
        run_id: Id for the run (a uuid7 is generated when omitted)
        rng: Random source for backoff jitter

    Returns:
        WorkflowResult with one StepResult per step

    Raises:
        DependencyCycleError, UnknownDependencyError, UnresolvedReferenceError,
        InvalidStepError: The graph cannot run; no step was started
    """
    mode = ExecutionMode.parse(mode)
    layers = layers if layers is not None else {}
    run_id = run_id or str(uuid7())

    plan = plan_graph(graph)
    if context is None:
        context = await probe_layers(layers)

    token = CancellationToken()
    executor = StepExecutor(
        layers,
        context,
        token,
        retry_policy=retry_policy,
        default_retries=default_retries,
        rng=rng,
    )
    scheduler = WorkflowScheduler(plan, executor, FallbackManager(graph, executor, token), token)

    timeout_handle = None
    if graph.timeout is not None:
        timeout_handle = asyncio.get_running_loop().call_later(
            graph.timeout, token.cancel, f"workflow timed out after {graph.timeout:.1f}s"
        )

    logger.info(f"Workflow {run_id} started: {len(graph)} steps, mode={mode}")
    started = time.monotonic()
    try:
        results = await scheduler.run(mode)
    finally:
        if timeout_handle is not None:
            timeout_handle.cancel()
    total_duration = time.monotonic() - started

    result = ResultAggregator().aggregate(
        run_id,
        graph,
        results,
        total_duration=total_duration,
        mode=scheduler.mode or mode,
        phases=plan.phases,
    )
    log = logger.info if result.success else logger.warning
    log(f"Workflow {run_id} finished in {total_duration:.2f}s: {result.summary}")
    return result


class WorkflowEngine:
    """
    Long-lived engine over a layer registry.

    Every run probes the registry for a fresh LayerContext, so a layer that
    went away between runs is routed to fallbacks instead of timing out.

    Example:
        ```python
        engine = WorkflowEngine(LayerRegistry.from_settings(settings), run_log=log)
        result = await engine.execute_workflow(graph, ExecutionMode.PARALLEL)
        ```
    """

    def __init__(
        self,
        registry: LayerRegistry,
        *,
        run_log: RunLog | None = None,
        quota: QuotaMonitor | None = None,
        retry_policy: RetryPolicy = RetryPolicy.STANDARD,
        default_retries: int = DEFAULT_RETRIES,
        default_mode: ExecutionMode = ExecutionMode.ADAPTIVE,
    ):
        self.registry = registry
        self.run_log = run_log
        self.quota = quota
        self._retry_policy = retry_policy
        self._default_retries = default_retries
        self._default_mode = default_mode
        self._quota_seeded = False

    async def execute_workflow(
        self, graph: TaskGraph, mode: ExecutionMode | str | None = None
    ) -> WorkflowResult:
        if self.quota is not None and self.run_log is not None and not self._quota_seeded:
            await self.quota.seed_from(self.run_log)
            self._quota_seeded = True

        context = await self.registry.probe()
        result = await execute_workflow(
            graph,
            mode if mode is not None else self._default_mode,
            self.registry,
            context=context,
            retry_policy=self._retry_policy,
            default_retries=self._default_retries,
        )

        if self.run_log is not None:
            try:
                await self.run_log.record_run(result.run_id, graph, result)
            except StorageError as e:
                logger.error(f"Failed to record run {result.run_id}: {e}")
        return result

    async def aclose(self) -> None:
        await self.registry.aclose()
        if self.run_log is not None:
            await self.run_log.close()


__all__ = ["WorkflowEngine", "execute_workflow"]
