"""
Walks an ExecutionPlan in one of three modes.

- **sequential**: phases in order, steps of a phase in declared order, one
  at a time.
- **parallel**: a wavefront. A step is dispatched as soon as every one of
  its dependencies has a successful result; a successor never waits for
  the rest of its predecessor's phase. Layer semaphores in the step
  executor bound how many calls hit one backend at once.
- **adaptive**: parallel when some phase holds more than one step,
  sequential otherwise.

Failure handling is shared by the modes:

- ``continue_on_error=False``: the first failure (after retries and
  fallback) halts the run. Nothing new starts, dispatched steps finish,
  and every step without a result is recorded as NOT_EXECUTED.
- ``continue_on_error=True``: a failure only stops its own descendants,
  which are recorded as SKIPPED; independent branches keep running.

Cancellation of the run's token stops dispatch the same way a halt does.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from pycgmb.core.context import CancellationToken
from pycgmb.executor.dag import ExecutionPlan
from pycgmb.executor.fallback import FallbackManager
from pycgmb.executor.step_executor import StepExecutor
from pycgmb.executor.templates import TemplateResolver
from pycgmb.models import ExecutionMode, Step, StepResult, StepStatus

logger = logging.getLogger(__name__)


def choose_mode(mode: ExecutionMode, plan: ExecutionPlan) -> ExecutionMode:
    """Concrete mode for a run; only ADAPTIVE depends on the plan."""
    if mode is not ExecutionMode.ADAPTIVE:
        return mode
    return ExecutionMode.SEQUENTIAL if plan.is_linear else ExecutionMode.PARALLEL


class WorkflowScheduler:
    """
    Drives one run of a planned graph.

    Example:
        ```python
        scheduler = WorkflowScheduler(plan, executor, fallbacks, token)
        results = await scheduler.run(ExecutionMode.ADAPTIVE)
        scheduler.mode  # ExecutionMode.PARALLEL
        ```
    """

    def __init__(
        self,
        plan: ExecutionPlan,
        executor: StepExecutor,
        fallbacks: FallbackManager,
        token: CancellationToken,
    ):
        self._plan = plan
        self._graph = plan.graph
        self._executor = executor
        self._fallbacks = fallbacks
        self._token = token
        self._results: dict[str, StepResult] = {}
        self._halted_by: str | None = None
        self.mode: ExecutionMode | None = None

    @property
    def results(self) -> dict[str, StepResult]:
        return dict(self._results)

    @property
    def halted_by(self) -> str | None:
        """Id of the step whose failure halted the run, if any."""
        return self._halted_by

    @property
    def stopped(self) -> bool:
        return self._halted_by is not None or self._token.cancelled

    async def run(self, mode: ExecutionMode) -> dict[str, StepResult]:
        """
        Execute the plan and return one result per step, in declared order.

        Raises:
            UnresolvedReferenceError: Only if a reference escaped validation
        """
        self.mode = choose_mode(mode, self._plan)
        logger.info(
            f"Running {len(self._graph)} steps in {len(self._plan.phases)} phases "
            f"({self.mode} mode)"
        )
        if self.mode is ExecutionMode.PARALLEL:
            await self._run_parallel()
        else:
            await self._run_sequential()

        self._mark_not_executed()
        return {step_id: self._results[step_id] for step_id in self._graph.step_ids}

    async def _run_sequential(self) -> None:
        for index, phase in enumerate(self._plan.phases):
            logger.debug(f"Phase {index}: {list(phase)}")
            for step_id in phase:
                if self.stopped:
                    return
                step = self._graph.step(step_id)
                if self._skip_if_blocked(step):
                    continue
                self._record(await self._run_step(step))

    async def _run_parallel(self) -> None:
        running: dict[asyncio.Task[StepResult], str] = {}
        try:
            while True:
                if not self.stopped:
                    self._propagate_skips()
                    for step in self._ready_steps(running.values()):
                        task = asyncio.create_task(self._run_step(step), name=f"step:{step.id}")
                        running[task] = step.id
                        logger.debug(f"Dispatched step '{step.id}'")

                if not running:
                    return

                done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    running.pop(task)
                    self._record(task.result())
        finally:
            if running:
                for task in running:
                    task.cancel()
                await asyncio.gather(*running, return_exceptions=True)

    def _ready_steps(self, in_flight: Iterable[str]) -> list[Step]:
        in_flight = set(in_flight)
        ready = []
        for step in self._graph:
            if step.id in self._results or step.id in in_flight:
                continue
            deps = [self._results.get(dep) for dep in step.depends_on]
            if all(result is not None and result.success for result in deps):
                ready.append(step)
        return ready

    def _propagate_skips(self) -> None:
        """Record SKIPPED for steps whose dependencies can no longer succeed."""
        changed = True
        while changed:
            changed = False
            for step in self._graph:
                if step.id not in self._results and self._skip_if_blocked(step):
                    changed = True

    def _skip_if_blocked(self, step: Step) -> bool:
        failed = [
            dep
            for dep in step.depends_on
            if dep in self._results and not self._results[dep].success
        ]
        if not failed:
            return False
        reason = f"Skipped: dependency '{failed[0]}' did not succeed"
        logger.info(f"Step '{step.id}' skipped, dependency '{failed[0]}' did not succeed")
        self._results[step.id] = StepResult.not_run(step.id, step.layer, reason, StepStatus.SKIPPED)
        return True

    async def _run_step(self, step: Step) -> StepResult:
        resolver = TemplateResolver(self._results)
        resolved = resolver.resolve_step(step)
        result = await self._executor.execute(resolved)
        if not result.success and self._fallbacks.has_fallback(step.id):
            result = await self._fallbacks.recover(step, result, resolver, resolved.input)
        return result

    def _record(self, result: StepResult) -> None:
        self._results[result.step_id] = result
        if result.success or self._graph.continue_on_error or self._halted_by is not None:
            return
        self._halted_by = result.step_id
        logger.warning(f"Halting workflow: step '{result.step_id}' failed ({result.error})")

    def _mark_not_executed(self) -> None:
        if self._token.cancelled:
            reason = f"Not executed: {self._token.reason}"
        elif self._halted_by is not None:
            reason = f"Not executed: workflow halted after step '{self._halted_by}' failed"
        else:
            reason = "Not executed"
        for step in self._graph:
            if step.id not in self._results:
                self._results[step.id] = StepResult.not_run(
                    step.id, step.layer, reason, StepStatus.NOT_EXECUTED
                )


__all__ = ["WorkflowScheduler", "choose_mode"]
