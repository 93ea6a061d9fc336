"""Substitution of a failed step by its configured fallback."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pycgmb.core.context import CancellationToken
from pycgmb.executor.step_executor import StepExecutor
from pycgmb.executor.templates import TemplateResolver
from pycgmb.models import Step, StepResult, TaskGraph

logger = logging.getLogger(__name__)


class FallbackManager:
    """
    Runs at most one fallback per failed step.

    The fallback's own references are resolved against the same results
    the original step saw, and its input is laid over the original step's
    resolved input, so a fallback only needs to name what it changes. It
    gets a single attempt; a failing fallback is final.
    """

    def __init__(self, graph: TaskGraph, executor: StepExecutor, token: CancellationToken):
        self._graph = graph
        self._executor = executor
        self._token = token

    def has_fallback(self, step_id: str) -> bool:
        return self._graph.fallback_for(step_id) is not None

    async def recover(
        self,
        original: Step,
        failure: StepResult,
        resolver: TemplateResolver,
        resolved_input: Mapping[str, Any],
    ) -> StepResult:
        """
        Replace ``failure`` with the fallback's result, when there is one.

        Returns ``failure`` unchanged when no fallback is configured or the
        run has been cancelled. Otherwise the returned result is stored
        under ``original.id`` and flagged as coming from the fallback.
        """
        fallback = self._graph.fallback_for(original.id)
        if fallback is None or failure.success:
            return failure
        if self._token.cancelled:
            logger.debug(f"Skipping fallback for '{original.id}': {self._token.reason}")
            return failure

        logger.info(
            f"Step '{original.id}' failed ({failure.error}); "
            f"running fallback '{fallback.id}' on {fallback.layer}"
        )
        resolved = resolver.resolve_step(fallback)
        step = resolved.with_input({**resolved_input, **resolved.input})
        result = await self._executor.execute(step, max_attempts=1)

        if result.success:
            logger.info(f"Fallback '{fallback.id}' recovered step '{original.id}'")
        else:
            logger.warning(f"Fallback '{fallback.id}' for '{original.id}' failed: {result.error}")
        return result.as_fallback_for(original.id, failure.error)


__all__ = ["FallbackManager"]
