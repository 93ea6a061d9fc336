"""
Execution of one step against its layer.

**Design Decision Hidden** (Parnas's Information Hiding):
- **"How a single layer call is guarded"**

The scheduler hands a resolved Step to ``StepExecutor.execute()`` and gets
exactly one StepResult back. Timeouts, retries, backoff, the per-layer
concurrency ceiling and cancellation all stay inside this module.

**Retry loop**:
1. Acquire the layer's semaphore, call ``layer.execute(step)`` raced
   against the step timeout and the run's cancellation token
2. On success, build the StepResult
3. On a retryable failure with attempts left, release the semaphore,
   back off (exponential delay plus jitter) and try again
4. Otherwise fold the last error into a failed StepResult
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Mapping

from pycgmb.core.context import CancellationToken, LayerContext
from pycgmb.core.errors import (
    LayerUnavailableError,
    RateLimitedError,
    StepError,
    StepTimeoutError,
    as_step_error,
)
from pycgmb.layers.base import Layer, LayerResponse
from pycgmb.models import LayerType, RetryPolicy, Step, StepResult

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 2
"""Extra attempts after the first for steps that do not set ``retries``."""


class StepExecutor:
    """
    Runs steps for one workflow run.

    One instance is created per ``execute_workflow()`` call; its semaphores
    therefore bound concurrency per layer within that run only.

    Example:
        ```python
        executor = StepExecutor(layers, context, token)
        result = await executor.execute(step)
        ```
    """

    def __init__(
        self,
        layers: Mapping[LayerType, Layer],
        context: LayerContext,
        token: CancellationToken,
        *,
        retry_policy: RetryPolicy = RetryPolicy.STANDARD,
        default_retries: int = DEFAULT_RETRIES,
        rng: random.Random | None = None,
    ):
        if default_retries < 0:
            raise ValueError(f"default_retries must be >= 0, got {default_retries}")
        self._layers = layers
        self._context = context
        self._token = token
        self._retry_policy = retry_policy
        self._default_retries = default_retries
        self._rng = rng
        self._semaphores: dict[LayerType, asyncio.Semaphore] = {
            layer_type: asyncio.Semaphore(layer.max_concurrency)
            for layer_type, layer in layers.items()
        }

    def policy_for(self, step: Step) -> RetryPolicy:
        retries = step.retries if step.retries is not None else self._default_retries
        return self._retry_policy.with_retries(retries)

    async def execute(self, step: Step, *, max_attempts: int | None = None) -> StepResult:
        """
        Run ``step`` until it succeeds or its retry budget is spent.

        Args:
            step: Step with its input already resolved
            max_attempts: Override the step's own budget (fallbacks run once)

        Returns:
            The step's single StepResult. Step errors never propagate.
        """
        started = time.monotonic()
        layer = self._layers.get(step.layer)
        if layer is None or not self._context.is_available(step.layer):
            reason = self._context.notes.get(step.layer, "layer is not available")
            error = LayerUnavailableError(step.layer, reason)
            logger.warning(f"Step '{step.id}' not run: {error}")
            return StepResult.failed(step.id, step.layer, error, duration=0.0, attempts=0)

        policy = self.policy_for(step)
        if max_attempts is not None:
            policy = policy.with_retries(max_attempts - 1)
        timeout = step.timeout if step.timeout is not None else layer.default_timeout(step)

        attempt = 0
        error: StepError | None = None
        while attempt < policy.max_attempts:
            async with self._semaphores[step.layer]:
                # a step queued behind the layer ceiling may outlive the run
                if self._token.cancelled:
                    error = StepTimeoutError(step.id, timeout, cancelled_reason=self._token.reason)
                    break

                attempt += 1
                logger.debug(
                    f"Step '{step.id}' attempt {attempt}/{policy.max_attempts} "
                    f"on {step.layer} ({step.action}, timeout={timeout:.1f}s)"
                )
                try:
                    response = await self._call(layer, step, timeout)
                except StepError as e:
                    error = e
                except Exception as e:
                    error = as_step_error(e, step.layer)
                else:
                    duration = time.monotonic() - started
                    logger.info(
                        f"Step '{step.id}' succeeded in {duration:.2f}s (attempt {attempt})"
                    )
                    return StepResult.succeeded(
                        step.id,
                        step.layer,
                        response.data,
                        duration=duration,
                        attempts=attempt,
                        tokens_used=response.tokens_used,
                        cost=response.cost,
                        model=response.model,
                    )

            if not error.is_retryable():
                logger.warning(f"Step '{step.id}' failed (not retryable): {error}")
                break

            delay_ms = policy.jittered_delay(attempt, self._rng)
            if delay_ms is None:
                logger.warning(f"Step '{step.id}' failed after {attempt} attempts: {error}")
                break
            if isinstance(error, RateLimitedError) and error.retry_after:
                delay_ms = max(delay_ms, int(error.retry_after * 1000))

            logger.warning(
                f"Step '{step.id}' attempt {attempt} failed: {error}; retrying in {delay_ms}ms"
            )
            if not await self._token.sleep(delay_ms / 1000):
                error = StepTimeoutError(step.id, timeout, cancelled_reason=self._token.reason)
                break

        assert error is not None
        return StepResult.failed(
            step.id,
            step.layer,
            error,
            duration=time.monotonic() - started,
            attempts=attempt,
        )

    async def _call(self, layer: Layer, step: Step, timeout: float) -> LayerResponse:
        """
        One layer call, bounded by ``timeout`` and the cancellation token.

        The call task is cancelled and awaited before returning, so a layer
        that owns a subprocess or socket has released it by then.
        """
        call = asyncio.ensure_future(layer.execute(step))
        cancelled = asyncio.ensure_future(self._token.wait())
        try:
            done, _ = await asyncio.wait(
                {call, cancelled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            call.cancel()
            cancelled.cancel()
            await asyncio.gather(call, cancelled, return_exceptions=True)
            raise

        cancelled.cancel()
        if call in done:
            return call.result()

        call.cancel()
        await asyncio.gather(call, cancelled, return_exceptions=True)
        if self._token.cancelled:
            raise StepTimeoutError(step.id, timeout, cancelled_reason=self._token.reason)
        raise StepTimeoutError(step.id, timeout)


__all__ = ["DEFAULT_RETRIES", "StepExecutor"]
