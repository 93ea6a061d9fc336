"""
Error taxonomy for workflow execution.

Two families:

- Graph errors (``GraphError``) are structural. They are raised before any
  step is dispatched and abort ``execute_workflow()`` without a result.
- Step errors (``StepError``) belong to one step. The step executor catches
  them, applies the retry policy and folds the final one into that step's
  StepResult; they never escape ``execute_workflow()``.

Step errors follow the RetryableError contract: ``is_retryable()`` decides
whether the executor tries again.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from pycgmb.models import LayerType, RetryableError


class BridgeError(Exception):
    """
    Base error with a machine readable code.

    Attributes:
        code: Stable error code (e.g. ``"DEPENDENCY_CYCLE"``)
        layer: Layer involved, if any
        details: Extra context for logs and callers
    """

    code = "BRIDGE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        layer: LayerType | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.layer = layer
        self.details = details or {}


# =============================================================================
# Graph (pre-execution) errors
# =============================================================================


class GraphError(BridgeError):
    """Structural problem with a task graph."""

    code = "GRAPH_ERROR"


class InvalidStepError(GraphError):
    """Duplicate id, unsupported (layer, action) pair or bad fallback."""

    code = "INVALID_STEP"

    def __init__(self, step_id: str, reason: str):
        super().__init__(f"Invalid step '{step_id}': {reason}", details={"step_id": step_id})
        self.step_id = step_id
        self.reason = reason


class UnknownDependencyError(GraphError):
    code = "UNKNOWN_DEPENDENCY"

    def __init__(self, step_id: str, missing: str):
        super().__init__(
            f"Step '{step_id}' depends on non-existent step '{missing}'",
            details={"step_id": step_id, "missing": missing},
        )
        self.step_id = step_id
        self.missing = missing


class DependencyCycleError(GraphError):
    """A step is reachable from itself through depends_on edges."""

    code = "DEPENDENCY_CYCLE"

    def __init__(self, cycle: Sequence[str]):
        self.cycle = tuple(cycle)
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(self.cycle)}",
            details={"cycle": list(self.cycle)},
        )


class UnresolvedReferenceError(GraphError):
    """An input references a step whose output is not available to it."""

    code = "UNRESOLVED_REFERENCE"

    def __init__(self, step_id: str, reference: str, reason: str = ""):
        message = f"Step '{step_id}' references '{reference}'"
        message += f": {reason}" if reason else " which has not completed"
        super().__init__(message, details={"step_id": step_id, "reference": reference})
        self.step_id = step_id
        self.reference = reference


# =============================================================================
# Layer lifecycle errors
# =============================================================================


class LayerInitializationError(BridgeError):
    """A layer could not be set up (binary missing, no credentials...)."""

    code = "LAYER_INIT_FAILED"

    def __init__(self, layer: LayerType, reason: str):
        super().__init__(f"{layer} layer failed to initialize: {reason}", layer=layer)
        self.reason = reason


# =============================================================================
# Step (per-step, contained) errors
# =============================================================================


class StepError(BridgeError, RetryableError):
    """Failure of one step attempt."""

    code = "STEP_ERROR"
    retryable = True

    def is_retryable(self) -> bool:
        return self.retryable


class StepExecutionError(StepError):
    """The layer call failed (transport failure, bad exit status...)."""

    code = "STEP_EXECUTION_FAILED"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        layer: LayerType | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, layer=layer, details=details)
        self.retryable = retryable


class StepTimeoutError(StepError):
    """
    A step ran past its timeout, or the workflow was cancelled under it.

    Timeouts are retryable; cancellations are not, since the workflow that
    would retry them is already gone.
    """

    code = "STEP_TIMEOUT"

    def __init__(self, step_id: str, timeout: float | None, *, cancelled_reason: str | None = None):
        if cancelled_reason:
            message = f"Step '{step_id}' cancelled: {cancelled_reason}"
        else:
            message = f"Step '{step_id}' timed out after {timeout or 0:.1f}s"
        super().__init__(message, details={"step_id": step_id, "timeout": timeout})
        self.step_id = step_id
        self.timeout = timeout
        self.cancelled_reason = cancelled_reason
        self.retryable = cancelled_reason is None


class RateLimitedError(StepError):
    """The backend asked us to slow down."""

    code = "RATE_LIMITED"

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        layer: LayerType | None = None,
    ):
        super().__init__(message, layer=layer, details={"retry_after": retry_after})
        self.retry_after = retry_after


class InvalidStepInputError(StepError):
    """The layer rejected the step's input. Never retried."""

    code = "INVALID_INPUT"
    retryable = False


class LayerUnavailableError(StepError):
    """The step's layer is absent. Never retried; goes to the fallback."""

    code = "LAYER_UNAVAILABLE"
    retryable = False

    def __init__(self, layer: LayerType, reason: str = "layer is not available"):
        super().__init__(f"{layer} {reason}", layer=layer)


def as_step_error(error: Exception, layer: LayerType | None = None) -> StepError:
    """
    Normalize an arbitrary exception raised by a layer client.

    Transport-level failures (``OSError`` and its ``ConnectionError``
    family) stay retryable; anything else is treated as permanent.
    """
    if isinstance(error, StepError):
        return error
    if isinstance(error, TimeoutError):
        return StepExecutionError(f"Layer call timed out: {error}", retryable=True, layer=layer)
    if isinstance(error, OSError):
        return StepExecutionError(f"Transport failure: {error}", retryable=True, layer=layer)
    if isinstance(error, (ValueError, TypeError, KeyError)):
        return InvalidStepInputError(f"Invalid input: {error}", layer=layer)
    return StepExecutionError(f"{type(error).__name__}: {error}", retryable=False, layer=layer)


__all__ = [
    "BridgeError",
    "GraphError",
    "InvalidStepError",
    "UnknownDependencyError",
    "DependencyCycleError",
    "UnresolvedReferenceError",
    "LayerInitializationError",
    "StepError",
    "StepExecutionError",
    "StepTimeoutError",
    "RateLimitedError",
    "InvalidStepInputError",
    "LayerUnavailableError",
    "as_step_error",
]
