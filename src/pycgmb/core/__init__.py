"""
Core runtime types shared by the executor and the layers.

- errors: graph (pre-execution) and step (contained) error taxonomy
- context: LayerContext availability snapshot and CancellationToken
"""

from pycgmb.core.context import CancellationToken, LayerContext
from pycgmb.core.errors import (
    BridgeError,
    DependencyCycleError,
    GraphError,
    InvalidStepError,
    InvalidStepInputError,
    LayerInitializationError,
    LayerUnavailableError,
    RateLimitedError,
    StepError,
    StepExecutionError,
    StepTimeoutError,
    UnknownDependencyError,
    UnresolvedReferenceError,
    as_step_error,
)

__all__ = [
    "LayerContext",
    "CancellationToken",
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
