"""Core data models for workflow execution.

Defines the task graph, step results and retry behavior.

Design: Dependency-Free Models
These types have no dependencies on executor, layer or storage modules to
prevent circular imports and enable clean layering.
"""

from pycgmb.models.graph import TaskGraph
from pycgmb.models.layer import (
    LAYER_ACTIONS,
    AIStudioAction,
    ClaudeAction,
    ExecutionMode,
    GeminiAction,
    LayerType,
    is_supported_action,
    supported_actions,
)
from pycgmb.models.refs import (
    Literal,
    StepOutputRef,
    TemplateString,
    iter_references,
    parse_input,
    parse_template,
)
from pycgmb.models.result import (
    StepMetadata,
    StepResult,
    StepStatus,
    WorkflowMetadata,
    WorkflowResult,
)
from pycgmb.models.retry import RetryableError, RetryPolicy
from pycgmb.models.step import Step

__all__ = [
    "LayerType",
    "ExecutionMode",
    "ClaudeAction",
    "GeminiAction",
    "AIStudioAction",
    "LAYER_ACTIONS",
    "supported_actions",
    "is_supported_action",
    "StepOutputRef",
    "TemplateString",
    "Literal",
    "parse_template",
    "parse_input",
    "iter_references",
    "Step",
    "TaskGraph",
    "StepStatus",
    "StepMetadata",
    "StepResult",
    "WorkflowMetadata",
    "WorkflowResult",
    "RetryPolicy",
    "RetryableError",
]
