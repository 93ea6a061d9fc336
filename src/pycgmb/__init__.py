"""
pycgmb: multi-layer AI workflow execution.

Three backends sit behind one engine: a reasoning CLI (claude), a
search/grounding CLI (gemini) and a multimodal HTTP API (AI Studio). A
workflow is a declarative DAG of steps, each bound to one layer; the engine
orders the steps, feeds outputs forward, retries transient failures, swaps
in fallbacks and reports one aggregated result.

Design Pattern: Façade Pattern
This module re-exports the pieces most callers need.

Example:
    ```python
    import asyncio
    from pycgmb import (
        ExecutionMode, LayerRegistry, WorkflowEngine, load_settings, search_and_summarize,
    )

    async def main():
        settings = load_settings()
        engine = WorkflowEngine(LayerRegistry.from_settings(settings))
        try:
            graph = search_and_summarize("latest asyncio release notes")
            result = await engine.execute_workflow(graph, ExecutionMode.ADAPTIVE)
            print(result.summary)
            print(result["summarize"].data)
        finally:
            await engine.aclose()

    asyncio.run(main())
    ```
"""

# Version
__version__ = "0.1.0"

# Core types
from pycgmb.models import (
    ExecutionMode,
    LayerType,
    Literal,
    RetryableError,
    RetryPolicy,
    Step,
    StepOutputRef,
    StepResult,
    StepStatus,
    TaskGraph,
    TemplateString,
    WorkflowMetadata,
    WorkflowResult,
)

# Errors and per-run context
from pycgmb.core import (
    BridgeError,
    CancellationToken,
    DependencyCycleError,
    GraphError,
    InvalidStepError,
    LayerContext,
    LayerUnavailableError,
    RateLimitedError,
    StepExecutionError,
    StepTimeoutError,
    UnknownDependencyError,
    UnresolvedReferenceError,
)

# Execution
from pycgmb.executor import ExecutionPlan, WorkflowEngine, execute_workflow, plan_graph

# Layers (Adapter pattern)
from pycgmb.layers import (
    AIStudioLayer,
    ClaudeCodeLayer,
    GeminiCliLayer,
    Layer,
    LayerRegistry,
    LayerResponse,
)

# Storage, quota, configuration
from pycgmb.storage import InMemoryRunLog, RunLog, SqliteRunLog, open_run_log
from pycgmb.quota import QuotaMonitor
from pycgmb.config import Settings, load_settings

# Ready-made workflows
from pycgmb.workflows import build_workflow, search_and_summarize

__all__ = [
    "__version__",
    # Core types
    "ExecutionMode",
    "LayerType",
    "Step",
    "TaskGraph",
    "StepOutputRef",
    "TemplateString",
    "Literal",
    "StepStatus",
    "StepResult",
    "WorkflowMetadata",
    "WorkflowResult",
    "RetryPolicy",
    "RetryableError",
    # Errors and context
    "BridgeError",
    "GraphError",
    "DependencyCycleError",
    "UnknownDependencyError",
    "UnresolvedReferenceError",
    "InvalidStepError",
    "StepTimeoutError",
    "StepExecutionError",
    "RateLimitedError",
    "LayerUnavailableError",
    "LayerContext",
    "CancellationToken",
    # Execution
    "plan_graph",
    "ExecutionPlan",
    "execute_workflow",
    "WorkflowEngine",
    # Layers
    "Layer",
    "LayerResponse",
    "ClaudeCodeLayer",
    "GeminiCliLayer",
    "AIStudioLayer",
    "LayerRegistry",
    # Storage, quota, configuration
    "RunLog",
    "InMemoryRunLog",
    "SqliteRunLog",
    "open_run_log",
    "QuotaMonitor",
    "Settings",
    "load_settings",
    # Workflows
    "build_workflow",
    "search_and_summarize",
]
