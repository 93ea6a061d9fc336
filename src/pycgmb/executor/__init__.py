"""Workflow execution: planning, step execution, fallbacks and scheduling.

The pieces are layered leaf-first:

- ``dag``: validation and phase layering (``plan_graph``)
- ``templates``: substitution of upstream outputs into step inputs
- ``step_executor``: timeout, retry and backoff around one layer call
- ``fallback``: one substitution per failed step
- ``aggregator``: the final WorkflowResult
- ``scheduler``: sequential, parallel and adaptive modes
- ``engine``: ``execute_workflow()`` and ``WorkflowEngine``
"""

from pycgmb.executor.aggregator import ResultAggregator, summarize
from pycgmb.executor.dag import DagSummary, ExecutionPlan, plan_graph, resolve_phases
from pycgmb.executor.engine import WorkflowEngine, execute_workflow
from pycgmb.executor.fallback import FallbackManager
from pycgmb.executor.scheduler import WorkflowScheduler, choose_mode
from pycgmb.executor.step_executor import DEFAULT_RETRIES, StepExecutor
from pycgmb.executor.templates import TemplateResolver, validate_references

__all__ = [
    "plan_graph",
    "resolve_phases",
    "ExecutionPlan",
    "DagSummary",
    "TemplateResolver",
    "validate_references",
    "StepExecutor",
    "DEFAULT_RETRIES",
    "FallbackManager",
    "ResultAggregator",
    "summarize",
    "WorkflowScheduler",
    "choose_mode",
    "execute_workflow",
    "WorkflowEngine",
]
