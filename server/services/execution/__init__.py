"""Execution engine package.

Sequential workflow execution with:
- Topological scheduling with cycle tolerance
- ``{{template}}`` substitution against prior node outputs, trigger and variables
- Explicit handler registry keyed by node type
- Flat error taxonomy with a single retryable flag per failure
"""

from .errors import (
    NodeErrorCode,
    ExecutorErrorCode,
    CONFIGURATION_ERRORS,
    RUNTIME_ERRORS,
    is_configuration_error,
    classify_http_status,
    WorkflowEngineError,
    WorkflowNotFoundError,
    ExecutionNotFoundError,
    WorkflowNotRunnableError,
    JobQueueFullError,
)
from .paths import MISSING, get_path, set_path, split_path
from .substitution import build_substitution_context, resolve_path, substitute
from .scheduler import ScheduleResult, find_dangling_edges, order, plan
from .types import (
    Handler,
    HandlerMetadata,
    NodeError,
    NodeExecutionContext,
    NodeExecutionResult,
    ResultMetadata,
    RunVariables,
    failure_result,
    missing_config,
    success_result,
)
from .context import build_node_context, gather_inputs
from .registry import HandlerRegistry
from .conditions import (
    evaluate_condition,
    evaluate_conditions,
    combine_results,
    get_available_operators,
    OPERATORS,
)
from .pool import EnginePool, get_engine_pool, set_engine_pool
from .executor import RunOutcome, WorkflowExecutor, execute_workflow_job, select_output

__all__ = [
    # Errors
    "NodeErrorCode",
    "ExecutorErrorCode",
    "CONFIGURATION_ERRORS",
    "RUNTIME_ERRORS",
    "is_configuration_error",
    "classify_http_status",
    "WorkflowEngineError",
    "WorkflowNotFoundError",
    "ExecutionNotFoundError",
    "WorkflowNotRunnableError",
    "JobQueueFullError",
    # Paths and substitution
    "MISSING",
    "get_path",
    "set_path",
    "split_path",
    "build_substitution_context",
    "resolve_path",
    "substitute",
    # Scheduler
    "ScheduleResult",
    "find_dangling_edges",
    "order",
    "plan",
    # Handler contract
    "Handler",
    "HandlerMetadata",
    "NodeError",
    "NodeExecutionContext",
    "NodeExecutionResult",
    "ResultMetadata",
    "RunVariables",
    "failure_result",
    "missing_config",
    "success_result",
    "build_node_context",
    "gather_inputs",
    "HandlerRegistry",
    # Conditions
    "evaluate_condition",
    "evaluate_conditions",
    "combine_results",
    "get_available_operators",
    "OPERATORS",
    # Connection pooling
    "EnginePool",
    "get_engine_pool",
    "set_engine_pool",
    # Executor
    "RunOutcome",
    "WorkflowExecutor",
    "execute_workflow_job",
    "select_output",
]
