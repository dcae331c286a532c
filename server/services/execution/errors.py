"""Error taxonomy for node and executor failures.

Codes are flat strings grouped into two classes by convention:

- configuration errors: retrying without a fix cannot succeed, never retryable
- runtime errors: retryability is decided by the handler that reports them

The executor never retries; the ``retryable`` flag of the top-level result is
handed to the job store which owns the retry schedule.
"""

from enum import Enum
from typing import FrozenSet, Tuple


class NodeErrorCode(str, Enum):
    # Configuration class
    MISSING_CONFIG = "MISSING_CONFIG"
    INVALID_CONFIG = "INVALID_CONFIG"
    MISSING_CONNECTION = "MISSING_CONNECTION"
    INVALID_OPERATION = "INVALID_OPERATION"
    HANDLER_NOT_FOUND = "HANDLER_NOT_FOUND"

    # Runtime class
    CONNECTION_FAILED = "CONNECTION_FAILED"
    OPERATION_FAILED = "OPERATION_FAILED"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    HANDLER_EXCEPTION = "HANDLER_EXCEPTION"


class ExecutorErrorCode(str, Enum):
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    EXECUTION_NOT_FOUND = "EXECUTION_NOT_FOUND"
    WORKFLOW_NOT_RUNNABLE = "WORKFLOW_NOT_RUNNABLE"
    QUEUE_FULL = "QUEUE_FULL"
    CANCELLED = "CANCELLED"
    FATAL_ERROR = "FATAL_ERROR"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


CONFIGURATION_ERRORS: FrozenSet[str] = frozenset([
    NodeErrorCode.MISSING_CONFIG.value,
    NodeErrorCode.INVALID_CONFIG.value,
    NodeErrorCode.MISSING_CONNECTION.value,
    NodeErrorCode.INVALID_OPERATION.value,
    NodeErrorCode.HANDLER_NOT_FOUND.value,
])

RUNTIME_ERRORS: FrozenSet[str] = frozenset([
    NodeErrorCode.CONNECTION_FAILED.value,
    NodeErrorCode.OPERATION_FAILED.value,
    NodeErrorCode.TIMEOUT.value,
    NodeErrorCode.RATE_LIMIT.value,
    NodeErrorCode.HANDLER_EXCEPTION.value,
])


def is_configuration_error(code: str) -> bool:
    return str(getattr(code, "value", code)) in CONFIGURATION_ERRORS


def classify_http_status(status: int) -> Tuple[NodeErrorCode, bool]:
    """Map a failing HTTP status to ``(code, retryable)``.

    429 is a rate limit and 5xx a server fault, both worth retrying. Any
    other status is a semantic failure.
    """
    if status == 429:
        return NodeErrorCode.RATE_LIMIT, True
    if status >= 500:
        return NodeErrorCode.OPERATION_FAILED, True
    return NodeErrorCode.OPERATION_FAILED, False


class WorkflowEngineError(Exception):
    """Base exception for executor-level failures."""

    code: str = ExecutorErrorCode.FATAL_ERROR.value

    def __init__(self, message: str, node_id: str = None):
        self.message = message
        self.node_id = node_id
        super().__init__(message)


class WorkflowNotFoundError(WorkflowEngineError):
    code = ExecutorErrorCode.WORKFLOW_NOT_FOUND.value

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class ExecutionNotFoundError(WorkflowEngineError):
    code = ExecutorErrorCode.EXECUTION_NOT_FOUND.value

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution record not found: {execution_id}")


class WorkflowNotRunnableError(WorkflowEngineError):
    """The workflow exists but its status does not allow new runs."""
    code = ExecutorErrorCode.WORKFLOW_NOT_RUNNABLE.value

    def __init__(self, workflow_id: str, status: str):
        self.workflow_id = workflow_id
        self.status = status
        super().__init__(f"Cannot execute workflow with status '{status}'")


class JobQueueFullError(WorkflowEngineError):
    code = ExecutorErrorCode.QUEUE_FULL.value

    def __init__(self, org_id: str, limit: int):
        self.org_id = org_id
        self.limit = limit
        super().__init__(
            "Too many pending executions. Please wait for some to complete.")
