"""Handler-facing types: execution context, results and metadata."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from services.execution.errors import NodeErrorCode, is_configuration_error

LogCallback = Callable[[str, str, Optional[Dict[str, Any]]], Awaitable[None]]
ConnectionCallback = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class NodeError:
    code: str
    message: str
    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


@dataclass
class ResultMetadata:
    duration_ms: Optional[int] = None
    bytes_processed: Optional[int] = None


@dataclass
class NodeExecutionResult:
    """Outcome reported by a handler."""
    success: bool
    data: Any = None
    error: Optional[NodeError] = None
    metadata: Optional[ResultMetadata] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "data": self.data}
        if self.error:
            result["error"] = self.error.to_dict()
        if self.metadata:
            result["metadata"] = {
                "durationMs": self.metadata.duration_ms,
                "bytesProcessed": self.metadata.bytes_processed,
            }
        return result


def success_result(data: Any = None, duration_ms: Optional[int] = None) -> NodeExecutionResult:
    metadata = ResultMetadata(duration_ms=duration_ms) if duration_ms is not None else None
    return NodeExecutionResult(success=True, data=data, metadata=metadata)


def failure_result(code: Any, message: str, retryable: bool = False) -> NodeExecutionResult:
    """Build a failed result. Configuration errors are never retryable."""
    code = str(getattr(code, "value", code))
    if is_configuration_error(code):
        retryable = False
    return NodeExecutionResult(
        success=False,
        data=None,
        error=NodeError(code=code, message=message, retryable=retryable),
    )


def missing_config(message: str) -> NodeExecutionResult:
    return failure_result(NodeErrorCode.MISSING_CONFIG, message)


@dataclass
class HandlerMetadata:
    type: str
    name: str
    description: str = ""
    version: str = "1.0.0"
    category: str = "general"

    def to_dict(self) -> Dict[str, str]:
        return {
            "type": self.type,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "category": self.category,
        }


class RunVariables(dict):
    """Run-scoped variables. Keys may be added or updated but never removed."""

    def _refuse(self, *args, **kwargs):
        raise TypeError("Workflow variables cannot be removed")

    __delitem__ = _refuse
    pop = _refuse
    popitem = _refuse
    clear = _refuse


async def _no_log(level: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
    return None


async def _no_connection(vault_id: str) -> Optional[Dict[str, Any]]:
    return None


@dataclass
class NodeExecutionContext:
    """Everything a handler sees for a single node invocation."""
    workflow_id: str
    execution_id: str
    node_id: str
    org_id: str
    node_type: str = ""
    inputs: Dict[str, Any] = field(default_factory=dict)
    config: Dict[str, Any] = field(default_factory=dict)
    resolved_config: Dict[str, Any] = field(default_factory=dict)
    variables: RunVariables = field(default_factory=RunVariables)
    node_outputs: Mapping[str, Any] = field(default_factory=dict)
    trigger: Dict[str, Any] = field(default_factory=dict)
    log_callback: LogCallback = _no_log
    connection_callback: ConnectionCallback = _no_connection

    async def log(self, level: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        await self.log_callback(level, message, data)

    async def get_connection(self, vault_id: str) -> Optional[Dict[str, Any]]:
        return await self.connection_callback(vault_id)


Handler = Callable[[NodeExecutionContext], Awaitable[NodeExecutionResult]]
