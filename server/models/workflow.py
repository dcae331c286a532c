"""Pydantic models for workflow documents, jobs and execution records.

Attributes are snake_case; serialized documents use camelCase aliases
(``model_dump(by_alias=True)``) and both forms are accepted on input.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from constants import DEFAULT_INPUT_HANDLE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class DocumentModel(BaseModel):
    """Base model with camelCase aliases."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# =============================================================================
# GRAPH
# =============================================================================

class EdgeMapping(DocumentModel):
    """Field-level routing from a source output path to a target input path."""
    source_field: str
    target_field: str


class WorkflowNode(DocumentModel):
    id: str
    type: str
    enabled: bool = True
    config: Dict[str, Any] = Field(default_factory=dict)
    label: Optional[str] = None


class WorkflowEdge(DocumentModel):
    id: Optional[str] = None
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    mapping: Optional[List[EdgeMapping]] = None

    @property
    def input_key(self) -> str:
        return self.target_handle or DEFAULT_INPUT_HANDLE


class WorkflowCanvas(DocumentModel):
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[WorkflowEdge] = Field(default_factory=list)


class WorkflowVariable(DocumentModel):
    name: str
    default_value: Any = None
    type: Optional[str] = None
    description: Optional[str] = None


class WorkflowSettings(DocumentModel):
    error_handling: Literal["stop", "continue"] = "stop"
    # Node whose output becomes the run's final output
    output_node_id: Optional[str] = None


class WorkflowStats(DocumentModel):
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    avg_execution_time_ms: int = 0
    last_executed_at: Optional[datetime] = None


class WorkflowDocument(DocumentModel):
    id: str
    org_id: str
    name: str = ""
    description: Optional[str] = None
    canvas: WorkflowCanvas = Field(default_factory=WorkflowCanvas)
    variables: List[WorkflowVariable] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    status: Literal["draft", "active", "paused", "archived"] = "active"
    stats: WorkflowStats = Field(default_factory=WorkflowStats)

    @property
    def nodes(self) -> List[WorkflowNode]:
        return self.canvas.nodes

    @property
    def edges(self) -> List[WorkflowEdge]:
        return self.canvas.edges


# =============================================================================
# TRIGGERS AND JOBS
# =============================================================================

class WorkflowTrigger(DocumentModel):
    type: str = "manual"
    payload: Dict[str, Any] = Field(default_factory=dict)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowJob(DocumentModel):
    id: str = Field(default_factory=new_id)
    workflow_id: str
    execution_id: str
    org_id: str
    trigger: WorkflowTrigger = Field(default_factory=WorkflowTrigger)
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    priority: int = 0
    run_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    last_error: Optional[str] = None
    result: Any = None


# =============================================================================
# EXECUTION RECORDS
# =============================================================================

class ExecutionStatus(str, Enum):
    """Execution states.

    PENDING -> RUNNING -> COMPLETED
                       -> FAILED
    """
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionError(DocumentModel):
    node_id: str
    code: str
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class ExecutionState(DocumentModel):
    variables: Dict[str, Any] = Field(default_factory=dict)
    node_outputs: Dict[str, Any] = Field(default_factory=dict)
    errors: List[ExecutionError] = Field(default_factory=list)


class NodeMetric(DocumentModel):
    duration_ms: int = 0
    retries: int = 0
    data_size: int = 0


class ExecutionMetrics(DocumentModel):
    total_duration_ms: int = 0
    node_metrics: Dict[str, NodeMetric] = Field(default_factory=dict)


class ExecutionResult(DocumentModel):
    success: bool
    output: Any = None
    # designated | terminal | last_completed | none
    output_source: Optional[str] = None
    error: Optional[ExecutionError] = None


class WorkflowExecution(DocumentModel):
    id: str = Field(default_factory=new_id)
    workflow_id: str
    org_id: str
    trigger: WorkflowTrigger = Field(default_factory=WorkflowTrigger)
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_nodes: List[str] = Field(default_factory=list)
    failed_nodes: List[str] = Field(default_factory=list)
    context: ExecutionState = Field(default_factory=ExecutionState)
    result: Optional[ExecutionResult] = None
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)


class ExecutionLog(DocumentModel):
    execution_id: str
    node_id: str
    level: Literal["debug", "info", "warn", "error"] = "info"
    event: Literal["node_start", "node_complete", "node_error", "custom"] = "custom"
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)
