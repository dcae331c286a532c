"""Workflow executor - sequential, topologically ordered node execution.

Implements:
- One run per job: load workflow and execution, order nodes, run each
  enabled node through its registered handler
- Template substitution and input gathering before every node
- Stop/continue failure policy with per-node telemetry (execution logs
  and node metrics)
- Final output selection (designated, terminal or last completed node)

The executor never retries. It reports a single ``retryable`` flag and
the job store decides whether the job runs again.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from constants import (
    ERROR_HANDLING_STOP, EXECUTOR_NODE_ID, LOG_EVENT_CUSTOM,
    LOG_EVENT_NODE_COMPLETE, LOG_EVENT_NODE_ERROR, LOG_EVENT_NODE_START, LOG_LEVELS,
)
from core.logging import get_logger, log_execution_time
from models.workflow import (
    ExecutionError, ExecutionLog, ExecutionMetrics, ExecutionResult,
    ExecutionState, ExecutionStatus, NodeMetric, WorkflowDocument,
    WorkflowExecution, WorkflowJob, WorkflowNode, WorkflowTrigger, utcnow,
)
from services.execution.context import build_node_context
from services.execution.errors import (
    ExecutorErrorCode, NodeErrorCode, WorkflowEngineError,
    ExecutionNotFoundError, WorkflowNotFoundError,
)
from services.execution.registry import HandlerRegistry
from services.execution.scheduler import plan
from services.execution.types import NodeError, NodeExecutionResult, RunVariables

logger = get_logger(__name__)

LOG_LEVEL_ALIASES = {"warning": "warn", "critical": "error"}


@dataclass
class RunOutcome:
    """Result of running one workflow graph, before it is persisted."""
    success: bool
    completed_nodes: List[str] = field(default_factory=list)
    failed_nodes: List[str] = field(default_factory=list)
    failed_node_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retryable: bool = False
    output: Any = None
    output_source: Optional[str] = None
    state: ExecutionState = field(default_factory=ExecutionState)
    node_metrics: Dict[str, NodeMetric] = field(default_factory=dict)

    def error(self) -> ExecutionError:
        return ExecutionError(
            node_id=self.failed_node_id or "unknown",
            code=self.error_code or ExecutorErrorCode.EXECUTION_FAILED.value,
            message=self.error_message or "Workflow execution failed",
        )


def _data_size(data: Any) -> int:
    try:
        return len(json.dumps(data, default=str))
    except (TypeError, ValueError):
        return 0


def select_output(workflow: WorkflowDocument, completed_nodes: List[str],
                  node_outputs: Dict[str, Any]) -> Tuple[Any, str]:
    """Pick the run's final output and report where it came from.

    Order of preference: the node named by ``settings.output_node_id``, the
    last terminal node (no outgoing edges) with a non-empty output, the last
    completed node. Empty outputs fall through to the next rule. Graphs with
    several sinks should designate an output node; the fallbacks are
    heuristics.
    """
    designated = workflow.settings.output_node_id
    if designated and designated in node_outputs:
        return node_outputs[designated], "designated"

    node_ids = {node.id for node in workflow.nodes}
    with_outgoing = {edge.source for edge in workflow.edges if edge.target in node_ids}
    terminal = [node.id for node in workflow.nodes
                if node.id not in with_outgoing and node_outputs.get(node.id)]
    if terminal:
        return node_outputs[terminal[-1]], "terminal"

    if completed_nodes:
        return node_outputs.get(completed_nodes[-1]) or {}, "last_completed"

    return {}, "none"


class WorkflowExecutor:
    """Executes workflow jobs against a store, a handler registry and a vault.

    Collaborators:
        store: WorkflowStore implementation (persistence and job queue)
        registry: HandlerRegistry with the node handlers
        vault: ConnectionVault for ``context.get_connection``
        usage_tracker: optional UsageTracker notified once per finished run
    """

    def __init__(self, store, registry: HandlerRegistry, vault=None, usage_tracker=None):
        self.store = store
        self.registry = registry
        self.vault = vault
        self.usage_tracker = usage_tracker

    # =========================================================================
    # JOB ENTRY POINT
    # =========================================================================

    async def execute_job(self, job: WorkflowJob) -> bool:
        """Run a job to completion and persist the outcome.

        Returns True when the run succeeded. Never raises: fatal errors mark
        the execution failed and hand the job back as retryable.
        """
        start_time = time.time()
        execution_id = job.execution_id

        logger.info("Starting workflow job", job_id=job.id,
                    workflow_id=job.workflow_id, execution_id=execution_id)

        try:
            workflow = await self.store.get_workflow_by_id(job.org_id, job.workflow_id)
            if workflow is None:
                raise WorkflowNotFoundError(job.workflow_id)

            execution = await self.store.get_execution_by_id(execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)

            await self.store.update_execution_status(execution_id, {
                "status": ExecutionStatus.RUNNING,
                "started_at": utcnow(),
            })

            outcome = await self.execute_workflow(workflow, execution, job.trigger)
            duration_ms = int((time.time() - start_time) * 1000)
            metrics = ExecutionMetrics(total_duration_ms=duration_ms,
                                       node_metrics=outcome.node_metrics)

            if outcome.success:
                await self.store.update_execution_status(execution_id, {
                    "status": ExecutionStatus.COMPLETED,
                    "completed_at": utcnow(),
                    "completed_nodes": outcome.completed_nodes,
                    "failed_nodes": outcome.failed_nodes,
                    "context": outcome.state,
                    "result": ExecutionResult(success=True, output=outcome.output,
                                              output_source=outcome.output_source),
                    "metrics": metrics,
                })
                await self.store.update_workflow_stats(job.org_id, workflow.id, True, duration_ms)
                self._track_usage(job.org_id, workflow.id, True)
                await self.store.complete_job(job.id, outcome.output)

                log_execution_time(logger, "workflow_job", start_time, time.time(),
                                   workflow_id=workflow.id, execution_id=execution_id,
                                   status=ExecutionStatus.COMPLETED.value)
                return True

            error = outcome.error()
            await self.store.update_execution_status(execution_id, {
                "status": ExecutionStatus.FAILED,
                "completed_at": utcnow(),
                "completed_nodes": outcome.completed_nodes,
                "failed_nodes": outcome.failed_nodes,
                "context": outcome.state,
                "result": ExecutionResult(success=False, output=outcome.output,
                                          output_source=outcome.output_source, error=error),
                "metrics": metrics,
            })
            await self.store.update_workflow_stats(job.org_id, workflow.id, False, duration_ms)
            self._track_usage(job.org_id, workflow.id, False)
            await self.store.fail_job(job.id, error.message, outcome.retryable)

            logger.warning("Workflow execution failed", workflow_id=workflow.id,
                           execution_id=execution_id, node_id=error.node_id,
                           code=error.code, error=error.message,
                           retryable=outcome.retryable)
            return False

        except Exception as e:
            await self._fail_fatally(job, e)
            return False

    async def _fail_fatally(self, job: WorkflowJob, exc: Exception) -> None:
        if isinstance(exc, WorkflowEngineError):
            code, message = exc.code, exc.message
            logger.error("Workflow job aborted", job_id=job.id, code=code, error=message)
        else:
            code, message = ExecutorErrorCode.FATAL_ERROR.value, str(exc) or type(exc).__name__
            logger.exception("Fatal error executing workflow", job_id=job.id,
                             workflow_id=job.workflow_id)

        try:
            if not isinstance(exc, ExecutionNotFoundError):
                await self.store.update_execution_status(job.execution_id, {
                    "status": ExecutionStatus.FAILED,
                    "completed_at": utcnow(),
                    "result": ExecutionResult(
                        success=False,
                        error=ExecutionError(node_id=EXECUTOR_NODE_ID, code=code, message=message),
                    ),
                })
            await self.store.fail_job(job.id, message, True)
        except Exception as store_error:
            logger.error("Failed to record fatal workflow error", job_id=job.id,
                         error=str(store_error))

    def _track_usage(self, org_id: str, workflow_id: str, success: bool) -> None:
        if self.usage_tracker is not None:
            self.usage_tracker.schedule(org_id, workflow_id, success)

    # =========================================================================
    # RUN LOOP
    # =========================================================================

    async def execute_workflow(self, workflow: WorkflowDocument, execution: WorkflowExecution,
                               trigger: Optional[WorkflowTrigger] = None) -> RunOutcome:
        """Execute every enabled node of the workflow in scheduled order.

        The returned outcome carries a snapshot of the run state (variables,
        node outputs and ordered errors) taken when the run stopped.
        """
        variables = RunVariables((v.name, v.default_value) for v in workflow.variables)
        node_outputs: Dict[str, Any] = {}
        errors: List[ExecutionError] = []

        outcome = await self._run_graph(workflow, execution, trigger or execution.trigger,
                                        variables, node_outputs, errors)
        outcome.state = ExecutionState(variables=dict(variables),
                                       node_outputs=dict(node_outputs),
                                       errors=list(errors))
        return outcome

    async def _run_graph(self, workflow: WorkflowDocument, execution: WorkflowExecution,
                         trigger: WorkflowTrigger, variables: RunVariables,
                         node_outputs: Dict[str, Any],
                         errors: List[ExecutionError]) -> RunOutcome:
        trigger_data = trigger.model_dump()
        stop_on_error = workflow.settings.error_handling == ERROR_HANDLING_STOP
        outcome = RunOutcome(success=False)

        schedule = plan(workflow.nodes, workflow.edges)
        edges = workflow.edges
        if schedule.dangling_edges:
            known = {node.id for node in workflow.nodes}
            if stop_on_error:
                edge = schedule.dangling_edges[0]
                missing = edge.source if edge.source not in known else edge.target
                message = f"Edge {edge.source} -> {edge.target} references unknown node: {missing}"
                errors.append(ExecutionError(
                    node_id=missing, code=NodeErrorCode.INVALID_CONFIG.value, message=message))
                outcome.failed_node_id = missing
                outcome.error_code = NodeErrorCode.INVALID_CONFIG.value
                outcome.error_message = message
                return outcome
            edges = [e for e in edges if e.source in known and e.target in known]

        logger.debug("Execution order", execution_id=execution.id,
                     order=[node.id for node in schedule.order])

        for node in schedule.order:
            if not node.enabled:
                logger.debug("Skipping disabled node", node_id=node.id)
                continue

            result, duration_ms = await self._run_node(
                workflow, execution, node, edges, node_outputs, trigger_data, variables)

            if result is None:
                # No handler, nothing ran: no metrics
                error = ExecutionError(node_id=node.id,
                                       code=NodeErrorCode.HANDLER_NOT_FOUND.value,
                                       message=f"No handler for node type: {node.type}")
                retryable = False
            else:
                outcome.node_metrics[node.id] = NodeMetric(
                    duration_ms=duration_ms, retries=0, data_size=_data_size(result.data))
                if result.success:
                    node_outputs[node.id] = result.data
                    outcome.completed_nodes.append(node.id)
                    continue
                error = ExecutionError(
                    node_id=node.id,
                    code=result.error.code if result.error else ExecutorErrorCode.UNKNOWN_ERROR.value,
                    message=result.error.message if result.error else "Node execution failed",
                )
                retryable = bool(result.error and result.error.retryable)

            outcome.failed_nodes.append(node.id)
            errors.append(error)

            if stop_on_error:
                outcome.failed_node_id = error.node_id
                outcome.error_code = error.code
                outcome.error_message = error.message
                outcome.retryable = retryable
                return outcome

        outcome.output, outcome.output_source = select_output(
            workflow, outcome.completed_nodes, node_outputs)

        if outcome.failed_nodes:
            first = errors[0]
            outcome.failed_node_id = first.node_id
            outcome.error_code = first.code
            outcome.error_message = first.message
            outcome.retryable = False
        else:
            outcome.success = True
        return outcome

    async def _run_node(self, workflow: WorkflowDocument, execution: WorkflowExecution,
                        node: WorkflowNode, edges, node_outputs: Dict[str, Any],
                        trigger: Dict[str, Any],
                        variables: RunVariables) -> Tuple[Optional[NodeExecutionResult], int]:
        """Invoke one node's handler. Returns ``(None, 0)`` when no handler exists."""
        handler = self.registry.get(node.type)
        if handler is None:
            logger.error("No handler found for node type", node_id=node.id, node_type=node.type)
            return None, 0

        execution_id = execution.id
        org_id = workflow.org_id

        async def log(level: str, message: str, data: Optional[Dict[str, Any]] = None) -> None:
            event = LOG_EVENT_NODE_ERROR if level == "error" else LOG_EVENT_CUSTOM
            await self._write_log(execution_id, node.id, level, event, message, data)

        async def get_connection(vault_id: str) -> Optional[Dict[str, Any]]:
            if self.vault is None:
                return None
            return await self.vault.get_connection(org_id, vault_id)

        context = build_node_context(
            workflow_id=workflow.id,
            execution_id=execution_id,
            org_id=org_id,
            node=node,
            edges=edges,
            node_outputs=node_outputs,
            trigger=trigger,
            variables=variables,
            log_callback=log,
            connection_callback=get_connection,
        )

        logger.info("Executing node", node_id=node.id, node_type=node.type)
        started = time.monotonic()
        try:
            await self._write_log(execution_id, node.id, "info", LOG_EVENT_NODE_START,
                                  f"Starting node: {node.type}",
                                  {"config": context.resolved_config})
            result = await handler(context)
            duration_ms = int((time.monotonic() - started) * 1000)

            if result.success:
                await self._write_log(execution_id, node.id, "info", LOG_EVENT_NODE_COMPLETE,
                                      "Node completed successfully",
                                      {"output": result.data, "durationMs": duration_ms})
                logger.info("Node completed", node_id=node.id, duration_ms=duration_ms)
            else:
                message = result.error.message if result.error else "Node execution failed"
                await self._write_log(execution_id, node.id, "error", LOG_EVENT_NODE_ERROR,
                                      message,
                                      {"error": result.error.to_dict() if result.error else None})
                logger.warning("Node failed", node_id=node.id,
                               code=result.error.code if result.error else None, error=message)
            return result, duration_ms

        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            message = str(e) or type(e).__name__
            logger.exception("Handler raised exception", node_id=node.id, node_type=node.type)
            try:
                await self._write_log(execution_id, node.id, "error", LOG_EVENT_NODE_ERROR,
                                      f"Handler threw exception: {message}",
                                      {"exception": type(e).__name__})
            except Exception as log_error:
                logger.error("Failed to write execution log", node_id=node.id,
                             error=str(log_error))
            return NodeExecutionResult(
                success=False,
                error=NodeError(code=NodeErrorCode.HANDLER_EXCEPTION.value,
                                message=message, retryable=True),
            ), duration_ms

    async def _write_log(self, execution_id: str, node_id: str, level: str, event: str,
                         message: str, data: Optional[Dict[str, Any]] = None) -> None:
        level = LOG_LEVEL_ALIASES.get(level, level)
        if level not in LOG_LEVELS:
            level = "info"
        if data is not None and not isinstance(data, dict):
            data = {"value": data}
        await self.store.add_execution_log(ExecutionLog(
            execution_id=execution_id,
            node_id=node_id,
            level=level,
            event=event,
            message=message,
            data=data,
        ))


async def execute_workflow_job(job: WorkflowJob, executor: WorkflowExecutor) -> bool:
    """Convenience wrapper used by the job processor."""
    return await executor.execute_job(job)
