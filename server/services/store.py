"""Workflow persistence and job queue interface.

``WorkflowStore`` is the collaborator the executor and job processor talk
to. ``InMemoryWorkflowStore`` backs tests and local development;
``core.database.Database`` is the SQL implementation. Queue semantics
(claiming, retry backoff, stats) live in the helpers below so both
implementations agree.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from core.logging import get_logger
from models.workflow import (
    ExecutionError, ExecutionLog, ExecutionResult, ExecutionStatus, JobStatus,
    WorkflowDocument, WorkflowExecution, WorkflowJob, WorkflowStats, utcnow,
)
from services.execution.errors import ExecutorErrorCode

logger = get_logger(__name__)

DEFAULT_STALE_LOCK_SECONDS = 300

ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
RETRYABLE_JOB_STATUSES = (JobStatus.FAILED, JobStatus.PENDING, JobStatus.PROCESSING)
CANCEL_NODE_ID = "system"
CANCEL_MESSAGE = "Cancelled by user"


@runtime_checkable
class WorkflowStore(Protocol):
    async def save_workflow(self, workflow: WorkflowDocument) -> WorkflowDocument: ...

    async def get_workflow_by_id(self, org_id: str, workflow_id: str) -> Optional[WorkflowDocument]: ...

    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution: ...

    async def get_execution_by_id(self, execution_id: str) -> Optional[WorkflowExecution]: ...

    async def update_execution_status(self, execution_id: str, updates: Dict[str, Any]) -> bool: ...

    async def add_execution_log(self, log: ExecutionLog) -> None: ...

    async def get_execution_logs(self, execution_id: str,
                                 node_id: Optional[str] = None) -> List[ExecutionLog]: ...

    async def enqueue_job(self, job: WorkflowJob) -> WorkflowJob: ...

    async def claim_job(self, worker_id: str) -> Optional[WorkflowJob]: ...

    async def get_job(self, job_id: str) -> Optional[WorkflowJob]: ...

    async def complete_job(self, job_id: str, result: Any = None) -> None: ...

    async def fail_job(self, job_id: str, error: str, retryable: bool = True) -> None: ...

    async def get_job_by_execution_id(self, execution_id: str) -> Optional[WorkflowJob]: ...

    async def count_pending_jobs(self, org_id: str) -> int: ...

    async def retry_job(self, job_id: str) -> Optional[WorkflowJob]: ...

    async def cancel_job(self, job_id: str) -> Optional[WorkflowJob]: ...

    async def get_job_queue_status(self, org_id: str) -> Dict[str, Any]: ...

    async def update_workflow_stats(self, org_id: str, workflow_id: str,
                                    success: bool, duration_ms: int) -> None: ...


# =============================================================================
# QUEUE SEMANTICS
# =============================================================================

def is_claimable(job: WorkflowJob, now: datetime, stale_lock_seconds: int) -> bool:
    """Pending or processing, due, and either unlocked or stale-locked."""
    if job.status not in (JobStatus.PENDING, JobStatus.PROCESSING):
        return False
    if job.run_at > now:
        return False
    if job.locked_at is None:
        return True
    return job.locked_at < now - timedelta(seconds=stale_lock_seconds)


def claim_order_key(job: WorkflowJob):
    """Highest priority first, then earliest ``run_at``."""
    return (-job.priority, job.run_at)


def claim_updates(job: WorkflowJob, worker_id: str, now: datetime) -> Dict[str, Any]:
    return {
        "status": JobStatus.PROCESSING,
        "locked_at": now,
        "locked_by": worker_id,
        "attempts": job.attempts + 1,
    }


def retry_backoff(attempts: int) -> timedelta:
    return timedelta(seconds=2 ** attempts)


def failure_updates(job: WorkflowJob, error: str, retryable: bool, now: datetime) -> Dict[str, Any]:
    """Reschedule with exponential backoff while attempts remain, else fail.

    A job that is not retried keeps its lock fields, matching a job that
    ended on this worker.
    """
    max_attempts = job.max_attempts or 3
    if retryable and job.attempts < max_attempts:
        return {
            "status": JobStatus.PENDING,
            "last_error": error,
            "run_at": now + retry_backoff(job.attempts),
            "locked_at": None,
            "locked_by": None,
        }
    return {
        "status": JobStatus.FAILED,
        "last_error": error,
        "completed_at": now,
    }


def completion_updates(result: Any, now: datetime) -> Dict[str, Any]:
    return {
        "status": JobStatus.COMPLETED,
        "completed_at": now,
        "result": result,
        "locked_at": None,
        "locked_by": None,
    }


def retry_updates(job: WorkflowJob, now: datetime) -> Dict[str, Any]:
    """Manual retry: due immediately, lock released, previous error kept."""
    return {
        "status": JobStatus.PENDING,
        "run_at": now,
        "last_error": (f"Manually retried. Previous error: {job.last_error}"
                       if job.last_error else None),
        "locked_at": None,
        "locked_by": None,
    }


def cancel_updates(now: datetime) -> Dict[str, Any]:
    return {
        "status": JobStatus.FAILED,
        "last_error": CANCEL_MESSAGE,
        "completed_at": now,
        "locked_at": None,
        "locked_by": None,
    }


def cancelled_execution_updates(now: datetime) -> Dict[str, Any]:
    return {
        "status": ExecutionStatus.FAILED,
        "completed_at": now,
        "result": ExecutionResult(success=False, error=ExecutionError(
            node_id=CANCEL_NODE_ID, code=ExecutorErrorCode.CANCELLED.value,
            message=CANCEL_MESSAGE, timestamp=now)),
    }


def queue_status(jobs: List[WorkflowJob]) -> Dict[str, Any]:
    """Per-status counts and the creation time of the oldest pending job."""
    counts = {status.value: 0 for status in JobStatus}
    for job in jobs:
        counts[job.status.value] += 1
    pending = [job.created_at for job in jobs if job.status == JobStatus.PENDING]
    return {**counts, "oldestPendingAt": min(pending) if pending else None}


def next_stats(stats: WorkflowStats, success: bool, duration_ms: int,
               now: Optional[datetime] = None) -> WorkflowStats:
    """Running totals with a rounded running average duration."""
    total = stats.total_executions + 1
    average = (stats.avg_execution_time_ms * stats.total_executions + duration_ms) / total
    return WorkflowStats(
        total_executions=total,
        successful_executions=stats.successful_executions + (1 if success else 0),
        failed_executions=stats.failed_executions + (0 if success else 1),
        avg_execution_time_ms=round(average),
        last_executed_at=now or utcnow(),
    )


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryWorkflowStore:
    """Dict-backed store. Claiming is serialized with an asyncio lock."""

    def __init__(self, stale_lock_seconds: int = DEFAULT_STALE_LOCK_SECONDS):
        self.stale_lock_seconds = stale_lock_seconds
        self.workflows: Dict[str, WorkflowDocument] = {}
        self.executions: Dict[str, WorkflowExecution] = {}
        self.jobs: Dict[str, WorkflowJob] = {}
        self.logs: List[ExecutionLog] = []
        self._claim_lock = asyncio.Lock()

    async def save_workflow(self, workflow: WorkflowDocument) -> WorkflowDocument:
        self.workflows[workflow.id] = workflow
        return workflow

    async def get_workflow_by_id(self, org_id: str, workflow_id: str) -> Optional[WorkflowDocument]:
        workflow = self.workflows.get(workflow_id)
        if workflow is None or workflow.org_id != org_id:
            return None
        return workflow

    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        self.executions[execution.id] = execution
        return execution

    async def get_execution_by_id(self, execution_id: str) -> Optional[WorkflowExecution]:
        return self.executions.get(execution_id)

    async def update_execution_status(self, execution_id: str, updates: Dict[str, Any]) -> bool:
        execution = self.executions.get(execution_id)
        if execution is None:
            logger.warning("Execution not found for update", execution_id=execution_id)
            return False
        self.executions[execution_id] = execution.model_copy(update=updates)
        return True

    async def add_execution_log(self, log: ExecutionLog) -> None:
        self.logs.append(log)

    async def get_execution_logs(self, execution_id: str,
                                 node_id: Optional[str] = None) -> List[ExecutionLog]:
        return [log for log in self.logs
                if log.execution_id == execution_id and (node_id is None or log.node_id == node_id)]

    async def enqueue_job(self, job: WorkflowJob) -> WorkflowJob:
        self.jobs[job.id] = job
        return job

    async def claim_job(self, worker_id: str) -> Optional[WorkflowJob]:
        async with self._claim_lock:
            now = utcnow()
            candidates = [job for job in self.jobs.values()
                          if is_claimable(job, now, self.stale_lock_seconds)]
            if not candidates:
                return None
            job = min(candidates, key=claim_order_key)
            claimed = job.model_copy(update=claim_updates(job, worker_id, now))
            self.jobs[job.id] = claimed
            return claimed

    async def get_job(self, job_id: str) -> Optional[WorkflowJob]:
        return self.jobs.get(job_id)

    async def complete_job(self, job_id: str, result: Any = None) -> None:
        job = self.jobs.get(job_id)
        if job is None:
            return
        self.jobs[job_id] = job.model_copy(update=completion_updates(result, utcnow()))

    async def fail_job(self, job_id: str, error: str, retryable: bool = True) -> None:
        job = self.jobs.get(job_id)
        if job is None:
            return
        self.jobs[job_id] = job.model_copy(update=failure_updates(job, error, retryable, utcnow()))

    async def get_job_by_execution_id(self, execution_id: str) -> Optional[WorkflowJob]:
        return next((job for job in self.jobs.values() if job.execution_id == execution_id), None)

    async def count_pending_jobs(self, org_id: str) -> int:
        return sum(1 for job in self.jobs.values()
                   if job.org_id == org_id and job.status in ACTIVE_JOB_STATUSES)

    async def retry_job(self, job_id: str) -> Optional[WorkflowJob]:
        job = self.jobs.get(job_id)
        if job is None or job.status not in RETRYABLE_JOB_STATUSES:
            return None
        self.jobs[job_id] = job.model_copy(update=retry_updates(job, utcnow()))
        return self.jobs[job_id]

    async def cancel_job(self, job_id: str) -> Optional[WorkflowJob]:
        job = self.jobs.get(job_id)
        if job is None or job.status not in ACTIVE_JOB_STATUSES:
            return None
        now = utcnow()
        self.jobs[job_id] = job.model_copy(update=cancel_updates(now))
        await self.update_execution_status(job.execution_id, cancelled_execution_updates(now))
        return self.jobs[job_id]

    async def get_job_queue_status(self, org_id: str) -> Dict[str, Any]:
        return queue_status([job for job in self.jobs.values() if job.org_id == org_id])

    async def update_workflow_stats(self, org_id: str, workflow_id: str,
                                    success: bool, duration_ms: int) -> None:
        workflow = await self.get_workflow_by_id(org_id, workflow_id)
        if workflow is None:
            return
        self.workflows[workflow_id] = workflow.model_copy(
            update={"stats": next_stats(workflow.stats, success, duration_ms)})
