"""Job processing - claims queued workflow jobs and runs them.

Designed to be driven by an external tick (cron hitting the process
endpoint, or a loop in a worker process). Each call claims up to ``count``
jobs and runs them one after another.
"""

import time
from typing import Any, Dict, List, Optional
from uuid import uuid4

from core.logging import get_logger, log_execution_time
from models.workflow import WorkflowExecution, WorkflowJob, WorkflowTrigger
from services.execution.errors import (
    JobQueueFullError, WorkflowNotFoundError, WorkflowNotRunnableError,
)
from services.execution.executor import WorkflowExecutor, execute_workflow_job

logger = get_logger(__name__)

RUNNABLE_WORKFLOW_STATUSES = ("active", "draft")
DEFAULT_MAX_PENDING_JOBS = 100


class JobProcessor:
    """Claim-and-run loop over a WorkflowStore."""

    def __init__(self, store, executor: WorkflowExecutor, max_jobs_per_request: int = 10,
                 worker_id_prefix: str = "worker"):
        self.store = store
        self.executor = executor
        self.max_jobs_per_request = max_jobs_per_request
        self.worker_id_prefix = worker_id_prefix

    def new_worker_id(self) -> str:
        return f"{self.worker_id_prefix}-{uuid4().hex[:8]}"

    async def process(self, count: int = 1) -> Dict[str, Any]:
        """Process up to ``count`` jobs (capped by ``max_jobs_per_request``)."""
        count = max(1, min(count, self.max_jobs_per_request))
        worker_id = self.new_worker_id()
        start = time.time()
        results: List[Dict[str, Any]] = []

        for _ in range(count):
            job = await self.store.claim_job(worker_id)
            if job is None:
                break
            logger.info("Claimed job", job_id=job.id, workflow_id=job.workflow_id,
                        attempt=job.attempts, worker_id=worker_id)
            success = await execute_workflow_job(job, self.executor)
            results.append({
                "jobId": job.id,
                "executionId": job.execution_id,
                "workflowId": job.workflow_id,
                "success": success,
            })

        if results:
            log_execution_time(logger, "process_jobs", start, time.time(),
                               worker_id=worker_id, processed=len(results))

        return {
            "workerId": worker_id,
            "processed": len(results),
            "succeeded": sum(1 for r in results if r["success"]),
            "failed": sum(1 for r in results if not r["success"]),
            "results": results,
        }


async def enqueue_workflow_run(store, org_id: str, workflow_id: str,
                               trigger: Optional[WorkflowTrigger] = None,
                               priority: int = 0, max_attempts: int = 3,
                               max_pending_jobs: int = DEFAULT_MAX_PENDING_JOBS) -> WorkflowJob:
    """Create a pending execution record and the job that will run it.

    Only active and draft workflows run, and an organization may hold at
    most ``max_pending_jobs`` pending or processing jobs.
    """
    workflow = await store.get_workflow_by_id(org_id, workflow_id)
    if workflow is None:
        raise WorkflowNotFoundError(workflow_id)
    if workflow.status not in RUNNABLE_WORKFLOW_STATUSES:
        raise WorkflowNotRunnableError(workflow_id, workflow.status)
    if await store.count_pending_jobs(org_id) >= max_pending_jobs:
        logger.warning("Job queue full", org_id=org_id, limit=max_pending_jobs)
        raise JobQueueFullError(org_id, max_pending_jobs)

    trigger = trigger or WorkflowTrigger()
    execution = await store.create_execution(WorkflowExecution(
        workflow_id=workflow_id,
        org_id=org_id,
        trigger=trigger,
    ))
    job = await store.enqueue_job(WorkflowJob(
        workflow_id=workflow_id,
        execution_id=execution.id,
        org_id=org_id,
        trigger=trigger,
        priority=priority,
        max_attempts=max_attempts,
    ))
    logger.info("Enqueued workflow run", workflow_id=workflow_id,
                execution_id=execution.id, job_id=job.id, trigger_type=trigger.type)
    return job
