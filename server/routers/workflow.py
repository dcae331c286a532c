"""Workflow execution routes."""

import hmac
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from core.container import container
from core.logging import get_logger
from models.workflow import WorkflowTrigger
from services.execution import (
    HandlerRegistry, JobQueueFullError, WorkflowNotFoundError, WorkflowNotRunnableError,
    get_available_operators,
)
from services.worker import JobProcessor, enqueue_workflow_run

logger = get_logger(__name__)
router = APIRouter(prefix="/api/workflows", tags=["workflows"])


def verify_cron_secret(
    authorization: Optional[str] = Header(default=None),
    secret: Optional[str] = Query(default=None),
) -> None:
    """Require the configured cron secret as a bearer token or ``secret`` query param."""
    expected = container.settings().cron_secret
    if not expected:
        return

    provided = secret
    if authorization and authorization.lower().startswith("bearer "):
        provided = authorization[7:].strip()
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Rejected request with invalid secret")
        raise HTTPException(status_code=401, detail="Unauthorized")


class EnqueueRequest(BaseModel):
    org_id: str = Field(alias="orgId")
    workflow_id: str = Field(alias="workflowId")
    trigger: WorkflowTrigger = Field(default_factory=WorkflowTrigger)
    priority: int = 0

    model_config = {"populate_by_name": True}


@router.post("/process", dependencies=[Depends(verify_cron_secret)])
async def process_jobs(
    count: int = Query(default=1, ge=1),
    processor: JobProcessor = Depends(lambda: container.job_processor()),
):
    """Claim and run up to ``count`` queued jobs."""
    summary = await processor.process(count)
    logger.info("Processed workflow jobs", worker_id=summary["workerId"],
                processed=summary["processed"], failed=summary["failed"])
    return {"success": True, **summary}


@router.post("/enqueue", dependencies=[Depends(verify_cron_secret)])
async def enqueue_run(request: EnqueueRequest):
    """Create an execution record and queue a job for it."""
    settings = container.settings()
    try:
        job = await enqueue_workflow_run(
            container.database(), request.org_id, request.workflow_id,
            trigger=request.trigger, priority=request.priority,
            max_attempts=settings.job_max_attempts,
            max_pending_jobs=settings.max_pending_jobs_per_org,
        )
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowNotRunnableError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except JobQueueFullError as e:
        raise HTTPException(status_code=429, detail=str(e))
    return {"success": True, "jobId": job.id, "executionId": job.execution_id}


@router.get("/handlers")
async def list_handlers(
    registry: HandlerRegistry = Depends(lambda: container.registry()),
):
    """Registered node types and the condition operators they accept."""
    return {
        "handlers": [metadata.to_dict() for metadata in registry.list()],
        "operators": get_available_operators(),
    }


class ExecutionActionRequest(BaseModel):
    action: Literal["retry", "cancel"]


async def get_org_execution(execution_id: str, org_id: str = Query(alias="orgId")):
    """Load an execution visible to ``orgId``; other organizations get a 404."""
    execution = await container.database().get_execution_by_id(execution_id)
    if execution is None or execution.org_id != org_id:
        raise HTTPException(status_code=404, detail=f"Execution not found: {execution_id}")
    return execution


@router.get("/executions/{execution_id}", dependencies=[Depends(verify_cron_secret)])
async def get_execution(execution=Depends(get_org_execution)) -> Dict[str, Any]:
    return execution.to_document()


@router.get("/executions/{execution_id}/logs", dependencies=[Depends(verify_cron_secret)])
async def get_execution_logs(
    execution=Depends(get_org_execution),
    node_id: Optional[str] = Query(default=None, alias="nodeId"),
):
    logs = await container.database().get_execution_logs(execution.id, node_id=node_id)
    return {"executionId": execution.id, "logs": [log.to_document() for log in logs]}


@router.post("/executions/{execution_id}", dependencies=[Depends(verify_cron_secret)])
async def execution_action(request: ExecutionActionRequest,
                           execution=Depends(get_org_execution)) -> Dict[str, Any]:
    """Retry or cancel the job behind an execution."""
    store = container.database()
    job = await store.get_job_by_execution_id(execution.id)
    if job is None:
        raise HTTPException(status_code=404, detail="No job found for this execution")

    if request.action == "retry":
        result = await store.retry_job(job.id)
        message = "Job queued for immediate retry"
    else:
        result = await store.cancel_job(job.id)
        message = "Job cancelled"

    if result is None:
        raise HTTPException(status_code=400,
                            detail=f'Cannot {request.action} job with status "{job.status.value}"')

    logger.info("Execution action applied", execution_id=execution.id, job_id=job.id,
                action=request.action, status=result.status.value)
    return {
        "success": True,
        "message": message,
        "job": {
            "jobId": result.id,
            "status": result.status.value,
            "attempts": result.attempts,
            "lastError": result.last_error,
        },
    }


@router.get("/queue", dependencies=[Depends(verify_cron_secret)])
async def job_queue_status(org_id: str = Query(alias="orgId")) -> Dict[str, Any]:
    """Job counts per status for one organization."""
    status = await container.database().get_job_queue_status(org_id)
    oldest = status["oldestPendingAt"]
    return {**status, "orgId": org_id, "oldestPendingAt": oldest.isoformat() if oldest else None}
