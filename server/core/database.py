"""Modern async database service with SQLModel and SQLAlchemy 2.0.

Implements the ``WorkflowStore`` interface on top of SQLite (aiosqlite)
or any other async SQLAlchemy URL.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional
from contextlib import asynccontextmanager

import orjson
from sqlmodel import SQLModel, select
from sqlalchemy import func, or_, update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from core.config import Settings
from core.logging import get_logger
from models.database import WorkflowRecord, ExecutionRecord, ExecutionLogRecord, JobRecord
from models.workflow import (
    ExecutionLog, JobStatus, WorkflowDocument, WorkflowExecution, WorkflowJob,
    WorkflowTrigger, utcnow,
)
from services.store import (
    ACTIVE_JOB_STATUSES, RETRYABLE_JOB_STATUSES, cancel_updates, cancelled_execution_updates,
    claim_updates, completion_updates, failure_updates, next_stats, retry_updates,
)

logger = get_logger(__name__)

CLAIM_CANDIDATES = 5
CLAIMABLE_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_json(value: Any) -> Any:
    """Coerce handler output into plain JSON types for a JSON column."""
    if value is None:
        return None
    return orjson.loads(orjson.dumps(value, default=str))


def _job_from_record(record: JobRecord) -> WorkflowJob:
    return WorkflowJob(
        id=record.id,
        workflow_id=record.workflow_id,
        execution_id=record.execution_id,
        org_id=record.org_id,
        trigger=WorkflowTrigger.model_validate(record.trigger or {}),
        status=JobStatus(record.status),
        attempts=record.attempts,
        max_attempts=record.max_attempts,
        priority=record.priority,
        run_at=_aware(record.run_at),
        created_at=_aware(record.created_at),
        completed_at=_aware(record.completed_at),
        locked_at=_aware(record.locked_at),
        locked_by=record.locked_by,
        last_error=record.last_error,
        result=record.result,
    )


def _job_columns(updates: Dict[str, Any]) -> Dict[str, Any]:
    values = {}
    for key, value in updates.items():
        if isinstance(value, JobStatus):
            value = value.value
        elif key == "result":
            value = _to_json(value)
        values[key] = value
    return values


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.stale_lock_seconds = settings.job_stale_lock_seconds
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            # Disable verbose database and asyncio logging
            import logging
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            self.engine = create_async_engine(
                self.settings.database_url,
                echo=self.settings.database_echo,
                future=True
            )

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    # ============================================================================
    # Workflows
    # ============================================================================

    async def save_workflow(self, workflow: WorkflowDocument) -> WorkflowDocument:
        """Insert or replace a workflow document."""
        async with self.get_session() as session:
            record = await session.get(WorkflowRecord, workflow.id)
            if record:
                record.org_id = workflow.org_id
                record.name = workflow.name
                record.status = workflow.status
                record.data = workflow.to_document()
                record.updated_at = utcnow()
            else:
                session.add(WorkflowRecord(
                    id=workflow.id,
                    org_id=workflow.org_id,
                    name=workflow.name,
                    status=workflow.status,
                    data=workflow.to_document(),
                ))
            await session.commit()
        return workflow

    async def get_workflow_by_id(self, org_id: str, workflow_id: str) -> Optional[WorkflowDocument]:
        """Get a workflow scoped to its organization."""
        async with self.get_session() as session:
            stmt = select(WorkflowRecord).where(
                WorkflowRecord.id == workflow_id,
                WorkflowRecord.org_id == org_id,
            )
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
            return WorkflowDocument.model_validate(record.data) if record else None

    async def update_workflow_stats(self, org_id: str, workflow_id: str,
                                    success: bool, duration_ms: int) -> None:
        async with self.get_session() as session:
            stmt = select(WorkflowRecord).where(
                WorkflowRecord.id == workflow_id,
                WorkflowRecord.org_id == org_id,
            )
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
            if not record:
                logger.warning("Workflow not found for stats update", workflow_id=workflow_id)
                return

            workflow = WorkflowDocument.model_validate(record.data)
            workflow = workflow.model_copy(
                update={"stats": next_stats(workflow.stats, success, duration_ms)})
            record.data = workflow.to_document()
            record.updated_at = utcnow()
            await session.commit()

    # ============================================================================
    # Executions
    # ============================================================================

    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self.get_session() as session:
            session.add(ExecutionRecord(
                id=execution.id,
                workflow_id=execution.workflow_id,
                org_id=execution.org_id,
                status=execution.status.value,
                data=execution.to_document(),
            ))
            await session.commit()
        return execution

    async def get_execution_by_id(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self.get_session() as session:
            record = await session.get(ExecutionRecord, execution_id)
            return WorkflowExecution.model_validate(record.data) if record else None

    async def update_execution_status(self, execution_id: str, updates: Dict[str, Any]) -> bool:
        """Apply attribute updates to an execution, returning False if it is missing."""
        async with self.get_session() as session:
            record = await session.get(ExecutionRecord, execution_id)
            if not record:
                logger.warning("Execution not found for update", execution_id=execution_id)
                return False

            execution = WorkflowExecution.model_validate(record.data).model_copy(update=updates)
            record.status = execution.status.value
            record.data = execution.to_document()
            await session.commit()
            return True

    # ============================================================================
    # Execution logs
    # ============================================================================

    async def add_execution_log(self, log: ExecutionLog) -> None:
        async with self.get_session() as session:
            session.add(ExecutionLogRecord(
                execution_id=log.execution_id,
                node_id=log.node_id,
                level=log.level,
                event=log.event,
                message=log.message,
                data=_to_json(log.data),
                timestamp=log.timestamp,
            ))
            await session.commit()

    async def get_execution_logs(self, execution_id: str,
                                 node_id: Optional[str] = None) -> List[ExecutionLog]:
        """Logs for an execution in write order, optionally for one node."""
        async with self.get_session() as session:
            stmt = select(ExecutionLogRecord).where(ExecutionLogRecord.execution_id == execution_id)
            if node_id is not None:
                stmt = stmt.where(ExecutionLogRecord.node_id == node_id)
            stmt = stmt.order_by(ExecutionLogRecord.id)
            result = await session.execute(stmt)
            return [
                ExecutionLog(
                    execution_id=record.execution_id,
                    node_id=record.node_id,
                    level=record.level,
                    event=record.event,
                    message=record.message,
                    data=record.data,
                    timestamp=_aware(record.timestamp),
                )
                for record in result.scalars().all()
            ]

    # ============================================================================
    # Job queue
    # ============================================================================

    async def enqueue_job(self, job: WorkflowJob) -> WorkflowJob:
        async with self.get_session() as session:
            session.add(JobRecord(
                id=job.id,
                workflow_id=job.workflow_id,
                execution_id=job.execution_id,
                org_id=job.org_id,
                trigger=job.trigger.to_document(),
                status=job.status.value,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                priority=job.priority,
                run_at=job.run_at,
                created_at=job.created_at,
            ))
            await session.commit()
        logger.debug("Job enqueued", job_id=job.id, workflow_id=job.workflow_id,
                     priority=job.priority)
        return job

    async def claim_job(self, worker_id: str) -> Optional[WorkflowJob]:
        """Lock the next due job for ``worker_id``.

        Candidates are read first, then locked with a conditional UPDATE
        that only matches while the lock is still free, so two workers
        never claim the same job.
        """
        now = utcnow()
        stale_cutoff = now - timedelta(seconds=self.stale_lock_seconds)
        lock_free = or_(JobRecord.locked_at.is_(None), JobRecord.locked_at < stale_cutoff)

        async with self.get_session() as session:
            stmt = (
                select(JobRecord)
                .where(
                    JobRecord.status.in_(CLAIMABLE_STATUSES),
                    JobRecord.run_at <= now,
                    lock_free,
                )
                .order_by(JobRecord.priority.desc(), JobRecord.run_at)
                .limit(CLAIM_CANDIDATES)
            )
            result = await session.execute(stmt)
            candidates = [_job_from_record(record) for record in result.scalars().all()]

            for job in candidates:
                values = claim_updates(job, worker_id, now)
                claimed = await session.execute(
                    update(JobRecord)
                    .where(
                        JobRecord.id == job.id,
                        JobRecord.status.in_(CLAIMABLE_STATUSES),
                        lock_free,
                    )
                    .values(**_job_columns(values))
                )
                if claimed.rowcount == 1:
                    await session.commit()
                    logger.debug("Job claimed", job_id=job.id, worker_id=worker_id,
                                 attempts=values["attempts"])
                    return job.model_copy(update=values)

            await session.rollback()
            return None

    async def get_job(self, job_id: str) -> Optional[WorkflowJob]:
        async with self.get_session() as session:
            record = await session.get(JobRecord, job_id)
            return _job_from_record(record) if record else None

    async def complete_job(self, job_id: str, result: Any = None) -> None:
        await self._update_job(job_id, completion_updates(result, utcnow()))

    async def fail_job(self, job_id: str, error: str, retryable: bool = True) -> None:
        job = await self.get_job(job_id)
        if not job:
            logger.warning("Job not found for failure", job_id=job_id)
            return
        updates = failure_updates(job, error, retryable, utcnow())
        await self._update_job(job_id, updates)
        if updates["status"] == JobStatus.PENDING:
            logger.info("Job scheduled for retry", job_id=job_id, attempts=job.attempts,
                        run_at=updates["run_at"].isoformat())

    async def get_job_by_execution_id(self, execution_id: str) -> Optional[WorkflowJob]:
        async with self.get_session() as session:
            stmt = select(JobRecord).where(JobRecord.execution_id == execution_id).limit(1)
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
            return _job_from_record(record) if record else None

    async def count_pending_jobs(self, org_id: str) -> int:
        async with self.get_session() as session:
            stmt = select(func.count()).select_from(JobRecord).where(
                JobRecord.org_id == org_id,
                JobRecord.status.in_([status.value for status in ACTIVE_JOB_STATUSES]),
            )
            result = await session.execute(stmt)
            return result.scalar_one()

    async def retry_job(self, job_id: str) -> Optional[WorkflowJob]:
        """Make a failed or stuck job due now. Returns None when not retryable."""
        job = await self.get_job(job_id)
        if not job or job.status not in RETRYABLE_JOB_STATUSES:
            return None
        updates = retry_updates(job, utcnow())
        await self._update_job(job_id, updates)
        logger.info("Job manually retried", job_id=job_id, previous_status=job.status.value)
        return job.model_copy(update=updates)

    async def cancel_job(self, job_id: str) -> Optional[WorkflowJob]:
        """Fail a pending or processing job and its execution."""
        job = await self.get_job(job_id)
        if not job or job.status not in ACTIVE_JOB_STATUSES:
            return None
        now = utcnow()
        updates = cancel_updates(now)
        await self._update_job(job_id, updates)
        await self.update_execution_status(job.execution_id, cancelled_execution_updates(now))
        logger.info("Job cancelled", job_id=job_id, execution_id=job.execution_id)
        return job.model_copy(update=updates)

    async def get_job_queue_status(self, org_id: str) -> Dict[str, Any]:
        async with self.get_session() as session:
            counts_stmt = (
                select(JobRecord.status, func.count())
                .where(JobRecord.org_id == org_id)
                .group_by(JobRecord.status)
            )
            oldest_stmt = select(func.min(JobRecord.created_at)).where(
                JobRecord.org_id == org_id,
                JobRecord.status == JobStatus.PENDING.value,
            )
            counts = {status.value: 0 for status in JobStatus}
            for status, count in (await session.execute(counts_stmt)).all():
                if status in counts:
                    counts[status] = count
            oldest = (await session.execute(oldest_stmt)).scalar_one_or_none()
        return {**counts, "oldestPendingAt": _aware(oldest)}

    async def _update_job(self, job_id: str, updates: Dict[str, Any]) -> None:
        async with self.get_session() as session:
            await session.execute(
                update(JobRecord).where(JobRecord.id == job_id).values(**_job_columns(updates))
            )
            await session.commit()
