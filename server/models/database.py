"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import func


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowRecord(SQLModel, table=True):
    """Workflow definitions. ``data`` holds the full camelCase document."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True, max_length=255)
    org_id: str = Field(index=True, max_length=255)
    name: str = Field(default="", max_length=255)
    status: str = Field(default="active", max_length=50)
    data: Dict[str, Any] = Field(sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class ExecutionRecord(SQLModel, table=True):
    """Workflow run records. ``data`` holds the full camelCase document."""

    __tablename__ = "workflow_executions"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    org_id: str = Field(index=True, max_length=255)
    status: str = Field(default="pending", max_length=50)
    data: Dict[str, Any] = Field(sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )


class ExecutionLogRecord(SQLModel, table=True):
    """Append-only execution log entries."""

    __tablename__ = "execution_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    execution_id: str = Field(index=True, max_length=255)
    node_id: str = Field(max_length=255)
    level: str = Field(default="info", max_length=10)
    event: str = Field(default="custom", max_length=50)
    message: str = Field(default="", max_length=4000)
    data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    timestamp: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), index=True)
    )


class JobRecord(SQLModel, table=True):
    """Workflow job queue."""

    __tablename__ = "workflow_jobs"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(max_length=255)
    execution_id: str = Field(index=True, max_length=255)
    org_id: str = Field(index=True, max_length=255)
    trigger: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    status: str = Field(default="pending", index=True, max_length=50)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    priority: int = Field(default=0)
    run_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), index=True)
    )
    locked_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    locked_by: Optional[str] = Field(default=None, max_length=255)
    last_error: Optional[str] = Field(default=None, max_length=4000)
    result: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True))
    )
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
