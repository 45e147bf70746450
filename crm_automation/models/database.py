"""SQLModel database models and tables."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any
from uuid import uuid4
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import UniqueConstraint, func


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def new_id() -> str:
    return str(uuid4())


class ExecutionStatus(str, Enum):
    """Status of a workflow execution."""
    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"


class PendingInputStatus(str, Enum):
    WAITING = "waiting"
    COMPLETED = "completed"
    TIMEOUT = "timeout"


class JobStatus(str, Enum):
    """Status of a scheduled delayed-resume job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_EXECUTION_STATUSES = frozenset([ExecutionStatus.COMPLETED, ExecutionStatus.FAILED])


class Workflow(SQLModel, table=True):
    """Workflow definitions with their trigger configuration."""

    __tablename__ = "workflows"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=255)
    organization_id: str = Field(index=True, max_length=255)
    name: str = Field(max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    is_active: bool = Field(default=True, index=True)
    trigger_type: str = Field(max_length=50)
    trigger_config: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    definition: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class WorkflowExecution(SQLModel, table=True):
    """One workflow run and its persisted context snapshot."""

    __tablename__ = "workflow_executions"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=255)
    workflow_id: str = Field(foreign_key="workflows.id", index=True, max_length=255)
    organization_id: str = Field(index=True, max_length=255)
    lead_id: Optional[str] = Field(default=None, index=True, max_length=255)
    conversation_id: Optional[str] = Field(default=None, max_length=255)
    status: str = Field(default=ExecutionStatus.PENDING.value, index=True, max_length=50)
    context: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    error_message: Optional[str] = Field(default=None, max_length=4000)
    started_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), index=True)
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True))
    )


class PendingInput(SQLModel, table=True):
    """Durable record of a suspended wait-point."""

    __tablename__ = "workflow_pending_inputs"
    __table_args__ = (
        UniqueConstraint("execution_id", "node_id", name="uq_pending_input_execution_node"),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=255)
    execution_id: str = Field(foreign_key="workflow_executions.id", index=True, max_length=255)
    node_id: str = Field(max_length=255)
    organization_id: str = Field(index=True, max_length=255)
    conversation_id: Optional[str] = Field(default=None, index=True, max_length=255)
    input_type: str = Field(default="any", max_length=50)
    config: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    status: str = Field(default=PendingInputStatus.WAITING.value, index=True, max_length=50)
    timeout_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), index=True)
    )
    response: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )


class ScheduledJob(SQLModel, table=True):
    """Delayed-resume job written when a delay node suspends."""

    __tablename__ = "scheduled_workflow_jobs"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=255)
    organization_id: str = Field(index=True, max_length=255)
    workflow_id: str = Field(foreign_key="workflows.id", max_length=255)
    execution_id: str = Field(foreign_key="workflow_executions.id", index=True, max_length=255)
    resume_from_node_id: str = Field(max_length=255)
    scheduled_for: datetime = Field(
        sa_column=Column(DateTime(timezone=True), index=True)
    )
    status: str = Field(default=JobStatus.PENDING.value, index=True, max_length=50)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    last_error: Optional[str] = Field(default=None, max_length=2000)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
