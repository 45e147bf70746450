"""Async persistence for workflows, executions, pending inputs and delay jobs.

SQLModel on SQLAlchemy 2.0 async. Every write that ends an engine run goes
through persist_run_outcome so the execution row, its pending inputs and its
delay jobs are committed together.
"""

from datetime import datetime, timezone
from typing import Dict, Any, Iterable, List, Optional
from contextlib import asynccontextmanager
from sqlmodel import SQLModel, select
from sqlalchemy import desc, func
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from crm_automation.constants import SUPPORTED_TRIGGER_TYPES
from crm_automation.core.config import Settings
from crm_automation.core.logging import get_logger
from crm_automation.models.database import (
    ExecutionStatus, JobStatus, PendingInput, PendingInputStatus, ScheduledJob,
    TERMINAL_EXECUTION_STATUSES, Workflow, WorkflowExecution, ensure_utc, utcnow,
)
from crm_automation.services.exceptions import ExecutionNotFoundError, InvalidExecutionStateError

logger = get_logger(__name__)

_STATUS_RANK = {
    ExecutionStatus.PENDING.value: 0,
    ExecutionStatus.RUNNING.value: 1,
    ExecutionStatus.WAITING.value: 2,
    ExecutionStatus.COMPLETED.value: 3,
    ExecutionStatus.FAILED.value: 3,
}


def check_transition(execution: WorkflowExecution, new_status: str) -> None:
    """Raise unless new_status is a legal move from the execution's status.

    Forward-only, except waiting -> running on resume. Terminal states are final.
    """
    current = execution.status
    if current in {s.value for s in TERMINAL_EXECUTION_STATUSES}:
        raise InvalidExecutionStateError(execution.id, current, new_status)
    if current == ExecutionStatus.WAITING.value and new_status == ExecutionStatus.RUNNING.value:
        return
    if _STATUS_RANK[new_status] < _STATUS_RANK[current]:
        raise InvalidExecutionStateError(execution.id, current, new_status)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            url = self.settings.database_url
            if ":memory:" in url:
                # One shared connection, otherwise every session sees an empty database
                self.engine = create_async_engine(
                    url,
                    echo=self.settings.database_echo,
                    poolclass=StaticPool,
                    connect_args={"check_same_thread": False},
                )
            else:
                self.engine = create_async_engine(
                    url,
                    echo=self.settings.database_echo,
                    pool_size=self.settings.database_pool_size,
                    max_overflow=self.settings.database_max_overflow,
                )

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", url=url.split("///")[0])

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

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        """Save or update a workflow."""
        async with self.get_session() as session:
            stmt = select(Workflow).where(Workflow.id == workflow.id)
            result = await session.execute(stmt)
            existing = result.scalar_one_or_none()

            if existing:
                existing.organization_id = workflow.organization_id
                existing.name = workflow.name
                existing.description = workflow.description
                existing.is_active = workflow.is_active
                existing.trigger_type = workflow.trigger_type
                existing.trigger_config = dict(workflow.trigger_config or {})
                existing.definition = dict(workflow.definition or {})
                existing.updated_at = utcnow()
            else:
                existing = workflow
                session.add(existing)

            await session.commit()
            return existing

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        """Get workflow by ID."""
        try:
            async with self.get_session() as session:
                stmt = select(Workflow).where(Workflow.id == workflow_id)
                result = await session.execute(stmt)
                return result.scalar_one_or_none()

        except Exception as e:
            logger.error("Failed to get workflow", workflow_id=workflow_id, error=str(e))
            return None

    async def get_active_workflows(self, organization_id: str,
                                   trigger_types: Iterable[str] = SUPPORTED_TRIGGER_TYPES) -> List[Workflow]:
        """Active workflows of an organization whose trigger type is supported."""
        async with self.get_session() as session:
            stmt = (
                select(Workflow)
                .where(Workflow.organization_id == organization_id)
                .where(Workflow.is_active == True)  # noqa: E712
                .where(Workflow.trigger_type.in_(list(trigger_types)))
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ============================================================================
    # Executions
    # ============================================================================

    async def create_execution(self, workflow_id: str, organization_id: str,
                               context: Dict[str, Any], lead_id: Optional[str] = None,
                               conversation_id: Optional[str] = None,
                               status: str = ExecutionStatus.RUNNING.value) -> WorkflowExecution:
        """Insert a new execution row."""
        async with self.get_session() as session:
            execution = WorkflowExecution(
                workflow_id=workflow_id,
                organization_id=organization_id,
                lead_id=lead_id,
                conversation_id=conversation_id,
                status=status,
                context=context,
            )
            session.add(execution)
            await session.commit()
            return execution

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Get execution by ID."""
        try:
            async with self.get_session() as session:
                stmt = select(WorkflowExecution).where(WorkflowExecution.id == execution_id)
                result = await session.execute(stmt)
                return result.scalar_one_or_none()

        except Exception as e:
            logger.error("Failed to get execution", execution_id=execution_id, error=str(e))
            return None

    async def get_last_execution_started_at(self, workflow_id: str, lead_id: str) -> Optional[datetime]:
        """Start time of the most recent execution of a workflow for a lead."""
        async with self.get_session() as session:
            stmt = (
                select(WorkflowExecution.started_at)
                .where(WorkflowExecution.workflow_id == workflow_id)
                .where(WorkflowExecution.lead_id == lead_id)
                .order_by(desc(WorkflowExecution.started_at))
                .limit(1)
            )
            result = await session.execute(stmt)
            return ensure_utc(result.scalar_one_or_none())

    async def update_execution_status(self, execution_id: str, status: str,
                                      error_message: Optional[str] = None) -> WorkflowExecution:
        """Move an execution to a new status, validating the transition."""
        async with self.get_session() as session:
            execution = await session.get(WorkflowExecution, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)

            check_transition(execution, status)
            execution.status = status
            if error_message is not None:
                execution.error_message = error_message
            execution.updated_at = utcnow()
            if status in (ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value):
                execution.completed_at = utcnow()

            await session.commit()
            return execution

    async def persist_run_outcome(self, execution_id: str, status: str, context: Dict[str, Any],
                                  error_message: Optional[str] = None,
                                  pending_inputs: Optional[List[Dict[str, Any]]] = None,
                                  scheduled_jobs: Optional[List[Dict[str, Any]]] = None) -> WorkflowExecution:
        """Store the end of an engine run in a single commit.

        Writes the execution status, context snapshot and error message, upserts
        one PendingInput per wait-point keyed by (execution_id, node_id) and
        inserts one ScheduledJob per delay suspension. An error_message of None
        keeps the message an earlier run of the execution recorded.
        """
        async with self.get_session() as session:
            execution = await session.get(WorkflowExecution, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(execution_id)

            check_transition(execution, status)
            now = utcnow()
            execution.status = status
            execution.context = context
            if error_message is not None:
                execution.error_message = error_message
            execution.updated_at = now
            if status in (ExecutionStatus.COMPLETED.value, ExecutionStatus.FAILED.value):
                execution.completed_at = now

            for pending in pending_inputs or []:
                stmt = (
                    select(PendingInput)
                    .where(PendingInput.execution_id == execution_id)
                    .where(PendingInput.node_id == pending["node_id"])
                )
                result = await session.execute(stmt)
                record = result.scalar_one_or_none()
                timeout_at = pending.get("timeout_at")
                timeout_at = _as_utc(timeout_at) if timeout_at else None

                if record:
                    record.organization_id = execution.organization_id
                    record.conversation_id = pending.get("conversation_id")
                    record.input_type = pending.get("input_type", "any")
                    record.config = dict(pending.get("config") or {})
                    record.status = PendingInputStatus.WAITING.value
                    record.timeout_at = timeout_at
                    record.response = None
                    record.completed_at = None
                else:
                    session.add(PendingInput(
                        execution_id=execution_id,
                        node_id=pending["node_id"],
                        organization_id=execution.organization_id,
                        conversation_id=pending.get("conversation_id"),
                        input_type=pending.get("input_type", "any"),
                        config=dict(pending.get("config") or {}),
                        timeout_at=timeout_at,
                    ))

            for job in scheduled_jobs or []:
                session.add(ScheduledJob(
                    organization_id=execution.organization_id,
                    workflow_id=execution.workflow_id,
                    execution_id=execution_id,
                    resume_from_node_id=job["resume_from_node_id"],
                    scheduled_for=_as_utc(job["scheduled_for"]),
                    max_attempts=job.get("max_attempts", 3),
                ))

            await session.commit()
            logger.debug("Run outcome persisted", execution_id=execution_id, status=status,
                         pending_inputs=len(pending_inputs or []),
                         scheduled_jobs=len(scheduled_jobs or []))
            return execution

    # ============================================================================
    # Pending Inputs
    # ============================================================================

    async def get_waiting_inputs(self, organization_id: str,
                                 conversation_id: str) -> List[PendingInput]:
        """Waiting records for a conversation, oldest first."""
        async with self.get_session() as session:
            stmt = (
                select(PendingInput)
                .where(PendingInput.organization_id == organization_id)
                .where(PendingInput.conversation_id == conversation_id)
                .where(PendingInput.status == PendingInputStatus.WAITING.value)
                .order_by(PendingInput.created_at)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_pending_input(self, execution_id: str, node_id: str) -> Optional[PendingInput]:
        async with self.get_session() as session:
            stmt = (
                select(PendingInput)
                .where(PendingInput.execution_id == execution_id)
                .where(PendingInput.node_id == node_id)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def resolve_pending_input(self, pending_id: str, status: str,
                                    response: Optional[Dict[str, Any]] = None) -> bool:
        """One-way transition of a waiting record to completed or timeout.

        Returns False when the record is gone or no longer waiting, so two
        concurrent resumes cannot both consume it.
        """
        async with self.get_session() as session:
            record = await session.get(PendingInput, pending_id)
            if record is None or record.status != PendingInputStatus.WAITING.value:
                return False

            record.status = status
            record.response = response
            record.completed_at = utcnow()
            await session.commit()
            return True

    async def get_expired_pending_inputs(self, now: datetime, limit: int = 50) -> List[PendingInput]:
        """Waiting records whose timeout_at has passed."""
        async with self.get_session() as session:
            stmt = (
                select(PendingInput)
                .where(PendingInput.status == PendingInputStatus.WAITING.value)
                .where(PendingInput.timeout_at.is_not(None))
                .where(PendingInput.timeout_at <= _as_utc(now))
                .order_by(PendingInput.timeout_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ============================================================================
    # Scheduled Jobs
    # ============================================================================

    async def claim_due_jobs(self, now: datetime, limit: int = 50) -> List[ScheduledJob]:
        """Mark due pending jobs as processing and return them."""
        async with self.get_session() as session:
            stmt = (
                select(ScheduledJob)
                .where(ScheduledJob.status == JobStatus.PENDING.value)
                .where(ScheduledJob.scheduled_for <= _as_utc(now))
                .order_by(ScheduledJob.scheduled_for)
                .limit(limit)
            )
            result = await session.execute(stmt)
            jobs = list(result.scalars().all())

            for job in jobs:
                job.status = JobStatus.PROCESSING.value
                job.attempts += 1

            await session.commit()
            return jobs

    async def update_job(self, job_id: str, status: str, last_error: Optional[str] = None,
                         scheduled_for: Optional[datetime] = None) -> Optional[ScheduledJob]:
        async with self.get_session() as session:
            job = await session.get(ScheduledJob, job_id)
            if job is None:
                return None

            job.status = status
            if last_error is not None:
                job.last_error = last_error[:2000]
            if scheduled_for is not None:
                job.scheduled_for = _as_utc(scheduled_for)
            if status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value):
                job.completed_at = utcnow()

            await session.commit()
            return job

    async def get_jobs_for_execution(self, execution_id: str) -> List[ScheduledJob]:
        async with self.get_session() as session:
            stmt = select(ScheduledJob).where(ScheduledJob.execution_id == execution_id)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def count_open_wait_points(self, execution_id: str) -> int:
        """Waiting pending inputs plus pending delay jobs of an execution."""
        async with self.get_session() as session:
            inputs = await session.execute(
                select(func.count()).select_from(PendingInput)
                .where(PendingInput.execution_id == execution_id)
                .where(PendingInput.status == PendingInputStatus.WAITING.value)
            )
            jobs = await session.execute(
                select(func.count()).select_from(ScheduledJob)
                .where(ScheduledJob.execution_id == execution_id)
                .where(ScheduledJob.status == JobStatus.PENDING.value)
            )
            return int(inputs.scalar_one()) + int(jobs.scalar_one())
