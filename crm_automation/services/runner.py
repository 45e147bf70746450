"""Execution Runner - starts, resumes and persists workflow executions.

Every engine invocation ends with one persist_run_outcome call that stores
the status, the full context snapshot, the wait-point records and the delay
jobs together. Background sweeps expire wait-points and fire due delay jobs.
"""

import asyncio
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, TYPE_CHECKING

from crm_automation.constants import TIMEOUT_STOP
from crm_automation.core.logging import execution_log_context, get_logger, log_execution_time
from crm_automation.models.database import (
    ExecutionStatus, JobStatus, TERMINAL_EXECUTION_STATUSES, Workflow, utcnow,
)
from crm_automation.models.events import SweepResult
from crm_automation.services.context import ExecutionContext
from crm_automation.services.definition import WorkflowDefinition
from crm_automation.services.exceptions import (
    ExecutionNotFoundError, InvalidExecutionStateError, WorkflowDefinitionError,
)
from crm_automation.services.execution.engine import WorkflowEngine
from crm_automation.services.execution.models import RunResult, SuspendReason
from crm_automation.services.pending_inputs import PendingInputService, timeout_response

if TYPE_CHECKING:
    from crm_automation.core.config import Settings
    from crm_automation.core.database import Database
    from crm_automation.services.node_executor import NodeExecutor

logger = get_logger(__name__)

TIMEOUT_STOP_MESSAGE = 'Timeout - workflow stopped'


class ExecutionRunner:
    """Runs workflow executions against the persistence layer."""

    def __init__(
        self,
        database: "Database",
        node_executor: "NodeExecutor",
        pending_inputs: PendingInputService,
        settings: "Settings",
    ):
        self.database = database
        self.node_executor = node_executor
        self.pending_inputs = pending_inputs
        self.settings = settings
        self._tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # START
    # =========================================================================

    async def start_execution(self, workflow: Workflow, trigger_context: Dict[str, Any],
                              lead_id: Optional[str] = None,
                              conversation_id: Optional[str] = None) -> str:
        """Create the execution record and run the workflow in the background.

        Returns the execution id as soon as the record exists.
        """
        execution = await self.database.create_execution(
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            context=trigger_context,
            lead_id=lead_id,
            conversation_id=conversation_id,
        )

        context = ExecutionContext(data=dict(trigger_context))
        context.set('execution_id', execution.id)
        context.set('workflow_id', workflow.id)
        context.set('organization_id', workflow.organization_id)

        task = asyncio.create_task(self._run_start(execution.id, workflow, context))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return execution.id

    async def _run_start(self, execution_id: str, workflow: Workflow, context: ExecutionContext) -> None:
        start_time = time.time()
        try:
            definition = WorkflowDefinition.from_dict(workflow.definition)
            with execution_log_context(execution_id, workflow.id):
                run = await self._engine(definition, context).start()
            await self._persist(execution_id, run)
        except WorkflowDefinitionError as e:
            logger.error("Invalid workflow definition", workflow_id=workflow.id,
                         execution_id=execution_id, error=str(e))
            await self._persist_failure(execution_id, context, str(e))
        except Exception as e:
            logger.error("Workflow execution crashed", workflow_id=workflow.id,
                         execution_id=execution_id, error=str(e))
            await self._persist_failure(execution_id, context, str(e))
        finally:
            log_execution_time(logger, "workflow_start", start_time, time.time(),
                               execution_id=execution_id, workflow_id=workflow.id)

    async def drain(self) -> None:
        """Wait for every background execution started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # RESUME
    # =========================================================================

    async def resume_execution(self, execution_id: str, node_id: str,
                               response: Optional[Dict[str, Any]] = None,
                               extra_context: Optional[Dict[str, Any]] = None) -> RunResult:
        """Re-enter a suspended execution at node_id.

        Raises:
            ExecutionNotFoundError: unknown execution.
            InvalidExecutionStateError: the execution already completed or failed.
            WorkflowDefinitionError: the workflow is gone or its graph is invalid.
        """
        execution = await self.database.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        if execution.status in {s.value for s in TERMINAL_EXECUTION_STATUSES}:
            raise InvalidExecutionStateError(execution_id, execution.status, ExecutionStatus.RUNNING.value)

        workflow = await self.database.get_workflow(execution.workflow_id)
        if workflow is None:
            raise WorkflowDefinitionError(f"Workflow {execution.workflow_id} no longer exists")
        definition = WorkflowDefinition.from_dict(workflow.definition)

        await self.database.update_execution_status(execution_id, ExecutionStatus.RUNNING.value)
        context = ExecutionContext.from_dict(execution.context)

        start_time = time.time()
        try:
            with execution_log_context(execution_id, workflow.id, resumed_at=node_id):
                run = await self._engine(definition, context).resume(node_id, extra_context, response)
        except Exception as e:
            logger.error("Workflow resume crashed", execution_id=execution_id, node_id=node_id, error=str(e))
            await self._persist_failure(execution_id, context, str(e))
            raise

        await self._persist(execution_id, run)
        log_execution_time(logger, "workflow_resume", start_time, time.time(),
                           execution_id=execution_id, node_id=node_id, status=run.status.value)
        return run

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _engine(self, definition: WorkflowDefinition, context: ExecutionContext) -> WorkflowEngine:
        return WorkflowEngine(definition, context, self.node_executor,
                              max_steps=self.settings.engine_max_steps)

    async def _persist(self, execution_id: str, run: RunResult) -> None:
        pending_inputs: List[Dict[str, Any]] = []
        scheduled_jobs: List[Dict[str, Any]] = []

        for suspension in run.suspensions:
            if suspension.reason == SuspendReason.WAIT_INPUT:
                pending_inputs.append({"node_id": suspension.node_id, **(suspension.pending_input or {})})
            elif suspension.reason == SuspendReason.DELAY:
                scheduled_jobs.append({
                    "resume_from_node_id": suspension.node_id,
                    "scheduled_for": suspension.resume_at,
                    "max_attempts": self.settings.delay_job_max_attempts,
                })

        status = run.status
        if status != ExecutionStatus.WAITING and await self.database.count_open_wait_points(execution_id):
            # Another branch of this execution is still suspended
            status = ExecutionStatus.WAITING

        await self.database.persist_run_outcome(
            execution_id,
            status.value,
            run.context.to_dict(),
            error_message=run.error_message,
            pending_inputs=pending_inputs,
            scheduled_jobs=scheduled_jobs,
        )
        logger.info("Execution persisted", execution_id=execution_id, status=status.value,
                    visited=len(run.visited))

    async def _persist_failure(self, execution_id: str, context: ExecutionContext, error: str) -> None:
        try:
            await self.database.persist_run_outcome(
                execution_id, ExecutionStatus.FAILED.value, context.to_dict(), error_message=error
            )
        except Exception as e:
            logger.error("Failed to persist execution failure", execution_id=execution_id, error=str(e))

    # =========================================================================
    # SWEEPS
    # =========================================================================

    async def sweep_timeouts(self, now: Optional[datetime] = None) -> SweepResult:
        """Apply the timeout action of every expired wait-point.

        continue/branch resume the execution with a timed-out response, stop
        marks the execution failed without resuming.
        """
        now = now or utcnow()
        summary = SweepResult()
        expired = await self.database.get_expired_pending_inputs(now, self.settings.sweep_batch_size)

        for record in expired:
            action, response = timeout_response(record.config or {})
            if not await self.pending_inputs.expire(record):
                continue
            summary.processed += 1

            try:
                if action == TIMEOUT_STOP:
                    await self.database.update_execution_status(
                        record.execution_id, ExecutionStatus.FAILED.value, TIMEOUT_STOP_MESSAGE
                    )
                    summary.failed += 1
                    logger.info("Wait-point timed out, execution stopped",
                                execution_id=record.execution_id, node_id=record.node_id)
                else:
                    await self.resume_execution(record.execution_id, record.node_id, response=response)
                    summary.resumed += 1
                    logger.info("Wait-point timed out, execution resumed",
                                execution_id=record.execution_id, node_id=record.node_id, action=action)
            except Exception as e:
                summary.failed += 1
                logger.error("Timeout handling failed", execution_id=record.execution_id,
                             node_id=record.node_id, error=str(e))

        return summary

    async def process_scheduled_jobs(self, now: Optional[datetime] = None) -> SweepResult:
        """Resume executions whose delay has elapsed.

        Jobs of inactive or deleted workflows are cancelled. A failed resume is
        retried delay_job_retry_minutes later until max_attempts is reached.
        """
        now = now or utcnow()
        summary = SweepResult()
        jobs = await self.database.claim_due_jobs(now, self.settings.sweep_batch_size)

        for job in jobs:
            summary.processed += 1
            workflow = await self.database.get_workflow(job.workflow_id)
            if workflow is None or not workflow.is_active:
                await self.database.update_job(job.id, JobStatus.CANCELLED.value,
                                               last_error="Workflow inactive")
                summary.cancelled += 1
                logger.info("Delay job cancelled, workflow inactive", job_id=job.id,
                            workflow_id=job.workflow_id)
                continue

            try:
                await self.resume_execution(job.execution_id, job.resume_from_node_id)
                await self.database.update_job(job.id, JobStatus.COMPLETED.value)
                summary.resumed += 1
            except Exception as e:
                summary.failed += 1
                if job.attempts < job.max_attempts:
                    retry_at = now + timedelta(minutes=self.settings.delay_job_retry_minutes)
                    await self.database.update_job(job.id, JobStatus.PENDING.value,
                                                   last_error=str(e), scheduled_for=retry_at)
                    logger.warning("Delay job failed, rescheduled", job_id=job.id,
                                   attempts=job.attempts, retry_at=retry_at.isoformat(), error=str(e))
                else:
                    await self.database.update_job(job.id, JobStatus.FAILED.value, last_error=str(e))
                    logger.error("Delay job failed permanently", job_id=job.id,
                                 attempts=job.attempts, error=str(e))

        return summary
