"""Automation routes: inbound events, resumes, sweeps and dry runs."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from crm_automation.core.container import container
from crm_automation.core.database import Database
from crm_automation.core.logging import get_logger
from crm_automation.models.events import DispatchResult, DryRunRequest, InboundMessageEvent, SweepResult
from crm_automation.services.dispatcher import InboundDispatcher
from crm_automation.services.dry_run import DryRunExecutor
from crm_automation.services.exceptions import (
    ExecutionNotFoundError, InvalidExecutionStateError, WorkflowDefinitionError,
)
from crm_automation.services.runner import ExecutionRunner

logger = get_logger(__name__)
router = APIRouter(prefix="/api/automation", tags=["automation"])


class ResumeRequest(BaseModel):
    model_config = {"populate_by_name": True}

    node_id: str = Field(alias="nodeId")
    context: Dict[str, Any] = Field(default_factory=dict)
    response: Optional[Dict[str, Any]] = None


@router.post("/events/message", response_model=DispatchResult)
async def receive_message(
    event: InboundMessageEvent,
    dispatcher: InboundDispatcher = Depends(lambda: container.dispatcher())
):
    """Resume a waiting execution with the message, or start triggered workflows."""
    result = await dispatcher.handle_message(event)
    logger.info("Inbound message dispatched", organization_id=event.organization_id,
                conversation_id=event.conversation_id, resumed=len(result.resumed),
                started=len(result.started), validation_error=result.validation_error)
    return result


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    database: Database = Depends(lambda: container.database())
):
    """Current status and context snapshot of an execution."""
    execution = await database.get_execution(execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
    return execution.model_dump(mode="json")


@router.post("/executions/{execution_id}/resume")
async def resume_execution(
    execution_id: str,
    request: ResumeRequest,
    runner: ExecutionRunner = Depends(lambda: container.runner())
):
    """Re-enter a suspended execution at a node with additional context."""
    try:
        run = await runner.resume_execution(execution_id, request.node_id,
                                            response=request.response,
                                            extra_context=request.context)
    except ExecutionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidExecutionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except WorkflowDefinitionError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return {"success": True, "execution_id": execution_id, **run.to_dict()}


@router.post("/sweeps/timeouts", response_model=SweepResult)
async def sweep_timeouts(
    runner: ExecutionRunner = Depends(lambda: container.runner())
):
    """Apply the timeout action of every expired wait-point."""
    return await runner.sweep_timeouts()


@router.post("/sweeps/delays", response_model=SweepResult)
async def sweep_delays(
    runner: ExecutionRunner = Depends(lambda: container.runner())
):
    """Resume executions whose delay has elapsed."""
    return await runner.process_scheduled_jobs()


@router.post("/dry-run")
async def dry_run(
    request: DryRunRequest,
    executor: DryRunExecutor = Depends(lambda: container.dry_run())
):
    """Run an unsaved definition against test data without side effects."""
    if not request.definition:
        raise HTTPException(status_code=422, detail="definition is required")
    return await executor.run(request.definition, request.test_data)


@router.post("/workflows/{workflow_id}/dry-run")
async def dry_run_workflow(
    workflow_id: str,
    request: DryRunRequest,
    database: Database = Depends(lambda: container.database()),
    executor: DryRunExecutor = Depends(lambda: container.dry_run())
):
    """Run a stored workflow (or an edited definition of it) against test data."""
    workflow = await database.get_workflow(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail=f"Workflow {workflow_id} not found")
    return await executor.run(request.definition or workflow.definition, request.test_data)
