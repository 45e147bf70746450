"""Workflow Engine - walks a definition from its trigger node.

Each node is run through the NodeExecutor, then the type-specific edge rules
pick the continuations. A single continuation is followed in a loop; several
continuations (fan-out) each get a forked context and run depth-first in edge
order, merging their variables back as they finish. A branch ends when no
edge is selected, when its node fails, or when its node suspends.
"""

from typing import Any, Awaitable, Callable, Dict, Optional, TYPE_CHECKING

from crm_automation.core.logging import get_logger
from crm_automation.services.context import ExecutionContext
from crm_automation.services.definition import Node, WorkflowDefinition
from crm_automation.services.exceptions import WorkflowDefinitionError
from .edges import select_next_edges
from .models import BranchError, NodeOutcome, RunResult

if TYPE_CHECKING:
    from crm_automation.services.node_executor import NodeExecutor

logger = get_logger(__name__)

# async callback(node_id, status, data)
StatusCallback = Callable[[str, str, Dict[str, Any]], Awaitable[None]]

DEFAULT_MAX_STEPS = 500


class WorkflowEngine:
    """Runs one invocation (start or resume) of a workflow execution."""

    def __init__(
        self,
        definition: WorkflowDefinition,
        context: ExecutionContext,
        node_executor: "NodeExecutor",
        max_steps: int = DEFAULT_MAX_STEPS,
        status_callback: Optional[StatusCallback] = None,
    ):
        self.definition = definition
        self.context = context
        self.node_executor = node_executor
        self.max_steps = max_steps
        self.status_callback = status_callback
        self._steps = 0

    async def start(self) -> RunResult:
        """Run from the unique trigger node."""
        trigger = self.definition.trigger
        logger.info("Workflow run started", execution_id=self.context.get('execution_id'),
                    trigger_node=trigger.id, nodes=len(self.definition))
        return await self._run(trigger)

    async def resume(self, node_id: str, extra_context: Optional[Dict[str, Any]] = None,
                     response: Optional[Dict[str, Any]] = None) -> RunResult:
        """Re-enter at a suspended node.

        extra_context is merged into the variables; response is handed to the
        node through the resume signal so it takes its resumed path instead of
        repeating its side effect.
        """
        node = self.definition.get_node(node_id)
        if node is None:
            raise WorkflowDefinitionError(f"Cannot resume at unknown node '{node_id}'")

        self.context.update(extra_context)
        self.context.signals.mark_resume(node_id, response)
        logger.info("Workflow run resumed", execution_id=self.context.get('execution_id'),
                    node_id=node_id, node_type=node.type)
        return await self._run(node)

    async def _run(self, node: Node) -> RunResult:
        run = RunResult(context=self.context)
        await self._walk(node, self.context, run)
        logger.info("Workflow run finished", execution_id=self.context.get('execution_id'),
                    status=run.status.value, steps=self._steps,
                    errors=len(run.errors), suspensions=len(run.suspensions))
        return run

    async def _walk(self, node: Node, context: ExecutionContext, run: RunResult) -> None:
        current: Optional[Node] = node

        while current is not None:
            if self._steps >= self.max_steps:
                error = f"Step limit of {self.max_steps} exceeded"
                logger.error("Branch aborted", node_id=current.id, error=error)
                run.errors.append(BranchError(current.id, current.type, error))
                await self._notify_status(current.id, "error", {"error": error})
                return
            self._steps += 1

            out_edges = self.definition.out_edges(current.id)
            await self._notify_status(current.id, "executing", {"node_type": current.type})

            result = await self.node_executor.execute(
                current, context, out_handles=[e.source_handle for e in out_edges]
            )
            if context.signals.resumed_node_id == current.id:
                context.signals.consume_resume(current.id)

            run.visited.append(current.id)
            run.results.append(result)
            outcome = result.outcome

            if outcome == NodeOutcome.FAIL:
                logger.error("Node failed", node_id=current.id, node_type=current.type,
                             error=result.error, execution_id=context.get('execution_id'))
                run.errors.append(BranchError(current.id, current.type, result.error or "Node failed"))
                await self._notify_status(current.id, "error", {
                    "error": result.error, "context": context.snapshot(),
                })
                return

            if outcome == NodeOutcome.SUSPEND:
                logger.info("Node suspended", node_id=current.id, node_type=current.type,
                            reason=result.suspension.reason.value,
                            execution_id=context.get('execution_id'))
                run.suspensions.append(result.suspension)
                await self._notify_status(current.id, "waiting", {
                    "result": result.result, "suspension": result.suspension.to_dict(),
                    "context": context.snapshot(),
                })
                return

            await self._notify_status(current.id, "success", {
                "result": result.result, "context": context.snapshot(),
                "execution_time": result.execution_time,
            })

            edges = select_next_edges(current, out_edges, result.result)
            targets = [self.definition.get_node(e.target) for e in edges]

            if len(targets) == 1:
                current = targets[0]
                continue

            # Fan-out: isolate each continuation, publish its variables when it ends
            branches = [(target, context.fork()) for target in targets]
            for target, branch in branches:
                await self._walk(target, branch, run)
                context.merge(branch)
            return

    async def _notify_status(self, node_id: str, status: str, data: Dict[str, Any]) -> None:
        """Notify status callback if set."""
        if self.status_callback:
            try:
                await self.status_callback(node_id, status, data)
            except Exception as e:
                logger.warning("Status callback failed", node_id=node_id, error=str(e))
