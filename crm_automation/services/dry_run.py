"""Dry-run executor for the workflow editor's test panel.

Runs a definition through the real engine and handlers with side-effect free
collaborators. Outbound sends, AI calls and CRM mutations are answered by
in-process fakes, and HTTP/email/SMS requests go to an httpx.MockTransport
that replies 200. Nothing is persisted; suspending nodes simply end their
branch in the trace.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import httpx

from crm_automation.core.logging import get_logger
from crm_automation.services.context import ExecutionContext
from crm_automation.services.definition import WorkflowDefinition
from crm_automation.services.exceptions import WorkflowDefinitionError
from crm_automation.services.execution.engine import WorkflowEngine
from crm_automation.services.node_executor import NodeExecutor

if TYPE_CHECKING:
    from crm_automation.core.config import Settings

logger = get_logger(__name__)

DRY_RUN_ORGANIZATION = 'dry-run'

TRACE_STATUS = {
    "success": "success",
    "error": "error",
    "waiting": "suspended",
}


def _mock_id(prefix: str) -> str:
    return f"test-{prefix}-{uuid.uuid4().hex[:8]}"


# =============================================================================
# SIDE-EFFECT FREE COLLABORATORS
# =============================================================================

class DryRunOutboundSender:
    async def send(self, connection_id: Optional[str], recipient: str, content: Dict[str, Any],
                   organization_id: str) -> Dict[str, Any]:
        return {"success": True, "externalId": _mock_id("message"), "dryRun": True}


class DryRunAIBackend:
    async def execute(self, organization_id: str, task_type: str,
                      payload: Dict[str, Any]) -> Dict[str, Any]:
        prompt = str(payload.get("userPrompt") or "")
        return {"success": True, "data": {"output": f"[dry run] {prompt[:80]}"}}


class DryRunCRMGateway:
    async def create_lead(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"success": True, "data": {"id": _mock_id("lead"), **data}}

    async def update_lead_status(self, organization_id: str, lead_id: str, status: str) -> Dict[str, Any]:
        return {"success": True, "data": {"id": lead_id, "status": status}}

    async def add_tag(self, organization_id: str, lead_id: str, tag: str) -> Dict[str, Any]:
        return {"success": True, "data": {"id": lead_id, "tag": tag}}

    async def remove_tag(self, organization_id: str, lead_id: str, tag: str) -> Dict[str, Any]:
        return {"success": True, "data": {"id": lead_id, "tag": tag}}

    async def create_invoice(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"success": True, "data": {"id": _mock_id("invoice"), **data}}

    async def create_quote(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"success": True, "data": {"id": _mock_id("quote"), **data}}

    async def create_notification(self, organization_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {"success": True, "data": {"id": _mock_id("notification")}}

    async def count_lead_conversations(self, organization_id: str, lead_id: str,
                                       exclude_conversation_id: Optional[str] = None) -> int:
        return 0


def _mock_http_response(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={
        "mock": True,
        "dryRun": True,
        "id": _mock_id("http"),
        "url": str(request.url),
        "method": request.method,
    })


async def _no_backoff(seconds: float) -> None:
    return None


# =============================================================================
# TRACE
# =============================================================================

@dataclass
class TraceCollector:
    """Builds per-node trace entries from engine status callbacks."""
    definition: WorkflowDefinition
    entries: List[Dict[str, Any]] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    _started: Dict[str, float] = field(default_factory=dict)

    def log(self, message: str) -> None:
        self.logs.append(message)

    async def __call__(self, node_id: str, status: str, data: Dict[str, Any]) -> None:
        node = self.definition.get_node(node_id)
        label = node.label if node else node_id
        node_type = node.type if node else data.get("node_type", "")

        if status == "executing":
            self._started[node_id] = time.time()
            self.log(f"Executing node: {label} ({node_type})")
            return

        trace_status = TRACE_STATUS.get(status)
        if trace_status is None:
            return

        started = self._started.pop(node_id, None)
        duration_ms = int((time.time() - started) * 1000) if started else 0

        node_logs = []
        if trace_status == "success":
            node_logs.append(f"Node completed in {duration_ms}ms")
        elif trace_status == "suspended":
            reason = (data.get("suspension") or {}).get("reason")
            node_logs.append(f"Node suspended ({reason}), branch ends here")
        else:
            node_logs.append(f"Error: {data.get('error')}")
        self.logs.extend(node_logs)

        self.entries.append({
            "nodeId": node_id,
            "nodeLabel": label,
            "nodeType": node_type,
            "status": trace_status,
            "output": data.get("result"),
            "context": data.get("context") or {},
            "duration": duration_ms,
            "timestamp": datetime.now().isoformat(),
            "error": data.get("error"),
            "logs": node_logs,
        })


# =============================================================================
# EXECUTOR
# =============================================================================

class DryRunExecutor:
    """Executes workflow definitions against test data without side effects."""

    def __init__(self, settings: "Settings"):
        self.settings = settings

    async def run(self, definition: Dict[str, Any], test_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a definition and return the per-node trace.

        Returns:
            {success, nodes, totalDuration, status, logs, error?}
        """
        start_time = time.time()

        try:
            graph = WorkflowDefinition.from_dict(definition)
        except WorkflowDefinitionError as e:
            logger.warning("Dry run rejected invalid definition", error=str(e))
            return {
                "success": False,
                "nodes": [],
                "totalDuration": int((time.time() - start_time) * 1000),
                "status": "failed",
                "logs": [f"Execution failed: {e}"],
                "error": str(e),
            }

        context = ExecutionContext(data=dict(test_data or {}))
        context.set('organization_id', context.get('organization_id', DRY_RUN_ORGANIZATION))
        context.set('execution_id', _mock_id("execution"))

        trace = TraceCollector(graph)
        trace.log("Starting workflow execution in test mode")

        async with httpx.AsyncClient(transport=httpx.MockTransport(_mock_http_response)) as client:
            executor = NodeExecutor(
                self.settings,
                outbound=DryRunOutboundSender(),
                ai_backend=DryRunAIBackend(),
                crm=DryRunCRMGateway(),
                http_client=client,
                backoff_sleep=_no_backoff,
            )
            engine = WorkflowEngine(graph, context, executor,
                                    max_steps=self.settings.engine_max_steps,
                                    status_callback=trace)
            run = await engine.start()

        total = int((time.time() - start_time) * 1000)
        success = not run.errors
        trace.log(f"Execution {'completed' if success else 'failed'} in {total}ms")
        logger.info("Dry run finished", status=run.status.value, nodes=len(trace.entries),
                    duration_ms=total)

        result = {
            "success": success,
            "nodes": trace.entries,
            "totalDuration": total,
            "status": run.status.value,
            "logs": trace.logs,
        }
        if run.errors:
            result["error"] = run.error_message
        return result
