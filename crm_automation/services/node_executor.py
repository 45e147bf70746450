"""Node Executor - Single node execution with handler dispatch.

Uses a registry pattern for clean handler dispatch without if-else chains.
Adding a node type means registering one handler; the engine never changes.
"""

import asyncio
import time
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, TYPE_CHECKING

from pydantic import ValidationError

from crm_automation.core.logging import get_logger
from crm_automation.models.nodes import validate_node_params
from crm_automation.services.context import ExecutionContext
from crm_automation.services.definition import Node
from crm_automation.services.execution.models import ExecutionResult, Suspension
from crm_automation.services.handlers import (
    handle_trigger, handle_condition, handle_ab_test, handle_delay,
    handle_action, handle_send_message, handle_email, handle_sms,
    handle_http_request, handle_ai_agent,
    handle_crm, handle_tag, handle_stage, handle_billing, handle_notification,
    handle_wait_input, handle_buttons,
)

if TYPE_CHECKING:
    import httpx
    from crm_automation.core.config import Settings
    from crm_automation.services.collaborators import AIBackend, CRMGateway, OutboundSender

logger = get_logger(__name__)

# Config keys that name a context path rather than hold a template
RAW_PARAM_KEYS: Dict[str, FrozenSet[str]] = {
    'condition': frozenset({'variable'}),
}


class NodeExecutor:
    """Executes individual workflow nodes using registry-based dispatch."""

    def __init__(
        self,
        settings: "Settings",
        outbound: "OutboundSender",
        ai_backend: "AIBackend",
        crm: "CRMGateway",
        http_client: "httpx.AsyncClient",
        backoff_sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self.outbound = outbound
        self.ai_backend = ai_backend
        self.crm = crm
        self.http_client = http_client
        self.backoff_sleep = backoff_sleep
        self._handlers = self._build_handler_registry()

    def _build_handler_registry(self) -> Dict[str, Callable]:
        """Build handler registry with service dependencies bound via partial."""
        send = partial(handle_send_message, outbound=self.outbound)
        action = partial(handle_action, outbound=self.outbound, crm=self.crm)
        crm_bound = {
            'crm': handle_crm,
            'tag': handle_tag,
            'stage': handle_stage,
            'billing': handle_billing,
            'notification': handle_notification,
        }

        registry = {
            # Flow control
            'trigger': handle_trigger,
            'condition': handle_condition,
            'ab_test': handle_ab_test,
            'delay': handle_delay,
            # Messaging
            'action': action,
            'send_message': send,
            'email': partial(handle_email, http_client=self.http_client, settings=self.settings),
            'sms': partial(handle_sms, http_client=self.http_client, settings=self.settings),
            # HTTP
            'http': partial(handle_http_request, http_client=self.http_client, settings=self.settings,
                            backoff_sleep=self.backoff_sleep),
            # AI
            'ai_agent': partial(handle_ai_agent, ai_backend=self.ai_backend),
            # Interactive
            'wait_input': handle_wait_input,
            # Note: 'buttons' handled in _dispatch with its outgoing handles
        }

        for node_type, handler in crm_bound.items():
            registry[node_type] = partial(handler, crm=self.crm)

        return registry

    @property
    def node_types(self) -> frozenset:
        return frozenset(self._handlers) | {'buttons'}

    async def execute(
        self,
        node: Node,
        context: ExecutionContext,
        out_handles: Iterable[Optional[str]] = (),
    ) -> ExecutionResult:
        """Execute a single workflow node.

        Parameters are template-resolved against the context before dispatch.
        Handler exceptions become a failed result; cancellation propagates.
        """
        start_time = time.time()

        try:
            params = context.resolve_params(dict(node.config),
                                            raw_keys=RAW_PARAM_KEYS.get(node.type, frozenset()))
            try:
                validate_node_params(node.type, params)
            except ValidationError as e:
                logger.warning("Validation warning", node_id=node.id, node_type=node.type, errors=str(e))

            result = await self._dispatch(node, params, context, out_handles)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Node execution error", node_id=node.id, node_type=node.type, error=str(e))
            result = {"success": False, "error": str(e)}

        return self._to_result(node, result, start_time)

    async def _dispatch(self, node: Node, params: Dict[str, Any], context: ExecutionContext,
                        out_handles: Iterable[Optional[str]]) -> Dict[str, Any]:
        """Dispatch to handler from registry or special handlers."""
        handler = self._handlers.get(node.type)
        if handler:
            return await handler(node.id, node.type, params, context)

        if node.type == 'buttons':
            handles = [h for h in out_handles if h]
            return await handle_buttons(node.id, node.type, params, context,
                                        outbound=self.outbound, out_handles=handles)

        return {"success": False, "error": f"Unknown node type: {node.type}"}

    @staticmethod
    def _to_result(node: Node, raw: Dict[str, Any], start_time: float) -> ExecutionResult:
        suspension = raw.get('suspension')
        if suspension is not None and not isinstance(suspension, Suspension):
            suspension = Suspension.from_dict(suspension)

        return ExecutionResult(
            success=bool(raw.get('success')),
            node_id=node.id,
            node_type=node.type,
            result=raw.get('result'),
            error=raw.get('error') or (None if raw.get('success') else 'Node failed'),
            suspension=suspension if raw.get('success') else None,
            execution_time=raw.get('execution_time', time.time() - start_time),
            timestamp=raw.get('timestamp') or datetime.now().isoformat(),
        )
