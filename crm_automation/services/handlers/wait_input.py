"""Wait For Input node handler.

First entry records a wait-point and suspends. When the execution is resumed
at this node, the response injected by the resume path is written to the
context and drives edge selection (next branch, timeout or success).
"""

import time
from typing import Any, Dict, Optional

from crm_automation.constants import INPUT_TYPE_ANY, TIMEOUT_STOP
from crm_automation.core.logging import get_logger
from crm_automation.models.database import utcnow
from crm_automation.services.context import ExecutionContext
from crm_automation.services.exceptions import NodeExecutionError
from crm_automation.services.execution.durations import parse_duration
from crm_automation.services.execution.models import Suspension, SuspendReason
from .common import first_present, node_failure, node_success

logger = get_logger(__name__)


def conversation_id_for(config: Dict[str, Any], context: ExecutionContext) -> Optional[str]:
    """Explicit override, then conversation.id, conversationId, message.conversationId."""
    value = first_present(
        config.get('conversationId'),
        context.get('conversation.id'),
        context.get('conversationId'),
        context.get('message.conversationId'),
    )
    return str(value) if value is not None else None


def build_wait_suspension(node_id: str, node_type: str, config: Dict[str, Any],
                          context: ExecutionContext) -> Suspension:
    """Suspension describing the pending-input record for this wait-point.

    Raises:
        NodeExecutionError: no conversation in context or an invalid timeout.
    """
    conversation_id = conversation_id_for(config, context)
    if not conversation_id:
        raise NodeExecutionError("No conversation context")

    timeout_at = None
    if config.get('timeout'):
        try:
            timeout_at = utcnow() + parse_duration(config['timeout'])
        except ValueError as e:
            raise NodeExecutionError(str(e))

    snapshot = dict(config)
    snapshot.setdefault('timeoutAction', TIMEOUT_STOP)
    snapshot['nodeType'] = node_type

    return Suspension(
        node_id=node_id,
        reason=SuspendReason.WAIT_INPUT,
        pending_input={
            "conversation_id": conversation_id,
            "input_type": config.get('inputType') or INPUT_TYPE_ANY,
            "config": snapshot,
            "timeout_at": timeout_at,
        },
    )


def apply_response(parameters: Dict[str, Any], context: ExecutionContext,
                   response: Dict[str, Any]) -> Dict[str, Any]:
    """Write a resumed response into the context and return the node result."""
    timed_out = bool(response.get('timed_out'))
    user_input = response.get('user_input')

    if not timed_out:
        context.set('last_input', {
            "text": user_input,
            "button_id": response.get('button_id'),
            "type": response.get('message_type'),
        })
        store_as = parameters.get('storeAs')
        if store_as:
            context.set(str(store_as), user_input)

    return {
        "user_input": user_input,
        "button_id": response.get('button_id'),
        "next_branch_id": response.get('next_branch_id'),
        "timed_out": timed_out,
    }


async def handle_wait_input(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext
) -> Dict[str, Any]:
    start_time = time.time()

    response = context.signals.consume_resume(node_id)
    if response is not None:
        result = apply_response(parameters, context, response)
        logger.info("[Wait Input] Resumed", node_id=node_id, timed_out=result["timed_out"],
                    next_branch_id=result["next_branch_id"])
        return node_success(node_id, node_type, start_time, result)

    try:
        suspension = build_wait_suspension(node_id, node_type, parameters, context)
    except NodeExecutionError as e:
        logger.error("Wait input failed", node_id=node_id, error=str(e))
        return node_failure(node_id, node_type, start_time, str(e))

    logger.info("[Wait Input] Suspending", node_id=node_id,
                input_type=suspension.pending_input["input_type"],
                conversation_id=suspension.pending_input["conversation_id"])
    return node_success(node_id, node_type, start_time, {"waiting": True}, suspension=suspension)
