"""Interactive Buttons node handler - buttons, list and call-to-action messages."""

import time
from typing import Any, Dict, Iterable, List

from crm_automation.constants import HANDLE_CONTINUE, TIMEOUT_BRANCH, TIMEOUT_CONTINUE
from crm_automation.core.logging import get_logger
from crm_automation.services.collaborators import OutboundSender
from crm_automation.services.context import ExecutionContext
from crm_automation.services.exceptions import NodeExecutionError
from .common import first_present, node_failure, node_success
from .messaging import default_recipient
from .wait_input import apply_response, build_wait_suspension

logger = get_logger(__name__)

DEFAULT_LIST_BUTTON_TEXT = 'Ver opciones'


def _header(header: Any) -> Any:
    if not isinstance(header, dict):
        return None
    header_type = header.get('type', 'text')
    return {
        "type": header_type,
        "text": header.get('content') if header_type == 'text' else None,
        "mediaUrl": header.get('content') if header_type == 'image' else None,
    }


def build_content(parameters: Dict[str, Any]) -> Dict[str, Any]:
    """Outbound payload for the configured interactive message type."""
    message_type = parameters.get('messageType') or 'buttons'
    body = parameters.get('body') or ''
    footer = parameters.get('footer') or None

    if message_type == 'buttons':
        return {
            "type": "interactive_buttons",
            "body": body,
            "footer": footer,
            "buttons": [
                {"id": b.get('id'), "title": b.get('title'), "payload": b.get('branchId')}
                for b in parameters.get('buttons') or []
            ],
            "header": _header(parameters.get('header')),
        }

    if message_type == 'list':
        header = parameters.get('header')
        return {
            "type": "interactive_list",
            "body": body,
            "footer": footer,
            "buttonText": parameters.get('listButtonText') or DEFAULT_LIST_BUTTON_TEXT,
            "sections": [
                {
                    "title": section.get('title'),
                    "rows": [
                        {"id": r.get('id'), "title": r.get('title'), "description": r.get('description')}
                        for r in section.get('rows') or []
                    ],
                }
                for section in parameters.get('sections') or []
            ],
            "header": header.get('content') if isinstance(header, dict) and header.get('type') == 'text' else None,
        }

    if message_type == 'cta':
        return {
            "type": "interactive_cta",
            "body": body,
            "footer": footer,
            "buttons": [
                {
                    "type": b.get('type'),
                    "text": b.get('text'),
                    "url": b.get('value') if b.get('type') == 'url' else None,
                    "phoneNumber": b.get('value') if b.get('type') == 'phone' else None,
                }
                for b in parameters.get('ctaButtons') or []
            ],
            "header": _header(parameters.get('header')),
        }

    raise NodeExecutionError(f"Unknown message type: {message_type}")


def button_options(parameters: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Selectable options (buttons or list rows) as {id, title}."""
    options = [
        {"id": b.get('id'), "title": b.get('title')}
        for b in parameters.get('buttons') or [] if b.get('id')
    ]
    for section in parameters.get('sections') or []:
        options.extend(
            {"id": r.get('id'), "title": r.get('title')}
            for r in section.get('rows') or [] if r.get('id')
        )
    return options


def _wait_config(parameters: Dict[str, Any], options: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Wait-point config: a button click validated against the sent options."""
    branches = {
        b['id']: b['branchId']
        for b in parameters.get('buttons') or [] if b.get('id') and b.get('branchId')
    }
    timeout_branch = parameters.get('timeoutBranchId')
    return {
        "inputType": "button_click",
        "buttonOptions": options,
        "buttonBranches": branches,
        "timeout": parameters.get('timeout'),
        "timeoutAction": TIMEOUT_BRANCH if timeout_branch else TIMEOUT_CONTINUE,
        "timeoutBranchId": timeout_branch,
        "conversationId": parameters.get('conversationId'),
        "storeAs": parameters.get('storeAs'),
    }


async def handle_buttons(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext,
    outbound: OutboundSender,
    out_handles: Iterable[str] = ()
) -> Dict[str, Any]:
    """Send an interactive message and, when needed, wait for the click.

    Waits when waitForResponse is set or when an outgoing edge is attached to
    one of the option handles.
    """
    start_time = time.time()

    response = context.signals.consume_resume(node_id)
    if response is not None:
        result = apply_response(parameters, context, response)
        if result["button_id"]:
            context.set('button_response', {"id": result["button_id"], "title": result["user_input"]})
        logger.info("[Buttons] Resumed", node_id=node_id, button_id=result["button_id"],
                    timed_out=result["timed_out"])
        return node_success(node_id, node_type, start_time, result)

    try:
        content = build_content(parameters)
        recipient = first_present(parameters.get('recipient'), default_recipient(context))
        if not recipient:
            raise NodeExecutionError("No recipient available (message.sender or lead.phone)")

        sent = await outbound.send(
            first_present(parameters.get('connectionId'), context.get('connection_id')),
            str(recipient), content, context.get('organization_id'),
        )
        if not sent.get('success'):
            raise NodeExecutionError(sent.get('error') or 'Send failed')

        message_type = parameters.get('messageType') or 'buttons'
        context.set('lastButtonMessageId', sent.get('externalId'))
        context.set('lastButtonType', message_type)

        options = button_options(parameters)
        option_ids = {o['id'] for o in options}
        handles = set(out_handles) - {HANDLE_CONTINUE}
        should_wait = bool(parameters.get('waitForResponse')) or bool(handles & option_ids)

        result = {
            "status": "sent",
            "message_type": message_type,
            "external_id": sent.get('externalId'),
            "waiting": should_wait,
        }

        if not should_wait:
            return node_success(node_id, node_type, start_time, result)

        suspension = build_wait_suspension(node_id, node_type, _wait_config(parameters, options), context)
        logger.info("[Buttons] Waiting for response", node_id=node_id, options=len(options))
        return node_success(node_id, node_type, start_time, result, suspension=suspension)

    except Exception as e:
        logger.error("Buttons node failed", node_id=node_id, error=str(e))
        return node_failure(node_id, node_type, start_time, str(e))
