"""Messaging node handlers - Action, Send Message, Email, SMS."""

import time
from typing import Any, Dict

import httpx

from crm_automation.core.config import Settings
from crm_automation.core.logging import get_logger
from crm_automation.services.collaborators import CRMGateway, OutboundSender
from crm_automation.services.context import ExecutionContext
from crm_automation.services.exceptions import NodeExecutionError
from .common import first_present, node_failure, node_success
from .crm import handle_stage, handle_tag

logger = get_logger(__name__)


def default_recipient(context: ExecutionContext) -> Any:
    """Sender of the triggering message, else the lead's phone."""
    return first_present(context.get('message.sender'), context.get('lead.phone'))


async def handle_send_message(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext,
    outbound: OutboundSender
) -> Dict[str, Any]:
    """Send a text message through the messaging transport.

    Used by 'send_message' nodes and by 'action' nodes with actionType send_message.
    The external message id is stored as last_message_id.
    """
    start_time = time.time()

    try:
        message = parameters.get('message') or parameters.get('content') or ''
        if not message:
            raise NodeExecutionError("Message content is required")

        recipient = first_present(parameters.get('recipient'), default_recipient(context))
        if not recipient:
            raise NodeExecutionError("No recipient available (message.sender or lead.phone)")

        connection_id = first_present(parameters.get('connectionId'), context.get('connection_id'))
        organization_id = context.get('organization_id')

        logger.info("[Send Message] Sending", node_id=node_id, recipient=str(recipient),
                    length=len(message))
        sent = await outbound.send(connection_id, str(recipient),
                                   {"type": "text", "text": message}, organization_id)

        if not sent.get('success'):
            raise NodeExecutionError(sent.get('error') or 'Send failed')

        external_id = sent.get('externalId')
        context.set('last_message_id', external_id)

        return node_success(node_id, node_type, start_time, {
            "status": "sent",
            "recipient": str(recipient),
            "external_id": external_id,
            "preview": message[:100] + "..." if len(message) > 100 else message,
        })

    except Exception as e:
        logger.error("Send message failed", node_id=node_id, error=str(e))
        return node_failure(node_id, node_type, start_time, str(e))


async def handle_action(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext,
    outbound: OutboundSender,
    crm: CRMGateway
) -> Dict[str, Any]:
    """Generic action node, routed on ``actionType``.

    send_message sends text, add_tag and update_status go to the CRM.
    assign_user has no CRM operation behind it and completes without effect.
    """
    action_type = parameters.get('actionType') or 'send_message'

    if action_type == 'send_message':
        return await handle_send_message(node_id, node_type, parameters, context, outbound)
    if action_type == 'add_tag':
        return await handle_tag(node_id, node_type, {**parameters, 'action': 'add'}, context, crm)
    if action_type == 'update_status':
        return await handle_stage(node_id, node_type, parameters, context, crm)

    start_time = time.time()
    if action_type == 'assign_user':
        user_id = first_present(parameters.get('userId'), parameters.get('assignee'))
        logger.info("[Action] assign_user has no CRM operation, skipped", node_id=node_id,
                    user_id=user_id)
        return node_success(node_id, node_type, start_time, {
            "action_type": action_type, "user_id": user_id, "applied": False,
        })

    logger.error("Action node failed", node_id=node_id, action_type=action_type)
    return node_failure(node_id, node_type, start_time, f"Unsupported action type: {action_type}")


async def handle_email(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext,
    http_client: httpx.AsyncClient,
    settings: Settings
) -> Dict[str, Any]:
    """Send an email through the email API. Any non-2xx answer fails the node."""
    start_time = time.time()

    try:
        to = first_present(parameters.get('to'), context.get('lead.email'))
        subject = parameters.get('subject') or ''
        body = parameters.get('body') or parameters.get('html') or ''
        if not to:
            raise NodeExecutionError("Email recipient is required")

        headers = {"Content-Type": "application/json"}
        if settings.email_api_key:
            headers["Authorization"] = f"Bearer {settings.email_api_key}"

        payload = {
            "from": parameters.get('from') or settings.email_from,
            "to": to,
            "subject": subject,
            "html": body,
        }

        logger.info("[Email] Sending", node_id=node_id, to=str(to))
        response = await http_client.post(settings.email_api_url, json=payload, headers=headers,
                                          timeout=settings.http_timeout_seconds)

        if not response.is_success:
            raise NodeExecutionError(f"Email API returned {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        email_id = data.get('id') if isinstance(data, dict) else None
        context.set('last_email_id', email_id)

        return node_success(node_id, node_type, start_time, {
            "status": "sent",
            "to": to,
            "subject": subject,
            "email_id": email_id,
        })

    except Exception as e:
        logger.error("Email send failed", node_id=node_id, error=str(e))
        return node_failure(node_id, node_type, start_time, str(e))


async def handle_sms(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext,
    http_client: httpx.AsyncClient,
    settings: Settings
) -> Dict[str, Any]:
    """Send an SMS through the SMS API. Any non-2xx answer fails the node."""
    start_time = time.time()

    try:
        to = first_present(parameters.get('to'), context.get('lead.phone'))
        message = parameters.get('message') or ''
        if not to:
            raise NodeExecutionError("SMS recipient is required")
        if not message:
            raise NodeExecutionError("SMS message is required")

        headers = {"Content-Type": "application/json"}
        if settings.sms_api_key:
            headers["Authorization"] = f"Bearer {settings.sms_api_key}"

        logger.info("[SMS] Sending", node_id=node_id, to=str(to))
        response = await http_client.post(settings.sms_api_url, json={
            "from": parameters.get('from') or settings.sms_from,
            "to": to,
            "body": message,
        }, headers=headers, timeout=settings.http_timeout_seconds)

        if not response.is_success:
            raise NodeExecutionError(f"SMS API returned {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        sms_id = first_present(data.get('sid'), data.get('id')) if isinstance(data, dict) else None
        context.set('last_sms_id', sms_id)

        return node_success(node_id, node_type, start_time, {
            "status": "sent",
            "to": to,
            "sms_id": sms_id,
        })

    except Exception as e:
        logger.error("SMS send failed", node_id=node_id, error=str(e))
        return node_failure(node_id, node_type, start_time, str(e))
