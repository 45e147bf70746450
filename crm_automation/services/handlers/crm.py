"""CRM mutation node handlers - CRM, Tag, Stage, Billing, Notification.

Thin wrappers: take the resolved parameters, call one CRMGateway operation
and surface its failure as the node's failure.
"""

import time
from typing import Any, Dict, Optional

from crm_automation.core.logging import get_logger
from crm_automation.services.collaborators import CRMGateway
from crm_automation.services.context import ExecutionContext
from crm_automation.services.exceptions import NodeExecutionError
from .common import first_present, node_failure, node_success

logger = get_logger(__name__)


def _lead_id(parameters: Dict[str, Any], context: ExecutionContext) -> str:
    lead_id = first_present(parameters.get('leadId'), context.get('lead.id'))
    if not lead_id:
        raise NodeExecutionError("No lead available (leadId or lead.id)")
    return str(lead_id)


def _check(response: Dict[str, Any], operation: str) -> Optional[Any]:
    if not response.get('success'):
        raise NodeExecutionError(response.get('error') or f"{operation} failed")
    return response.get('data')


async def handle_crm(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext,
    crm: CRMGateway
) -> Dict[str, Any]:
    """Create a lead or update a lead's status (``action``: create_lead | update_status)."""
    start_time = time.time()
    organization_id = context.get('organization_id')

    try:
        action = parameters.get('action') or 'create_lead'

        if action == 'create_lead':
            lead_data = {
                "name": first_present(parameters.get('name'), context.get('lead.name')),
                "phone": first_present(parameters.get('phone'), context.get('message.sender')),
                "email": parameters.get('email'),
                "source": parameters.get('source') or 'automation',
            }
            data = _check(await crm.create_lead(organization_id, lead_data), "create_lead")
            if isinstance(data, dict) and data.get('id') and not context.get('lead.id'):
                context.set('lead', {**lead_data, **data})
            result = {"action": action, "lead": data}

        elif action == 'update_status':
            status = parameters.get('status')
            if not status:
                raise NodeExecutionError("Status is required")
            lead_id = _lead_id(parameters, context)
            data = _check(await crm.update_lead_status(organization_id, lead_id, str(status)),
                          "update_lead_status")
            context.set('lead.status', status)
            result = {"action": action, "lead_id": lead_id, "status": status}

        else:
            raise NodeExecutionError(f"Unknown CRM action: {action}")

        logger.info("[CRM] Completed", node_id=node_id, action=action)
        return node_success(node_id, node_type, start_time, result)

    except Exception as e:
        logger.error("CRM node failed", node_id=node_id, error=str(e))
        return node_failure(node_id, node_type, start_time, str(e))


async def handle_tag(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext,
    crm: CRMGateway
) -> Dict[str, Any]:
    start_time = time.time()

    try:
        tag = first_present(parameters.get('tag'), parameters.get('tagName'))
        if not tag:
            raise NodeExecutionError("Tag is required")
        lead_id = _lead_id(parameters, context)
        action = parameters.get('action') or 'add'
        organization_id = context.get('organization_id')

        if action == 'add':
            _check(await crm.add_tag(organization_id, lead_id, str(tag)), "add_tag")
        elif action == 'remove':
            _check(await crm.remove_tag(organization_id, lead_id, str(tag)), "remove_tag")
        else:
            raise NodeExecutionError(f"Unknown tag action: {action}")

        return node_success(node_id, node_type, start_time, {
            "action": action, "tag": tag, "lead_id": lead_id,
        })

    except Exception as e:
        logger.error("Tag node failed", node_id=node_id, error=str(e))
        return node_failure(node_id, node_type, start_time, str(e))


async def handle_stage(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext,
    crm: CRMGateway
) -> Dict[str, Any]:
    """Move the lead to a pipeline stage."""
    start_time = time.time()

    try:
        stage = first_present(parameters.get('stage'), parameters.get('status'))
        if not stage:
            raise NodeExecutionError("Stage is required")
        lead_id = _lead_id(parameters, context)

        _check(await crm.update_lead_status(context.get('organization_id'), lead_id, str(stage)),
               "update_lead_status")
        context.set('lead.status', stage)

        return node_success(node_id, node_type, start_time, {"lead_id": lead_id, "stage": stage})

    except Exception as e:
        logger.error("Stage node failed", node_id=node_id, error=str(e))
        return node_failure(node_id, node_type, start_time, str(e))


async def handle_billing(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext,
    crm: CRMGateway
) -> Dict[str, Any]:
    """Create an invoice or a quote (``documentType``: invoice | quote)."""
    start_time = time.time()

    try:
        document_type = parameters.get('documentType') or parameters.get('action') or 'invoice'
        data = {
            "leadId": first_present(parameters.get('leadId'), context.get('lead.id')),
            "amount": parameters.get('amount'),
            "currency": parameters.get('currency'),
            "description": parameters.get('description'),
            "items": parameters.get('items') or [],
        }
        organization_id = context.get('organization_id')

        if document_type == 'invoice':
            created = _check(await crm.create_invoice(organization_id, data), "create_invoice")
        elif document_type == 'quote':
            created = _check(await crm.create_quote(organization_id, data), "create_quote")
        else:
            raise NodeExecutionError(f"Unknown billing document type: {document_type}")

        context.set(f"last_{document_type}", created)
        return node_success(node_id, node_type, start_time, {
            "document_type": document_type, "document": created,
        })

    except Exception as e:
        logger.error("Billing node failed", node_id=node_id, error=str(e))
        return node_failure(node_id, node_type, start_time, str(e))


async def handle_notification(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext,
    crm: CRMGateway
) -> Dict[str, Any]:
    start_time = time.time()

    try:
        message = parameters.get('message') or ''
        if not message:
            raise NodeExecutionError("Notification message is required")

        created = _check(await crm.create_notification(context.get('organization_id'), {
            "title": parameters.get('title') or 'Automation',
            "message": message,
            "userId": parameters.get('userId'),
            "leadId": context.get('lead.id'),
        }), "create_notification")

        return node_success(node_id, node_type, start_time, {"notification": created})

    except Exception as e:
        logger.error("Notification node failed", node_id=node_id, error=str(e))
        return node_failure(node_id, node_type, start_time, str(e))
