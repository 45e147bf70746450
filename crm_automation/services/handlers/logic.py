"""Flow-control node handlers - Trigger, Condition, A/B Split, Delay."""

import time
import uuid
from datetime import timedelta
from typing import Any, Dict

from crm_automation.core.logging import get_logger
from crm_automation.models.database import utcnow
from crm_automation.services.context import ExecutionContext
from crm_automation.services.execution.conditions import conditions_from_config, evaluate_conditions
from crm_automation.services.execution.durations import parse_duration
from crm_automation.services.execution.edges import compute_ab_bucket, select_ab_path
from crm_automation.services.execution.models import Suspension, SuspendReason
from .common import first_present, node_failure, node_success

logger = get_logger(__name__)

DEFAULT_DELAY = '1m'


async def handle_trigger(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext
) -> Dict[str, Any]:
    """Entry node. The trigger event is already in the context."""
    start_time = time.time()
    return node_success(node_id, node_type, start_time, {
        "triggered": True,
        "trigger_type": parameters.get('triggerType'),
    })


async def handle_condition(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext
) -> Dict[str, Any]:
    """Evaluate the node's comparisons; the boolean drives True/False edge selection."""
    start_time = time.time()
    logic = str(parameters.get('logic') or 'ALL').upper()
    conditions = conditions_from_config(parameters)

    result = evaluate_conditions(conditions, context, logic)
    logger.info("[Condition] Evaluated", node_id=node_id, logic=logic,
                conditions=len(conditions), result=result)

    return node_success(node_id, node_type, start_time, {
        "condition_result": result,
        "logic": logic,
    })


async def handle_ab_test(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext
) -> Dict[str, Any]:
    """Deterministic split on hash(identifier + node_id) mod 100.

    The identifier is the lead id, else the user id, else a random value.
    """
    start_time = time.time()
    identifier = first_present(context.get('lead.id'), context.get('user.id'))
    if identifier is None:
        identifier = str(uuid.uuid4())

    bucket = compute_ab_bucket(str(identifier), node_id)
    path = select_ab_path(parameters.get('paths'), bucket)
    if path is None:
        return node_failure(node_id, node_type, start_time, "A/B test has no paths")

    logger.info("[AB-Test] Path selected", node_id=node_id, identifier=str(identifier),
                bucket=bucket, path_id=path.get('id'))

    return node_success(node_id, node_type, start_time, {
        "path_id": path.get('id'),
        "path_label": path.get('label'),
        "bucket": bucket,
    })


async def handle_delay(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext
) -> Dict[str, Any]:
    """Always suspends on entry; continues when a delay job resumes it."""
    start_time = time.time()

    if context.signals.consume_resume(node_id) is not None:
        logger.info("[Delay] Resumed", node_id=node_id)
        return node_success(node_id, node_type, start_time, {"resumed": True})

    duration = parameters.get('duration') or DEFAULT_DELAY
    try:
        delta: timedelta = parse_duration(duration)
    except ValueError as e:
        return node_failure(node_id, node_type, start_time, str(e))

    resume_at = utcnow() + delta
    logger.info("[Delay] Suspending", node_id=node_id, duration=str(duration),
                resume_at=resume_at.isoformat())

    return node_success(
        node_id, node_type, start_time,
        {"resume_at": resume_at.isoformat(), "duration": str(duration)},
        suspension=Suspension(node_id=node_id, reason=SuspendReason.DELAY, resume_at=resume_at),
    )
