"""Pending-Input protocol - matching inbound messages against wait-points.

A suspended wait_input/buttons node leaves a PendingInput row holding a copy
of its config. An inbound message on the same conversation is checked
against each waiting row:

1. text-to-button: while a button click is expected, plain text equal to a
   button title (trimmed, case-insensitive) counts as a click on that button
2. input type compatibility (``any`` accepts everything); a mismatch leaves
   the row waiting
3. validation of text answers; a failure leaves the row waiting and reports
   the configured error message
4. the row is marked completed and a response payload is built for resume
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from crm_automation.constants import (
    INPUT_TYPE_ANY,
    INPUT_TYPE_MAP,
    TIMEOUT_BRANCH,
    TIMEOUT_CONTINUE,
    TIMEOUT_STOP,
)
from crm_automation.core.logging import get_logger
from crm_automation.models.database import PendingInput, PendingInputStatus

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
PHONE_PATTERN = re.compile(r'^[\d\s+()-]{10,}$')

DEFAULT_VALIDATION_ERROR = 'Invalid input'


@dataclass
class IncomingInput:
    """Normalized inbound message as seen by a wait-point."""
    message_type: str
    content: str = ''
    button_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class MatchStatus(str, Enum):
    RESUME = "resume"                    # Record consumed, resume the execution
    TYPE_MISMATCH = "type_mismatch"      # Record stays waiting
    VALIDATION_ERROR = "validation_error"  # Record stays waiting, error surfaced


@dataclass
class MatchResult:
    status: MatchStatus
    response: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


# =============================================================================
# VALIDATION
# =============================================================================

def validate_input(text: str, validation: Optional[Dict[str, Any]]) -> bool:
    """Check a text answer against a validation rule.

    Rule types: regex, contains (case-insensitive), length (min/max), email,
    phone, number. Unknown types accept everything.
    """
    if not validation:
        return True

    rule = validation.get('type')
    value = validation.get('value') or ''

    if rule == 'regex':
        try:
            return re.search(str(value), text) is not None
        except re.error:
            logger.warning("Invalid validation regex", pattern=value)
            return False

    elif rule == 'contains':
        return str(value).lower() in text.lower()

    elif rule == 'length':
        minimum = validation.get('min')
        maximum = validation.get('max')
        if minimum and len(text) < int(minimum):
            return False
        if maximum and len(text) > int(maximum):
            return False
        return True

    elif rule == 'email':
        return EMAIL_PATTERN.match(text) is not None

    elif rule == 'phone':
        return PHONE_PATTERN.match(text) is not None

    elif rule == 'number':
        try:
            float(text.strip())
            return True
        except ValueError:
            return False

    return True


# =============================================================================
# MATCHING
# =============================================================================

def match_button_text(config: Dict[str, Any], incoming: IncomingInput) -> IncomingInput:
    """Treat plain text equal to a button title as a click on that button."""
    if (config.get('inputType') != 'button_click' or incoming.message_type != 'text'
            or incoming.button_id):
        return incoming

    clean = (incoming.content or '').strip().lower()
    for option in config.get('buttonOptions') or []:
        title = str(option.get('title') or '').strip().lower()
        if title and title == clean:
            logger.info("Matched text to button", button_id=option.get('id'), text=incoming.content)
            return IncomingInput(
                message_type='interactive',
                content=incoming.content,
                button_id=option.get('id'),
                raw=incoming.raw,
            )
    return incoming


def is_type_compatible(input_type: str, message_type: str) -> bool:
    if not input_type or input_type == INPUT_TYPE_ANY:
        return True
    expected = INPUT_TYPE_MAP.get(input_type, (input_type,))
    return message_type in expected


def process_input(config: Dict[str, Any], incoming: IncomingInput) -> MatchResult:
    """Decide whether an inbound message satisfies a wait-point config."""
    processed = match_button_text(config, incoming)
    input_type = config.get('inputType') or INPUT_TYPE_ANY

    if not is_type_compatible(input_type, processed.message_type):
        return MatchResult(MatchStatus.TYPE_MISMATCH, error='Waiting for different input type')

    validation = config.get('validation')
    if validation and processed.message_type == 'text':
        if not validate_input(processed.content or '', validation):
            return MatchResult(
                MatchStatus.VALIDATION_ERROR,
                error=validation.get('errorMessage') or DEFAULT_VALIDATION_ERROR,
            )

    next_branch_id = None
    branches = config.get('buttonBranches') or {}
    if processed.button_id and branches:
        next_branch_id = branches.get(processed.button_id)

    return MatchResult(MatchStatus.RESUME, response={
        "user_input": processed.content,
        "button_id": processed.button_id,
        "next_branch_id": next_branch_id,
        "message_type": processed.message_type,
        "timed_out": False,
    })


def timeout_response(config: Dict[str, Any]) -> Tuple[str, Optional[Dict[str, Any]]]:
    """Timeout action of a wait-point and the resume payload it implies.

    ``stop`` (and anything unknown) returns no payload: the execution fails
    without resuming.
    """
    action = config.get('timeoutAction') or TIMEOUT_STOP

    if action == TIMEOUT_CONTINUE:
        return action, {"timed_out": True, "user_input": None, "button_id": None,
                        "next_branch_id": None}
    if action == TIMEOUT_BRANCH:
        return action, {"timed_out": True, "user_input": None, "button_id": None,
                        "next_branch_id": config.get('timeoutBranchId')}
    return TIMEOUT_STOP, None


# =============================================================================
# STORE
# =============================================================================

@dataclass
class ConsumedInput:
    """A waiting record that an inbound message satisfied."""
    record: PendingInput
    response: Dict[str, Any]


@dataclass
class InputLookup:
    consumed: List[ConsumedInput] = field(default_factory=list)
    validation_errors: List[str] = field(default_factory=list)


class PendingInputService:
    """Finds and consumes waiting records for an inbound message."""

    def __init__(self, database):
        self.database = database

    async def consume(self, organization_id: str, conversation_id: str,
                      incoming: IncomingInput) -> InputLookup:
        """Match the message against the waiting records of the conversation.

        The oldest satisfied record is marked completed (one-way, first writer
        wins) and consumes the message.
        Type mismatches are skipped silently; validation failures are reported
        and leave their record waiting.
        """
        lookup = InputLookup()
        if not conversation_id:
            return lookup

        records = await self.database.get_waiting_inputs(organization_id, conversation_id)
        for record in records:
            result = process_input(record.config or {}, incoming)

            if result.status == MatchStatus.TYPE_MISMATCH:
                logger.debug("Pending input type mismatch", execution_id=record.execution_id,
                             node_id=record.node_id, expected=record.input_type,
                             received=incoming.message_type)
                continue

            if result.status == MatchStatus.VALIDATION_ERROR:
                logger.info("Pending input validation failed", execution_id=record.execution_id,
                            node_id=record.node_id, error=result.error)
                lookup.validation_errors.append(result.error)
                continue

            stored = {
                "type": incoming.message_type,
                "content": incoming.content,
                "buttonId": result.response.get("button_id"),
            }
            if not await self.database.resolve_pending_input(
                    record.id, PendingInputStatus.COMPLETED.value, stored):
                logger.info("Pending input already resolved", pending_id=record.id)
                continue

            lookup.consumed.append(ConsumedInput(record=record, response=result.response))
            break

        return lookup

    async def expire(self, record: PendingInput) -> bool:
        """Mark a waiting record as timed out. False if it was already resolved."""
        return await self.database.resolve_pending_input(record.id, PendingInputStatus.TIMEOUT.value)
