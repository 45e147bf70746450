"""Pending-input protocol: matching, validation, consumption and timeout actions."""

from datetime import timedelta

import pytest

from crm_automation.models.database import ExecutionStatus, PendingInputStatus, utcnow
from crm_automation.services.pending_inputs import (
    IncomingInput,
    MatchStatus,
    is_type_compatible,
    match_button_text,
    process_input,
    timeout_response,
    validate_input,
)
from tests.conftest import ORG_ID, make_workflow, node


# ============================================================================
# Pure protocol
# ============================================================================

@pytest.mark.parametrize("input_type,message_type,expected", [
    ("any", "image", True),
    ("", "text", True),
    ("text", "text", True),
    ("text", "image", False),
    ("button_click", "interactive", True),
    ("button_click", "button_reply", True),
    ("button_click", "text", False),
    ("audio", "voice", True),
    ("location", "location", True),
])
def test_type_compatibility(input_type, message_type, expected):
    assert is_type_compatible(input_type, message_type) is expected


@pytest.mark.parametrize("text,rule,expected", [
    ("ana@example.com", {"type": "email"}, True),
    ("not-an-email", {"type": "email"}, False),
    ("+52 (55) 1234-5678", {"type": "phone"}, True),
    ("12345", {"type": "phone"}, False),
    ("42.5", {"type": "number"}, True),
    ("forty", {"type": "number"}, False),
    ("abc", {"type": "length", "min": 2, "max": 5}, True),
    ("a", {"type": "length", "min": 2}, False),
    ("abcdef", {"type": "length", "max": 5}, False),
    ("Quiero PIZZA", {"type": "contains", "value": "pizza"}, True),
    ("ORD-1234", {"type": "regex", "value": r"^ORD-\d{4}$"}, True),
    ("ORD-12", {"type": "regex", "value": r"^ORD-\d{4}$"}, False),
    ("x", {"type": "regex", "value": "("}, False),
    ("anything", {"type": "mystery"}, True),
    ("anything", None, True),
])
def test_validation_rules(text, rule, expected):
    assert validate_input(text, rule) is expected


BUTTON_CONFIG = {
    "inputType": "button_click",
    "buttonOptions": [{"id": "yes", "title": "Sí, claro"}, {"id": "no", "title": "No"}],
    "buttonBranches": {"no": "branch-no"},
}


def test_text_matching_a_button_title_becomes_a_click():
    matched = match_button_text(BUTTON_CONFIG, IncomingInput("text", "  sí, CLARO "))
    assert matched.message_type == "interactive"
    assert matched.button_id == "yes"


def test_text_not_matching_a_title_stays_text():
    matched = match_button_text(BUTTON_CONFIG, IncomingInput("text", "maybe"))
    assert matched.message_type == "text"
    assert matched.button_id is None


def test_process_input_resumes_with_branch():
    result = process_input(BUTTON_CONFIG, IncomingInput("interactive", "No", button_id="no"))
    assert result.status == MatchStatus.RESUME
    assert result.response == {
        "user_input": "No",
        "button_id": "no",
        "next_branch_id": "branch-no",
        "message_type": "interactive",
        "timed_out": False,
    }


def test_process_input_type_mismatch():
    result = process_input(BUTTON_CONFIG, IncomingInput("text", "maybe"))
    assert result.status == MatchStatus.TYPE_MISMATCH


def test_process_input_validation_error_uses_configured_message():
    config = {"inputType": "text", "validation": {"type": "email", "errorMessage": "Email inválido"}}
    result = process_input(config, IncomingInput("text", "nope"))
    assert result.status == MatchStatus.VALIDATION_ERROR
    assert result.error == "Email inválido"

    default = process_input({"validation": {"type": "number"}}, IncomingInput("text", "x"))
    assert default.error == "Invalid input"


def test_timeout_actions():
    action, response = timeout_response({"timeoutAction": "continue"})
    assert action == "continue"
    assert response["timed_out"] is True and response["next_branch_id"] is None

    action, response = timeout_response({"timeoutAction": "branch", "timeoutBranchId": "B"})
    assert action == "branch"
    assert response["next_branch_id"] == "B"

    assert timeout_response({}) == ("stop", None)
    assert timeout_response({"timeoutAction": "explode"}) == ("stop", None)


# ============================================================================
# Persistence-backed consumption
# ============================================================================

async def _waiting_execution(database, config, conversation_id="conv-1", node_id="wait",
                             timeout_at=None):
    workflow = await database.save_workflow(make_workflow({"nodes": [node("t", "trigger")], "edges": []}))
    execution = await database.create_execution(workflow.id, ORG_ID, {}, conversation_id=conversation_id)
    await database.persist_run_outcome(execution.id, ExecutionStatus.WAITING.value, {}, pending_inputs=[{
        "node_id": node_id,
        "conversation_id": conversation_id,
        "input_type": config.get("inputType", "any"),
        "config": config,
        "timeout_at": timeout_at,
    }])
    return execution


async def test_consume_marks_record_completed(database, pending_inputs):
    execution = await _waiting_execution(database, {"inputType": "text"})

    lookup = await pending_inputs.consume(ORG_ID, "conv-1", IncomingInput("text", "hello"))

    assert len(lookup.consumed) == 1
    assert lookup.consumed[0].response["user_input"] == "hello"
    record = await database.get_pending_input(execution.id, "wait")
    assert record.status == PendingInputStatus.COMPLETED.value
    assert record.response == {"type": "text", "content": "hello", "buttonId": None}

    again = await pending_inputs.consume(ORG_ID, "conv-1", IncomingInput("text", "hello"))
    assert again.consumed == []


async def test_consume_skips_other_conversations_and_mismatches(database, pending_inputs):
    await _waiting_execution(database, {"inputType": "image"})

    other = await pending_inputs.consume(ORG_ID, "conv-2", IncomingInput("image", ""))
    mismatch = await pending_inputs.consume(ORG_ID, "conv-1", IncomingInput("text", "hi"))

    assert other.consumed == [] and mismatch.consumed == []
    assert mismatch.validation_errors == []


async def test_validation_failure_leaves_record_waiting(database, pending_inputs):
    execution = await _waiting_execution(
        database, {"inputType": "text", "validation": {"type": "email", "errorMessage": "Bad email"}},
    )

    lookup = await pending_inputs.consume(ORG_ID, "conv-1", IncomingInput("text", "nope"))

    assert lookup.consumed == []
    assert lookup.validation_errors == ["Bad email"]
    record = await database.get_pending_input(execution.id, "wait")
    assert record.status == PendingInputStatus.WAITING.value


async def test_oldest_waiting_record_consumes_the_message(database, pending_inputs):
    first = await _waiting_execution(database, {"inputType": "text"})
    second = await _waiting_execution(database, {"inputType": "text"})

    lookup = await pending_inputs.consume(ORG_ID, "conv-1", IncomingInput("text", "hi"))

    assert [c.record.execution_id for c in lookup.consumed] == [first.id]
    record = await database.get_pending_input(second.id, "wait")
    assert record.status == PendingInputStatus.WAITING.value


async def test_expire_is_one_way(database, pending_inputs):
    execution = await _waiting_execution(database, {"inputType": "text"},
                                         timeout_at=utcnow() - timedelta(minutes=1))
    record = await database.get_pending_input(execution.id, "wait")

    assert await pending_inputs.expire(record) is True
    assert await pending_inputs.expire(record) is False
    lookup = await pending_inputs.consume(ORG_ID, "conv-1", IncomingInput("text", "late"))
    assert lookup.consumed == []
