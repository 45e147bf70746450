"""Execution runner: persistence, suspend/resume round-trips, timeouts and delay jobs."""

from datetime import timedelta

import pytest

from crm_automation.models.database import ExecutionStatus, JobStatus, PendingInputStatus, utcnow
from crm_automation.models.events import InboundMessageEvent
from crm_automation.services.exceptions import ExecutionNotFoundError, InvalidExecutionStateError
from tests.conftest import ORG_ID, edge, make_workflow, node


def _event(content, message_type="text", **kwargs) -> InboundMessageEvent:
    data = {
        "organizationId": ORG_ID,
        "conversationId": "conv-1",
        "channel": "whatsapp",
        "leadId": "lead-1",
        "lead": {"name": "Ana"},
        "sender": "+5215550001",
        "content": content,
        "messageType": message_type,
    }
    data.update(kwargs)
    return InboundMessageEvent(**data)


async def _start(database, runner, dispatcher, definition, **workflow_kwargs):
    workflow = await database.save_workflow(make_workflow(definition, **workflow_kwargs))
    result = await dispatcher.handle_message(_event("hola"))
    await runner.drain()
    assert len(result.started) == 1
    return workflow, result.started[0].execution_id


ASK_EMAIL = {
    "nodes": [
        node("t", "trigger"),
        node("ask", "send_message", message="What is your email?"),
        node("wait", "wait_input", inputType="text", storeAs="email",
             validation={"type": "email", "errorMessage": "Bad email"}),
        node("thanks", "send_message", message="Thanks {{email}}"),
    ],
    "edges": [edge("t", "ask"), edge("ask", "wait"), edge("wait", "thanks", handle="success")],
}


def _timeout_workflow(action, **extra):
    return {
        "nodes": [
            node("t", "trigger"),
            node("wait", "wait_input", timeout="1m", timeoutAction=action, **extra),
            node("ok", "send_message", message="answered"),
            node("late", "send_message", message="timed out"),
        ],
        "edges": [
            edge("t", "wait"),
            edge("wait", "ok", edge_id="A", handle="success"),
            edge("wait", "late", edge_id="B", handle="timeout"),
        ],
    }


# ============================================================================
# Suspend / resume through inbound messages
# ============================================================================

async def test_answer_resumes_waiting_execution_without_repeating(database, runner, dispatcher, outbound):
    _, execution_id = await _start(database, runner, dispatcher, ASK_EMAIL)

    execution = await database.get_execution(execution_id)
    assert execution.status == ExecutionStatus.WAITING.value
    assert (await database.get_pending_input(execution_id, "wait")).status == PendingInputStatus.WAITING.value

    result = await dispatcher.handle_message(_event("ana@example.com"))

    assert [r.execution_id for r in result.resumed] == [execution_id]
    assert result.started == []
    execution = await database.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED.value
    assert execution.context["email"] == "ana@example.com"
    assert execution.context["message"]["content"] == "ana@example.com"
    assert outbound.texts == ["What is your email?", "Thanks ana@example.com"]


async def test_invalid_answer_is_reported_and_execution_keeps_waiting(database, runner, dispatcher, outbound):
    _, execution_id = await _start(database, runner, dispatcher, ASK_EMAIL)

    result = await dispatcher.handle_message(_event("not an email"))

    assert result.validation_error == "Bad email"
    assert result.resumed == [] and result.started == []
    assert (await database.get_execution(execution_id)).status == ExecutionStatus.WAITING.value
    assert outbound.texts == ["What is your email?"]


async def test_button_title_typed_as_text_resumes_button_branch(database, runner, dispatcher, outbound):
    definition = {
        "nodes": [
            node("t", "trigger"),
            node("menu", "buttons", body="¿Agendar cita?",
                 buttons=[{"id": "yes", "title": "Sí"}, {"id": "no", "title": "No"}]),
            node("book", "send_message", message="Booked"),
            node("bye", "send_message", message="Bye"),
        ],
        "edges": [edge("t", "menu"), edge("menu", "book", handle="yes"), edge("menu", "bye", handle="no")],
    }
    _, execution_id = await _start(database, runner, dispatcher, definition)

    await dispatcher.handle_message(_event(" no "))

    assert outbound.texts == [None, "Bye"]
    execution = await database.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED.value
    assert execution.context["button_response"] == {"id": "no", "title": " no "}


async def test_fan_out_waits_keep_execution_waiting_until_all_resolve(database, runner, dispatcher):
    definition = {
        "nodes": [
            node("t", "trigger"),
            node("text_wait", "wait_input", inputType="text"),
            node("photo_wait", "wait_input", inputType="image"),
        ],
        "edges": [edge("t", "text_wait"), edge("t", "photo_wait")],
    }
    _, execution_id = await _start(database, runner, dispatcher, definition)

    await dispatcher.handle_message(_event("some text"))
    assert (await database.get_execution(execution_id)).status == ExecutionStatus.WAITING.value

    await dispatcher.handle_message(_event("", message_type="image"))
    assert (await database.get_execution(execution_id)).status == ExecutionStatus.COMPLETED.value


async def test_branch_error_survives_later_completed_run(database, runner, dispatcher):
    definition = {
        "nodes": [
            node("t", "trigger"),
            node("bad", "tag"),
            node("wait", "wait_input", inputType="text"),
        ],
        "edges": [edge("t", "bad"), edge("t", "wait")],
    }
    _, execution_id = await _start(database, runner, dispatcher, definition)

    execution = await database.get_execution(execution_id)
    assert execution.status == ExecutionStatus.WAITING.value
    assert execution.error_message == "bad: Tag is required"

    await dispatcher.handle_message(_event("done"))

    execution = await database.get_execution(execution_id)
    assert execution.status == ExecutionStatus.COMPLETED.value
    assert execution.error_message == "bad: Tag is required"


async def test_resume_errors(database, runner, dispatcher):
    with pytest.raises(ExecutionNotFoundError):
        await runner.resume_execution("missing", "n1")

    greeting = {"nodes": [node("t", "trigger")], "edges": []}
    _, execution_id = await _start(database, runner, dispatcher, greeting)
    assert (await database.get_execution(execution_id)).status == ExecutionStatus.COMPLETED.value

    with pytest.raises(InvalidExecutionStateError):
        await runner.resume_execution(execution_id, "t")


async def test_invalid_definition_fails_execution(database, runner, dispatcher):
    _, execution_id = await _start(database, runner, dispatcher, {"nodes": [node("a", "action")], "edges": []})

    execution = await database.get_execution(execution_id)
    assert execution.status == ExecutionStatus.FAILED.value
    assert "No trigger node" in execution.error_message


async def test_failed_node_marks_execution_failed(database, runner, dispatcher, outbound):
    outbound.fail_with = "channel disconnected"
    definition = {"nodes": [node("t", "trigger"), node("hi", "send_message", message="hi")],
                  "edges": [edge("t", "hi")]}
    _, execution_id = await _start(database, runner, dispatcher, definition)

    execution = await database.get_execution(execution_id)
    assert execution.status == ExecutionStatus.FAILED.value
    assert execution.error_message == "hi: channel disconnected"
    assert execution.completed_at is not None


# ============================================================================
# Timeout sweep
# ============================================================================

async def test_timeout_branch_resumes_on_branch_edge_target(database, runner, dispatcher, outbound):
    _, execution_id = await _start(database, runner, dispatcher,
                                   _timeout_workflow("branch", timeoutBranchId="B"))

    not_yet = await runner.sweep_timeouts(now=utcnow())
    assert not_yet.processed == 0

    summary = await runner.sweep_timeouts(now=utcnow() + timedelta(minutes=2))

    assert summary.processed == 1 and summary.resumed == 1
    assert outbound.texts == ["timed out"]
    assert (await database.get_execution(execution_id)).status == ExecutionStatus.COMPLETED.value
    record = await database.get_pending_input(execution_id, "wait")
    assert record.status == PendingInputStatus.TIMEOUT.value


async def test_timeout_continue_follows_timeout_edge(database, runner, dispatcher, outbound):
    await _start(database, runner, dispatcher, _timeout_workflow("continue"))

    await runner.sweep_timeouts(now=utcnow() + timedelta(minutes=2))

    assert outbound.texts == ["timed out"]


async def test_timeout_stop_fails_execution(database, runner, dispatcher, outbound):
    _, execution_id = await _start(database, runner, dispatcher, _timeout_workflow("stop"))

    summary = await runner.sweep_timeouts(now=utcnow() + timedelta(minutes=2))

    assert summary.failed == 1 and summary.resumed == 0
    execution = await database.get_execution(execution_id)
    assert execution.status == ExecutionStatus.FAILED.value
    assert execution.error_message == "Timeout - workflow stopped"
    assert outbound.texts == []


async def test_answer_after_timeout_is_not_consumed(database, runner, dispatcher, outbound):
    await _start(database, runner, dispatcher, _timeout_workflow("continue"))
    await runner.sweep_timeouts(now=utcnow() + timedelta(minutes=2))

    result = await dispatcher.handle_message(_event("too late"))
    await runner.drain()

    assert result.resumed == []
    assert outbound.texts == ["timed out"]


# ============================================================================
# Delay jobs
# ============================================================================

DELAYED = {
    "nodes": [node("t", "trigger"), node("wait", "delay", duration="1h"),
              node("later", "send_message", message="later")],
    "edges": [edge("t", "wait"), edge("wait", "later")],
}


async def test_delay_job_resumes_when_due(database, runner, dispatcher, outbound):
    _, execution_id = await _start(database, runner, dispatcher, DELAYED)

    jobs = await database.get_jobs_for_execution(execution_id)
    assert [(j.resume_from_node_id, j.status) for j in jobs] == [("wait", JobStatus.PENDING.value)]
    assert (await database.get_execution(execution_id)).status == ExecutionStatus.WAITING.value

    early = await runner.process_scheduled_jobs(now=utcnow())
    assert early.processed == 0

    summary = await runner.process_scheduled_jobs(now=utcnow() + timedelta(hours=2))

    assert summary.resumed == 1
    assert outbound.texts == ["later"]
    assert (await database.get_execution(execution_id)).status == ExecutionStatus.COMPLETED.value
    job = (await database.get_jobs_for_execution(execution_id))[0]
    assert job.status == JobStatus.COMPLETED.value
    assert job.attempts == 1


async def test_delay_job_of_inactive_workflow_is_cancelled(database, runner, dispatcher, outbound):
    workflow, execution_id = await _start(database, runner, dispatcher, DELAYED)
    workflow.is_active = False
    await database.save_workflow(workflow)

    summary = await runner.process_scheduled_jobs(now=utcnow() + timedelta(hours=2))

    assert summary.cancelled == 1
    assert outbound.texts == []
    job = (await database.get_jobs_for_execution(execution_id))[0]
    assert job.status == JobStatus.CANCELLED.value


async def test_delay_job_retries_then_fails(database, runner, dispatcher, settings):
    _, execution_id = await _start(database, runner, dispatcher, DELAYED)
    # A terminal execution can not be resumed, so every attempt fails
    await database.update_execution_status(execution_id, ExecutionStatus.FAILED.value, "cancelled by user")

    base = utcnow() + timedelta(hours=2)
    for attempt in range(1, settings.delay_job_max_attempts + 1):
        summary = await runner.process_scheduled_jobs(now=base + timedelta(hours=attempt))
        assert summary.failed == 1
        job = (await database.get_jobs_for_execution(execution_id))[0]
        assert job.attempts == attempt

    assert job.status == JobStatus.FAILED.value
    assert "cannot move" in job.last_error
