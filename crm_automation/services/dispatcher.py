"""Inbound message entry point.

A message first tries to satisfy a waiting wait-point of its conversation.
Only a message that no wait-point claims (neither consumed nor rejected by
validation) is evaluated against workflow triggers.
"""

from typing import TYPE_CHECKING

from crm_automation.core.logging import get_logger
from crm_automation.models.events import DispatchResult, InboundMessageEvent, ResumedExecution
from crm_automation.services.pending_inputs import IncomingInput, PendingInputService

if TYPE_CHECKING:
    from crm_automation.services.runner import ExecutionRunner
    from crm_automation.services.trigger_matcher import TriggerMatcher

logger = get_logger(__name__)


class InboundDispatcher:
    def __init__(self, pending_inputs: PendingInputService, runner: "ExecutionRunner",
                 trigger_matcher: "TriggerMatcher"):
        self.pending_inputs = pending_inputs
        self.runner = runner
        self.trigger_matcher = trigger_matcher

    async def handle_message(self, event: InboundMessageEvent) -> DispatchResult:
        result = DispatchResult()
        incoming = IncomingInput(
            message_type=event.message_type,
            content=event.content,
            button_id=event.button_id,
            raw=event.model_dump(),
        )

        lookup = await self.pending_inputs.consume(event.organization_id, event.conversation_id, incoming)

        for consumed in lookup.consumed:
            record = consumed.record
            try:
                await self.runner.resume_execution(
                    record.execution_id,
                    record.node_id,
                    response=consumed.response,
                    extra_context={"message": event.trigger_context()["message"]},
                )
                result.resumed.append(ResumedExecution(execution_id=record.execution_id,
                                                       node_id=record.node_id))
            except Exception as e:
                logger.error("Resume failed", execution_id=record.execution_id,
                             node_id=record.node_id, error=str(e))

        if lookup.consumed:
            return result

        if lookup.validation_errors:
            result.validation_error = lookup.validation_errors[0]
            return result

        result.started = await self.trigger_matcher.process(event)
        return result
