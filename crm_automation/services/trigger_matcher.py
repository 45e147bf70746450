"""Trigger Matcher - decides which active workflows an inbound message starts.

Every active workflow of the organization with a supported trigger type is
evaluated independently; all matches fire. Per trigger type:

- keyword: case-insensitive exact or substring match (matchType, default contains)
- message_received, webhook without keyword: always match
- first_contact: the lead has no conversation other than the current one
- business_hours / outside_hours: wall-clock hour and weekday inside the
  configured window (default Mon-Fri 9-18); outside_hours is the negation
- media_received: detected media type, optionally restricted to mediaTypes

A ``channel`` in the trigger config restricts matching to that channel. The
cooldown check (cooldown_minutes per workflow and lead) runs last and can
veto any trigger type.
"""

from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from crm_automation.constants import (
    MEDIA_MESSAGE_TYPES,
    SUPPORTED_TRIGGER_TYPES,
    TRIGGER_BUSINESS_HOURS,
    TRIGGER_FIRST_CONTACT,
    TRIGGER_KEYWORD,
    TRIGGER_MEDIA_RECEIVED,
    TRIGGER_MESSAGE_RECEIVED,
    TRIGGER_OUTSIDE_HOURS,
    TRIGGER_WEBHOOK,
)
from crm_automation.core.logging import get_logger
from crm_automation.models.database import Workflow, utcnow
from crm_automation.models.events import InboundMessageEvent, StartedExecution

if TYPE_CHECKING:
    from crm_automation.core.config import Settings
    from crm_automation.core.database import Database
    from crm_automation.services.collaborators import CRMGateway
    from crm_automation.services.runner import ExecutionRunner

logger = get_logger(__name__)

Matcher = Callable[["TriggerMatcher", Dict[str, Any], InboundMessageEvent], Awaitable[bool]]


# =============================================================================
# PER-TYPE MATCHERS
# =============================================================================

def keyword_matches(config: Dict[str, Any], content: str) -> bool:
    keyword = str(config.get('keyword') or '').strip().lower()
    if not keyword:
        return False
    text = (content or '').strip().lower()
    if config.get('matchType') == 'exact':
        return text == keyword
    return keyword in text


async def _match_keyword(matcher: "TriggerMatcher", config: Dict[str, Any],
                         event: InboundMessageEvent) -> bool:
    return keyword_matches(config, event.content)


async def _match_always(matcher: "TriggerMatcher", config: Dict[str, Any],
                        event: InboundMessageEvent) -> bool:
    return True


async def _match_webhook(matcher: "TriggerMatcher", config: Dict[str, Any],
                         event: InboundMessageEvent) -> bool:
    if config.get('keyword'):
        return keyword_matches(config, event.content)
    return True


async def _match_first_contact(matcher: "TriggerMatcher", config: Dict[str, Any],
                               event: InboundMessageEvent) -> bool:
    if not event.lead_id:
        return False
    previous = await matcher.crm.count_lead_conversations(
        event.organization_id, event.lead_id, exclude_conversation_id=event.conversation_id
    )
    return previous == 0


async def _match_business_hours(matcher: "TriggerMatcher", config: Dict[str, Any],
                                event: InboundMessageEvent) -> bool:
    return matcher.within_business_hours(config)


async def _match_outside_hours(matcher: "TriggerMatcher", config: Dict[str, Any],
                               event: InboundMessageEvent) -> bool:
    return not matcher.within_business_hours(config)


async def _match_media(matcher: "TriggerMatcher", config: Dict[str, Any],
                       event: InboundMessageEvent) -> bool:
    if event.message_type not in MEDIA_MESSAGE_TYPES:
        return False
    allowed = config.get('mediaTypes') or []
    return not allowed or event.message_type in allowed


TRIGGER_MATCHERS: Dict[str, Matcher] = {
    TRIGGER_KEYWORD: _match_keyword,
    TRIGGER_MESSAGE_RECEIVED: _match_always,
    TRIGGER_WEBHOOK: _match_webhook,
    TRIGGER_FIRST_CONTACT: _match_first_contact,
    TRIGGER_BUSINESS_HOURS: _match_business_hours,
    TRIGGER_OUTSIDE_HOURS: _match_outside_hours,
    TRIGGER_MEDIA_RECEIVED: _match_media,
}


def _first_key(config: Dict[str, Any], keys: Tuple[str, ...], default: Any) -> Any:
    for key in keys:
        if config.get(key) is not None:
            return config[key]
    return default


def _cooldown_minutes(config: Dict[str, Any]) -> float:
    value = config.get('cooldown_minutes', config.get('cooldownMinutes'))
    try:
        return float(value) if value else 0.0
    except (TypeError, ValueError):
        return 0.0


# =============================================================================
# MATCHER
# =============================================================================

class TriggerMatcher:
    """Evaluates inbound messages against workflow triggers and starts executions."""

    def __init__(
        self,
        database: "Database",
        crm: "CRMGateway",
        runner: "ExecutionRunner",
        settings: "Settings",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.crm = crm
        self.runner = runner
        self.settings = settings
        self.clock = clock

    def within_business_hours(self, config: Dict[str, Any]) -> bool:
        """True if the current hour and weekday fall in the configured window.

        Config keys startHour/endHour (or start_hour/end_hour), days and timezone
        override the defaults.
        The window is [startHour, endHour).
        """
        tz_name = config.get('timezone') or self.settings.business_timezone
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone, using UTC", timezone=tz_name)
            tz = ZoneInfo("UTC")

        now = self.clock().astimezone(tz)
        start = int(_first_key(config, ('startHour', 'start_hour'), self.settings.business_hours_start))
        end = int(_first_key(config, ('endHour', 'end_hour'), self.settings.business_hours_end))
        days = config.get('days')
        if days is None:
            days = self.settings.business_days

        return now.weekday() in [int(d) for d in days] and start <= now.hour < end

    async def _in_cooldown(self, workflow: Workflow, event: InboundMessageEvent) -> bool:
        minutes = _cooldown_minutes(workflow.trigger_config or {})
        if not minutes or not event.lead_id:
            return False

        last_started = await self.database.get_last_execution_started_at(workflow.id, event.lead_id)
        if last_started is None:
            return False
        return self.clock() - last_started < timedelta(minutes=minutes)

    async def matches(self, workflow: Workflow, event: InboundMessageEvent) -> bool:
        """Whether one workflow fires for the event (cooldown included)."""
        config = workflow.trigger_config or {}

        channel = config.get('channel')
        if channel and channel != event.channel:
            return False

        matcher = TRIGGER_MATCHERS.get(workflow.trigger_type)
        if matcher is None or not await matcher(self, config, event):
            return False

        if await self._in_cooldown(workflow, event):
            logger.info("Trigger suppressed by cooldown", workflow_id=workflow.id,
                        lead_id=event.lead_id)
            return False

        return True

    async def evaluate(self, event: InboundMessageEvent) -> List[Workflow]:
        """All active workflows of the organization that fire for the event."""
        try:
            workflows = await self.database.get_active_workflows(
                event.organization_id, SUPPORTED_TRIGGER_TYPES
            )
        except Exception as e:
            logger.error("Failed to load workflows", organization_id=event.organization_id, error=str(e))
            return []

        matched = []
        for workflow in workflows:
            try:
                if await self.matches(workflow, event):
                    matched.append(workflow)
            except Exception as e:
                logger.warning("Trigger evaluation failed", workflow_id=workflow.id,
                               trigger_type=workflow.trigger_type, error=str(e))

        logger.debug("Triggers evaluated", organization_id=event.organization_id,
                     candidates=len(workflows), matched=len(matched))
        return matched

    async def process(self, event: InboundMessageEvent) -> List[StartedExecution]:
        """Start one execution per matching workflow (fire-and-forget)."""
        started = []
        for workflow in await self.evaluate(event):
            try:
                execution_id = await self.runner.start_execution(
                    workflow,
                    event.trigger_context(),
                    lead_id=event.lead_id,
                    conversation_id=event.conversation_id,
                )
            except Exception as e:
                logger.error("Failed to start execution", workflow_id=workflow.id, error=str(e))
                continue

            logger.info("Workflow triggered", workflow_id=workflow.id, execution_id=execution_id,
                        trigger_type=workflow.trigger_type)
            started.append(StartedExecution(workflow_id=workflow.id, execution_id=execution_id))
        return started
