"""Pydantic models for inbound events and API payloads."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from crm_automation.constants import MEDIA_MESSAGE_TYPES


class InboundMessageEvent(BaseModel):
    """A message received on a conversation."""
    model_config = {"populate_by_name": True}

    organization_id: str = Field(alias="organizationId")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    channel: Optional[str] = None
    connection_id: Optional[str] = Field(default=None, alias="connectionId")
    lead_id: Optional[str] = Field(default=None, alias="leadId")
    lead: Dict[str, Any] = Field(default_factory=dict)
    sender: Optional[str] = None
    content: str = ""
    message_type: str = Field(default="text", alias="messageType")
    button_id: Optional[str] = Field(default=None, alias="buttonId")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_media(self) -> bool:
        return self.message_type in MEDIA_MESSAGE_TYPES

    def trigger_context(self) -> Dict[str, Any]:
        """Initial execution context for workflows started by this event."""
        lead = {**self.lead}
        if self.lead_id:
            lead["id"] = self.lead_id
        return {
            "organization_id": self.organization_id,
            "connection_id": self.connection_id,
            "conversation": {"id": self.conversation_id, "channel": self.channel},
            "message": {
                "content": self.content,
                "sender": self.sender,
                "type": self.message_type,
                "conversationId": self.conversation_id,
            },
            "lead": lead,
            "trigger": {"metadata": self.metadata},
        }


class StartedExecution(BaseModel):
    workflow_id: str
    execution_id: str


class ResumedExecution(BaseModel):
    execution_id: str
    node_id: str


class DispatchResult(BaseModel):
    """What an inbound message caused."""
    resumed: List[ResumedExecution] = Field(default_factory=list)
    started: List[StartedExecution] = Field(default_factory=list)
    validation_error: Optional[str] = None


class SweepResult(BaseModel):
    processed: int = 0
    resumed: int = 0
    failed: int = 0
    cancelled: int = 0


class DryRunRequest(BaseModel):
    model_config = {"populate_by_name": True}

    definition: Optional[Dict[str, Any]] = None
    test_data: Dict[str, Any] = Field(default_factory=dict, alias="testData")
