"""Pydantic models for node config validation with discriminated unions.

Workflow configs are user-authored JSON, so validation is advisory: the
executor logs a warning and still runs the node with the raw config.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter

from crm_automation.constants import ALL_NODE_TYPES


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseNodeParams(BaseModel):
    """Base class for all node parameters."""
    model_config = {"extra": "allow", "populate_by_name": True}


class ConditionItem(BaseModel):
    variable: str = ""
    operator: str = "equals"
    value: Any = None


class ABPath(BaseModel):
    id: str
    label: Optional[str] = None
    percentage: float = Field(ge=0, le=100)


class ValidationRule(BaseModel):
    type: Literal["regex", "contains", "length", "email", "phone", "number"]
    value: Optional[str] = None
    min: Optional[int] = Field(default=None, ge=0)
    max: Optional[int] = Field(default=None, ge=0)
    error_message: Optional[str] = Field(default=None, alias="errorMessage")


class ButtonOption(BaseModel):
    id: str
    title: str
    branch_id: Optional[str] = Field(default=None, alias="branchId")


# =============================================================================
# FLOW CONTROL
# =============================================================================

class TriggerParams(BaseNodeParams):
    type: Literal["trigger"]


class ConditionParams(BaseNodeParams):
    type: Literal["condition"]
    logic: Literal["ALL", "ANY", "all", "any"] = "ALL"
    conditions: List[ConditionItem] = []


class ABTestParams(BaseNodeParams):
    type: Literal["ab_test"]
    paths: Optional[List[ABPath]] = None


class DelayParams(BaseNodeParams):
    type: Literal["delay"]
    duration: Union[str, int, float] = "1m"


# =============================================================================
# MESSAGING / HTTP / AI
# =============================================================================

class SendMessageParams(BaseNodeParams):
    type: Literal["action", "send_message"]
    action_type: Optional[str] = Field(default=None, alias="actionType")
    message: str = ""


class EmailParams(BaseNodeParams):
    type: Literal["email"]
    to: Optional[str] = None
    subject: str = ""
    body: str = ""


class SmsParams(BaseNodeParams):
    type: Literal["sms"]
    to: Optional[str] = None
    message: str = ""


class HttpParams(BaseNodeParams):
    type: Literal["http"]
    url: str = ""
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "get", "post", "put", "patch", "delete"] = "GET"
    timeout: Optional[float] = Field(default=None, gt=0, le=300)
    retries: int = Field(default=0, ge=0, le=10)
    store_as: Optional[str] = Field(default=None, alias="storeAs")


class AIAgentParams(BaseNodeParams):
    type: Literal["ai_agent"]
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    user_prompt: str = Field(default="", alias="userPrompt")
    model: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    variable: Optional[str] = None


# =============================================================================
# INTERACTIVE
# =============================================================================

class WaitInputParams(BaseNodeParams):
    type: Literal["wait_input"]
    input_type: Literal["button_click", "text", "any", "image", "location", "audio"] = Field(
        default="any", alias="inputType")
    timeout: Optional[str] = None
    timeout_action: Literal["continue", "branch", "stop"] = Field(default="stop", alias="timeoutAction")
    timeout_branch_id: Optional[str] = Field(default=None, alias="timeoutBranchId")
    validation: Optional[ValidationRule] = None
    store_as: Optional[str] = Field(default=None, alias="storeAs")
    button_branches: Optional[Dict[str, str]] = Field(default=None, alias="buttonBranches")
    button_options: Optional[List[ButtonOption]] = Field(default=None, alias="buttonOptions")


class ButtonsParams(BaseNodeParams):
    type: Literal["buttons"]
    message_type: Literal["buttons", "list", "cta"] = Field(default="buttons", alias="messageType")
    body: str = ""
    buttons: Optional[List[ButtonOption]] = None
    wait_for_response: bool = Field(default=False, alias="waitForResponse")
    timeout: Optional[str] = None
    timeout_branch_id: Optional[str] = Field(default=None, alias="timeoutBranchId")


# =============================================================================
# CRM MUTATIONS
# =============================================================================

class MutationParams(BaseNodeParams):
    type: Literal["crm", "tag", "stage", "billing", "notification"]


KnownNodeParams = Annotated[
    Union[
        TriggerParams, ConditionParams, ABTestParams, DelayParams,
        SendMessageParams, EmailParams, SmsParams, HttpParams, AIAgentParams,
        WaitInputParams, ButtonsParams, MutationParams,
    ],
    Field(discriminator="type"),
]


# =============================================================================
# VALIDATION HELPERS
# =============================================================================

_known_node_adapter = TypeAdapter(KnownNodeParams)


def validate_node_params(node_type: str, params: Dict[str, Any]) -> BaseNodeParams:
    """Validate node parameters using the model for its type.

    Raises:
        ValidationError: the config of a known node type is invalid.
    """
    params_with_type = {**params, "type": node_type}
    if node_type in ALL_NODE_TYPES:
        return _known_node_adapter.validate_python(params_with_type)
    return BaseNodeParams(**params_with_type)
