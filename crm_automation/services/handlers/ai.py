"""AI Agent node handler."""

import time
from typing import Any, Dict

from crm_automation.constants import AI_AGENT_TASK_TYPE, AI_LAST_OUTPUT_KEY
from crm_automation.core.logging import get_logger
from crm_automation.services.collaborators import AIBackend
from crm_automation.services.context import ExecutionContext
from crm_automation.services.exceptions import NodeExecutionError
from .common import node_failure, node_success

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = 'You are a helpful assistant.'
DEFAULT_MODEL = 'gpt-4o'


def _extract_text(data: Any) -> str:
    """Pull the textual answer out of the backend's data payload."""
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        for key in ('output', 'text', 'content', 'response'):
            value = data.get(key)
            if isinstance(value, str):
                return value
    return '' if data is None else str(data)


async def handle_ai_agent(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: ExecutionContext,
    ai_backend: AIBackend
) -> Dict[str, Any]:
    """Delegate a prompt to the AI backend.

    The raw output lands in ai_<node_id>, in ai_last_output, and in the
    variable named by ``variable`` when configured.
    """
    start_time = time.time()

    try:
        user_prompt = parameters.get('userPrompt') or parameters.get('prompt') or ''
        if not user_prompt:
            raise NodeExecutionError("User prompt is required")

        payload = {
            "systemPrompt": parameters.get('systemPrompt') or DEFAULT_SYSTEM_PROMPT,
            "userPrompt": user_prompt,
            "model": parameters.get('model') or DEFAULT_MODEL,
            "temperature": parameters.get('temperature', 0.7),
            "nodeId": node_id,
            "executionId": context.get('execution_id'),
        }

        logger.info("[AI Agent] Executing", node_id=node_id, model=payload["model"],
                    prompt_length=len(user_prompt))
        response = await ai_backend.execute(context.get('organization_id'), AI_AGENT_TASK_TYPE, payload)

        if not response.get('success'):
            raise NodeExecutionError(response.get('error') or 'AI backend call failed')

        output = _extract_text(response.get('data'))
        # Flat key; node ids may contain dots
        context.data[f"ai_{node_id}"] = output
        context.set(AI_LAST_OUTPUT_KEY, output)
        variable = parameters.get('variable') or parameters.get('storeAs')
        if variable:
            context.set(str(variable), output)

        return node_success(node_id, node_type, start_time, {
            "output": output,
            "model": payload["model"],
        })

    except Exception as e:
        logger.error("AI agent failed", node_id=node_id, error=str(e))
        return node_failure(node_id, node_type, start_time, str(e))
