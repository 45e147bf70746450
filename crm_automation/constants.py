"""Centralized constants for node types, trigger types and input types.

Single source of truth for the string tags stored in workflow definitions,
trigger configuration and pending-input records.
"""

from typing import Dict, FrozenSet, Tuple

# =============================================================================
# NODE TYPES
# =============================================================================

TRIGGER_NODE_TYPE = 'trigger'

MESSAGING_NODE_TYPES: FrozenSet[str] = frozenset([
    'action',
    'send_message',
    'email',
    'sms',
])

MUTATION_NODE_TYPES: FrozenSet[str] = frozenset([
    'crm',
    'tag',
    'stage',
    'billing',
    'notification',
])

LOGIC_NODE_TYPES: FrozenSet[str] = frozenset([
    TRIGGER_NODE_TYPE,
    'condition',
    'ab_test',
    'delay',
])

INTERACTIVE_NODE_TYPES: FrozenSet[str] = frozenset([
    'wait_input',
    'buttons',
])

ALL_NODE_TYPES: FrozenSet[str] = (
    MESSAGING_NODE_TYPES |
    MUTATION_NODE_TYPES |
    LOGIC_NODE_TYPES |
    INTERACTIVE_NODE_TYPES |
    frozenset(['http', 'ai_agent'])
)

# Node types that talk to the outside world. Dry runs replace their transports.
SIDE_EFFECT_NODE_TYPES: FrozenSet[str] = (
    MESSAGING_NODE_TYPES |
    MUTATION_NODE_TYPES |
    frozenset(['http', 'ai_agent', 'buttons'])
)

# =============================================================================
# EDGE LABELS / HANDLES
# =============================================================================

CONDITION_TRUE_LABEL = 'True'
CONDITION_FALSE_LABEL = 'False'

HANDLE_CONTINUE = 'continue'
HANDLE_SUCCESS = 'success'
HANDLE_TIMEOUT = 'timeout'

DEFAULT_AB_PATHS: Tuple[Dict, ...] = (
    {'id': 'a', 'label': 'Path A', 'percentage': 50},
    {'id': 'b', 'label': 'Path B', 'percentage': 50},
)

# =============================================================================
# TRIGGER TYPES
# =============================================================================

TRIGGER_KEYWORD = 'keyword'
TRIGGER_MESSAGE_RECEIVED = 'message_received'
TRIGGER_FIRST_CONTACT = 'first_contact'
TRIGGER_BUSINESS_HOURS = 'business_hours'
TRIGGER_OUTSIDE_HOURS = 'outside_hours'
TRIGGER_MEDIA_RECEIVED = 'media_received'
TRIGGER_WEBHOOK = 'webhook'

SUPPORTED_TRIGGER_TYPES: FrozenSet[str] = frozenset([
    TRIGGER_KEYWORD,
    TRIGGER_MESSAGE_RECEIVED,
    TRIGGER_FIRST_CONTACT,
    TRIGGER_BUSINESS_HOURS,
    TRIGGER_OUTSIDE_HOURS,
    TRIGGER_MEDIA_RECEIVED,
    TRIGGER_WEBHOOK,
])

MEDIA_MESSAGE_TYPES: FrozenSet[str] = frozenset([
    'image',
    'video',
    'audio',
    'voice',
    'document',
    'sticker',
])

# =============================================================================
# PENDING INPUT TYPES
# =============================================================================

INPUT_TYPE_ANY = 'any'

# Expected inbound message types per waiting input type
INPUT_TYPE_MAP: Dict[str, Tuple[str, ...]] = {
    'button_click': ('interactive', 'button_reply'),
    'text': ('text',),
    'image': ('image',),
    'location': ('location',),
    'audio': ('audio', 'voice'),
}

# Timeout actions of a wait-point
TIMEOUT_CONTINUE = 'continue'
TIMEOUT_BRANCH = 'branch'
TIMEOUT_STOP = 'stop'

# Task type passed to the AI backend by ai_agent nodes
AI_AGENT_TASK_TYPE = 'workflow_agent'
AI_LAST_OUTPUT_KEY = 'ai_last_output'
