"""Node handlers package, one module per node family:

- logic.py: Trigger, Condition, A/B Split, Delay
- messaging.py: Action, Send Message, Email, SMS
- http.py: HTTP Request
- ai.py: AI Agent
- crm.py: CRM, Tag, Stage, Billing, Notification
- wait_input.py: Wait For Input
- buttons.py: Interactive Buttons
"""

# Flow control
from .logic import (
    handle_trigger,
    handle_condition,
    handle_ab_test,
    handle_delay,
)

# Messaging
from .messaging import (
    handle_action,
    handle_send_message,
    handle_email,
    handle_sms,
)

# HTTP
from .http import handle_http_request

# AI
from .ai import handle_ai_agent

# CRM mutations
from .crm import (
    handle_crm,
    handle_tag,
    handle_stage,
    handle_billing,
    handle_notification,
)

# Interactive
from .wait_input import handle_wait_input
from .buttons import handle_buttons

__all__ = [
    'handle_trigger',
    'handle_condition',
    'handle_ab_test',
    'handle_delay',
    'handle_action',
    'handle_send_message',
    'handle_email',
    'handle_sms',
    'handle_http_request',
    'handle_ai_agent',
    'handle_crm',
    'handle_tag',
    'handle_stage',
    'handle_billing',
    'handle_notification',
    'handle_wait_input',
    'handle_buttons',
]
