"""Node handlers package.

This package contains the built-in node executors organized by category:
- triggers.py: Manual, Webhook and Schedule triggers
- http.py: HTTP Request
- messaging.py: Discord and Slack webhook messages
- data.py: Set Variable, Transform, JSON Parse, Filter
- utility.py: If Condition, Delay, Merge
"""

# Trigger handlers
from .triggers import (
    handle_trigger,
)

# HTTP handlers
from .http import (
    handle_http_request,
)

# Messaging handlers
from .messaging import (
    handle_discord_send,
    handle_slack_send,
)

# Data operation handlers
from .data import (
    handle_set_variable,
    handle_json_parse,
    handle_filter,
)

# Utility handlers
from .utility import (
    handle_if_condition,
    handle_delay,
    handle_merge,
)

__all__ = [
    'handle_trigger',
    'handle_http_request',
    'handle_discord_send',
    'handle_slack_send',
    'handle_set_variable',
    'handle_json_parse',
    'handle_filter',
    'handle_if_condition',
    'handle_delay',
    'handle_merge',
]
