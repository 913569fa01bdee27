"""Centralized constants for node types, trigger kinds and status topics.

This module provides a single source of truth for node type strings so the
registry, validators and handlers never drift apart.
"""

from typing import FrozenSet

# =============================================================================
# TRIGGER NODE TYPES
# =============================================================================

MANUAL_TRIGGER = 'manualTrigger'
WEBHOOK_TRIGGER = 'webhookTrigger'
SCHEDULE_TRIGGER = 'scheduleTrigger'

TRIGGER_NODE_TYPES: FrozenSet[str] = frozenset([
    MANUAL_TRIGGER,
    WEBHOOK_TRIGGER,
    SCHEDULE_TRIGGER,
])

# =============================================================================
# ACTION NODE TYPES
# =============================================================================

HTTP_REQUEST = 'httpRequest'

DISCORD_SEND = 'discordSend'
SLACK_SEND = 'slackSend'

SET_VARIABLE = 'setVariable'
TRANSFORM = 'transform'
JSON_PARSE = 'jsonParse'
FILTER = 'filter'

IF_CONDITION = 'ifCondition'
DELAY = 'delay'
MERGE = 'merge'

HTTP_TYPES: FrozenSet[str] = frozenset([HTTP_REQUEST])

MESSAGING_TYPES: FrozenSet[str] = frozenset([DISCORD_SEND, SLACK_SEND])

DATA_OPERATION_TYPES: FrozenSet[str] = frozenset([
    SET_VARIABLE,
    TRANSFORM,
    JSON_PARSE,
    FILTER,
])

UTILITY_TYPES: FrozenSet[str] = frozenset([
    IF_CONDITION,
    DELAY,
    MERGE,
])

ACTION_NODE_TYPES: FrozenSet[str] = HTTP_TYPES | MESSAGING_TYPES | DATA_OPERATION_TYPES | UTILITY_TYPES

BUILTIN_NODE_TYPES: FrozenSet[str] = TRIGGER_NODE_TYPES | ACTION_NODE_TYPES

# =============================================================================
# STEP NAMES (stable keys in the step log, never rename)
# =============================================================================

STEP_TRIGGER = 'trigger'
STEP_HTTP_REQUEST = 'http-request'
STEP_DISCORD_SEND = 'discord-send'
STEP_SLACK_SEND = 'slack-send'
STEP_DELAY = 'delay'

# =============================================================================
# STATUS TOPICS
# =============================================================================

WORKFLOW_TOPIC_PREFIX = 'workflow'
JOB_TOPIC_PREFIX = 'job'


def workflow_topic(workflow_id: str) -> str:
    """Status topic shared by every run of a workflow (editor view)."""
    return f"{WORKFLOW_TOPIC_PREFIX}:{workflow_id}"


def job_topic(job_id: str) -> str:
    """Status topic for a single job (executions view)."""
    return f"{JOB_TOPIC_PREFIX}:{job_id}"
