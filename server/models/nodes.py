"""Pydantic models for node parameters and trigger payloads.

Node parameters and trigger payloads are both Pydantic v2 discriminated
unions: node params on ``type``, trigger payloads on ``kind``. Unknown node
types fall back to ``BaseNodeParams`` and unrecognised payloads fall back to
``OpaquePayload`` so new node kinds and trigger sources never break intake.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union, Annotated

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from constants import BUILTIN_NODE_TYPES


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseNodeParams(BaseModel):
    """Base class for all node parameters."""
    model_config = {"extra": "allow", "populate_by_name": True}


class ConditionSpec(BaseModel):
    """A single field/operator/value comparison."""
    field: str
    operator: str = "eq"
    value: Any = None


class VariableSpec(BaseModel):
    """A named variable assigned by setVariable/transform nodes."""
    name: str = Field(..., min_length=1)
    value: Any = None
    type: Literal["string", "number", "boolean", "json", "auto"] = "auto"


# =============================================================================
# TRIGGER NODE MODELS
# =============================================================================

class ManualTriggerParams(BaseNodeParams):
    """Parameters for manual trigger node."""
    type: Literal["manualTrigger"]


class WebhookTriggerParams(BaseNodeParams):
    """Parameters for webhook trigger node."""
    type: Literal["webhookTrigger"]
    path: str = ""
    method_filter: str = Field(default="all", alias="methodFilter")


class ScheduleTriggerParams(BaseNodeParams):
    """Parameters for schedule trigger node."""
    type: Literal["scheduleTrigger"]
    cron: str = "*/5 * * * *"
    timezone: Optional[str] = None
    enabled: bool = True


# =============================================================================
# HTTP NODE MODELS
# =============================================================================

class HttpRequestParams(BaseNodeParams):
    """Parameters for HTTP request node."""
    type: Literal["httpRequest"]
    endpoint: str = ""
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    timeout_ms: int = Field(default=30000, alias="timeoutMs", ge=1, le=300000)
    variable_name: Optional[str] = Field(default=None, alias="variableName")


# =============================================================================
# MESSAGING NODE MODELS
# =============================================================================

class DiscordSendParams(BaseNodeParams):
    """Parameters for Discord message node (incoming webhook)."""
    type: Literal["discordSend"]
    auth_method: Literal["webhook"] = Field(default="webhook", alias="authMethod")
    webhook_url: str = Field(default="", alias="webhookUrl")
    message_content: str = Field(default="", alias="messageContent")
    username: Optional[str] = None
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl")
    embed_json: Optional[Any] = Field(default=None, alias="embedJson")


class SlackSendParams(BaseNodeParams):
    """Parameters for Slack message node (incoming webhook)."""
    type: Literal["slackSend"]
    auth_method: Literal["webhook"] = Field(default="webhook", alias="authMethod")
    webhook_url: str = Field(default="", alias="webhookUrl")
    message_type: Literal["text", "blocks"] = Field(default="text", alias="messageType")
    message_text: str = Field(default="", alias="messageText")
    blocks_json: Optional[Any] = Field(default=None, alias="blocksJson")
    channel: Optional[str] = None


# =============================================================================
# DATA OPERATION NODE MODELS
# =============================================================================

class SetVariableParams(BaseNodeParams):
    """Parameters for setVariable and transform nodes."""
    type: Literal["setVariable", "transform"]
    variables: List[VariableSpec] = Field(default_factory=list)


class JsonParseParams(BaseNodeParams):
    """Parameters for JSON parse node."""
    type: Literal["jsonParse"]
    operation: Literal["parse", "stringify", "extract"] = "parse"
    input: Any = ""
    path: str = ""
    variable_name: Optional[str] = Field(default=None, alias="variableName")


class FilterParams(BaseNodeParams):
    """Parameters for filter node."""
    type: Literal["filter"]
    items: Any = None
    conditions: List[ConditionSpec] = Field(default_factory=list)
    combine: Literal["and", "or"] = "and"
    mode: Literal["keep", "remove"] = "keep"


# =============================================================================
# UTILITY NODE MODELS
# =============================================================================

class IfConditionParams(BaseNodeParams):
    """Parameters for if-condition node."""
    type: Literal["ifCondition"]
    conditions: List[ConditionSpec] = Field(default_factory=list)
    combine: Literal["and", "or"] = "and"


class DelayParams(BaseNodeParams):
    """Parameters for delay node."""
    type: Literal["delay"]
    delay_type: Literal["duration", "specific_time"] = Field(default="duration", alias="delayType")
    duration_value: float = Field(default=1.0, alias="durationValue", ge=0)
    duration_unit: Literal["milliseconds", "seconds", "minutes", "hours"] = Field(
        default="seconds", alias="durationUnit"
    )
    specific_time: Optional[datetime] = Field(default=None, alias="specificTime")


class MergeParams(BaseNodeParams):
    """Parameters for merge node."""
    type: Literal["merge"]
    merge_mode: Literal["append", "merge"] = Field(default="append", alias="mergeMode")


# =============================================================================
# DISCRIMINATED UNION - All Node Types
# =============================================================================

KnownNodeParams = Annotated[
    Union[
        # Triggers
        ManualTriggerParams, WebhookTriggerParams, ScheduleTriggerParams,
        # HTTP
        HttpRequestParams,
        # Messaging
        DiscordSendParams, SlackSendParams,
        # Data
        SetVariableParams, JsonParseParams, FilterParams,
        # Utility
        IfConditionParams, DelayParams, MergeParams,
    ],
    Field(discriminator="type")
]

_known_node_adapter = TypeAdapter(KnownNodeParams)


def validate_node_params(node_type: str, params: Dict[str, Any]) -> BaseNodeParams:
    """Validate node parameters using the appropriate model.

    Known types are routed by the ``type`` discriminator and raise
    ``ValidationError`` on bad input. Unknown types fall back to
    ``BaseNodeParams`` so custom executors can read their own config.
    """
    params_with_type = {**(params or {}), "type": node_type}
    if node_type in BUILTIN_NODE_TYPES:
        return _known_node_adapter.validate_python(params_with_type)
    return BaseNodeParams(**params_with_type)


# =============================================================================
# TRIGGER PAYLOADS
# =============================================================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ManualPayload(BaseModel):
    """Payload for a run started from the editor or API."""
    kind: Literal["manual"] = "manual"
    data: Dict[str, Any] = Field(default_factory=dict)
    initiated_by: Optional[str] = None


class WebhookPayload(BaseModel):
    """Payload captured from an inbound webhook request."""
    kind: Literal["webhook"] = "webhook"
    method: str = "POST"
    path: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    query: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    received_at: datetime = Field(default_factory=_utcnow)


class ScheduledPayload(BaseModel):
    """Payload for a cron-fired run."""
    kind: Literal["scheduled"] = "scheduled"
    scheduled_at: datetime = Field(default_factory=_utcnow)
    cron: str = ""


class OpaquePayload(BaseModel):
    """Fallback for payloads of unknown shape."""
    kind: Literal["opaque"] = "opaque"
    data: Any = None


TriggerPayload = Annotated[
    Union[ManualPayload, WebhookPayload, ScheduledPayload, OpaquePayload],
    Field(discriminator="kind")
]

_payload_adapter = TypeAdapter(TriggerPayload)

_PAYLOAD_BY_TRIGGER = {
    "manual": ManualPayload,
    "webhook": WebhookPayload,
    "scheduled": ScheduledPayload,
}


def coerce_trigger_payload(trigger_type: str, payload: Any) -> BaseModel:
    """Turn a raw trigger payload into its tagged variant.

    Payloads that already carry a ``kind`` are validated as-is. Bare dicts
    are wrapped according to the trigger type. Anything that does not fit
    becomes an ``OpaquePayload``.
    """
    if isinstance(payload, BaseModel):
        return payload

    if isinstance(payload, dict) and "kind" in payload:
        try:
            return _payload_adapter.validate_python(payload)
        except ValidationError:
            return OpaquePayload(data=payload)

    if payload is None:
        payload = {}

    if trigger_type == "manual" and isinstance(payload, dict):
        return ManualPayload(data=payload)
    if trigger_type == "webhook":
        return WebhookPayload(body=payload)
    if trigger_type == "scheduled" and isinstance(payload, dict):
        try:
            return ScheduledPayload.model_validate(payload)
        except ValidationError:
            return OpaquePayload(data=payload)

    return OpaquePayload(data=payload)


def dump_trigger_payload(trigger_type: str, payload: Any) -> Dict[str, Any]:
    """JSON-ready form of a trigger payload, as stored on the job record."""
    model = coerce_trigger_payload(trigger_type, payload)
    return model.model_dump(mode="json")


# =============================================================================
# API REQUEST/RESPONSE MODELS
# =============================================================================

class ExecuteWorkflowRequest(BaseModel):
    """Body of a manual execute call."""
    user_id: Optional[str] = Field(default=None, alias="userId")
    data: Dict[str, Any] = Field(default_factory=dict)
    scheduled_at: Optional[datetime] = Field(default=None, alias="scheduledAt")

    model_config = {"populate_by_name": True}


class EnqueueResponse(BaseModel):
    """Returned by every trigger ingress route."""
    success: bool = True
    job_id: str
    workflow_id: str
    status: str


class NodeRunResponse(BaseModel):
    node_id: str
    node_type: str
    state: str
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    output: Any = None


class JobResponse(BaseModel):
    job_id: str
    workflow_id: str
    user_id: Optional[str] = None
    trigger_type: str
    status: str
    error: Optional[str] = None
    cancel_requested: bool = False
    scheduled_at: Optional[float] = None
    created_at: float
    updated_at: float
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
