"""
Core data models for the converse-flows engine.
These are the universal types shared across all modules.

A flow is authored in a graphical editor and stored as JSON; the models
accept the editor's camelCase keys (``sourceHandle``, ``apiUrl`` …) as
aliases so a stored document can be validated as-is.
"""
from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ChannelType(str, Enum):
    WHATSAPP = "whatsapp"
    CONSOLE = "console"


class FlowStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"


class NodeKind(str, Enum):
    """Closed catalog of node kinds the engine knows how to run."""
    SEND_TEXT = "send-text"
    API_CALL = "api-call"
    AI_QUERY = "ai-query"
    BUTTON_CHOICE = "button-choice"
    WAIT_FOR_INPUT = "wait-for-input"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, type_name: Optional[str]) -> "NodeKind":
        """Map a stored node type (canonical or editor alias) to a kind."""
        if not type_name:
            return cls.UNKNOWN
        kind = _NODE_KIND_ALIASES.get(type_name)
        if kind is not None:
            return kind
        try:
            kind = cls(type_name)
        except ValueError:
            return cls.UNKNOWN
        return kind

    @property
    def is_waiting(self) -> bool:
        return self in (NodeKind.BUTTON_CHOICE, NodeKind.WAIT_FOR_INPUT)

    @property
    def is_action(self) -> bool:
        return self in (NodeKind.SEND_TEXT, NodeKind.API_CALL, NodeKind.AI_QUERY)


_NODE_KIND_ALIASES: dict[str, NodeKind] = {
    "textMessage": NodeKind.SEND_TEXT,
    "apiCall": NodeKind.API_CALL,
    "gptQuery": NodeKind.AI_QUERY,
    "buttonMessage": NodeKind.BUTTON_CHOICE,
    "waitInput": NodeKind.WAIT_FOR_INPUT,
}


class TriggerMatch(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    REGEX = "regex"
    ANY = "any"


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class _EditorModel(BaseModel):
    """Accepts both snake_case names and the editor's camelCase aliases."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)


# ──────────────────────────────────────────────────────────────
#  Node configurations — one model per NodeKind
# ──────────────────────────────────────────────────────────────

class ButtonOption(_EditorModel):
    id: str
    text: str


class SendTextConfig(_EditorModel):
    text: str = ""


class ApiCallConfig(_EditorModel):
    api_url: str = Field("", alias="apiUrl")
    method: HttpMethod = HttpMethod.GET
    # JSON text (interpolated, then parsed) or an already-structured object
    headers: Union[str, dict[str, Any], None] = None
    body: Union[str, dict[str, Any], list[Any], None] = None
    save_response_to: Optional[str] = Field(None, alias="saveResponseTo")

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class AiQueryConfig(_EditorModel):
    prompt: str = ""
    system_message: Optional[str] = Field(None, alias="systemMessage")
    save_response_to: Optional[str] = Field(None, alias="saveResponseTo")


class ButtonChoiceConfig(_EditorModel):
    text: str = ""
    footer: Optional[str] = None
    buttons: list[ButtonOption] = []

    def match(self, reply: str, reply_id: Optional[str] = None) -> Optional[ButtonOption]:
        """
        Option picked by a reply. A channel-supplied option id wins; otherwise
        the reply text must equal a label exactly (channels may shorten the
        label they echo back, the id survives).
        """
        if reply_id:
            picked = next((b for b in self.buttons if b.id == reply_id), None)
            if picked is not None:
                return picked
        return next((b for b in self.buttons if b.text == reply), None)


class WaitForInputConfig(_EditorModel):
    message: str = ""
    variable_name: Optional[str] = Field(None, alias="variableName")


NodeConfig = Union[
    SendTextConfig, ApiCallConfig, AiQueryConfig,
    ButtonChoiceConfig, WaitForInputConfig, None,
]

_CONFIG_MODELS: dict[NodeKind, type[BaseModel]] = {
    NodeKind.SEND_TEXT: SendTextConfig,
    NodeKind.API_CALL: ApiCallConfig,
    NodeKind.AI_QUERY: AiQueryConfig,
    NodeKind.BUTTON_CHOICE: ButtonChoiceConfig,
    NodeKind.WAIT_FOR_INPUT: WaitForInputConfig,
}


# ──────────────────────────────────────────────────────────────
#  Flow graph
# ──────────────────────────────────────────────────────────────

class FlowNode(_EditorModel):
    id: str
    type: Optional[str] = None
    data: dict[str, Any] = {}
    position: dict[str, float] = {}           # editor-only, ignored by the engine

    @property
    def kind(self) -> NodeKind:
        return NodeKind.parse(self.type)

    @property
    def is_waiting(self) -> bool:
        return self.kind.is_waiting

    def config(self) -> NodeConfig:
        """Validate ``data`` into the kind-specific config model."""
        model = _CONFIG_MODELS.get(self.kind)
        if model is None:
            return None
        return model.model_validate(self.data or {})


class FlowEdge(_EditorModel):
    id: str = Field(default_factory=_new_id)
    source: str
    target: str
    source_handle: Optional[str] = Field(None, alias="sourceHandle")
    target_handle: Optional[str] = Field(None, alias="targetHandle")


class FlowGraph(_EditorModel):
    nodes: list[FlowNode] = []
    edges: list[FlowEdge] = []

    @property
    def is_empty(self) -> bool:
        return not self.nodes


class FlowTrigger(_EditorModel):
    match: TriggerMatch = TriggerMatch.EXACT
    keywords: list[str] = []
    case_sensitive: bool = Field(False, alias="caseSensitive")


class Flow(_EditorModel):
    id: str = Field(default_factory=_new_id)
    user_id: str = Field(..., alias="userId")
    campaign_id: Optional[str] = Field(None, alias="campaignId")
    name: str = ""
    status: FlowStatus = FlowStatus.DRAFT
    graph: FlowGraph = Field(default_factory=FlowGraph, alias="elements")
    trigger: Optional[FlowTrigger] = None
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=_utcnow, alias="updatedAt")

    @property
    def is_active(self) -> bool:
        return self.status == FlowStatus.ACTIVE

    @classmethod
    def from_json(cls, raw: Union[str, bytes, dict[str, Any]]) -> "Flow":
        if isinstance(raw, (str, bytes)):
            raw = json.loads(raw)
        return cls.model_validate(raw)


# ──────────────────────────────────────────────────────────────
#  Session — durable per-contact cursor
# ──────────────────────────────────────────────────────────────

class FlowSession(BaseModel):
    """
    One per (user_id, contact). Points at the node the conversation is
    parked on (or last entered) and carries the flow variables.
    """
    id: str = Field(default_factory=_new_id)
    user_id: str
    contact: str
    flow_id: str
    current_node_id: Optional[str] = None
    variables: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Transport payloads
# ──────────────────────────────────────────────────────────────

class OutboundPayload(BaseModel):
    """What the engine asks a transport to deliver: text, optionally with options."""
    text: str
    options: list[ButtonOption] = []
    footer: Optional[str] = None

    @property
    def has_options(self) -> bool:
        return bool(self.options)


class DeliveryResult(BaseModel):
    status: str                               # sent | mock_sent | failed | rate_limited | circuit_open
    message_id: str = ""
    error: str = ""
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.status in ("sent", "mock_sent", "delivered")


class InboundMessage(BaseModel):
    """An inbound human message already stripped of transport envelope."""
    user_id: str
    contact: str
    text: str
    metadata: dict[str, Any] = {}
    received_at: datetime = Field(default_factory=_utcnow)
