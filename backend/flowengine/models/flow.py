# /flowengine/models/flow.py

import json
import logging
from typing import Optional, List, Dict, Any, Union, Literal, Annotated
from pydantic import BaseModel, Field, ConfigDict, AliasChoices, field_validator, model_validator

# Pydantic models for flow documents as authored in the graph editor.
# A Node is a tagged union on `type`; each variant carries only its own fields.
# Stored flows mix camelCase and snake_case spellings, so both are accepted.

logger = logging.getLogger(__name__)


def _parse_json_field(value: Any) -> Any:
    """Stored flows sometimes keep nested documents as JSON strings."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


class QuestionOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    value: Any = None

    @model_validator(mode="before")
    @classmethod
    def default_value_to_label(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"label": data, "value": data}
        if isinstance(data, dict) and data.get("value") is None:
            return {**data, "value": data.get("label")}
        return data


class ConditionBranch(BaseModel):
    """One entry of a condition node: `{"if": expr, "goto": id}` or `{"else": true, "goto": id}`."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    expression: Optional[str] = Field(default=None, alias="if")
    is_else: bool = Field(default=False, alias="else")
    goto: Optional[str] = None


class _BaseNode(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str

    @model_validator(mode="before")
    @classmethod
    def null_means_default(cls, data: Any) -> Any:
        # Editors write explicit nulls for untouched fields.
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v) if isinstance(v, int) else v


class TriggerNode(_BaseNode):
    type: Literal["trigger"] = "trigger"


class MessageNode(_BaseNode):
    type: Literal["message"] = "message"
    content: str = ""


class QuestionNode(_BaseNode):
    type: Literal["question"] = "question"
    content: str = ""
    variable: Optional[str] = None
    options: List[QuestionOption] = Field(default_factory=list)

    @field_validator("options", mode="before")
    @classmethod
    def none_is_empty(cls, v):
        return v or []


class ConditionNode(_BaseNode):
    type: Literal["condition"] = "condition"
    conditions: List[ConditionBranch] = Field(default_factory=list)

    @field_validator("conditions", mode="before")
    @classmethod
    def none_is_empty(cls, v):
        return v or []


class ActionNode(_BaseNode):
    type: Literal["action"] = "action"
    action: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("payload", mode="before")
    @classmethod
    def parse_payload(cls, v):
        v = _parse_json_field(v)
        return v if isinstance(v, dict) else {}


class WebhookNode(_BaseNode):
    type: Literal["webhook"] = "webhook"
    url: str = ""
    method: str = "POST"
    # Either a mapping or a JSON string; parsed at execution time so that a
    # broken headers document degrades to defaults instead of failing the load.
    headers: Any = None
    body: Any = None
    timeout_ms: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("timeout_ms", "timeoutMs", "timeout")
    )
    variable: Optional[str] = None


class AIResponseNode(_BaseNode):
    type: Literal["ai_response"] = "ai_response"
    system_prompt: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("system_prompt", "systemPrompt")
    )
    user_prompt: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("user_prompt", "userPrompt")
    )
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("max_tokens", "maxTokens")
    )
    variable: Optional[str] = None


class DelayNode(_BaseNode):
    type: Literal["delay"] = "delay"
    seconds: Optional[float] = None
    typing_indicator: bool = Field(
        default=True, validation_alias=AliasChoices("typing_indicator", "typingIndicator")
    )


class TransferNode(_BaseNode):
    type: Literal["transfer"] = "transfer"
    content: Optional[str] = None


class EndNode(_BaseNode):
    type: Literal["end"] = "end"


class UnknownNode(_BaseNode):
    """Placeholder for node types this engine does not implement."""
    type: Literal["unknown"] = "unknown"
    declared_type: Optional[str] = None


Node = Annotated[
    Union[
        TriggerNode, MessageNode, QuestionNode, ConditionNode, ActionNode,
        WebhookNode, AIResponseNode, DelayNode, TransferNode, EndNode, UnknownNode,
    ],
    Field(discriminator="type"),
]

NODE_TYPES = (
    TriggerNode, MessageNode, QuestionNode, ConditionNode, ActionNode,
    WebhookNode, AIResponseNode, DelayNode, TransferNode, EndNode, UnknownNode,
)

KNOWN_NODE_TYPES = frozenset(
    cls.model_fields["type"].default for cls in NODE_TYPES if cls is not UnknownNode
)


class Connection(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_node: str = Field(alias="from")
    to_node: str = Field(alias="to")
    label: Optional[str] = None

    @field_validator("from_node", "to_node", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v) if isinstance(v, int) else v


class TriggerConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "manual"
    keywords: List[str] = Field(default_factory=list)
    conditions: Dict[str, Any] = Field(default_factory=dict)


class FlowDefinition(BaseModel):
    """
    A user-authored flow graph. Loaned to the engine read-only; the graph may
    contain cycles, dead ends, unreachable nodes and dangling connections.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[Union[int, str]] = None
    slug: Optional[str] = None
    name: Optional[str] = None
    is_default: bool = Field(default=False, validation_alias=AliasChoices("is_default", "isDefault"))
    trigger_config: TriggerConfig = Field(
        default_factory=TriggerConfig, validation_alias=AliasChoices("trigger_config", "triggerConfig")
    )
    nodes: List[Node] = Field(default_factory=list)
    connections: List[Connection] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def normalize_document(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key in ("nodes", "connections", "variables", "trigger_config", "triggerConfig"):
            if key in data:
                data[key] = _parse_json_field(data[key])
            if key in data and data[key] is None:
                del data[key]

        nodes = data.get("nodes")
        if isinstance(nodes, list):
            normalized = []
            for raw in nodes:
                if isinstance(raw, dict) and raw.get("type") not in KNOWN_NODE_TYPES:
                    logger.warning(f"Unknown node type '{raw.get('type')}' on node {raw.get('id')}")
                    raw = {"id": raw.get("id"), "type": "unknown", "declared_type": raw.get("type")}
                normalized.append(raw)
            data["nodes"] = normalized
        return data

    @property
    def label(self) -> str:
        return self.slug or self.name or str(self.id)

    def get_node(self, node_id: Optional[str]):
        """First node with this id, or None. Duplicate ids resolve to the first listed."""
        if node_id is None:
            return None
        return next((n for n in self.nodes if n.id == node_id), None)

    def first_connection_from(self, node_id: str) -> Optional[Connection]:
        return next((c for c in self.connections if c.from_node == node_id), None)

    def start_node(self):
        """The first trigger node, falling back to the first node in the list."""
        trigger = next((n for n in self.nodes if isinstance(n, TriggerNode)), None)
        if trigger is not None:
            return trigger
        return self.nodes[0] if self.nodes else None
