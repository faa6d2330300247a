"""
Core data models for the FlowDesk engine.
These are the universal types shared across all modules.

Flow definitions (Flow, nodes, options, actions) are read-only snapshots
produced by the flow compiler. Sessions and intents are the mutable,
per-conversation side of the model.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    MENU = "menu"
    PROMPT = "prompt"
    FORM = "form"
    CONDITION = "condition"
    RESPONSE = "response"


class ActionType(str, Enum):
    SEND_DOCUMENT = "send_document"
    TRANSFER_DEPARTMENT = "transfer_department"
    TRANSFER_AGENT = "transfer_agent"
    SEND_MESSAGE = "send_message"
    WAIT_INPUT = "wait_input"
    END_CONVERSATION = "end_conversation"


class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    EMAIL = "email"
    IMAGE = "image"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"
    TRANSFERRED = "transferred"


class IntentKind(str, Enum):
    TEXT = "text"
    MEDIA = "media"
    BUTTONS = "buttons"


# ──────────────────────────────────────────────────────────────
#  Conditions — shared by condition nodes
# ──────────────────────────────────────────────────────────────

class RuleCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str                                # dot-path into the evaluation data
    operator: str = "eq"                      # eq | neq | gt | gte | lt | lte | in | contains | regex | exists | not_exists
    value: Any = None


class ConditionBranch(BaseModel):
    """One arm of a condition node. Empty conditions always match."""
    model_config = ConfigDict(frozen=True)

    conditions: tuple[RuleCondition, ...] = ()
    next: str
    description: str = ""


# ──────────────────────────────────────────────────────────────
#  Flow definition — options, actions, fields
# ──────────────────────────────────────────────────────────────

class Option(BaseModel):
    """A selectable branch of a menu node."""
    model_config = ConfigDict(frozen=True)

    text: str
    value: str                                # what the user types to pick it
    next_node_id: str = ""
    order_index: int = 0
    arguments: dict[str, Any] = {}            # template vars merged into the session when picked


class NodeAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ActionType
    config: dict[str, Any] = {}
    execution_order: int = 0
    is_active: bool = True


class FormField(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str
    field: str
    stage: str = ""
    field_type: FieldType = FieldType.TEXT
    attach_image: bool = False
    pattern: str = ""                         # optional regex the answer must match
    required: bool = True

    @property
    def expects_image(self) -> bool:
        return self.attach_image or self.field_type == FieldType.IMAGE


class Flow(BaseModel):
    """Flow metadata — what trigger selection looks at."""
    model_config = ConfigDict(frozen=True)

    id: str
    connection_id: str
    department_id: str = ""
    name: str = ""
    is_active: bool = True
    trigger_keywords: tuple[str, ...] = ()
    priority: int = 0                         # lower wins on trigger ties
    root_node_id: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Nodes — closed set of tagged variants
# ──────────────────────────────────────────────────────────────

class NodeBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    flow_id: str = ""
    parent_id: str = ""
    content: str = ""                         # text with {{variable}} placeholders
    order_index: int = 0
    stage: str = ""
    is_final: bool = False
    has_actions: bool = False
    wait_for_input: bool = False
    timeout_seconds: Optional[int] = None
    timeout_next: str = ""                    # node to enter when the reply timer expires
    next: str = ""
    actions: tuple[NodeAction, ...] = ()

    @property
    def ordered_actions(self) -> list[NodeAction]:
        return sorted((a for a in self.actions if a.is_active), key=lambda a: a.execution_order)

    @property
    def awaits_input(self) -> bool:
        return self.wait_for_input


class MenuNode(NodeBase):
    type: Literal["menu"] = "menu"
    options: tuple[Option, ...] = ()
    dynamic_options: str = ""                 # OptionProvider source name
    field: str = ""                           # store the picked value under this key
    present_as: Literal["text", "buttons"] = "text"

    @property
    def awaits_input(self) -> bool:
        return True


class PromptNode(NodeBase):
    type: Literal["prompt"] = "prompt"
    field: str = ""
    field_type: FieldType = FieldType.TEXT
    pattern: str = ""

    @property
    def awaits_input(self) -> bool:
        return True

    def as_field(self) -> FormField:
        return FormField(prompt=self.content, field=self.field or self.id,
                         stage=self.stage, field_type=self.field_type,
                         pattern=self.pattern)


class FormNode(NodeBase):
    type: Literal["form"] = "form"
    fields: tuple[FormField, ...] = ()

    @property
    def awaits_input(self) -> bool:
        return True


class ConditionNode(NodeBase):
    type: Literal["condition"] = "condition"
    branches: tuple[ConditionBranch, ...] = ()
    default_next: str = ""


class ResponseNode(NodeBase):
    type: Literal["response"] = "response"


Node = Annotated[
    Union[MenuNode, PromptNode, FormNode, ConditionNode, ResponseNode],
    Field(discriminator="type"),
]


# ──────────────────────────────────────────────────────────────
#  Session — per contact + connection conversation state
# ──────────────────────────────────────────────────────────────

def session_key(connection_id: str, contact_id: str) -> str:
    return f"{connection_id}:{contact_id}"


class Session(BaseModel):
    id: str = ""
    contact_id: str
    connection_id: str
    flow_id: str = ""
    current_node_id: str = ""
    stage: str = "initial"
    status: SessionStatus = SessionStatus.ACTIVE
    field_values: dict[str, Any] = {}
    form_cursor: int = 0
    variables: dict[str, Any] = {}
    option_overrides: dict[str, list[Option]] = {}   # node_id → options injected for this session
    invalid_attempts: int = 0
    timeout_token: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    last_activity_at: datetime = Field(default_factory=_utcnow)

    def model_post_init(self, __context: Any) -> None:
        if not self.id:
            self.id = session_key(self.connection_id, self.contact_id)

    @property
    def is_terminated(self) -> bool:
        return self.status != SessionStatus.ACTIVE

    def touch(self) -> None:
        self.last_activity_at = _utcnow()

    def switch_flow(self, flow_id: str) -> None:
        """Make flow_id current; prior form progress never leaks across flows."""
        self.flow_id = flow_id
        self.current_node_id = ""
        self.field_values = {}
        self.form_cursor = 0
        self.option_overrides = {}
        self.invalid_attempts = 0

    def template_context(self) -> dict[str, Any]:
        return {
            **self.variables,
            **self.field_values,
            "contact_id": self.contact_id,
            "connection_id": self.connection_id,
            "stage": self.stage,
            "flow_id": self.flow_id,
        }


# ──────────────────────────────────────────────────────────────
#  Inbound / outbound messages
# ──────────────────────────────────────────────────────────────

class MediaRef(BaseModel):
    """Reference to an inbound attachment held by the channel."""
    model_config = ConfigDict(frozen=True)

    id: str
    mime_type: str = ""
    url: str = ""
    caption: str = ""

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


class InboundMessage(BaseModel):
    contact_id: str
    connection_id: str
    text: str = ""
    media: Optional[MediaRef] = None
    received_at: datetime = Field(default_factory=_utcnow)

    @property
    def body(self) -> str:
        return (self.text or "").strip()


class Button(BaseModel):
    id: str
    title: str


class OutboundIntent(BaseModel):
    """A message the engine wants delivered; transport is the caller's concern."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:16])
    kind: IntentKind = IntentKind.TEXT
    to: str
    connection_id: str
    text: str = ""
    media_url: str = ""
    mime_type: str = ""
    buttons: list[Button] = []
    metadata: dict[str, Any] = {}
