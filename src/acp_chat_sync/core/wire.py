"""Wire schemas for raw inbound session events.

The server speaks camelCase JSON; every model also accepts snake_case field names so
fixtures and the ACP adapter can build events directly. Validation failures surface as
`MalformedEvent`, never as pydantic errors.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Annotated, Any, Literal

import pydantic
from pydantic.alias_generators import to_camel

from acp_chat_sync.core.errors import MalformedEvent
from acp_chat_sync.core.models import (
    DECISION_STATUS,
    AgentEvent,
    AgentEventMessage,
    AgentEventType,
    AgentTextMessage,
    AttachmentDescriptor,
    Message,
    Permission,
    PermissionDecision,
    PermissionStatus,
    ToolCall,
    ToolCallMessage,
    ToolCallState,
    UserImageMessage,
    UserTextMessage,
)
from acp_chat_sync.core.tool_registry import ToolSchemaRegistry


class _WireModel(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class RawImage(_WireModel):
    url: str = pydantic.Field(min_length=1)
    width: int = pydantic.Field(ge=0)
    height: int = pydantic.Field(ge=0)
    thumbhash: str
    caption: str | None = None


class RawPermission(_WireModel):
    id: str
    status: PermissionStatus = "pending"
    reason: str | None = None
    mode: str | None = None
    allowed_tools: list[str] | None = None
    decision: PermissionDecision | None = None
    date: float | None = None

    @pydantic.model_validator(mode="after")
    def _decision_matches_status(self) -> RawPermission:
        if (self.decision is None) != (self.status == "pending"):
            raise ValueError("decision must be set exactly when status is not pending")
        if self.decision is not None and DECISION_STATUS[self.decision] != self.status:
            raise ValueError(f"decision {self.decision!r} does not match status {self.status!r}")
        if self.allowed_tools is not None and self.decision != "approved_for_session":
            raise ValueError("allowedTools requires decision approved_for_session")
        return self


class RawToolCall(_WireModel):
    name: str = pydantic.Field(min_length=1)
    input: Any = None
    state: ToolCallState = "running"
    created_at: float
    started_at: float | None = None
    completed_at: float | None = None
    description: str | None = None
    result: Any = None
    permission: RawPermission | None = None

    @pydantic.model_validator(mode="after")
    def _terminal_fields(self) -> RawToolCall:
        terminal = self.state != "running"
        if terminal != (self.completed_at is not None):
            raise ValueError("completedAt must be set exactly when the tool call is terminal")
        if self.result is not None and self.state != "completed":
            raise ValueError("result is only allowed on completed tool calls")
        if self.state == "error" and not self.description:
            raise ValueError("errored tool calls need a description")
        if terminal and self.permission is not None and self.permission.status == "pending":
            raise ValueError("terminal tool calls cannot carry a pending permission")
        return self


class RawUserText(_WireModel):
    kind: Literal["user-text"]
    id: str
    local_id: str | None = None
    created_at: float
    text: str
    display_text: str | None = None
    meta: dict[str, Any] | None = None


class RawUserImage(_WireModel):
    kind: Literal["user-image"]
    id: str
    local_id: str | None = None
    created_at: float
    image: RawImage
    text: str | None = None
    meta: dict[str, Any] | None = None


class RawAgentText(_WireModel):
    kind: Literal["agent-text"]
    id: str
    created_at: float
    text: str
    meta: dict[str, Any] | None = None


class RawAgentEvent(_WireModel):
    type: AgentEventType
    mode: str | None = None
    message: str | None = None
    ends_at: float | None = None


class RawAgentEventMessage(_WireModel):
    kind: Literal["agent-event"]
    id: str
    created_at: float
    event: RawAgentEvent
    meta: dict[str, Any] | None = None


class RawToolCallMessage(_WireModel):
    kind: Literal["tool-call"]
    id: str
    created_at: float
    tool: RawToolCall
    children: list[RawMessage] = pydantic.Field(default_factory=list)
    meta: dict[str, Any] | None = None


RawMessage = Annotated[
    RawUserText | RawUserImage | RawAgentText | RawToolCallMessage | RawAgentEventMessage,
    pydantic.Field(discriminator="kind"),
]
RawToolCallMessage.model_rebuild()
RawMessageAdapter: pydantic.TypeAdapter[RawMessage] = pydantic.TypeAdapter(RawMessage)


class ToolStarted(_WireModel):
    event: Literal["started"]
    tool_id: str
    at: float


class ToolCompleted(_WireModel):
    event: Literal["completed"]
    tool_id: str
    at: float
    result: Any = None


class ToolFailed(_WireModel):
    event: Literal["error"]
    tool_id: str
    at: float
    description: str | None = None
    reason: str | None = None


class PermissionRequested(_WireModel):
    event: Literal["permission-requested"]
    tool_id: str
    permission_id: str
    mode: str | None = None
    reason: str | None = None


class PermissionDecided(_WireModel):
    event: Literal["permission-decided"]
    tool_id: str
    permission_id: str
    decision: PermissionDecision
    at: float
    reason: str | None = None
    mode: str | None = None
    allowed_tools: list[str] | None = None

    @pydantic.model_validator(mode="after")
    def _allowed_tools_need_session_grant(self) -> PermissionDecided:
        if self.allowed_tools is not None and self.decision != "approved_for_session":
            raise ValueError("allowedTools requires decision approved_for_session")
        return self


class PermissionCanceled(_WireModel):
    event: Literal["permission-canceled"]
    tool_id: str
    permission_id: str
    at: float
    reason: str | None = None


ToolUpdate = Annotated[
    ToolStarted | ToolCompleted | ToolFailed | PermissionRequested | PermissionDecided | PermissionCanceled,
    pydantic.Field(discriminator="event"),
]
ToolUpdateAdapter: pydantic.TypeAdapter[ToolUpdate] = pydantic.TypeAdapter(ToolUpdate)


def parse_message(raw: Mapping[str, Any], registry: ToolSchemaRegistry | None = None) -> Message:
    """Validate one raw message event and build its concrete message variant."""
    try:
        parsed = RawMessageAdapter.validate_python(raw)
    except pydantic.ValidationError as exc:
        raise MalformedEvent(_describe(raw, exc)) from exc
    return _to_message(parsed, registry)


def parse_tool_update(raw: Mapping[str, Any]) -> ToolUpdate:
    try:
        return ToolUpdateAdapter.validate_python(raw)
    except pydantic.ValidationError as exc:
        raise MalformedEvent(_describe(raw, exc)) from exc


def _to_message(parsed: Any, registry: ToolSchemaRegistry | None) -> Message:
    if isinstance(parsed, RawUserText):
        return UserTextMessage(
            id=parsed.id,
            local_id=parsed.local_id,
            created_at=parsed.created_at,
            text=parsed.text,
            display_text=parsed.display_text,
            meta=parsed.meta,
        )
    if isinstance(parsed, RawUserImage):
        return UserImageMessage(
            id=parsed.id,
            local_id=parsed.local_id,
            created_at=parsed.created_at,
            image=AttachmentDescriptor(
                url=parsed.image.url,
                width=parsed.image.width,
                height=parsed.image.height,
                perceptual_hash=parsed.image.thumbhash,
                caption=parsed.image.caption,
            ),
            text=parsed.text,
            meta=parsed.meta,
        )
    if isinstance(parsed, RawAgentText):
        return AgentTextMessage(id=parsed.id, created_at=parsed.created_at, text=parsed.text, meta=parsed.meta)
    if isinstance(parsed, RawAgentEventMessage):
        event = parsed.event
        return AgentEventMessage(
            id=parsed.id,
            created_at=parsed.created_at,
            event=AgentEvent(type=event.type, mode=event.mode, message=event.message, ends_at=event.ends_at),
            meta=parsed.meta,
        )
    if isinstance(parsed, RawToolCallMessage):
        return ToolCallMessage(
            id=parsed.id,
            created_at=parsed.created_at,
            tool=_to_tool_call(parsed.id, parsed.tool, registry),
            children=[_to_message(child, registry) for child in parsed.children],
            meta=parsed.meta,
        )
    raise MalformedEvent(f"unsupported message payload: {type(parsed).__name__}")


def _to_tool_call(message_id: str, raw: RawToolCall, registry: ToolSchemaRegistry | None) -> ToolCall:
    if registry is not None and not registry.parse(raw.name, raw.input).success:
        raise MalformedEvent(f"tool-call {message_id}: input rejected by {raw.name} schema")
    permission = None
    if raw.permission is not None:
        permission = Permission(
            id=raw.permission.id,
            status=raw.permission.status,
            reason=raw.permission.reason,
            mode=raw.permission.mode,
            allowed_tools=None if raw.permission.allowed_tools is None else tuple(raw.permission.allowed_tools),
            decision=raw.permission.decision,
            date=raw.permission.date,
        )
    return ToolCall(
        name=raw.name,
        input=raw.input,
        created_at=raw.created_at,
        state=raw.state,
        started_at=raw.started_at,
        completed_at=raw.completed_at,
        description=raw.description,
        result=raw.result,
        permission=permission,
    )


def _describe(raw: Mapping[str, Any], exc: pydantic.ValidationError) -> str:
    label = "event"
    if isinstance(raw, Mapping):
        label = f"{raw.get('kind') or raw.get('event') or 'event'} {raw.get('id') or raw.get('toolId') or ''}".strip()
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first["loc"]) or "<root>"
    return f"{label}: {location}: {first['msg']}"
