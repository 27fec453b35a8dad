from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

MessageKind = Literal["user-text", "user-image", "agent-text", "tool-call", "agent-event"]
ToolCallState = Literal["running", "completed", "error"]
PermissionStatus = Literal["pending", "approved", "denied", "canceled"]
PermissionDecision = Literal["approved", "approved_for_session", "denied", "abort"]
AgentEventType = Literal["switch", "message", "limit-reached", "ready"]
UploadState = Literal["idle", "uploading", "resolved", "failed"]

TERMINAL_TOOL_STATES: frozenset[ToolCallState] = frozenset({"completed", "error"})
DECISION_STATUS: dict[PermissionDecision, PermissionStatus] = {
    "approved": "approved",
    "approved_for_session": "approved",
    "denied": "denied",
    "abort": "canceled",
}


@dataclass(slots=True, frozen=True)
class AttachmentDescriptor:
    """Uploaded image reference usable inside a message.

    `local_preview_ref` points at the original bytes (a path or a `data:` URI) and is
    never persisted; the descriptor counts as resolved once `url` is set.
    """

    url: str | None
    width: int
    height: int
    perceptual_hash: str
    caption: str | None = None
    local_preview_ref: str | None = None

    @property
    def resolved(self) -> bool:
        return self.url is not None


@dataclass(slots=True)
class Permission:
    """Approval request attached to a tool call."""

    id: str
    status: PermissionStatus = "pending"
    reason: str | None = None
    mode: str | None = None
    allowed_tools: tuple[str, ...] | None = None
    decision: PermissionDecision | None = None
    date: float | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"


@dataclass(slots=True)
class ToolCall:
    """Recorded invocation of an agent capability."""

    name: str
    input: Any
    created_at: float
    state: ToolCallState = "running"
    started_at: float | None = None
    completed_at: float | None = None
    description: str | None = None
    result: Any = None
    permission: Permission | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_TOOL_STATES


@dataclass(slots=True, frozen=True)
class AgentEvent:
    """Out-of-band agent notification such as a mode switch."""

    type: AgentEventType
    mode: str | None = None
    message: str | None = None
    ends_at: float | None = None


@dataclass(slots=True, frozen=True)
class UserTextMessage:
    kind: ClassVar[MessageKind] = "user-text"

    id: str | None
    local_id: str | None
    created_at: float
    text: str
    display_text: str | None = None
    meta: dict[str, Any] | None = None


@dataclass(slots=True, frozen=True)
class UserImageMessage:
    kind: ClassVar[MessageKind] = "user-image"

    id: str | None
    local_id: str | None
    created_at: float
    image: AttachmentDescriptor
    text: str | None = None
    upload_error: str | None = None
    meta: dict[str, Any] | None = None


@dataclass(slots=True, frozen=True)
class AgentTextMessage:
    kind: ClassVar[MessageKind] = "agent-text"

    id: str
    created_at: float
    text: str
    meta: dict[str, Any] | None = None


@dataclass(slots=True)
class ToolCallMessage:
    """Tool invocation plus the sub-conversation produced while it runs."""

    kind: ClassVar[MessageKind] = "tool-call"

    id: str
    created_at: float
    tool: ToolCall
    children: list[Message] = field(default_factory=list)
    meta: dict[str, Any] | None = None


@dataclass(slots=True, frozen=True)
class AgentEventMessage:
    kind: ClassVar[MessageKind] = "agent-event"

    id: str
    created_at: float
    event: AgentEvent
    meta: dict[str, Any] | None = None


Message = UserTextMessage | UserImageMessage | AgentTextMessage | ToolCallMessage | AgentEventMessage
OptimisticMessage = UserTextMessage | UserImageMessage
