from __future__ import annotations

import bisect
import copy
import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import replace
from typing import Any, assert_never

from acp_chat_sync.core import tool_state
from acp_chat_sync.core.errors import DuplicateMessage, MalformedEvent, ProtocolError, UnknownMessage
from acp_chat_sync.core.models import (
    AgentEventMessage,
    AgentTextMessage,
    AttachmentDescriptor,
    Message,
    Permission,
    PermissionDecision,
    ToolCallMessage,
    UserImageMessage,
    UserTextMessage,
)
from acp_chat_sync.core.tool_registry import ToolSchemaRegistry
from acp_chat_sync.core.wire import (
    PermissionCanceled,
    PermissionDecided,
    PermissionRequested,
    ToolCompleted,
    ToolFailed,
    ToolStarted,
    ToolUpdate,
    parse_message,
    parse_tool_update,
)

logger = logging.getLogger(__name__)


def order_key(message: Message) -> tuple[float, str]:
    return (message.created_at, message.id or "")


def reconcile(messages: Sequence[Message], durable: Message) -> list[Message]:
    """Merge a server-confirmed message into `messages` without mutating the input.

    The optimistic entry sharing `durable.local_id` is replaced in place; failing that,
    an entry with the same durable id is replaced; otherwise `durable` is inserted in
    timeline order.
    """
    if durable.id is None:
        raise ValueError("durable messages need a server-assigned id")
    result = list(messages)
    local_id = getattr(durable, "local_id", None)
    if local_id is not None:
        for index, existing in enumerate(result):
            if getattr(existing, "local_id", None) == local_id:
                if existing.kind != durable.kind:
                    raise MalformedEvent(f"{durable.id}: {durable.kind} cannot replace {existing.kind} {local_id}")
                result[index] = durable
                return result
    for index, existing in enumerate(result):
        if existing.id == durable.id:
            result[index] = durable
            return result
    bisect.insort(result, durable, key=order_key)
    return result


def describe(message: Message) -> str:
    """One-line summary of a message, used by the replay command."""
    if isinstance(message, UserTextMessage):
        return f"user-text {message.id or message.local_id}: {message.display_text or message.text}"
    if isinstance(message, UserImageMessage):
        status = "failed" if message.upload_error else "resolved" if message.image.resolved else "uploading"
        return f"user-image {message.id or message.local_id}: {message.image.width}x{message.image.height} {status}"
    if isinstance(message, AgentTextMessage):
        return f"agent-text {message.id}: {message.text}"
    if isinstance(message, ToolCallMessage):
        permission = message.tool.permission
        summary = f"tool-call {message.id}: {message.tool.name} {message.tool.state}"
        if permission is not None:
            summary = f"{summary} permission={permission.status}"
        return f"{summary} children={len(message.children)}"
    if isinstance(message, AgentEventMessage):
        return f"agent-event {message.id}: {message.event.type}"
    assert_never(message)


class SessionTimeline:
    """Ordered message history of one session.

    The timeline is the only owner of its messages. Readers get deep-copied
    snapshots; every change goes through the methods below.
    """

    def __init__(self, session_id: str | None = None, *, registry: ToolSchemaRegistry | None = None) -> None:
        self.session_id = session_id
        self._registry = registry
        self._messages: list[Message] = []

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(copy.deepcopy(self._messages))

    def find(self, message_id: str) -> Message | None:
        found = self._locate(message_id)
        return None if found is None else copy.deepcopy(found)

    def ingest(self, raw: Mapping[str, Any]) -> ProtocolError | None:
        """Apply one raw inbound event: a message, a child message or a tool update.

        Messages carry a `kind` tag; anything without one is read as a tool update.
        """
        try:
            if "kind" not in raw:
                return self.apply_tool_update(parse_tool_update(raw))
            message = parse_message(raw, self._registry)
        except ProtocolError as exc:
            return self._reject(exc)
        parent_id = raw.get("parentId") or raw.get("parent_id")
        if parent_id:
            return self.append_child(parent_id, message)
        return self.receive(message)

    def receive(self, message: Message) -> ProtocolError | None:
        """Add a durable message, reconciling it with its optimistic twin if there is one."""
        local_id = getattr(message, "local_id", None)
        if local_id is not None and self._find_local(local_id) is not None:
            try:
                self._messages = reconcile(self._messages, message)
            except ProtocolError as exc:
                return self._reject(exc)
            return None
        return self.append(message)

    def append(self, message: Message) -> ProtocolError | None:
        if message.id is not None and self._locate(message.id) is not None:
            return self._reject(DuplicateMessage(f"message {message.id} already in history"))
        local_id = getattr(message, "local_id", None)
        if message.id is None and local_id is not None:
            pending = self._find_local(local_id)
            if pending is not None and pending[1].id is None:
                return self._reject(DuplicateMessage(f"local message {local_id} already pending"))
        bisect.insort(self._messages, message, key=order_key)
        return None

    def append_child(self, parent_id: str, message: Message) -> ProtocolError | None:
        parent = self._locate(parent_id)
        if not isinstance(parent, ToolCallMessage):
            return self._reject(UnknownMessage(f"no tool-call message {parent_id} for child {message.id}"))
        if message.id is not None and self._locate(message.id) is not None:
            return self._reject(DuplicateMessage(f"message {message.id} already in history"))
        parent.children.append(message)
        return None

    def add_optimistic_text(self, *, local_id: str, text: str, created_at: float) -> UserTextMessage:
        message = UserTextMessage(id=None, local_id=local_id, created_at=created_at, text=text)
        self._append_optimistic(message)
        return message

    def add_optimistic_image(
        self,
        *,
        local_id: str,
        preview: AttachmentDescriptor,
        created_at: float,
        text: str | None = None,
    ) -> UserImageMessage:
        message = UserImageMessage(id=None, local_id=local_id, created_at=created_at, image=preview, text=text)
        self._append_optimistic(message)
        return message

    def attach_upload(self, local_id: str, descriptor: AttachmentDescriptor) -> UserImageMessage:
        """Point an optimistic image message at its uploaded attachment."""
        index, message = self._optimistic_image(local_id)
        if not descriptor.resolved:
            raise ValueError("only resolved attachments can be attached")
        updated = replace(
            message,
            image=replace(descriptor, caption=descriptor.caption or message.image.caption, local_preview_ref=None),
            upload_error=None,
        )
        self._messages[index] = updated
        return updated

    def mark_upload_failed(self, local_id: str, cause: str) -> UserImageMessage:
        """Keep a failed optimistic image in place, with its local preview, until a retry."""
        index, message = self._optimistic_image(local_id)
        updated = replace(message, upload_error=cause)
        self._messages[index] = updated
        return updated

    def apply_tool_update(self, update: ToolUpdate) -> ProtocolError | None:
        try:
            self._transition(update)
        except ProtocolError as exc:
            return self._reject(exc)
        return None

    def decide_permission(  # noqa: PLR0913
        self,
        tool_id: str,
        *,
        permission_id: str,
        decision: PermissionDecision,
        at: float,
        reason: str | None = None,
        allowed_tools: Iterable[str] | None = None,
    ) -> Permission:
        """Record a local decision; unlike inbound updates, rejections are raised."""
        permission = tool_state.decide_permission(
            self._tool_message(tool_id).tool,
            permission_id=permission_id,
            decision=decision,
            at=at,
            reason=reason,
            allowed_tools=allowed_tools,
        )
        logger.info("Permission decided: tool=%s permission=%s decision=%s", tool_id, permission_id, decision)
        return copy.deepcopy(permission)

    def _transition(self, update: ToolUpdate) -> None:
        tool = self._tool_message(update.tool_id).tool
        if isinstance(update, ToolStarted):
            tool_state.mark_started(tool, at=update.at)
        elif isinstance(update, ToolCompleted):
            tool_state.complete(tool, at=update.at, result=update.result)
        elif isinstance(update, ToolFailed):
            tool_state.fail(tool, at=update.at, description=update.description, reason=update.reason)
        elif isinstance(update, PermissionRequested):
            tool_state.request_permission(
                tool, permission_id=update.permission_id, mode=update.mode, reason=update.reason
            )
        elif isinstance(update, PermissionDecided):
            tool_state.decide_permission(
                tool,
                permission_id=update.permission_id,
                decision=update.decision,
                at=update.at,
                reason=update.reason,
                mode=update.mode,
                allowed_tools=update.allowed_tools,
            )
        elif isinstance(update, PermissionCanceled):
            tool_state.cancel_permission(tool, permission_id=update.permission_id, at=update.at, reason=update.reason)
        else:
            assert_never(update)

    def _tool_message(self, tool_id: str) -> ToolCallMessage:
        message = self._locate(tool_id)
        if not isinstance(message, ToolCallMessage):
            raise UnknownMessage(f"no tool-call message {tool_id}")
        return message

    def _append_optimistic(self, message: UserTextMessage | UserImageMessage) -> None:
        error = self.append(message)
        if error is not None:
            raise error

    def _optimistic_image(self, local_id: str) -> tuple[int, UserImageMessage]:
        found = self._find_local(local_id)
        if found is None or not isinstance(found[1], UserImageMessage) or found[1].id is not None:
            raise UnknownMessage(f"no pending image message {local_id}")
        return found[0], found[1]

    def _find_local(self, local_id: str) -> tuple[int, Message] | None:
        for index, message in enumerate(self._messages):
            if getattr(message, "local_id", None) == local_id:
                return index, message
        return None

    def _locate(self, message_id: str) -> Message | None:
        for message in _walk(self._messages):
            if message.id == message_id:
                return message
        return None

    @staticmethod
    def _reject(exc: ProtocolError) -> ProtocolError:
        logger.warning("Rejected inbound event (%s): %s", type(exc).__name__, exc)
        return exc


def _walk(messages: Iterable[Message]) -> Iterator[Message]:
    for message in messages:
        yield message
        if isinstance(message, ToolCallMessage):
            yield from _walk(message.children)
