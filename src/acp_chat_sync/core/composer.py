"""Client-originated responses to in-flight tool calls.

`QuestionComposer` turns option picks on an `AskUserQuestion` tool call into outbound
text; `PermissionResponder` forwards approval decisions for a pending permission.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import Protocol

from acp_chat_sync.core import tool_state
from acp_chat_sync.core.errors import (
    InvalidSelection,
    NoActiveSession,
    SendFailed,
    ToolAlreadyResolved,
    UnknownMessage,
)
from acp_chat_sync.core.models import Permission, PermissionDecision, ToolCallMessage
from acp_chat_sync.core.timeline import SessionTimeline
from acp_chat_sync.core.tool_registry import (
    QUESTION_TOOL_NAME,
    AskUserQuestionInput,
    Question,
    ToolSchemaRegistry,
    default_registry,
)

RESPONSE_DELIMITER = ", "
logger = logging.getLogger(__name__)


class MessageSender(Protocol):
    """Outbound transport for plain user text."""

    async def send_message(self, session_id: str, text: str) -> None: ...


class PermissionTransport(Protocol):
    """Outbound transport for permission decisions."""

    async def respond_permission(
        self,
        session_id: str,
        permission_id: str,
        decision: PermissionDecision,
        *,
        allowed_tools: tuple[str, ...] | None = None,
        reason: str | None = None,
    ) -> None: ...


class QuestionComposer:
    """Selection state and response delivery for one question tool call."""

    def __init__(
        self,
        timeline: SessionTimeline,
        tool_id: str,
        sender: MessageSender,
        *,
        registry: ToolSchemaRegistry | None = None,
    ) -> None:
        self._timeline = timeline
        self._tool_id = tool_id
        self._sender = sender
        parsed = (registry or default_registry()).parse(QUESTION_TOOL_NAME, self._tool_message().tool.input)
        if not parsed.success or not isinstance(parsed.data, AskUserQuestionInput):
            raise InvalidSelection(f"tool-call {tool_id} is not a question")
        self._questions = tuple(parsed.data.questions)
        self._selected: dict[int, set[int]] = {index: set() for index in range(len(self._questions))}
        self._submitting: set[int] = set()

    @classmethod
    def for_tool_call(
        cls,
        timeline: SessionTimeline,
        tool_id: str,
        sender: MessageSender,
        *,
        registry: ToolSchemaRegistry | None = None,
    ) -> QuestionComposer | None:
        """Return a composer when `tool_id` is a question tool call, else None."""
        try:
            return cls(timeline, tool_id, sender, registry=registry)
        except (InvalidSelection, UnknownMessage):
            return None

    @property
    def questions(self) -> tuple[Question, ...]:
        return self._questions

    @property
    def disabled(self) -> bool:
        return self._tool_message().tool.state == "completed"

    def selection(self, question_index: int) -> frozenset[int]:
        self._question(question_index)
        return frozenset(self._selected[question_index])

    def is_submitting(self, question_index: int) -> bool:
        return question_index in self._submitting

    def can_submit(self, question_index: int) -> bool:
        return (
            not self.disabled
            and bool(self._selected.get(question_index))
            and question_index not in self._submitting
        )

    async def select(self, question_index: int, option_index: int) -> str:
        """Answer a single-select question with one option, immediately."""
        session_id = self._require_session()
        self._ensure_open()
        question = self._question(question_index)
        if question.multi_select:
            raise InvalidSelection(f"question {question_index} is multi-select; use toggle and submit")
        label = self._option_label(question, option_index)
        await self._send(session_id, label)
        return label

    def toggle(self, question_index: int, option_index: int) -> frozenset[int]:
        self._ensure_open()
        question = self._question(question_index)
        if not question.multi_select:
            raise InvalidSelection(f"question {question_index} is single-select; use select")
        self._option_label(question, option_index)
        selected = self._selected[question_index]
        if option_index in selected:
            selected.remove(option_index)
        else:
            selected.add(option_index)
        return frozenset(selected)

    async def submit(self, question_index: int) -> str | None:
        """Send the accumulated multi-select answer.

        Returns the sent text, or None when there is nothing to send or a submission for
        this question is already in flight. On transport failure the selection is kept.
        """
        session_id = self._require_session()
        self._ensure_open()
        question = self._question(question_index)
        selected = self._selected[question_index]
        if not selected or question_index in self._submitting:
            logger.debug("Submit ignored: tool=%s question=%s", self._tool_id, question_index)
            return None

        sent = sorted(selected)
        text = RESPONSE_DELIMITER.join(question.options[index].label for index in sent)
        self._submitting.add(question_index)
        try:
            await self._send(session_id, text)
        finally:
            self._submitting.discard(question_index)
        selected.difference_update(sent)
        return text

    async def _send(self, session_id: str, text: str) -> None:
        try:
            await self._sender.send_message(session_id, text)
        except Exception as exc:
            logger.warning("Question response failed: tool=%s error=%s", self._tool_id, exc)
            raise SendFailed(str(exc) or "Failed to send response") from exc

    def _tool_message(self) -> ToolCallMessage:
        message = self._timeline.find(self._tool_id)
        if not isinstance(message, ToolCallMessage):
            raise UnknownMessage(f"no tool-call message {self._tool_id}")
        return message

    def _require_session(self) -> str:
        session_id = self._timeline.session_id
        if not session_id:
            raise NoActiveSession(f"cannot answer {self._tool_id} without an active session")
        return session_id

    def _ensure_open(self) -> None:
        if self.disabled:
            raise ToolAlreadyResolved(f"tool-call {self._tool_id} is already completed")

    def _question(self, question_index: int) -> Question:
        if not 0 <= question_index < len(self._questions):
            raise InvalidSelection(f"no question {question_index}")
        return self._questions[question_index]

    @staticmethod
    def _option_label(question: Question, option_index: int) -> str:
        if not 0 <= option_index < len(question.options):
            raise InvalidSelection(f"no option {option_index}")
        return question.options[option_index].label


class PermissionResponder:
    """Validates a human permission decision locally, then forwards it."""

    def __init__(
        self,
        timeline: SessionTimeline,
        transport: PermissionTransport,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._timeline = timeline
        self._transport = transport
        self._clock = clock

    async def respond(  # noqa: PLR0913
        self,
        tool_id: str,
        permission_id: str,
        decision: PermissionDecision,
        *,
        allowed_tools: Iterable[str] | None = None,
        reason: str | None = None,
    ) -> Permission:
        session_id = self._timeline.session_id
        if not session_id:
            raise NoActiveSession(f"cannot answer permission {permission_id} without an active session")
        tools = None if allowed_tools is None else tuple(allowed_tools)
        tool_state.validate_decision(decision, tools)
        message = self._timeline.find(tool_id)
        if not isinstance(message, ToolCallMessage):
            raise UnknownMessage(f"no tool-call message {tool_id}")
        tool_state.live_permission(message.tool, permission_id)

        try:
            await self._transport.respond_permission(
                session_id, permission_id, decision, allowed_tools=tools, reason=reason
            )
        except Exception as exc:
            logger.warning("Permission response failed: permission=%s error=%s", permission_id, exc)
            raise SendFailed(str(exc) or "Failed to send permission decision") from exc
        return self._timeline.decide_permission(
            tool_id,
            permission_id=permission_id,
            decision=decision,
            at=self._clock(),
            reason=reason,
            allowed_tools=tools,
        )
