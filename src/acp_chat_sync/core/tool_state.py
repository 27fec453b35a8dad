"""Transition rules for tool calls and their permission requests.

Every function validates first and mutates only after all checks pass, so a rejected
transition leaves the tool call exactly as it was.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from acp_chat_sync.core.errors import InvalidDecisionShape, MalformedEvent, OutOfOrderEvent, StalePermissionDecision
from acp_chat_sync.core.models import DECISION_STATUS, Permission, PermissionDecision, ToolCall


def mark_started(tool: ToolCall, *, at: float) -> None:
    if tool.is_terminal:
        raise OutOfOrderEvent(f"{tool.name}: start reported after {tool.state}")
    if tool.started_at is None:
        tool.started_at = at


def complete(tool: ToolCall, *, at: float, result: Any = None) -> None:
    _ensure_running(tool, "completed")
    _close_pending_permission(tool, at=at, reason="Tool call completed before a decision was made")
    tool.state = "completed"
    tool.completed_at = at
    tool.result = result


def fail(tool: ToolCall, *, at: float, description: str | None = None, reason: str | None = None) -> None:
    _ensure_running(tool, "error")
    text = description or reason
    if not text:
        raise MalformedEvent(f"{tool.name}: error transition without a description")
    _close_pending_permission(tool, at=at, reason=text)
    tool.state = "error"
    tool.completed_at = at
    tool.description = text


def request_permission(
    tool: ToolCall, *, permission_id: str, mode: str | None = None, reason: str | None = None
) -> None:
    if tool.is_terminal:
        raise OutOfOrderEvent(f"{tool.name}: permission requested after {tool.state}")
    current = tool.permission
    if current is not None:
        if current.id == permission_id and current.is_pending:
            return
        if current.id == permission_id:
            raise OutOfOrderEvent(f"{tool.name}: permission {permission_id} already {current.status}")
        if current.is_pending:
            raise OutOfOrderEvent(f"{tool.name}: permission {current.id} is still pending")
    tool.permission = Permission(id=permission_id, mode=mode, reason=reason)


def validate_decision(decision: PermissionDecision, allowed_tools: Iterable[str] | None) -> None:
    if decision not in DECISION_STATUS:
        raise InvalidDecisionShape(f"unknown decision {decision!r}")
    if allowed_tools is not None and decision != "approved_for_session":
        raise InvalidDecisionShape(f"allowed tools can only accompany approved_for_session, not {decision}")


def decide_permission(  # noqa: PLR0913
    tool: ToolCall,
    *,
    permission_id: str,
    decision: PermissionDecision,
    at: float,
    reason: str | None = None,
    mode: str | None = None,
    allowed_tools: Iterable[str] | None = None,
) -> Permission:
    validate_decision(decision, allowed_tools)
    permission = live_permission(tool, permission_id)
    permission.status = DECISION_STATUS[decision]
    permission.decision = decision
    permission.reason = reason
    permission.date = at
    if mode is not None:
        permission.mode = mode
    permission.allowed_tools = None if allowed_tools is None else tuple(allowed_tools)
    return permission


def cancel_permission(tool: ToolCall, *, permission_id: str, at: float, reason: str | None = None) -> Permission:
    return decide_permission(tool, permission_id=permission_id, decision="abort", at=at, reason=reason)


def live_permission(tool: ToolCall, permission_id: str) -> Permission:
    """Return the pending permission `permission_id` or raise `StalePermissionDecision`."""
    permission = tool.permission
    if permission is None or permission.id != permission_id:
        raise StalePermissionDecision(f"{tool.name}: no permission {permission_id}")
    if not permission.is_pending:
        raise StalePermissionDecision(f"{tool.name}: permission {permission_id} already {permission.status}")
    return permission


def _ensure_running(tool: ToolCall, target: str) -> None:
    if tool.is_terminal:
        raise OutOfOrderEvent(f"{tool.name}: cannot move from {tool.state} to {target}")


def _close_pending_permission(tool: ToolCall, *, at: float, reason: str) -> None:
    permission = tool.permission
    if permission is not None and permission.is_pending:
        permission.status = "canceled"
        permission.decision = "abort"
        permission.reason = reason
        permission.date = at
