from __future__ import annotations

import asyncio
import itertools
import logging
from pathlib import Path
from types import SimpleNamespace

import pytest
from acp import RequestError, text_block
from acp.schema import (
    AgentMessageChunk,
    AllowedOutcome,
    DeniedOutcome,
    PermissionOption,
    ToolCall,
    ToolCallProgress,
    ToolCallStart,
)

from acp_chat_sync.acp_app.acp_bridge import AcpAgentTransport, TimelineClient, build_permission_response
from acp_chat_sync.core.composer import PermissionResponder
from acp_chat_sync.core.errors import NoActiveSession, StalePermissionDecision
from acp_chat_sync.core.models import AgentTextMessage, ToolCallMessage, UserTextMessage
from acp_chat_sync.core.session_registry import SessionRegistry
from acp_chat_sync.core.timeline import SessionTimeline

ALLOW_ONCE = PermissionOption(kind="allow_once", name="Allow once", option_id="once")
ALLOW_ALWAYS = PermissionOption(kind="allow_always", name="Always allow", option_id="always")
REJECT = PermissionOption(kind="reject_once", name="Reject", option_id="reject")


def counter_clock():
    ticks = itertools.count(1)
    return lambda: float(next(ticks))


def make_client(**kwargs) -> TimelineClient:
    return TimelineClient(SessionTimeline("s1"), clock=counter_clock(), **kwargs)


def chunk(text: str) -> AgentMessageChunk:
    return AgentMessageChunk(content=text_block(text), session_update="agent_message_chunk")


def tool_message(timeline: SessionTimeline, tool_id: str) -> ToolCallMessage:
    message = timeline.find(tool_id)
    assert isinstance(message, ToolCallMessage)
    return message


class FakeProcess:
    def __init__(self, *, with_pipes: bool = True) -> None:
        self.stdin = object() if with_pipes else None
        self.stdout = object() if with_pipes else None
        self.returncode: int | None = None
        self.terminated = False
        self.killed = False

    def terminate(self) -> None:
        self.terminated = True

    def kill(self) -> None:
        self.killed = True

    async def wait(self) -> int:
        if self.returncode is None:
            self.returncode = 0
        return self.returncode


class FakeConnection:
    def __init__(self, *, session_id: str = "acp-session") -> None:
        self.client: TimelineClient | None = None
        self.initialized = False
        self.cwd: str | None = None
        self.prompt_calls: list[str] = []
        self._session_id = session_id

    async def initialize(self, **kwargs):
        self.initialized = True
        assert kwargs["protocol_version"] == 1

    async def new_session(self, *, cwd: str, mcp_servers: list) -> SimpleNamespace:
        self.cwd = cwd
        assert mcp_servers == []
        return SimpleNamespace(session_id=self._session_id)

    async def prompt(self, *, session_id: str, prompt: list) -> SimpleNamespace:
        self.prompt_calls.append(session_id)
        assert prompt
        assert self.client is not None
        await self.client.session_update(session_id=session_id, update=chunk("hello from acp"))
        return SimpleNamespace(stop_reason="end_turn")

    async def cancel(self, *, session_id: str) -> None:
        self.prompt_calls.append(f"cancel:{session_id}")


def make_transport(process: FakeProcess, connection: FakeConnection, **kwargs) -> AcpAgentTransport:
    async def fake_spawn(program: str, *args: str, **spawn_kwargs):
        del program, args, spawn_kwargs
        return process

    def fake_connect(client, input_stream, output_stream):
        assert input_stream is process.stdin
        assert output_stream is process.stdout
        connection.client = client
        return connection

    return AcpAgentTransport(
        kwargs.pop("registry", SessionRegistry()),
        program="agent",
        args=["--x"],
        spawner=fake_spawn,
        connector=fake_connect,
        clock=counter_clock(),
        **kwargs,
    )


def test_text_chunks_are_flushed_as_one_agent_message():
    client = make_client()

    asyncio.run(client.session_update(session_id="s1", update=chunk("hello ")))
    asyncio.run(client.session_update(session_id="s1", update=chunk("world")))
    assert client.timeline.messages == ()
    client.finish_turn()

    (message,) = client.timeline.messages
    assert isinstance(message, AgentTextMessage)
    assert message.text == "hello world"


def test_tool_call_lifecycle_records_children_and_result():
    client = make_client()
    start = ToolCallStart(
        title="read file", tool_call_id="tool-1", kind="read", session_update="tool_call", raw_input={"path": "a.txt"}
    )
    progress = ToolCallProgress(tool_call_id="tool-1", status="in_progress", session_update="tool_call_update")
    done = ToolCallProgress(
        tool_call_id="tool-1",
        title="read file",
        status="completed",
        session_update="tool_call_update",
        raw_output="contents",
    )

    asyncio.run(client.session_update(session_id="s1", update=chunk("let me look")))
    asyncio.run(client.session_update(session_id="s1", update=start))
    asyncio.run(client.session_update(session_id="s1", update=progress))
    asyncio.run(client.session_update(session_id="s1", update=chunk("reading")))
    asyncio.run(client.session_update(session_id="s1", update=done))
    asyncio.run(client.session_update(session_id="s1", update=chunk("all done")))
    client.finish_turn()

    first, tool, last = client.timeline.messages
    assert isinstance(first, AgentTextMessage)
    assert first.text == "let me look"
    assert isinstance(tool, ToolCallMessage)
    assert tool.tool.name == "read"
    assert tool.tool.input == {"path": "a.txt"}
    assert tool.tool.description == "read file"
    assert tool.tool.state == "completed"
    assert tool.tool.started_at is not None
    assert tool.tool.result == "contents"
    assert [child.text for child in tool.children if isinstance(child, AgentTextMessage)] == ["reading"]
    assert isinstance(last, AgentTextMessage)
    assert last.text == "all done"


def test_failed_tool_call_keeps_title_as_description():
    client = make_client()
    start = ToolCallStart(title="run tests", tool_call_id="tool-2", kind="execute", session_update="tool_call")
    failed = ToolCallProgress(tool_call_id="tool-2", status="failed", session_update="tool_call_update")

    asyncio.run(client.session_update(session_id="s1", update=start))
    asyncio.run(client.session_update(session_id="s1", update=failed))

    tool = tool_message(client.timeline, "tool-2").tool
    assert tool.state == "error"
    assert tool.description == "run tests"
    assert tool.result is None


def test_failed_tool_call_without_any_title_gets_generic_description():
    client = make_client()
    start = ToolCallStart(title="", tool_call_id="tool-3", kind="execute", session_update="tool_call")
    failed = ToolCallProgress(tool_call_id="tool-3", status="failed", session_update="tool_call_update")

    asyncio.run(client.session_update(session_id="s1", update=start))
    asyncio.run(client.session_update(session_id="s1", update=failed))

    assert tool_message(client.timeline, "tool-3").tool.description == "Tool call failed"


def test_registered_tool_title_becomes_tool_name():
    client = make_client()
    question = {"questions": [{"question": "Pick", "options": [{"label": "A"}]}]}
    start = ToolCallStart(
        title="AskUserQuestion", tool_call_id="q1", kind="other", session_update="tool_call", raw_input=question
    )

    asyncio.run(client.session_update(session_id="s1", update=start))

    assert tool_message(client.timeline, "q1").tool.name == "AskUserQuestion"


def test_progress_for_unknown_tool_is_rejected_and_logged(caplog: pytest.LogCaptureFixture):
    client = make_client()
    progress = ToolCallProgress(tool_call_id="ghost", status="completed", session_update="tool_call_update")

    with caplog.at_level(logging.WARNING):
        asyncio.run(client.session_update(session_id="s1", update=progress))

    assert client.timeline.messages == ()
    assert "UnknownMessage" in caplog.text


def test_event_reporter_receives_tool_events():
    events: list[str] = []
    client = make_client(event_reporter=events.append)
    start = ToolCallStart(title="read file", tool_call_id="tool-1", kind="read", session_update="tool_call")
    progress = ToolCallProgress(
        tool_call_id="tool-1", title="read file", status="completed", session_update="tool_call_update"
    )

    asyncio.run(client.session_update(session_id="s1", update=start))
    asyncio.run(client.session_update(session_id="s1", update=progress))

    assert "tool start tool-1 read file (read)" in events[0]
    assert "tool completed tool-1 read file" in events[1]


def test_permission_without_handler_is_cancelled():
    client = make_client()
    tool_call = ToolCall(title="run ls", tool_call_id="tool-1")

    response = asyncio.run(client.request_permission(options=[ALLOW_ONCE], session_id="s1", tool_call=tool_call))

    assert isinstance(response.outcome, DeniedOutcome)
    permission = tool_message(client.timeline, "tool-1").tool.permission
    assert permission is not None
    assert permission.status == "canceled"
    assert permission.decision == "abort"


def test_permission_without_options_is_cancelled_without_record():
    client = make_client()
    tool_call = ToolCall(title="run ls", tool_call_id="tool-1")

    response = asyncio.run(client.request_permission(options=[], session_id="s1", tool_call=tool_call))

    assert isinstance(response.outcome, DeniedOutcome)
    assert client.timeline.find("tool-1") is None


def test_permission_times_out_as_cancelled():
    async def ignore(session_id: str, tool_id: str, permission_id: str) -> None:
        del session_id, tool_id, permission_id

    client = make_client(permission_handler=ignore, permission_timeout=0.01)
    tool_call = ToolCall(title="run ls", tool_call_id="tool-1")

    response = asyncio.run(client.request_permission(options=[ALLOW_ONCE], session_id="s1", tool_call=tool_call))

    assert isinstance(response.outcome, DeniedOutcome)
    permission = tool_message(client.timeline, "tool-1").tool.permission
    assert permission is not None
    assert permission.status == "canceled"
    assert permission.reason == "Permission request timed out"


def test_failing_permission_handler_cancels_and_propagates():
    async def explode(session_id: str, tool_id: str, permission_id: str) -> None:
        del session_id, tool_id, permission_id
        raise RuntimeError("prompt broke")

    client = make_client(permission_handler=explode)
    tool_call = ToolCall(title="run ls", tool_call_id="tool-1")

    with pytest.raises(RuntimeError, match="prompt broke"):
        asyncio.run(client.request_permission(options=[ALLOW_ONCE], session_id="s1", tool_call=tool_call))

    permission = tool_message(client.timeline, "tool-1").tool.permission
    assert permission is not None
    assert permission.status == "canceled"


def test_cancel_pending_releases_waiting_agent():
    async def scenario():
        asked = asyncio.Event()

        async def handler(session_id: str, tool_id: str, permission_id: str) -> None:
            del session_id, tool_id, permission_id
            asked.set()

        client = make_client(permission_handler=handler)
        tool_call = ToolCall(title="run ls", tool_call_id="tool-1")
        task = asyncio.create_task(
            client.request_permission(options=[ALLOW_ONCE], session_id="s1", tool_call=tool_call)
        )
        await asked.wait()
        client.cancel_pending("Session stopped")
        return client, await task

    client, response = asyncio.run(scenario())

    assert isinstance(response.outcome, DeniedOutcome)
    permission = tool_message(client.timeline, "tool-1").tool.permission
    assert permission is not None
    assert permission.status == "canceled"
    assert permission.reason == "Session stopped"
    assert not client.resolve_permission(permission.id, "approved")


@pytest.mark.parametrize(
    ("options", "decision", "expected"),
    [
        ((ALLOW_ONCE, ALLOW_ALWAYS), "approved", "once"),
        ((ALLOW_ONCE, ALLOW_ALWAYS), "approved_for_session", "always"),
        ((ALLOW_ONCE,), "approved_for_session", "once"),
        ((ALLOW_ALWAYS, REJECT), "approved", "always"),
        ((ALLOW_ONCE, REJECT), "denied", None),
        ((ALLOW_ONCE, REJECT), "abort", None),
        ((REJECT,), "approved", None),
    ],
)
def test_build_permission_response(options, decision, expected):
    response = build_permission_response(options=options, decision=decision)

    if expected is None:
        assert isinstance(response.outcome, DeniedOutcome)
    else:
        assert isinstance(response.outcome, AllowedOutcome)
        assert response.outcome.option_id == expected


def test_start_send_and_stop(tmp_path: Path):
    process = FakeProcess()
    connection = FakeConnection(session_id="real-session")
    registry = SessionRegistry()
    transport = make_transport(process, connection, registry=registry, server_url="https://api.example/")

    timeline = asyncio.run(transport.start(workspace=tmp_path))
    assert timeline.session_id == "real-session"
    assert connection.initialized
    assert connection.cwd == str(tmp_path.resolve())
    active = registry.active()
    assert active is not None
    assert active.session_id == "real-session"
    assert active.server_url == "https://api.example"

    asyncio.run(transport.send_message("real-session", "hi"))
    user, agent = timeline.messages
    assert isinstance(user, UserTextMessage)
    assert user.text == "hi"
    assert isinstance(agent, AgentTextMessage)
    assert agent.text == "hello from acp"
    assert connection.prompt_calls == ["real-session"]

    assert asyncio.run(transport.cancel("real-session"))
    assert asyncio.run(transport.stop("real-session"))
    assert process.terminated
    assert registry.active() is None
    assert connection.prompt_calls[-1] == "cancel:real-session"
    assert not asyncio.run(transport.stop("real-session"))
    assert not asyncio.run(transport.cancel("real-session"))


def test_send_without_live_session_fails():
    transport = AcpAgentTransport(SessionRegistry(), program="agent", args=[])

    with pytest.raises(NoActiveSession):
        asyncio.run(transport.send_message("nope", "hi"))
    with pytest.raises(NoActiveSession):
        asyncio.run(transport.send_message("", "hi"))


def test_start_rejects_file_workspace(tmp_path: Path):
    target = tmp_path / "file.txt"
    target.write_text("x")
    transport = make_transport(FakeProcess(), FakeConnection())

    with pytest.raises(ValueError):
        asyncio.run(transport.start(workspace=target))


def test_start_requires_process_pipes(tmp_path: Path):
    transport = make_transport(FakeProcess(with_pipes=False), FakeConnection())

    with pytest.raises(RuntimeError):
        asyncio.run(transport.start(workspace=tmp_path))


def test_invalid_stdio_limit_is_rejected():
    with pytest.raises(ValueError):
        AcpAgentTransport(SessionRegistry(), program="agent", args=[], stdio_limit=0)


def test_permission_round_trip_through_responder(tmp_path: Path):
    async def scenario():
        connection = FakeConnection(session_id="real-session")
        transport = make_transport(FakeProcess(), connection)
        timeline = await transport.start(workspace=tmp_path)
        responder = PermissionResponder(timeline, transport, clock=lambda: 99.0)

        async def handler(session_id: str, tool_id: str, permission_id: str) -> None:
            assert session_id == "real-session"
            await responder.respond(tool_id, permission_id, "approved_for_session")

        transport.set_permission_request_handler(handler)
        assert connection.client is not None
        response = await connection.client.request_permission(
            options=[ALLOW_ONCE, ALLOW_ALWAYS],
            session_id="real-session",
            tool_call=ToolCall(title="run ls", tool_call_id="tool-1"),
        )
        return timeline, response

    timeline, response = asyncio.run(scenario())

    assert isinstance(response.outcome, AllowedOutcome)
    assert response.outcome.option_id == "always"
    permission = tool_message(timeline, "tool-1").tool.permission
    assert permission is not None
    assert permission.status == "approved"
    assert permission.decision == "approved_for_session"
    assert permission.date == 99.0


def test_respond_to_unknown_permission_is_stale(tmp_path: Path):
    transport = make_transport(FakeProcess(), FakeConnection(session_id="real-session"))
    asyncio.run(transport.start(workspace=tmp_path))

    with pytest.raises(StalePermissionDecision):
        asyncio.run(transport.respond_permission("real-session", "nope", "approved"))


def test_stop_cancels_pending_permission(tmp_path: Path):
    async def scenario():
        connection = FakeConnection(session_id="real-session")
        transport = make_transport(FakeProcess(), connection)
        timeline = await transport.start(workspace=tmp_path)
        asked = asyncio.Event()

        async def handler(session_id: str, tool_id: str, permission_id: str) -> None:
            del session_id, tool_id, permission_id
            asked.set()

        transport.set_permission_request_handler(handler)
        assert connection.client is not None
        task = asyncio.create_task(
            connection.client.request_permission(
                options=[ALLOW_ONCE], session_id="real-session", tool_call=ToolCall(title="rm", tool_call_id="tool-9")
            )
        )
        await asked.wait()
        await transport.stop("real-session")
        return timeline, await task

    timeline, response = asyncio.run(scenario())

    assert isinstance(response.outcome, DeniedOutcome)
    permission = tool_message(timeline, "tool-9").tool.permission
    assert permission is not None
    assert permission.status == "canceled"
    assert permission.reason == "Session stopped"


@pytest.mark.parametrize(("event_output", "logged"), [("stdout", True), ("off", False)])
def test_event_output_controls_logging(tmp_path: Path, caplog: pytest.LogCaptureFixture, event_output, logged):
    connection = FakeConnection(session_id="real-session")
    transport = make_transport(FakeProcess(), connection, event_output=event_output)
    asyncio.run(transport.start(workspace=tmp_path))
    assert connection.client is not None
    start = ToolCallStart(title="read file", tool_call_id="tool-1", kind="read", session_update="tool_call")

    with caplog.at_level(logging.INFO, logger="acp_chat_sync.acp_app.acp_bridge"):
        asyncio.run(connection.client.session_update(session_id="real-session", update=start))

    assert ("ACP event: tool start tool-1" in caplog.text) is logged


@pytest.mark.parametrize(
    "method_name,args",
    [
        ("write_text_file", {"content": "c", "path": "p", "session_id": "s"}),
        ("read_text_file", {"path": "p", "session_id": "s"}),
        ("create_terminal", {"command": "ls", "session_id": "s"}),
        ("terminal_output", {"session_id": "s", "terminal_id": "t"}),
        ("release_terminal", {"session_id": "s", "terminal_id": "t"}),
        ("wait_for_terminal_exit", {"session_id": "s", "terminal_id": "t"}),
        ("kill_terminal", {"session_id": "s", "terminal_id": "t"}),
    ],
)
def test_client_unsupported_methods_raise(method_name: str, args: dict[str, str]):
    client = make_client()
    method = getattr(client, method_name)
    with pytest.raises(RequestError):
        asyncio.run(method(**args))


def test_client_unsupported_ext_methods_raise():
    client = make_client()
    with pytest.raises(RequestError):
        asyncio.run(client.ext_method("x", {}))
    with pytest.raises(RequestError):
        asyncio.run(client.ext_notification("x", {}))
