from __future__ import annotations

import asyncio
import asyncio.subprocess as aio_subprocess
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol, cast
from uuid import uuid4

from acp import PROTOCOL_VERSION, RequestError, connect_to_agent, text_block
from acp.core import ClientSideConnection
from acp.schema import (
    AgentMessageChunk,
    AllowedOutcome,
    ClientCapabilities,
    CreateTerminalResponse,
    DeniedOutcome,
    EnvVariable,
    Implementation,
    KillTerminalCommandResponse,
    PermissionOption,
    ReadTextFileResponse,
    ReleaseTerminalResponse,
    RequestPermissionResponse,
    TerminalOutputResponse,
    TextContentBlock,
    ToolCall,
    ToolCallProgress,
    ToolCallStart,
    WaitForTerminalExitResponse,
    WriteTextFileResponse,
)

from acp_chat_sync.core.errors import NoActiveSession, StalePermissionDecision
from acp_chat_sync.core.models import AgentTextMessage, PermissionDecision, ToolCallMessage, UserTextMessage
from acp_chat_sync.core.models import ToolCall as ToolCallRecord
from acp_chat_sync.core.session_registry import Credentials, SessionRegistry
from acp_chat_sync.core.timeline import SessionTimeline
from acp_chat_sync.core.tool_registry import ToolSchemaRegistry, default_registry
from acp_chat_sync.core.wire import (
    PermissionCanceled,
    PermissionRequested,
    ToolCompleted,
    ToolFailed,
    ToolStarted,
)

EventOutput = Literal["stdout", "off"]
PermissionRequestHandler = Callable[[str, str, str], Awaitable[None]]

logger = logging.getLogger(__name__)


class AcpConnectionFactory(Protocol):
    """Factory protocol to connect a client implementation to an ACP agent."""

    def __call__(self, client: object, input_stream: object, output_stream: object) -> ClientSideConnection: ...


class AcpSpawnFn(Protocol):
    """Spawner protocol for ACP subprocesses."""

    async def __call__(self, program: str, *args: str, **kwargs: object) -> asyncio.subprocess.Process: ...


class ProcessLike(Protocol):
    """Subset of process API used by transport shutdown logic."""

    returncode: int | None

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int: ...


@dataclass(slots=True)
class _PendingPermission:
    permission_id: str
    tool_id: str
    options: tuple[PermissionOption, ...]
    future: asyncio.Future[RequestPermissionResponse]


@dataclass(slots=True)
class _LiveSession:
    session_id: str
    workspace: Path
    process: ProcessLike
    connection: ClientSideConnection
    client: TimelineClient
    prompt_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class TimelineClient:
    """ACP client callbacks that record agent activity into a session timeline.

    Agent text is buffered and appended as one `agent-text` message when a tool call
    starts or the turn ends. Text arriving while a tool call is running becomes a
    child of that tool-call message.
    """

    def __init__(  # noqa: PLR0913
        self,
        timeline: SessionTimeline,
        *,
        registry: ToolSchemaRegistry | None = None,
        clock: Callable[[], float] = time.time,
        permission_timeout: float = 300,
        event_reporter: Callable[[str], None] | None = None,
        permission_handler: PermissionRequestHandler | None = None,
    ) -> None:
        self.timeline = timeline
        self._registry = registry or default_registry()
        self._clock = clock
        self._permission_timeout = permission_timeout
        self._event_reporter = event_reporter
        self._permission_handler = permission_handler
        self._text: list[str] = []
        self._active_tool_id: str | None = None
        self._pending: dict[str, _PendingPermission] = {}

    def set_permission_handler(self, handler: PermissionRequestHandler | None) -> None:
        self._permission_handler = handler

    def finish_turn(self) -> None:
        self._flush_text()
        self._active_tool_id = None

    async def session_update(self, session_id: str, update: object, **kwargs: object) -> None:
        del session_id, kwargs

        if isinstance(update, ToolCallStart):
            self._report_event(f"tool start {update.tool_call_id} {update.title} ({update.kind or 'other'})")
            self._flush_text()
            self._open_tool_call(
                tool_id=update.tool_call_id,
                title=update.title,
                kind=update.kind,
                raw_input=update.raw_input,
            )
            self._apply_status(update.tool_call_id, update.status, title=update.title, raw_output=update.raw_output)
            return
        if isinstance(update, ToolCallProgress):
            self._report_event(f"tool {update.status or 'in_progress'} {update.tool_call_id} {update.title or 'tool'}")
            self._apply_status(update.tool_call_id, update.status, title=update.title, raw_output=update.raw_output)
            return
        if isinstance(update, AgentMessageChunk):
            if isinstance(update.content, TextContentBlock):
                self._text.append(update.content.text)
            else:
                logger.debug("Ignoring non-text agent chunk: %s", type(update.content).__name__)

    async def request_permission(
        self, options: list[PermissionOption], session_id: str, tool_call: ToolCall, **kwargs: object
    ) -> RequestPermissionResponse:
        del kwargs
        tool_id = tool_call.tool_call_id
        self._report_event(f"permission requested for {tool_call.title} ({tool_id}), options={len(options)}")
        if not options:
            return _cancelled()
        if self.timeline.find(tool_id) is None:
            self._flush_text()
            self._open_tool_call(
                tool_id=tool_id,
                title=getattr(tool_call, "title", None),
                kind=getattr(tool_call, "kind", None),
                raw_input=getattr(tool_call, "raw_input", None),
            )

        permission_id = uuid4().hex[:12]
        rejected = self.timeline.apply_tool_update(
            PermissionRequested(event="permission-requested", tool_id=tool_id, permission_id=permission_id)
        )
        if rejected is not None:
            return _cancelled()
        if self._permission_handler is None:
            self._cancel_in_timeline(tool_id, permission_id, "No permission handler installed")
            return _cancelled()

        future: asyncio.Future[RequestPermissionResponse] = asyncio.get_running_loop().create_future()
        self._pending[permission_id] = _PendingPermission(
            permission_id=permission_id,
            tool_id=tool_id,
            options=tuple(options),
            future=future,
        )
        try:
            await self._permission_handler(session_id, tool_id, permission_id)
            return await asyncio.wait_for(future, timeout=self._permission_timeout)
        except TimeoutError:
            self._cancel_in_timeline(tool_id, permission_id, "Permission request timed out")
            return _cancelled()
        except Exception:
            self._cancel_in_timeline(tool_id, permission_id, "Permission prompt failed")
            raise
        finally:
            self._pending.pop(permission_id, None)

    def resolve_permission(self, permission_id: str, decision: PermissionDecision) -> bool:
        pending = self._pending.get(permission_id)
        if pending is None or pending.future.done():
            logger.warning(
                "Permission response ignored: permission_id=%s pending=%s", permission_id, pending is not None
            )
            return False
        pending.future.set_result(build_permission_response(options=pending.options, decision=decision))
        return True

    def cancel_pending(self, reason: str) -> None:
        for permission_id, pending in list(self._pending.items()):
            self._pending.pop(permission_id, None)
            if not pending.future.done():
                pending.future.set_result(_cancelled())
            self._cancel_in_timeline(pending.tool_id, permission_id, reason)

    def _open_tool_call(self, *, tool_id: str, title: str | None, kind: str | None, raw_input: Any) -> None:
        if self.timeline.find(tool_id) is not None:
            return
        name = title if title and self._registry.has(title) else kind or "other"
        message = ToolCallMessage(
            id=tool_id,
            created_at=self._clock(),
            tool=ToolCallRecord(name=name, input=raw_input, created_at=self._clock(), description=title or None),
        )
        self.timeline.append(message)
        self._active_tool_id = tool_id

    def _apply_status(self, tool_id: str, status: str | None, *, title: str | None, raw_output: Any) -> None:
        now = self._clock()
        if status == "in_progress":
            self.timeline.apply_tool_update(ToolStarted(event="started", tool_id=tool_id, at=now))
        elif status == "completed":
            self._close_tool_call(tool_id)
            self.timeline.apply_tool_update(
                ToolCompleted(event="completed", tool_id=tool_id, at=now, result=raw_output)
            )
        elif status == "failed":
            self._close_tool_call(tool_id)
            known = self.timeline.find(tool_id)
            previous = known.tool.description if isinstance(known, ToolCallMessage) else None
            description = title or previous or "Tool call failed"
            self.timeline.apply_tool_update(ToolFailed(event="error", tool_id=tool_id, at=now, description=description))

    def _close_tool_call(self, tool_id: str) -> None:
        if self._active_tool_id == tool_id:
            self._flush_text()
            self._active_tool_id = None

    def _flush_text(self) -> None:
        text = "".join(self._text).strip()
        self._text.clear()
        if not text:
            return
        message = AgentTextMessage(id=uuid4().hex, created_at=self._clock(), text=text)
        if self._active_tool_id is not None:
            self.timeline.append_child(self._active_tool_id, message)
            return
        self.timeline.append(message)

    def _cancel_in_timeline(self, tool_id: str, permission_id: str, reason: str) -> None:
        self.timeline.apply_tool_update(
            PermissionCanceled(
                event="permission-canceled",
                tool_id=tool_id,
                permission_id=permission_id,
                at=self._clock(),
                reason=reason,
            )
        )

    def _report_event(self, event: str) -> None:
        if self._event_reporter is not None:
            self._event_reporter(event)

    async def write_text_file(
        self, content: str, path: str, session_id: str, **kwargs: object
    ) -> WriteTextFileResponse | None:
        del content, path, session_id, kwargs
        raise RequestError.method_not_found("fs/write_text_file")

    async def read_text_file(
        self,
        path: str,
        session_id: str,
        limit: int | None = None,
        line: int | None = None,
        **kwargs: object,
    ) -> ReadTextFileResponse:
        del path, session_id, limit, line, kwargs
        raise RequestError.method_not_found("fs/read_text_file")

    async def create_terminal(  # noqa: PLR0913
        self,
        command: str,
        session_id: str,
        args: list[str] | None = None,
        cwd: str | None = None,
        env: list[EnvVariable] | None = None,
        output_byte_limit: int | None = None,
        **kwargs: object,
    ) -> CreateTerminalResponse:
        del command, session_id, args, cwd, env, output_byte_limit, kwargs
        raise RequestError.method_not_found("terminal/create")

    async def terminal_output(self, session_id: str, terminal_id: str, **kwargs: object) -> TerminalOutputResponse:
        del session_id, terminal_id, kwargs
        raise RequestError.method_not_found("terminal/output")

    async def release_terminal(
        self, session_id: str, terminal_id: str, **kwargs: object
    ) -> ReleaseTerminalResponse | None:
        del session_id, terminal_id, kwargs
        raise RequestError.method_not_found("terminal/release")

    async def wait_for_terminal_exit(
        self, session_id: str, terminal_id: str, **kwargs: object
    ) -> WaitForTerminalExitResponse:
        del session_id, terminal_id, kwargs
        raise RequestError.method_not_found("terminal/wait_for_exit")

    async def kill_terminal(
        self, session_id: str, terminal_id: str, **kwargs: object
    ) -> KillTerminalCommandResponse | None:
        del session_id, terminal_id, kwargs
        raise RequestError.method_not_found("terminal/kill")

    async def ext_method(self, method: str, params: dict[str, object]) -> dict[str, object]:
        del method, params
        raise RequestError.method_not_found("ext/method")

    async def ext_notification(self, method: str, params: dict[str, object]) -> None:
        del method, params
        raise RequestError.method_not_found("ext/notification")


class AcpAgentTransport:
    """Runs an ACP agent subprocess and delivers user text and permission decisions to it."""

    def __init__(  # noqa: PLR0913
        self,
        registry: SessionRegistry,
        *,
        program: str,
        args: list[str],
        server_url: str = "",
        credentials: Credentials | None = None,
        tool_registry: ToolSchemaRegistry | None = None,
        permission_timeout: float = 300,
        event_output: EventOutput = "stdout",
        stdio_limit: int = 8_388_608,
        clock: Callable[[], float] = time.time,
        connector: AcpConnectionFactory | None = None,
        spawner: AcpSpawnFn | None = None,
    ) -> None:
        if stdio_limit <= 0:
            raise ValueError(stdio_limit)
        self._registry = registry
        self._program = program
        self._args = args
        self._server_url = server_url
        self._credentials = credentials
        self._tool_registry = tool_registry or default_registry()
        self._permission_timeout = permission_timeout
        self._event_output = event_output
        self._stdio_limit = stdio_limit
        self._clock = clock
        self._connector = connector or cast(AcpConnectionFactory, connect_to_agent)
        self._spawner = spawner or cast(AcpSpawnFn, asyncio.create_subprocess_exec)
        self._live: dict[str, _LiveSession] = {}
        self._permission_handler: PermissionRequestHandler | None = None

    def set_permission_request_handler(self, handler: PermissionRequestHandler | None) -> None:
        self._permission_handler = handler
        for live in self._live.values():
            live.client.set_permission_handler(handler)

    async def start(self, *, workspace: Path) -> SessionTimeline:
        """Spawn the agent, open an ACP session and return its (empty) timeline."""
        workspace = workspace.expanduser().resolve()
        if workspace.exists() and not workspace.is_dir():
            raise ValueError(workspace)
        workspace.mkdir(parents=True, exist_ok=True)

        process = await self._spawner(
            self._program,
            *self._args,
            stdin=aio_subprocess.PIPE,
            stdout=aio_subprocess.PIPE,
            limit=self._stdio_limit,
        )
        if process.stdin is None or process.stdout is None:
            raise RuntimeError

        timeline = SessionTimeline(registry=self._tool_registry)
        client = TimelineClient(
            timeline,
            registry=self._tool_registry,
            clock=self._clock,
            permission_timeout=self._permission_timeout,
            event_reporter=self._report_event,
            permission_handler=self._permission_handler,
        )
        connection = self._connector(client, process.stdin, process.stdout)
        await connection.initialize(
            protocol_version=PROTOCOL_VERSION,
            client_capabilities=ClientCapabilities(),
            client_info=Implementation(name="acp-chat-sync", title="ACP Chat Sync", version="0.1.0"),
        )
        session = await connection.new_session(cwd=str(workspace), mcp_servers=[])
        timeline.session_id = session.session_id

        self._registry.create_or_replace(
            server_url=self._server_url,
            credentials=self._credentials,
            workspace=workspace,
            session_id=session.session_id,
        )
        self._live[session.session_id] = _LiveSession(
            session_id=session.session_id,
            workspace=workspace,
            process=process,
            connection=connection,
            client=client,
        )
        return timeline

    async def send_message(self, session_id: str, text: str) -> None:
        live = self._require_live(session_id)
        async with live.prompt_lock:
            live.client.timeline.append(
                UserTextMessage(id=uuid4().hex, local_id=None, created_at=self._clock(), text=text)
            )
            try:
                await live.connection.prompt(session_id=session_id, prompt=[text_block(text)])
            finally:
                live.client.finish_turn()

    async def respond_permission(
        self,
        session_id: str,
        permission_id: str,
        decision: PermissionDecision,
        *,
        allowed_tools: tuple[str, ...] | None = None,
        reason: str | None = None,
    ) -> None:
        del allowed_tools, reason
        live = self._require_live(session_id)
        if not live.client.resolve_permission(permission_id, decision):
            raise StalePermissionDecision(f"permission {permission_id} is no longer awaiting a decision")
        logger.info("Permission response accepted: permission_id=%s decision=%s", permission_id, decision)

    async def cancel(self, session_id: str) -> bool:
        live = self._live.get(session_id)
        if live is None:
            return False
        await live.connection.cancel(session_id=session_id)
        return True

    async def stop(self, session_id: str) -> bool:
        live = self._live.pop(session_id, None)
        if live is None:
            return False
        live.client.cancel_pending("Session stopped")
        await self._shutdown(live.process)
        self._registry.clear(session_id)
        return True

    def _require_live(self, session_id: str) -> _LiveSession:
        live = self._live.get(session_id) if session_id else None
        if live is None:
            raise NoActiveSession(f"no live agent session {session_id!r}")
        return live

    async def _shutdown(self, process: ProcessLike) -> None:
        if process.returncode is not None:
            return

        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=3)
        except TimeoutError:
            process.kill()
            await process.wait()

    def _report_event(self, event: str) -> None:
        if self._event_output == "stdout":
            logger.info("ACP event: %s", event)


def build_permission_response(
    *,
    options: tuple[PermissionOption, ...],
    decision: PermissionDecision,
) -> RequestPermissionResponse:
    """Map a client decision onto the agent's offered permission options."""
    if decision in {"denied", "abort"}:
        return _cancelled()

    if decision == "approved_for_session":
        preferred_kinds = ("allow_always", "allow_once")
    else:
        preferred_kinds = ("allow_once", "allow_always")
    for kind in preferred_kinds:
        for option in options:
            if option.kind == kind:
                return RequestPermissionResponse(outcome=AllowedOutcome(option_id=option.option_id, outcome="selected"))
    return _cancelled()


def _cancelled() -> RequestPermissionResponse:
    return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))
