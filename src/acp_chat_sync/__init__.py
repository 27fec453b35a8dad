"""
ACP chat sync

Client-side session history, tool-call/permission tracking and image attachment
uploads for Agent Client Protocol chats.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import shlex
import sys
from dataclasses import asdict
from importlib import metadata
from pathlib import Path

from dotenv import load_dotenv

from acp_chat_sync.acp_app.acp_bridge import AcpAgentTransport
from acp_chat_sync.config import SyncConfig, load_config
from acp_chat_sync.core.errors import PreconditionError, SyncError, TransportError
from acp_chat_sync.core.models import ToolCallMessage
from acp_chat_sync.core.session_registry import Credentials, SessionRegistry
from acp_chat_sync.core.timeline import SessionTimeline, describe
from acp_chat_sync.core.tool_registry import default_registry
from acp_chat_sync.core.uploader import AttachmentUploader, LocalImage

logger = logging.getLogger(__name__)


def get_version() -> str:
    try:
        return metadata.version("acp-chat-sync")
    except metadata.PackageNotFoundError:
        return "unknown"


def get_parser(config: SyncConfig | None = None) -> argparse.ArgumentParser:
    """Return the CLI argument parser."""
    config = config or SyncConfig()
    parser = argparse.ArgumentParser(prog="acp-sync")
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {get_version()}")
    parser.add_argument("--server-url", default=config.server_url, help="Sync server base URL.")
    parser.add_argument("--token", default=config.token or "", help="Bearer token for the active session.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    upload = subparsers.add_parser("upload", help="Upload one image and print its attachment descriptor.")
    upload.add_argument("path", type=Path)

    replay = subparsers.add_parser("replay", help="Apply a JSON-lines event log and print the resulting history.")
    replay.add_argument("path", type=Path)
    replay.add_argument("--session-id", default="replay", help="Session the replayed events belong to.")

    prompt = subparsers.add_parser("prompt", help="Send one prompt to an ACP agent and print the session history.")
    prompt.add_argument("text")
    prompt.add_argument(
        "--agent-command",
        default=os.getenv("ACP_AGENT_COMMAND", ""),
        help="ACP agent command line, e.g. 'codex-acp' or 'uv run examples/echo_agent.py'.",
    )
    prompt.add_argument("--workspace", default=os.getcwd(), help="Workspace path for the agent session.")
    return parser


def main(args: list[str] | None = None) -> int:
    """Run the main program."""
    load_dotenv(override=False)
    try:
        config = load_config()
    except ValueError as exc:
        print(f"acp-sync: {exc}", file=sys.stderr)
        return 2
    parser = get_parser(config)
    opts = parser.parse_args(args=args)

    if opts.command == "upload":
        return _run_upload(opts, config)
    if opts.command == "replay":
        return _run_replay(opts)

    command_parts = shlex.split(opts.agent_command)
    if not command_parts:
        parser.error("--agent-command (or ACP_AGENT_COMMAND) is required")
    return asyncio.run(_run_prompt(opts, config, command_parts))


def _run_upload(opts: argparse.Namespace, config: SyncConfig) -> int:
    registry = SessionRegistry()
    registry.create_or_replace(
        server_url=opts.server_url,
        credentials=Credentials(token=opts.token) if opts.token else None,
    )
    uploader = AttachmentUploader(
        server_url=opts.server_url,
        credentials=registry.get_credentials,
        supported=config.uploads_enabled,
        max_bytes=config.max_image_bytes,
    )
    try:
        image = LocalImage.from_path(opts.path)
        descriptor = asyncio.run(uploader.upload(image))
    except OSError as exc:
        print(f"acp-sync: cannot read {opts.path}: {exc}", file=sys.stderr)
        return 1
    except (PreconditionError, TransportError) as exc:
        print(f"acp-sync: {exc}", file=sys.stderr)
        return 1

    payload = asdict(descriptor)
    payload.pop("local_preview_ref", None)
    print(json.dumps(payload, indent=2))
    return 0


def _run_replay(opts: argparse.Namespace) -> int:
    timeline = SessionTimeline(opts.session_id, registry=default_registry())
    try:
        lines = opts.path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        print(f"acp-sync: cannot read {opts.path}: {exc}", file=sys.stderr)
        return 1

    rejected = 0
    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            raw = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning("Skipping line %s: invalid JSON (%s)", number, exc)
            rejected += 1
            continue
        if not isinstance(raw, dict):
            logger.warning("Skipping line %s: expected a JSON object", number)
            rejected += 1
            continue
        if timeline.ingest(raw) is not None:
            rejected += 1

    _print_history(timeline)
    if rejected:
        print(f"{rejected} event(s) rejected", file=sys.stderr)
    return 0


async def _run_prompt(opts: argparse.Namespace, config: SyncConfig, command_parts: list[str]) -> int:
    transport = AcpAgentTransport(
        SessionRegistry(),
        program=command_parts[0],
        args=command_parts[1:],
        server_url=opts.server_url,
        credentials=Credentials(token=opts.token) if opts.token else None,
        permission_timeout=config.permission_timeout,
        event_output=config.event_output,
    )
    timeline = await transport.start(workspace=Path(opts.workspace))
    session_id = timeline.session_id or ""
    try:
        await transport.send_message(session_id, opts.text)
    except SyncError as exc:
        print(f"acp-sync: {exc}", file=sys.stderr)
        return 1
    finally:
        await transport.stop(session_id)
    _print_history(timeline)
    return 0


def _print_history(timeline: SessionTimeline) -> None:
    for message in timeline.messages:
        print(describe(message))
        if isinstance(message, ToolCallMessage):
            for child in message.children:
                print(f"  {describe(child)}")


__all__: list[str] = ["get_parser", "main"]
