"""Environment-driven settings for the sync client."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import cast

from acp_chat_sync.acp_app.acp_bridge import EventOutput
from acp_chat_sync.core.uploader import MAX_IMAGE_BYTES

DEFAULT_SERVER_URL = "http://localhost:3005"
DEFAULT_PERMISSION_TIMEOUT = 300.0
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(slots=True, frozen=True)
class SyncConfig:
    """Runtime settings shared by the CLI commands."""

    server_url: str = DEFAULT_SERVER_URL
    token: str | None = None
    uploads_enabled: bool = True
    max_image_bytes: int = MAX_IMAGE_BYTES
    permission_timeout: float = DEFAULT_PERMISSION_TIMEOUT
    event_output: EventOutput = "stdout"


def load_config(environ: Mapping[str, str] | None = None) -> SyncConfig:
    env = os.environ if environ is None else environ
    event_output = env.get("ACP_SYNC_EVENT_OUTPUT", "stdout")
    if event_output not in {"stdout", "off"}:
        raise ValueError(f"ACP_SYNC_EVENT_OUTPUT must be 'stdout' or 'off', got {event_output!r}")
    return SyncConfig(
        server_url=env.get("ACP_SYNC_SERVER_URL", DEFAULT_SERVER_URL).rstrip("/"),
        token=env.get("ACP_SYNC_TOKEN") or None,
        uploads_enabled=env.get("ACP_SYNC_UPLOADS", "1").strip().lower() not in _FALSE_VALUES,
        permission_timeout=float(env.get("ACP_SYNC_PERMISSION_TIMEOUT", DEFAULT_PERMISSION_TIMEOUT)),
        event_output=cast(EventOutput, event_output),
    )
