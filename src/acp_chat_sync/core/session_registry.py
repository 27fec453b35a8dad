from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4


@dataclass(slots=True, frozen=True)
class Credentials:
    """Bearer credentials of an authenticated session."""

    token: str


@dataclass(slots=True, frozen=True)
class ChatSession:
    """State for one agent session the client is attached to."""

    session_id: str
    server_url: str
    credentials: Credentials | None = None
    workspace: Path | None = None


class SessionRegistry:
    """In-memory session registry with one active session at a time."""

    def __init__(self) -> None:
        self._sessions: dict[str, ChatSession] = {}
        self._active_id: str | None = None

    def create_or_replace(
        self,
        *,
        server_url: str,
        credentials: Credentials | None = None,
        workspace: Path | None = None,
        session_id: str | None = None,
    ) -> ChatSession:
        session = ChatSession(
            session_id=session_id or str(uuid4()),
            server_url=server_url.rstrip("/"),
            credentials=credentials,
            workspace=workspace,
        )
        self._sessions[session.session_id] = session
        self._active_id = session.session_id
        return session

    def get(self, session_id: str) -> ChatSession | None:
        return self._sessions.get(session_id)

    def active(self) -> ChatSession | None:
        return None if self._active_id is None else self._sessions.get(self._active_id)

    def get_credentials(self) -> Credentials | None:
        session = self.active()
        return None if session is None else session.credentials

    def clear(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        if self._active_id == session_id:
            self._active_id = None
