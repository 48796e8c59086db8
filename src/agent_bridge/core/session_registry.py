from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path


@dataclass(slots=True, frozen=True)
class ChatSession:
    """State for one chat bound to one agent conversation."""

    chat_id: int
    workspace: Path
    agent_session_id: str | None = None
    model: str | None = None
    permission_mode: str = "default"


class SessionRegistry:
    """In-memory session registry with one active session per chat."""

    def __init__(self) -> None:
        self._sessions: dict[int, ChatSession] = {}

    def create_or_replace(
        self,
        *,
        chat_id: int,
        workspace: Path,
        model: str | None = None,
        permission_mode: str = "default",
    ) -> ChatSession:
        session = ChatSession(chat_id=chat_id, workspace=workspace, model=model, permission_mode=permission_mode)
        self._sessions[chat_id] = session
        return session

    def get(self, chat_id: int) -> ChatSession | None:
        return self._sessions.get(chat_id)

    def update(self, chat_id: int, **changes: object) -> ChatSession | None:
        session = self._sessions.get(chat_id)
        if session is None:
            return None
        session = replace(session, **changes)
        self._sessions[chat_id] = session
        return session

    def clear(self, chat_id: int) -> None:
        self._sessions.pop(chat_id, None)
