from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Literal

PermissionBehavior = Literal["allow", "deny"]
AgentMessage = dict[str, Any]


class EventKind(StrEnum):
    """Kinds of outbound protocol events."""

    STATUS = "status"
    THINKING = "thinking"
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    TOOL_OUTPUT = "tool_output"
    RESULT = "result"
    ERROR = "error"
    DONE = "done"


class AgentBinaryNotFoundError(FileNotFoundError):
    """Raised when no agent CLI binary can be located."""


class SpawnFailureError(RuntimeError):
    """Raised when the agent process could not be started."""


@dataclass(slots=True, frozen=True)
class FileAttachment:
    """File attached to a prompt, either inline (base64) or already on disk."""

    name: str
    type: str = ""
    data: str | None = None
    file_path: str | None = None

    @property
    def is_image(self) -> bool:
        return self.type.startswith("image/")


@dataclass(slots=True, frozen=True)
class StreamRequest:
    """One prompt turn to run through the agent process."""

    prompt: str
    resume_session_id: str | None = None
    model: str | None = None
    system_prompt: str | None = None
    working_directory: str | None = None
    permission_mode: str | None = None
    attachments: tuple[FileAttachment, ...] = ()
    cancel_event: asyncio.Event | None = None


@dataclass(slots=True, frozen=True)
class ProtocolEvent:
    """Normalized outbound event; `data` is raw text or a JSON-encoded payload."""

    kind: EventKind
    data: str = ""

    @classmethod
    def structured(cls, kind: EventKind, payload: dict[str, Any]) -> ProtocolEvent:
        return cls(kind=kind, data=dump_json(payload))

    def payload(self) -> Any:
        """Decode `data` for structured kinds."""
        return json.loads(self.data)

    def to_dict(self) -> dict[str, str]:
        return {"type": self.kind.value, "data": self.data}

    def to_sse(self) -> str:
        return f"data: {dump_json(self.to_dict())}\n\n"


@dataclass(slots=True, frozen=True)
class PermissionResult:
    """Outcome of an approval request."""

    behavior: PermissionBehavior
    updated_input: dict[str, Any] | None = None
    updated_permissions: list[Any] | None = None
    message: str | None = None

    @classmethod
    def deny(cls, message: str) -> PermissionResult:
        return cls(behavior="deny", message=message)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PermissionResult:
        behavior = raw.get("behavior")
        if behavior not in {"allow", "deny"}:
            raise ValueError(behavior)
        return cls(
            behavior=behavior,
            updated_input=raw.get("updatedInput"),
            updated_permissions=raw.get("updatedPermissions"),
            message=raw.get("message"),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"behavior": self.behavior}
        if self.updated_input is not None:
            result["updatedInput"] = self.updated_input
        if self.updated_permissions is not None:
            result["updatedPermissions"] = self.updated_permissions
        if self.message is not None:
            result["message"] = self.message
        return result


def dump_json(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def format_sse(event: ProtocolEvent) -> str:
    """Render one `data: <json>\\n\\n` frame."""
    return event.to_sse()
