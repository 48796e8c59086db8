"""Classify agent stream-json messages into outbound protocol events."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from agent_bridge.agent.models import AgentMessage, EventKind, ProtocolEvent, dump_json
from agent_bridge.agent.sanitizer import sanitize

logger = logging.getLogger(__name__)

TOOL_CALL_SUFFIX = "ToolCall"


class ToolKind(StrEnum):
    READ = "read"
    WRITE = "write"
    EDIT = "edit"
    DELETE = "delete"
    SHELL = "shell"
    GREP = "grep"
    GLOB = "glob"
    LS = "ls"
    UPDATE_TODOS = "update_todos"
    WEB_SEARCH = "web_search"
    WEB_FETCH = "web_fetch"
    MCP = "mcp"
    UNKNOWN = "unknown"


_TOOL_KIND_BY_KEY = {
    "readToolCall": ToolKind.READ,
    "writeToolCall": ToolKind.WRITE,
    "editToolCall": ToolKind.EDIT,
    "deleteToolCall": ToolKind.DELETE,
    "shellToolCall": ToolKind.SHELL,
    "grepToolCall": ToolKind.GREP,
    "globToolCall": ToolKind.GLOB,
    "lsToolCall": ToolKind.LS,
    "updateTodosToolCall": ToolKind.UPDATE_TODOS,
    "webSearchToolCall": ToolKind.WEB_SEARCH,
    "webFetchToolCall": ToolKind.WEB_FETCH,
    "mcpToolCall": ToolKind.MCP,
}


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A tool call wrapper such as ``{"readToolCall": {"args": ..., "result": ...}}``."""

    kind: ToolKind
    key: str = ""
    args: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None

    @classmethod
    def parse(cls, wrapper: dict[str, Any]) -> ToolCall:
        if not wrapper:
            return cls(kind=ToolKind.UNKNOWN)
        key = next(iter(wrapper))
        inner = wrapper[key] if isinstance(wrapper[key], dict) else {}
        args = inner.get("args")
        result = inner.get("result")
        return cls(
            kind=_TOOL_KIND_BY_KEY.get(key, ToolKind.UNKNOWN),
            key=key,
            args=args if isinstance(args, dict) else {},
            result=result if isinstance(result, dict) else None,
        )

    @property
    def name(self) -> str:
        if not self.key:
            return "unknown"
        base = self.key.removesuffix(TOOL_CALL_SUFFIX)
        return base[:1].upper() + base[1:]

    def result_content(self) -> tuple[str, bool]:
        """Return display content and the error flag for a completed call."""
        result = self.result
        if result is None:
            return "", False
        success = result.get("success")
        if success is not None:
            if isinstance(success, dict) and isinstance(success.get("content"), str):
                return success["content"], False
            return dump_json(success), False
        error = result.get("error")
        if error is not None:
            return (error if isinstance(error, str) else dump_json(error)), True
        return dump_json(result), False


class EventTranslator:
    """Stateful line-to-event translator for one stream."""

    def __init__(self) -> None:
        self._delta_seen = False

    def translate_line(self, line: str) -> list[ProtocolEvent]:
        trimmed = line.strip()
        if not trimmed.startswith("{"):
            return []
        try:
            message = json.loads(trimmed)
        except (ValueError, RecursionError):
            logger.debug("Dropping undecodable line: %.80s", trimmed)
            return []
        if not isinstance(message, dict):
            return []
        return self.translate_message(message)

    def translate_message(self, message: AgentMessage) -> list[ProtocolEvent]:
        match message.get("type"):
            case "system":
                return self._on_system(message)
            case "thinking":
                return self._on_thinking(message)
            case "assistant":
                return self._on_assistant(message)
            case "tool_call":
                return self._on_tool_call(message)
            case "result":
                return [
                    ProtocolEvent.structured(
                        EventKind.RESULT,
                        {
                            "subtype": message.get("subtype"),
                            "is_error": message.get("is_error"),
                            "duration_ms": message.get("duration_ms"),
                            "session_id": message.get("session_id"),
                            "usage": None,
                        },
                    )
                ]
        return []

    def _on_system(self, message: AgentMessage) -> list[ProtocolEvent]:
        if message.get("subtype") != "init":
            return []
        payload = {"session_id": message.get("session_id"), "model": message.get("model"), "tools": []}
        return [ProtocolEvent.structured(EventKind.STATUS, payload)]

    @staticmethod
    def _on_thinking(message: AgentMessage) -> list[ProtocolEvent]:
        text = message.get("text")
        if message.get("subtype") != "delta" or not text:
            return []
        return [ProtocolEvent(EventKind.THINKING, str(text))]

    def _on_assistant(self, message: AgentMessage) -> list[ProtocolEvent]:
        if message.get("timestamp_ms"):
            self._delta_seen = True
        elif self._delta_seen:
            # Consolidated final message repeats text already streamed as deltas.
            self._delta_seen = False
            return []
        text = _assistant_text(message)
        return [ProtocolEvent(EventKind.TEXT, text)] if text else []

    @staticmethod
    def _on_tool_call(message: AgentMessage) -> list[ProtocolEvent]:
        wrapper = message.get("tool_call")
        if not isinstance(wrapper, dict):
            return []
        tool_call = ToolCall.parse(wrapper)
        subtype = message.get("subtype")
        if subtype == "started":
            payload = {"id": message.get("call_id"), "name": tool_call.name, "input": tool_call.args}
            return [ProtocolEvent.structured(EventKind.TOOL_USE, payload)]
        if subtype == "completed":
            content, is_error = tool_call.result_content()
            payload = {"tool_use_id": message.get("call_id"), "content": content, "is_error": is_error}
            return [ProtocolEvent.structured(EventKind.TOOL_RESULT, payload)]
        return []


def stderr_event(chunk: bytes | str) -> ProtocolEvent | None:
    """Sanitized standard-error output of the launched process, if any."""
    cleaned = sanitize(chunk).strip()
    return ProtocolEvent(EventKind.TOOL_OUTPUT, cleaned) if cleaned else None


def _assistant_text(message: AgentMessage) -> str:
    body = message.get("message")
    if not isinstance(body, dict):
        return ""
    content = body.get("content")
    if not isinstance(content, list) or not content or not isinstance(content[0], dict):
        return ""
    text = content[0].get("text")
    return text if isinstance(text, str) else ""
