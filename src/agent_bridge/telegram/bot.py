from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, cast

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Message, Update
from telegram.constants import ChatAction, ParseMode
from telegram.error import TelegramError
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters

from agent_bridge.agent.models import (
    EventKind,
    FileAttachment,
    PermissionBehavior,
    PermissionResult,
    ProtocolEvent,
    StreamRequest,
)
from agent_bridge.core.pending_requests import PendingRequestTable
from agent_bridge.core.session_registry import ChatSession, SessionRegistry

PERMISSION_CALLBACK_PREFIX = "perm"
TELEGRAM_SAFE_TEXT_LIMIT = 4000
FOLLOW_PREVIEW_LIMIT = 600
_MODE_RE = re.compile(r"^[a-zA-Z][a-zA-Z_-]*$")
logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class BotConfig:
    """Runtime settings for Telegram transport."""

    token: str
    allowed_user_ids: set[int]
    default_workspace: Path
    default_model: str | None = None
    default_permission_mode: str = "default"
    system_prompt: str | None = None


class ChatRequiredError(ValueError):
    """Raised when a Telegram update does not include a chat object."""


@dataclass(slots=True)
class _StreamingRenderState:
    source_message: Message
    follow_mode: bool
    cancel_event: asyncio.Event
    text_message: Message | None = None
    text_buffer: str = ""
    rendered_text: bool = False
    thinking: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class AgentStreamer(Protocol):
    """Event source expected by Telegram handlers."""

    def stream(self, request: StreamRequest) -> AsyncIterator[ProtocolEvent]: ...


class TelegramBridge:
    """Telegram command and message handlers on top of the agent event stream."""

    def __init__(
        self,
        config: BotConfig,
        streamer: AgentStreamer,
        *,
        registry: SessionRegistry | None = None,
        pending: PendingRequestTable | None = None,
    ) -> None:
        self._config = config
        self._streamer = streamer
        self._registry = registry or SessionRegistry()
        self._pending = pending or PendingRequestTable()
        self._app: Application | None = None
        self._follow_mode_by_chat: dict[int, bool] = {}
        self._active_streams: dict[int, _StreamingRenderState] = {}

    @property
    def pending(self) -> PendingRequestTable:
        return self._pending

    def install(self, app: Application) -> None:
        self._app = app
        app.add_handler(CommandHandler("start", self.start))
        app.add_handler(CommandHandler("help", self.help))
        app.add_handler(CommandHandler("new", self.new_session))
        app.add_handler(CommandHandler("session", self.session))
        app.add_handler(CommandHandler("model", self.model))
        app.add_handler(CommandHandler("mode", self.mode))
        app.add_handler(CommandHandler("follow", self.follow))
        app.add_handler(CommandHandler("cancel", self.cancel))
        app.add_handler(CommandHandler("clear", self.clear))
        app.add_handler(CallbackQueryHandler(self.on_permission_callback, pattern=r"^perm\|"))
        app.add_handler(
            MessageHandler((filters.TEXT | filters.PHOTO | filters.Document.ALL) & ~filters.COMMAND, self.on_message)
        )

    def close(self) -> None:
        for state in self._active_streams.values():
            state.cancel_event.set()
        self._pending.close()

    async def start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        del context
        if not await self._require_access(update):
            return
        await self._reply(update, "Use /new [workspace] to start a session, then send plain text prompts.")

    async def help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        del context
        if not await self._require_access(update):
            return
        await self._reply(
            update,
            "Commands: /new [workspace], /session, /model [id], /mode [mode], /follow on|off, /cancel, /clear, /help",
        )

    async def new_session(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._require_access(update):
            return

        chat_id = self._chat_id(update)
        workspace = self._workspace_from_args(self._context_args(context))
        workspace_was_missing = not workspace.exists()
        try:
            workspace = self._prepare_workspace(workspace)
        except (ValueError, OSError) as exc:
            message = str(exc) or str(workspace)
            await self._reply(update, f"Invalid workspace: {message}")
            return

        self._cancel_active(chat_id)
        session = self._registry.create_or_replace(
            chat_id=chat_id,
            workspace=workspace,
            model=self._config.default_model,
            permission_mode=self._config.default_permission_mode,
        )
        response = f"Session started in `{session.workspace}`"
        if workspace_was_missing:
            response = f"{response}\nCreated workspace: `{session.workspace}`"
        await self._reply(update, response)

    async def session(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        del context
        if not await self._require_access(update):
            return

        session = self._registry.get(self._chat_id(update))
        if session is None:
            await self._reply(update, "No active session. Use /new first.")
            return

        await self._reply(update, self._describe_session(session))

    async def model(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._require_access(update):
            return

        chat_id = self._chat_id(update)
        session = self._registry.get(chat_id)
        if session is None:
            await self._reply(update, "No active session. Use /new first.")
            return

        args = self._context_args(context)
        if not args:
            await self._reply(update, f"Model: `{session.model or 'default'}`. Use `/model <id>` to change it.")
            return

        value = args[0].strip()
        model = None if value == "default" else value
        self._registry.update(chat_id, model=model)
        await self._reply(update, f"Model set to `{model or 'default'}`.")

    async def mode(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._require_access(update):
            return

        chat_id = self._chat_id(update)
        session = self._registry.get(chat_id)
        if session is None:
            await self._reply(update, "No active session. Use /new first.")
            return

        args = self._context_args(context)
        if not args:
            await self._reply(update, f"Permission mode: `{session.permission_mode}`. Use `/mode default|plan`.")
            return

        value = args[0].strip().lower()
        if not _MODE_RE.match(value):
            await self._reply(update, "Usage: `/mode default|plan`")
            return
        self._registry.update(chat_id, permission_mode=value)
        await self._reply(update, f"Permission mode set to `{value}`.")

    async def follow(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._require_access(update):
            return

        chat_id = self._chat_id(update)
        args = self._context_args(context)
        if not args:
            enabled = self._follow_mode_by_chat.get(chat_id, False)
            state = "on" if enabled else "off"
            await self._reply(update, f"Follow mode is `{state}`. Use `/follow on` or `/follow off`.")
            return

        value = args[0].strip().lower()
        if value not in {"on", "off"}:
            await self._reply(update, "Usage: `/follow on|off`")
            return

        enabled = value == "on"
        self._follow_mode_by_chat[chat_id] = enabled
        state = "enabled" if enabled else "disabled"
        await self._reply(update, f"Follow mode {state}.")

    async def cancel(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        del context
        if not await self._require_access(update):
            return

        if self._cancel_active(self._chat_id(update)):
            await self._reply(update, "Cancelling current prompt.")
            return
        await self._reply(update, "No running prompt.")

    async def clear(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        del context
        if not await self._require_access(update):
            return

        chat_id = self._chat_id(update)
        if self._registry.get(chat_id) is None:
            await self._reply(update, "No active session. Use /new first.")
            return
        self._cancel_active(chat_id)
        self._registry.clear(chat_id)
        await self._reply(update, "Cleared current session.")

    async def request_approval(  # noqa: PLR0913
        self,
        *,
        chat_id: int,
        request_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        cancel_event: asyncio.Event | None = None,
    ) -> PermissionResult:
        """Ask the chat to allow or deny a tool call and wait for the outcome."""
        future = self._pending.register(request_id, tool_input, cancel_event)
        if self._app is None:
            self._pending.resolve(request_id, PermissionResult.deny("No chat available for approval"))
            return await future

        text = f"Permission required for:\n{tool_name}"
        preview = self._preview_json(tool_input)
        if preview != "{}":
            text = f"{text}\n{preview}"
        try:
            await self._app.bot.send_message(
                chat_id=chat_id,
                text=text,
                reply_markup=self._permission_keyboard(request_id),
            )
        except TelegramError as exc:
            logger.warning("Permission prompt failed: request_id=%s error=%s", request_id, exc)
            self._pending.resolve(request_id, PermissionResult.deny("Permission prompt could not be delivered"))
        return await future

    async def on_permission_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        del context
        query = update.callback_query
        if query is None:
            return
        try:
            if not await self._require_access(update):
                await query.answer("Access denied.")
                return

            data = query.data or ""
            logger.info("Permission callback received: %s", data)
            prefix, _, rest = data.partition("|")
            request_id, _, raw_action = rest.rpartition("|")
            if prefix != PERMISSION_CALLBACK_PREFIX or not request_id or raw_action not in {"allow", "deny"}:
                await query.answer("Invalid action.")
                return

            behavior = cast(PermissionBehavior, raw_action)
            message = None if behavior == "allow" else "Denied by user"
            accepted = self._pending.resolve(request_id, PermissionResult(behavior=behavior, message=message))
            if not accepted:
                logger.warning("Permission callback rejected: request_id=%s", request_id)
                await query.answer("Request expired.")
                return

            labels = {"allow": "Allowed.", "deny": "Denied."}
            logger.info("Permission callback accepted: request_id=%s action=%s", request_id, raw_action)
            await query.answer(labels[raw_action])
            try:
                query_message = getattr(query, "message", None)
                original = getattr(query_message, "text", None) if query_message is not None else None
                base_text = original or "Permission request"
                await query.edit_message_text(f"{base_text}\nDecision: {labels[raw_action]}")
            except TelegramError:
                await query.edit_message_reply_markup(reply_markup=None)
        except Exception:
            logger.exception("Unhandled error while processing permission callback")
            await query.answer("Permission action failed.")

    async def on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._require_access(update):
            return

        message = update.message
        if message is None:
            return

        text = message.text or message.caption or ""
        attachments = await self._extract_attachments(message=message, context=context)
        if not text and not attachments:
            return

        chat_id = self._chat_id(update)
        session = self._registry.get(chat_id)
        if session is None:
            await self._reply(update, "No active session. Use /new first.")
            return
        if chat_id in self._active_streams:
            await self._reply(update, "A prompt is already running. Use /cancel to stop it.")
            return

        state = _StreamingRenderState(
            source_message=message,
            follow_mode=self._follow_mode_by_chat.get(chat_id, False),
            cancel_event=asyncio.Event(),
        )
        # Registered before any await; updates for one chat are handled concurrently.
        self._active_streams[chat_id] = state
        request = StreamRequest(
            prompt=text,
            resume_session_id=session.agent_session_id,
            model=session.model,
            system_prompt=self._config.system_prompt,
            working_directory=str(session.workspace),
            permission_mode=session.permission_mode,
            attachments=attachments,
            cancel_event=state.cancel_event,
        )
        try:
            await context.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
            async for event in self._streamer.stream(request):
                await self._on_stream_event(chat_id, state, event)
        finally:
            if self._active_streams.get(chat_id) is state:
                del self._active_streams[chat_id]

        if state.cancel_event.is_set():
            await self._reply(update, "Prompt cancelled.")
        elif not state.rendered_text and not state.errors:
            await self._reply(update, "The agent finished without a text reply.")

    async def _on_stream_event(self, chat_id: int, state: _StreamingRenderState, event: ProtocolEvent) -> None:
        if event.kind == EventKind.DONE:
            await self._flush_thinking(state)
            return
        if event.kind != EventKind.THINKING:
            await self._flush_thinking(state)

        if event.kind == EventKind.TEXT:
            await self._append_stream_text(state, event.data)
        elif event.kind in {EventKind.STATUS, EventKind.RESULT}:
            session_id = event.payload().get("session_id")
            if session_id:
                self._registry.update(chat_id, agent_session_id=session_id)
        elif event.kind == EventKind.ERROR:
            state.errors.append(event.data)
            await self._send_follow_event(state, f"Agent error: {event.data}")
        elif event.kind == EventKind.THINKING:
            if state.follow_mode:
                state.thinking.append(event.data)
        elif state.follow_mode:
            await self._send_follow_event(state, self._describe_tool_event(event))

    async def _flush_thinking(self, state: _StreamingRenderState) -> None:
        if not state.thinking:
            return
        text = "".join(state.thinking).strip()
        state.thinking.clear()
        if text:
            await self._send_follow_event(state, f"Thinking: {text}")

    async def _append_stream_text(self, state: _StreamingRenderState, chunk: str) -> None:
        if not chunk:
            return
        state.rendered_text = True
        remaining = chunk
        while remaining:
            space_left = TELEGRAM_SAFE_TEXT_LIMIT - len(state.text_buffer)
            if space_left <= 0:
                state.text_message = None
                state.text_buffer = ""
                space_left = TELEGRAM_SAFE_TEXT_LIMIT
            part = remaining[:space_left]
            remaining = remaining[space_left:]
            state.text_buffer += part
            await self._render_stream_text(state)

    async def _render_stream_text(self, state: _StreamingRenderState) -> None:
        if state.text_message is None:
            state.text_message = await state.source_message.reply_text(state.text_buffer)
            return
        try:
            await state.text_message.edit_text(state.text_buffer)
        except TelegramError:
            # Some clients reject no-op or transient edits; keep streaming forward.
            return

    async def _send_follow_event(self, state: _StreamingRenderState, text: str) -> None:
        if not text:
            return
        # Later text goes into a fresh message below the event.
        state.text_message = None
        state.text_buffer = ""
        for chunk in self._split_text(text):
            await state.source_message.reply_text(chunk)

    @classmethod
    def _describe_tool_event(cls, event: ProtocolEvent) -> str:
        if event.kind == EventKind.TOOL_USE:
            payload = event.payload()
            return f"Tool: {payload.get('name')}\n{cls._preview_json(payload.get('input') or {})}"
        if event.kind == EventKind.TOOL_RESULT:
            payload = event.payload()
            label = "Tool failed" if payload.get("is_error") else "Tool result"
            return f"{label}:\n{cls._truncate(str(payload.get('content') or ''))}"
        if event.kind == EventKind.TOOL_OUTPUT:
            return f"Agent stderr:\n{cls._truncate(event.data)}"
        return ""

    async def _extract_attachments(
        self,
        *,
        message: Message,
        context: ContextTypes.DEFAULT_TYPE,
    ) -> tuple[FileAttachment, ...]:
        attachments: list[FileAttachment] = []
        if message.photo:
            photo = message.photo[-1]
            tg_file = await context.bot.get_file(photo.file_id)
            raw = bytes(await tg_file.download_as_bytearray())
            attachments.append(
                FileAttachment(name="photo.jpg", type="image/jpeg", data=base64.b64encode(raw).decode("ascii"))
            )

        document = message.document
        if document is not None:
            tg_file = await context.bot.get_file(document.file_id)
            raw = bytes(await tg_file.download_as_bytearray())
            attachments.append(
                FileAttachment(
                    name=document.file_name or "attachment.bin",
                    type=document.mime_type or "application/octet-stream",
                    data=base64.b64encode(raw).decode("ascii"),
                )
            )
        return tuple(attachments)

    def _cancel_active(self, chat_id: int) -> bool:
        state = self._active_streams.get(chat_id)
        if state is None:
            return False
        state.cancel_event.set()
        return True

    @staticmethod
    def _describe_session(session: ChatSession) -> str:
        lines = [
            f"Workspace: `{session.workspace}`",
            f"Model: `{session.model or 'default'}`",
            f"Permission mode: `{session.permission_mode}`",
        ]
        if session.agent_session_id:
            lines.append(f"Agent session: `{session.agent_session_id}`")
        return "\n".join(lines)

    @staticmethod
    def _permission_keyboard(request_id: str) -> InlineKeyboardMarkup:
        buttons = [
            InlineKeyboardButton(text=label, callback_data=f"{PERMISSION_CALLBACK_PREFIX}|{request_id}|{action}")
            for action, label in (("allow", "Allow"), ("deny", "Deny"))
        ]
        return InlineKeyboardMarkup([buttons])

    async def _require_access(self, update: Update) -> bool:
        allowed = self._config.allowed_user_ids
        if not allowed:
            return True

        user_id = update.effective_user.id if update.effective_user else None
        if user_id in allowed:
            return True

        await self._reply(update, "Access denied for this bot.")
        return False

    @staticmethod
    def _chat_id(update: Update) -> int:
        chat = update.effective_chat
        if chat is None:
            raise ChatRequiredError
        return chat.id

    def _workspace_from_args(self, args: list[str]) -> Path:
        if not args:
            return self._config.default_workspace

        candidate = Path(args[0]).expanduser()
        if candidate.is_absolute():
            return candidate
        return self._config.default_workspace / candidate

    @staticmethod
    def _prepare_workspace(workspace: Path) -> Path:
        resolved = workspace.expanduser().resolve()
        if resolved.exists() and not resolved.is_dir():
            raise ValueError(resolved)
        resolved.mkdir(parents=True, exist_ok=True)
        return resolved

    @staticmethod
    def _context_args(context: ContextTypes.DEFAULT_TYPE) -> list[str]:
        args = context.args
        if not args:
            return []
        return list(args)

    @classmethod
    def _preview_json(cls, payload: object) -> str:
        return cls._truncate(json.dumps(payload, ensure_ascii=False, indent=1, default=str))

    @staticmethod
    def _truncate(text: str, limit: int = FOLLOW_PREVIEW_LIMIT) -> str:
        if len(text) <= limit:
            return text
        return f"{text[:limit]}…"

    @staticmethod
    def _split_text(text: str, *, limit: int = TELEGRAM_SAFE_TEXT_LIMIT) -> list[str]:
        if not text:
            return [""]
        chunks: list[str] = []
        pending = text
        while pending:
            if len(pending) <= limit:
                chunks.append(pending)
                break
            split_at = pending.rfind("\n", 0, limit)
            if split_at <= 0:
                split_at = limit
            chunks.append(pending[:split_at])
            pending = pending[split_at:]
        return chunks

    @staticmethod
    async def _reply(update: Update, text: str) -> None:
        if update.message is None:
            return
        for chunk in TelegramBridge._split_text(text):
            try:
                await update.message.reply_text(chunk, parse_mode=ParseMode.MARKDOWN)
            except TelegramError:
                await update.message.reply_text(chunk)


def build_application(config: BotConfig, bridge: TelegramBridge) -> Application:
    # Prompts stream inside message handlers, so /cancel and approval callbacks
    # must be processed concurrently to avoid deadlocking the update loop.
    app = Application.builder().token(config.token).concurrent_updates(True).build()
    bridge.install(app)
    return app


def run_polling(config: BotConfig, bridge: TelegramBridge) -> int:
    app = build_application(config, bridge)
    try:
        app.run_polling(allowed_updates=Update.ALL_TYPES)
    finally:
        bridge.close()
    return 0


def make_config(  # noqa: PLR0913
    *,
    token: str,
    allowed_user_ids: list[int],
    workspace: str,
    model: str | None = None,
    permission_mode: str = "default",
    system_prompt: str | None = None,
) -> BotConfig:
    return BotConfig(
        token=token,
        allowed_user_ids=set(allowed_user_ids),
        default_workspace=Path(workspace).expanduser(),
        default_model=model or None,
        default_permission_mode=permission_mode,
        system_prompt=system_prompt or None,
    )
