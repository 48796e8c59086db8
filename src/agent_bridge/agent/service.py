from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Mapping
from pathlib import Path
from typing import Literal

from agent_bridge.agent.cancellation import KILL_GRACE_SECONDS, CancellationController
from agent_bridge.agent.command import build_args, materialize_attachments, resolve_work_dir
from agent_bridge.agent.launcher import SpawnFn, SpawnStrategy, build_environment, find_agent_binary, select_strategy
from agent_bridge.agent.lines import LineAssembler
from agent_bridge.agent.models import EventKind, ProtocolEvent, SpawnFailureError, StreamRequest
from agent_bridge.agent.sanitizer import IncrementalSanitizer
from agent_bridge.agent.translator import EventTranslator, stderr_event

logger = logging.getLogger(__name__)

ToolEventOutput = Literal["stdout", "off"]
READ_CHUNK_SIZE = 65_536
TOOL_EVENT_KINDS = {EventKind.TOOL_USE, EventKind.TOOL_RESULT, EventKind.TOOL_OUTPUT}


class AgentStreamService:
    """Run one agent CLI process per request and stream its normalized events."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        binary: str | None = None,
        strategy: SpawnStrategy | None = None,
        spawner: SpawnFn | None = None,
        env: Mapping[str, str] | None = None,
        tool_event_output: ToolEventOutput = "off",
        kill_grace: float = KILL_GRACE_SECONDS,
    ) -> None:
        self._binary = binary or find_agent_binary() or "agent"
        self._strategy = strategy or select_strategy()
        self._spawner = spawner
        self._env = env
        self._tool_event_output = tool_event_output
        self._kill_grace = kill_grace

    @property
    def binary(self) -> str:
        return self._binary

    @property
    def strategy(self) -> SpawnStrategy:
        return self._strategy

    async def stream(self, request: StreamRequest) -> AsyncIterator[ProtocolEvent]:
        """Yield protocol events for `request`; always ends with exactly one `done`."""
        try:
            work_dir = resolve_work_dir(request)
            attachment_paths = materialize_attachments(request.attachments, work_dir)
            args = build_args(request, attachment_paths)
            process = await self._spawn(args, work_dir)
        except SpawnFailureError as exc:
            logger.warning("Agent spawn failed: %s", exc)
            yield ProtocolEvent(EventKind.ERROR, f"Failed to start agent: {exc}")
            yield ProtocolEvent(EventKind.DONE)
            return
        except (OSError, ValueError) as exc:
            logger.warning("Agent request rejected: %s", exc)
            yield ProtocolEvent(EventKind.ERROR, str(exc) or exc.__class__.__name__)
            yield ProtocolEvent(EventKind.DONE)
            return

        async with contextlib.aclosing(self._run(process, request.cancel_event)) as events:
            async for event in events:
                self._report_event(event)
                yield event

    async def stream_sse(self, request: StreamRequest) -> AsyncIterator[str]:
        async for event in self.stream(request):
            yield event.to_sse()

    async def _spawn(self, args: list[str], work_dir: Path) -> asyncio.subprocess.Process:
        env = build_environment(self._env)
        try:
            process = await self._strategy.spawn(
                self._binary,
                args,
                env=env,
                cwd=str(work_dir),
                spawner=self._spawner,
            )
        except OSError as exc:
            raise SpawnFailureError(str(exc)) from exc
        if process.stdout is None:
            raise SpawnFailureError("agent process did not expose a stdout pipe")
        logger.info("Agent process started: pid=%s", process.pid)
        return process

    async def _run(
        self,
        process: asyncio.subprocess.Process,
        cancel_event: asyncio.Event | None,
    ) -> AsyncIterator[ProtocolEvent]:
        queue: asyncio.Queue[tuple[str, bytes | None]] = asyncio.Queue()
        pipes = {"stdout": process.stdout, "stderr": process.stderr}
        readers = [
            asyncio.create_task(self._pump(name, pipe, queue)) for name, pipe in pipes.items() if pipe is not None
        ]
        controller = CancellationController(
            process,
            use_process_group=self._strategy.uses_process_group,
            kill_grace=self._kill_grace,
        )
        controller.bind(cancel_event)
        sanitizer = IncrementalSanitizer()
        stderr_sanitizer = IncrementalSanitizer()
        assembler = LineAssembler()
        translator = EventTranslator()

        try:
            open_pipes = len(readers)
            while open_pipes:
                source, chunk = await queue.get()
                if chunk is None:
                    open_pipes -= 1
                    continue
                if source == "stderr":
                    event = stderr_event(stderr_sanitizer.feed(chunk))
                    if event is not None:
                        yield event
                    continue
                for line in assembler.feed(sanitizer.feed(chunk)):
                    for event in _translate(translator, line):
                        yield event

            returncode = await process.wait()
            for line in [*assembler.feed(sanitizer.flush()), *assembler.flush()]:
                for event in _translate(translator, line):
                    yield event
            if (stderr_tail := stderr_event(stderr_sanitizer.flush())) is not None:
                yield stderr_tail

            logger.info(
                "Agent process exited: pid=%s code=%s cancelled=%s",
                process.pid,
                returncode,
                controller.cancelled,
            )
            # Negative return codes mean the process was killed by a signal.
            if returncode is not None and returncode > 0 and not controller.cancelled:
                yield ProtocolEvent(EventKind.ERROR, f"Agent process exited with code {returncode}")
            yield ProtocolEvent(EventKind.DONE)
        finally:
            await controller.close()
            for reader in readers:
                reader.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reader
            if process.returncode is None:
                logger.info("Stream closed before agent exit; terminating pid=%s", process.pid)
                await controller.terminate()

    @staticmethod
    async def _pump(
        source: str,
        pipe: asyncio.StreamReader,
        queue: asyncio.Queue[tuple[str, bytes | None]],
    ) -> None:
        try:
            while chunk := await pipe.read(READ_CHUNK_SIZE):
                await queue.put((source, chunk))
        except (OSError, ValueError) as exc:
            logger.warning("Agent %s read failed: %s", source, exc)
        finally:
            queue.put_nowait((source, None))

    def _report_event(self, event: ProtocolEvent) -> None:
        if self._tool_event_output == "stdout" and event.kind in TOOL_EVENT_KINDS:
            logger.info("Agent tool event: %s %.200s", event.kind.value, event.data)


def _translate(translator: EventTranslator, line: str) -> list[ProtocolEvent]:
    # A line that cannot be translated is dropped like any other malformed line.
    try:
        return translator.translate_line(line)
    except Exception:
        logger.exception("Dropping agent output line that failed to translate: %.80s", line)
        return []
