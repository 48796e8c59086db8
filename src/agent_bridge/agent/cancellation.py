from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from typing import Protocol

logger = logging.getLogger(__name__)

KILL_GRACE_SECONDS = 3.0


class ProcessLike(Protocol):
    """Subset of the process API used for termination."""

    pid: int
    returncode: int | None

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int: ...


class CancellationController:
    """Terminate the agent process (and its group) when a cancellation event fires."""

    def __init__(
        self,
        process: ProcessLike,
        *,
        use_process_group: bool = True,
        kill_grace: float = KILL_GRACE_SECONDS,
    ) -> None:
        self._process = process
        self._use_process_group = use_process_group and hasattr(os, "killpg")
        self._kill_grace = kill_grace
        self._watcher: asyncio.Task[None] | None = None
        self.cancelled = False

    def bind(self, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is None:
            return
        self._watcher = asyncio.create_task(self._watch(cancel_event))

    async def close(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is None or watcher.done():
            return
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher

    async def _watch(self, cancel_event: asyncio.Event) -> None:
        await cancel_event.wait()
        self.cancelled = True
        logger.info("Cancellation requested for agent process pid=%s", self._process.pid)
        await self.terminate()

    async def terminate(self) -> None:
        """SIGTERM the process group, escalating to SIGKILL after the grace period."""
        if self._process.returncode is not None:
            return
        self._signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(self._process.wait(), timeout=self._kill_grace)
        except TimeoutError:
            logger.warning("Agent process pid=%s ignored SIGTERM; killing", self._process.pid)
            self._signal(getattr(signal, "SIGKILL", signal.SIGTERM))

    def _signal(self, sig: int) -> None:
        if self._use_process_group:
            try:
                os.killpg(self._process.pid, sig)
                return
            except OSError:
                logger.debug("Process group signal failed for pid=%s", self._process.pid)
        with contextlib.suppress(ProcessLookupError):
            if sig == signal.SIGTERM:
                self._process.terminate()
            else:
                self._process.kill()
